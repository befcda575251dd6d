"""Tree header parameters for boostree."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import List

import numpy as np

NUM_RESERVED = 31
#: Six meaningful fields followed by the reserved block, all ``int32``.
PARAM_WORDS = 6 + NUM_RESERVED

# Only these fields may be set by users; the others are owned by the arena.
_USER_FIELDS = ("num_roots", "num_feature", "size_leaf_vector")
_LOWER_BOUNDS = {"num_roots": 1, "num_feature": 0, "size_leaf_vector": 0}


@dataclass(slots=True)
class TreeParam:
    """Fixed-size header of a single tree.

    Parameters
    ----------
    num_roots:
        Number of start roots. Roots occupy ids ``[0, num_roots)`` and are
        never deleted.
    num_nodes:
        Total number of allocated nodes, tombstones included.
    num_deleted:
        Number of tombstoned nodes waiting on the free list.
    max_depth:
        Depth statistic recorded by the builder. Not used by traversal.
    num_feature:
        Number of features used for tree construction.
    size_leaf_vector:
        Width of the per-node leaf vector. ``0`` disables the pool.
    reserved:
        Padding persisted verbatim with the header.
    """

    num_roots: int = 1
    num_nodes: int = 1
    num_deleted: int = 0
    max_depth: int = 0
    num_feature: int = 0
    size_leaf_vector: int = 0
    reserved: List[int] = field(default_factory=lambda: [0] * NUM_RESERVED)

    def __post_init__(self) -> None:
        for name, bound in _LOWER_BOUNDS.items():
            value = getattr(self, name)
            if value < bound:
                raise ValueError(f"{name} must be >= {bound}, got {value}")
        if len(self.reserved) != NUM_RESERVED:
            raise ValueError(f"reserved must hold {NUM_RESERVED} ints, got {len(self.reserved)}")

    def configure(self, **kwargs: int) -> "TreeParam":
        """Update user-settable fields in place and return ``self``."""
        for name, value in kwargs.items():
            if name not in _USER_FIELDS:
                raise ValueError(f"{name!r} is not a user-settable tree parameter")
            value = int(value)
            bound = _LOWER_BOUNDS[name]
            if value < bound:
                raise ValueError(f"{name} must be >= {bound}, got {value}")
            setattr(self, name, value)
        return self

    def copy(self) -> "TreeParam":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["reserved"] = list(self.reserved)
        return TreeParam(**values)

    def to_array(self) -> np.ndarray:
        """Pack the header into ``PARAM_WORDS`` native-endian ``int32`` words."""
        head = [
            self.num_roots,
            self.num_nodes,
            self.num_deleted,
            self.max_depth,
            self.num_feature,
            self.size_leaf_vector,
        ]
        return np.asarray(head + list(self.reserved), dtype="=i4")

    @classmethod
    def from_array(cls, words: np.ndarray) -> "TreeParam":
        arr = np.asarray(words, dtype="=i4")
        if arr.shape != (PARAM_WORDS,):
            raise ValueError(f"tree header must hold {PARAM_WORDS} words, got {arr.shape}")
        ints = [int(v) for v in arr]
        return cls(
            num_roots=ints[0],
            num_nodes=ints[1],
            num_deleted=ints[2],
            max_depth=ints[3],
            num_feature=ints[4],
            size_leaf_vector=ints[5],
            reserved=ints[6:],
        )
