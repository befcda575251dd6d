"""Node and statistic records stored in the tree arena."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

LEFT_FLAG = 1 << 31
INDEX_MASK = (1 << 31) - 1
#: ``sindex_`` value marking a tombstoned node. Real feature ids use 31 bits.
DELETED_SINDEX = (1 << 32) - 1


def as_float32(value: float) -> float:
    """Round ``value`` through ``float32`` storage."""
    return float(np.float32(value))


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & LEFT_FLAG else value


@dataclass(slots=True)
class Node:
    """One vertex of the tree, kept in its packed on-disk encoding.

    ``parent_`` carries the "is left child" flag in its high bit and is ``-1``
    for a root. ``sindex_`` carries the feature index in its low 31 bits and
    the default-left flag in the top bit. ``info_`` is the leaf value for a
    leaf and the split threshold otherwise.
    """

    parent_: int = -1
    cleft_: int = -1
    cright_: int = -1
    sindex_: int = 0
    info_: float = 0.0

    @property
    def cleft(self) -> int:
        return self.cleft_

    @property
    def cright(self) -> int:
        return self.cright_

    @property
    def cdefault(self) -> int:
        """Child receiving rows whose split feature is missing."""
        return self.cleft_ if self.default_left else self.cright_

    @property
    def split_index(self) -> int:
        return self.sindex_ & INDEX_MASK

    @property
    def default_left(self) -> bool:
        return (self.sindex_ >> 31) != 0

    @property
    def is_leaf(self) -> bool:
        return self.cleft_ == -1

    @property
    def leaf_value(self) -> float:
        return self.info_

    @property
    def split_cond(self) -> float:
        return self.info_

    @property
    def parent(self) -> int:
        return self.parent_ & INDEX_MASK

    @property
    def is_left_child(self) -> bool:
        return (self.parent_ & LEFT_FLAG) != 0

    @property
    def is_deleted(self) -> bool:
        return self.sindex_ == DELETED_SINDEX

    @property
    def is_root(self) -> bool:
        return self.parent_ == -1

    def set_right_child(self, nid: int) -> None:
        self.cright_ = int(nid)

    def set_split(self, split_index: int, split_cond: float, default_left: bool = False) -> None:
        split_index = int(split_index)
        if split_index < 0 or split_index > INDEX_MASK:
            raise ValueError(f"split index must fit in 31 bits, got {split_index}")
        if default_left:
            split_index |= LEFT_FLAG
        self.sindex_ = split_index
        self.info_ = as_float32(split_cond)

    def set_leaf(self, value: float, right: int = -1) -> None:
        self.info_ = as_float32(value)
        self.cleft_ = -1
        self.cright_ = int(right)

    def set_parent(self, pidx: int, is_left_child: bool = True) -> None:
        pidx = int(pidx)
        if is_left_child:
            pidx |= LEFT_FLAG
        self.parent_ = _to_int32(pidx)

    def mark_delete(self) -> None:
        self.sindex_ = DELETED_SINDEX

    def reuse(self) -> None:
        """Clear the tombstone so a recycled slot reads as live."""
        self.sindex_ = 0


@dataclass(slots=True)
class NodeStat:
    """Training statistics of a node, index-aligned with :class:`Node`."""

    loss_chg: float = 0.0
    # sum of hessians: the data coverage used to weight subtree means
    sum_hess: float = 0.0
    base_weight: float = 0.0
    leaf_child_cnt: int = 0
