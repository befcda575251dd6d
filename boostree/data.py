"""Input handling: sparse rows and the reusable dense feature vector."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence, Tuple

import numpy as np
import torch


def ensure_numpy(array: np.ndarray | torch.Tensor | Sequence[float]) -> np.ndarray:
    """Convert ``array`` (numpy, torch or any array like) to an ``np.ndarray``."""

    if isinstance(array, np.ndarray):
        return array
    if isinstance(array, torch.Tensor):
        return array.detach().cpu().numpy()
    return np.asarray(array)


@dataclass(frozen=True, slots=True)
class SparseRow:
    """Ascending, duplicate-free ``(index, value)`` pairs of one input row."""

    indices: np.ndarray
    values: np.ndarray

    def __post_init__(self) -> None:
        indices = np.asarray(self.indices, dtype=np.int64)
        values = np.asarray(self.values, dtype=np.float32)
        if indices.ndim != 1 or values.ndim != 1:
            raise ValueError("indices and values must be 1D")
        if indices.shape != values.shape:
            raise ValueError("indices and values must have the same length")
        if indices.size and indices.min() < 0:
            raise ValueError("feature indices must be non-negative")
        if indices.size > 1 and np.any(np.diff(indices) <= 0):
            raise ValueError("feature indices must be strictly ascending")
        object.__setattr__(self, "indices", indices.astype(np.uint32))
        object.__setattr__(self, "values", values)

    @classmethod
    def from_pairs(cls, pairs: Sequence[Tuple[int, float]]) -> "SparseRow":
        if len(pairs) == 0:
            return cls.empty()
        indices, values = zip(*pairs)
        return cls(np.asarray(indices), np.asarray(values))

    @classmethod
    def from_dense(cls, row: np.ndarray | torch.Tensor | Sequence[float]) -> "SparseRow":
        """Build a row from a dense vector where ``NaN`` marks an absent value."""
        dense = ensure_numpy(row).astype(np.float32, copy=False)
        if dense.ndim != 1:
            raise ValueError("dense row must be 1D")
        present = np.flatnonzero(~np.isnan(dense))
        return cls(present, dense[present])

    @classmethod
    def empty(cls) -> "SparseRow":
        return cls(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float32))

    def __len__(self) -> int:
        return int(self.indices.size)

    def __iter__(self) -> Iterator[Tuple[int, float]]:
        for index, value in zip(self.indices.tolist(), self.values.tolist()):
            yield index, value


class FVec:
    """Dense feature vector materialised from sparse rows.

    One instance is reused across many rows: every :meth:`fill` must be
    followed by a :meth:`drop` of the same row before the next fill. Slots
    that were never filled report missing and read as ``NaN``.
    """

    __slots__ = ("_values", "_missing")

    def __init__(self, size: int = 0) -> None:
        self._values = np.empty(0, dtype=np.float32)
        self._missing = np.empty(0, dtype=bool)
        self.init(size)

    def init(self, size: int) -> None:
        """Allocate ``size`` slots, all missing."""
        size = int(size)
        if size < 0:
            raise ValueError("size must be non-negative")
        self._values = np.full(size, np.nan, dtype=np.float32)
        self._missing = np.ones(size, dtype=bool)

    def _in_range(self, row: SparseRow) -> Tuple[np.ndarray, np.ndarray]:
        # indices beyond the vector are dropped silently
        keep = row.indices < self._values.size
        return row.indices[keep].astype(np.intp), row.values[keep]

    def fill(self, row: SparseRow) -> None:
        indices, values = self._in_range(row)
        self._values[indices] = values
        self._missing[indices] = False

    def drop(self, row: SparseRow) -> None:
        indices, _ = self._in_range(row)
        self._values[indices] = np.nan
        self._missing[indices] = True

    @property
    def size(self) -> int:
        return int(self._values.size)

    def __len__(self) -> int:
        return self.size

    def fvalue(self, i: int) -> float:
        return float(self._values[i])

    def is_missing(self, i: int) -> bool:
        return bool(self._missing[i])
