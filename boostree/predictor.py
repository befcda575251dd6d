"""Standalone prediction utilities for a single boostree tree."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import torch

from .codec import load, load_bytes, save
from .data import FVec, SparseRow, ensure_numpy
from .model import RegTree

logger = logging.getLogger(__name__)


class TreePredictor:
    """Lightweight predictor that depends only on a serialised tree.

    The node mean values are filled on construction and each call builds its
    own :class:`FVec`, so one predictor can serve concurrent callers as long
    as the tree is not mutated afterwards. Construction raises ``ValueError``
    when an internal node carries zero hessian weight.
    """

    def __init__(self, tree: RegTree, root_id: int = 0) -> None:
        self._tree = tree
        self._root_id = root_id
        tree.fill_node_mean_values()

    @classmethod
    def from_file(cls, path: str | Path, root_id: int = 0) -> "TreePredictor":
        with Path(path).open("rb") as fh:
            tree = load(fh)
        logger.info("loaded tree from %s (%d nodes)", path, tree.param.num_nodes)
        return cls(tree, root_id)

    @classmethod
    def from_bytes(cls, data: bytes, root_id: int = 0) -> "TreePredictor":
        return cls(load_bytes(data), root_id)

    def to_file(self, path: str | Path) -> None:
        with Path(path).open("wb") as fh:
            save(self._tree, fh)

    def predict(self, X: np.ndarray | torch.Tensor) -> np.ndarray | torch.Tensor:
        return self._tree.predict_dense(X, self._root_id)

    def predict_leaf(self, X: np.ndarray | torch.Tensor) -> np.ndarray | torch.Tensor:
        return self._tree.predict_leaf_dense(X, self._root_id)

    def num_features(self, X: np.ndarray) -> int:
        """Width of the attribution output (bias slot excluded)."""
        width = max(self._tree.param.num_feature, X.shape[1])
        for node in self._tree.nodes:
            if not node.is_leaf and not node.is_deleted:
                width = max(width, node.split_index + 1)
        return width

    def _as_matrix(self, X: np.ndarray | torch.Tensor) -> np.ndarray:
        X_arr = ensure_numpy(X).astype(np.float32, copy=False)
        if X_arr.ndim != 2:
            raise ValueError("X must be 2D")
        return X_arr

    def predict_contributions(self, X: np.ndarray | torch.Tensor, approximate: bool = False) -> np.ndarray:
        """Per-row feature attributions, shape ``(n_rows, F + 1)``; last column is the bias."""
        X_arr = self._as_matrix(X)
        n_features = self.num_features(X_arr)
        out = np.zeros((X_arr.shape[0], n_features + 1), dtype=np.float64)
        feat = FVec(n_features)
        for i, dense in enumerate(X_arr):
            row = SparseRow.from_dense(dense)
            feat.fill(row)
            if approximate:
                self._tree.calculate_contributions_approx(feat, self._root_id, out[i])
            else:
                self._tree.calculate_contributions(feat, self._root_id, out[i])
            feat.drop(row)
        return out

    def predict_interactions(self, X: np.ndarray | torch.Tensor) -> np.ndarray:
        """Per-row SHAP interaction matrices, shape ``(n_rows, F + 1, F + 1)``."""
        X_arr = self._as_matrix(X)
        n_features = self.num_features(X_arr)
        out = np.zeros((X_arr.shape[0], n_features + 1, n_features + 1), dtype=np.float64)
        feat = FVec(n_features)
        for i, dense in enumerate(X_arr):
            row = SparseRow.from_dense(dense)
            feat.fill(row)
            out[i] = self._tree.calculate_interaction_contributions(feat, self._root_id)
            feat.drop(row)
        return out

    @property
    def tree(self) -> RegTree:
        return self._tree


def load_predictor(data: bytes) -> TreePredictor:
    return TreePredictor.from_bytes(data)
