from __future__ import annotations

from typing import Callable

import numpy as np
import pytest

from boostree.config import TreeParam
from boostree.model import RegTree


def build_example_tree() -> RegTree:
    """Depth-2 tree: f0 < 0.5 then, on the left, f1 < 1.5.

    Leaves: (f0<0.5, f1<1.5) = 1.0, (f0<0.5, f1>=1.5) = 2.0, (f0>=0.5) = 3.0.
    """
    tree = RegTree(TreeParam(num_feature=2))
    tree.set_split(0, 0, 0.5)
    left, right = tree.add_children(0)
    tree.set_split(left, 1, 1.5)
    ll, lr = tree.add_children(left)
    tree.set_leaf(ll, 1.0)
    tree.set_leaf(lr, 2.0)
    tree.set_leaf(right, 3.0)
    for nid, hess in ((0, 10.0), (left, 6.0), (right, 4.0), (ll, 2.0), (lr, 4.0)):
        tree.set_stat(nid, sum_hess=hess)
    return tree


def build_random_tree(seed: int, n_features: int = 4, depth: int = 4) -> RegTree:
    """Random tree with integer hessians so parent weights equal child sums."""
    rng = np.random.default_rng(seed)
    tree = RegTree(TreeParam(num_feature=n_features))

    def grow(nid: int, level: int) -> float:
        if level == depth or (level > 0 and rng.random() < 0.2):
            tree.set_leaf(nid, float(rng.normal()))
            hess = float(rng.integers(1, 9))
        else:
            tree.set_split(
                nid,
                int(rng.integers(n_features)),
                float(rng.normal()),
                default_left=bool(rng.integers(2)),
            )
            left, right = tree.add_children(nid)
            hess = grow(left, level + 1) + grow(right, level + 1)
        tree.set_stat(nid, sum_hess=hess)
        return hess

    grow(0, 0)
    return tree


def random_rows(seed: int, n_rows: int, n_features: int, missing_rate: float = 0.2) -> np.ndarray:
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n_rows, n_features)).astype(np.float32)
    X[rng.random(size=X.shape) < missing_rate] = np.nan
    return X


@pytest.fixture
def example_tree() -> RegTree:
    return build_example_tree()


@pytest.fixture
def random_tree() -> Callable[..., RegTree]:
    return build_random_tree
