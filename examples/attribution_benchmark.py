"""Time batch prediction and the two attribution modes on a random tree."""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

import numpy as np
import torch

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from boostree import RegTree, TreeParam, TreePredictor


N_ROWS = 2000
N_FEATURES = 20
MAX_DEPTH = 8
MISSING_RATE = 0.1
SEED = 123


@dataclass
class BenchmarkResult:
    name: str
    seconds: float
    max_gap: float


def random_tree(rng: np.random.Generator) -> RegTree:
    """Grow a random tree whose parent hessians equal the sum of their children."""
    tree = RegTree(TreeParam(num_feature=N_FEATURES))

    def grow(nid: int, level: int) -> float:
        if level == MAX_DEPTH or (level > 1 and rng.random() < 0.15):
            tree.set_leaf(nid, float(rng.normal()))
            hess = float(rng.integers(1, 50))
        else:
            tree.set_split(nid, int(rng.integers(N_FEATURES)), float(rng.normal()), bool(rng.integers(2)))
            left, right = tree.add_children(nid)
            hess = grow(left, level + 1) + grow(right, level + 1)
        tree.set_stat(nid, sum_hess=hess)
        return hess

    grow(0, 0)
    return tree


def benchmark(name: str, fn: Callable[[], np.ndarray], reference: np.ndarray) -> BenchmarkResult:
    """Run ``fn`` once and report the worst gap between its row totals and ``reference``."""
    t0 = time.perf_counter()
    out = fn()
    seconds = time.perf_counter() - t0
    totals = out if out.ndim == 1 else out.sum(axis=1)
    return BenchmarkResult(name, seconds, float(np.max(np.abs(totals - reference))))


if __name__ == "__main__":
    rng = np.random.default_rng(SEED)
    tree = random_tree(rng)
    X = rng.normal(size=(N_ROWS, N_FEATURES)).astype(np.float32)
    X[rng.random(size=X.shape) < MISSING_RATE] = np.nan

    predictor = TreePredictor(tree)
    reference = predictor.predict(X).astype(np.float64)

    results: List[BenchmarkResult] = [
        benchmark("predict (numpy)", lambda: predictor.predict(X).astype(np.float64), reference),
        benchmark(
            "predict (torch)",
            lambda: predictor.predict(torch.from_numpy(X)).numpy().astype(np.float64),
            reference,
        ),
        benchmark("TreeSHAP", lambda: predictor.predict_contributions(X), reference),
        benchmark("approximate", lambda: predictor.predict_contributions(X, approximate=True), reference),
    ]

    print(f"{tree.num_extra_nodes + 1} nodes, depth {tree.max_depth()}, {N_ROWS} rows")
    print("Method              Time (s)   Max |sum - pred|")
    print("-" * 48)
    for res in results:
        print(f"{res.name:<18} {res.seconds:>9.3f} {res.max_gap:>18.2e}")
