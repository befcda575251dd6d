"""boostree: a single gradient-boosted regression tree with exact TreeSHAP."""

from .config import TreeParam
from .data import FVec, SparseRow
from .model import RegTree
from .predictor import TreePredictor

__all__ = ["FVec", "RegTree", "SparseRow", "TreeParam", "TreePredictor"]
