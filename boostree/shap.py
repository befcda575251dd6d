"""Exact TreeSHAP feature attribution and the path-based approximation.

The exact engine follows Lundberg & Lee, "Consistent Individualized Feature
Attribution for Tree Ensembles" (https://arxiv.org/abs/1706.06060). Along each
recursive descent a path of :class:`PathElement` records, for every distinct
split feature met so far, the fraction of weight flowing through the branch
when the feature is integrated out (``zero_fraction``), when it is fixed to
the input (``one_fraction``), and the permutation weights that spread the
Shapley mass over the possible counts of other present features.

All recursion frames share one path buffer allocated per top-level call and
sized from the actual depth of the tree. A frame at ``unique_depth`` writes
its copy of the path right after its parent's slice, so sibling calls never
clobber the parent's data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Set

import numpy as np

from .data import FVec

if TYPE_CHECKING:
    from .model import RegTree


@dataclass(slots=True)
class PathElement:
    """One unique split feature on the current decision path.

    ``pweight`` of the i-th element is the permutation weight of paths with
    ``i - 1`` ones in them. It is stored here for convenience and is not tied
    to the other attributes of the same element.
    """

    feature_index: int = -1
    zero_fraction: float = 0.0
    one_fraction: float = 0.0
    pweight: float = 0.0


def path_buffer_size(max_depth: int) -> int:
    """Number of path elements needed for a tree of depth ``max_depth``."""
    maxd = max_depth + 2
    return (maxd * (maxd + 1)) // 2


def new_path_buffer(max_depth: int) -> List[PathElement]:
    return [PathElement() for _ in range(path_buffer_size(max_depth))]


def extend_path(
    path: Sequence[PathElement],
    unique_depth: int,
    zero_fraction: float,
    one_fraction: float,
    feature_index: int,
    start: int = 0,
) -> None:
    """Append a split to the path and update every permutation weight."""
    el = path[start + unique_depth]
    el.feature_index = feature_index
    el.zero_fraction = zero_fraction
    el.one_fraction = one_fraction
    el.pweight = 1.0 if unique_depth == 0 else 0.0
    denom = float(unique_depth + 1)
    for i in range(unique_depth - 1, -1, -1):
        cur = path[start + i]
        path[start + i + 1].pweight += one_fraction * cur.pweight * (i + 1) / denom
        cur.pweight = zero_fraction * cur.pweight * (unique_depth - i) / denom


def unwind_path(path: Sequence[PathElement], unique_depth: int, path_index: int, start: int = 0) -> None:
    """Undo the extension at ``path_index`` and close the gap it leaves."""
    one_fraction = path[start + path_index].one_fraction
    zero_fraction = path[start + path_index].zero_fraction
    next_one_portion = path[start + unique_depth].pweight
    denom = float(unique_depth + 1)

    for i in range(unique_depth - 1, -1, -1):
        cur = path[start + i]
        if one_fraction != 0:
            tmp = cur.pweight
            cur.pweight = next_one_portion * denom / ((i + 1) * one_fraction)
            next_one_portion = tmp - cur.pweight * zero_fraction * (unique_depth - i) / denom
        else:
            cur.pweight = (cur.pweight * denom) / (zero_fraction * (unique_depth - i))

    # permutation weights stay in place, only the split records shift down
    for i in range(path_index, unique_depth):
        dst = path[start + i]
        src = path[start + i + 1]
        dst.feature_index = src.feature_index
        dst.zero_fraction = src.zero_fraction
        dst.one_fraction = src.one_fraction


def unwound_path_sum(path: Sequence[PathElement], unique_depth: int, path_index: int, start: int = 0) -> float:
    """Total permutation weight the path would have after unwinding ``path_index``."""
    one_fraction = path[start + path_index].one_fraction
    zero_fraction = path[start + path_index].zero_fraction
    next_one_portion = path[start + unique_depth].pweight
    denom = float(unique_depth + 1)
    total = 0.0
    for i in range(unique_depth - 1, -1, -1):
        if one_fraction != 0:
            tmp = next_one_portion * denom / ((i + 1) * one_fraction)
            total += tmp
            next_one_portion = path[start + i].pweight - tmp * zero_fraction * ((unique_depth - i) / denom)
        else:
            total += (path[start + i].pweight / zero_fraction) / ((unique_depth - i) / denom)
    return total


def tree_shap(
    tree: "RegTree",
    feat: FVec,
    phi: List[float],
    node_index: int,
    unique_depth: int,
    path: List[PathElement],
    parent_start: int,
    parent_zero_fraction: float,
    parent_one_fraction: float,
    parent_feature_index: int,
    condition: int,
    condition_feature: int,
    condition_fraction: float,
) -> None:
    """Accumulate the attributions of the subtree at ``node_index`` into ``phi``.

    Parameters
    ----------
    unique_depth:
        Number of unique features above the current node.
    parent_start:
        Offset of the parent's path slice inside ``path``.
    parent_zero_fraction, parent_one_fraction:
        Fractions of the parent path weight arriving integrated out (zero) or
        fixed to the input (one).
    parent_feature_index:
        Feature the parent node split on, ``-1`` at the root.
    condition, condition_feature:
        Pin ``condition_feature`` off (``-1``) or on (``1``); ``0`` disables.
    condition_fraction:
        Fraction of the current weight matching the conditioning feature.
    """
    # no weight is coming down to us
    if condition_fraction == 0:
        return

    extend = condition == 0 or condition_feature != parent_feature_index
    # a branch carrying neither fraction contributes exactly zero below
    if extend and parent_zero_fraction == 0 and parent_one_fraction == 0:
        return

    start = parent_start + unique_depth + 1
    for k in range(unique_depth + 1):
        src = path[parent_start + k]
        dst = path[start + k]
        dst.feature_index = src.feature_index
        dst.zero_fraction = src.zero_fraction
        dst.one_fraction = src.one_fraction
        dst.pweight = src.pweight

    if extend:
        extend_path(path, unique_depth, parent_zero_fraction, parent_one_fraction, parent_feature_index, start)

    node = tree[node_index]
    if node.is_leaf:
        leaf_value = node.leaf_value
        for i in range(1, unique_depth + 1):
            w = unwound_path_sum(path, unique_depth, i, start)
            el = path[start + i]
            phi[el.feature_index] += w * (el.one_fraction - el.zero_fraction) * leaf_value * condition_fraction
        return

    # the "hot" branch is the one the input actually follows
    split_index = node.split_index
    if feat.is_missing(split_index):
        hot_index = node.cdefault
    elif feat.fvalue(split_index) < node.split_cond:
        hot_index = node.cleft
    else:
        hot_index = node.cright
    cold_index = node.cright if hot_index == node.cleft else node.cleft

    w = tree.stat(node_index).sum_hess
    hot_zero_fraction = tree.stat(hot_index).sum_hess / w
    cold_zero_fraction = tree.stat(cold_index).sum_hess / w
    incoming_zero_fraction = 1.0
    incoming_one_fraction = 1.0

    # a feature already on the path is unwound so this split can redo it
    path_index = 0
    while path_index <= unique_depth:
        if path[start + path_index].feature_index == split_index:
            break
        path_index += 1
    if path_index != unique_depth + 1:
        incoming_zero_fraction = path[start + path_index].zero_fraction
        incoming_one_fraction = path[start + path_index].one_fraction
        unwind_path(path, unique_depth, path_index, start)
        unique_depth -= 1

    hot_condition_fraction = condition_fraction
    cold_condition_fraction = condition_fraction
    if condition > 0 and split_index == condition_feature:
        cold_condition_fraction = 0.0
        unique_depth -= 1
    elif condition < 0 and split_index == condition_feature:
        hot_condition_fraction *= hot_zero_fraction
        cold_condition_fraction *= cold_zero_fraction
        unique_depth -= 1

    tree_shap(
        tree, feat, phi, hot_index, unique_depth + 1, path, start,
        hot_zero_fraction * incoming_zero_fraction, incoming_one_fraction,
        split_index, condition, condition_feature, hot_condition_fraction,
    )
    tree_shap(
        tree, feat, phi, cold_index, unique_depth + 1, path, start,
        cold_zero_fraction * incoming_zero_fraction, 0.0,
        split_index, condition, condition_feature, cold_condition_fraction,
    )


def _prepare_out(out: Optional[np.ndarray], size: int) -> np.ndarray:
    if out is None:
        return np.zeros(size, dtype=np.float64)
    if out.shape != (size,):
        raise ValueError(f"out must have shape ({size},), got {out.shape}")
    return out


def calculate_contributions(
    tree: "RegTree",
    feat: FVec,
    root_id: int = 0,
    out: Optional[np.ndarray] = None,
    *,
    condition: int = 0,
    condition_feature: int = 0,
) -> np.ndarray:
    """Exact SHAP values of one tree's prediction, accumulated into ``out``.

    ``out`` has ``feat.size + 1`` slots; the last one receives the expected
    value of the tree (only when unconditioned). Returns ``out``.
    """
    if condition not in (-1, 0, 1):
        raise ValueError(f"condition must be -1, 0 or 1, got {condition}")
    out = _prepare_out(out, feat.size + 1)
    # also validates the hessian weights the fractions are built from
    mean_values = tree.fill_node_mean_values()

    phi = [0.0] * (feat.size + 1)
    if condition == 0:
        phi[feat.size] += float(mean_values[root_id])

    path = new_path_buffer(tree.max_depth(root_id))
    tree_shap(tree, feat, phi, root_id, 0, path, 0, 1.0, 1.0, -1, condition, condition_feature, 1.0)
    out += np.asarray(phi, dtype=np.float64)
    return out


def calculate_contributions_approx(
    tree: "RegTree",
    feat: FVec,
    root_id: int = 0,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Attribute each step's change of the node mean to the feature that caused it.

    See http://blog.datadive.net/interpreting-random-forests/.
    """
    out = _prepare_out(out, feat.size + 1)
    mean_values = tree.fill_node_mean_values()

    pid = root_id
    node_value = float(mean_values[pid])
    out[feat.size] += node_value
    node = tree[pid]
    while not node.is_leaf:
        split_index = node.split_index
        pid = tree.get_next(pid, feat.fvalue(split_index), feat.is_missing(split_index))
        new_value = float(mean_values[pid])
        out[split_index] += new_value - node_value
        node_value = new_value
        node = tree[pid]
    return out


def _split_features(tree: "RegTree", root_id: int) -> Set[int]:
    features: Set[int] = set()
    stack = [root_id]
    while stack:
        node = tree[stack.pop()]
        if node.is_leaf:
            continue
        features.add(node.split_index)
        stack.append(node.cleft)
        stack.append(node.cright)
    return features


def calculate_interaction_contributions(tree: "RegTree", feat: FVec, root_id: int = 0) -> np.ndarray:
    """SHAP interaction values of one tree as a ``(F + 1, F + 1)`` matrix.

    Off-diagonal entries are half the difference between the attributions
    with feature ``i`` pinned on and pinned off. The diagonal keeps what is
    left of the plain attribution, so every row sums to
    :func:`calculate_contributions` and the matrix sums to the prediction.
    """
    n = feat.size + 1
    diag = calculate_contributions(tree, feat, root_id)
    used = _split_features(tree, root_id)
    interactions = np.zeros((n, n), dtype=np.float64)
    for i in range(n):
        # pinning a feature the tree never splits on changes nothing
        if i in used:
            off = calculate_contributions(tree, feat, root_id, condition=-1, condition_feature=i)
            on = calculate_contributions(tree, feat, root_id, condition=1, condition_feature=i)
            row = (on - off) / 2.0
            row[i] = 0.0
            interactions[i] = row
        interactions[i, i] = diag[i] - interactions[i].sum()
    return interactions
