"""Regression tree arena, traversal and node mean values."""

from __future__ import annotations

import logging
from typing import BinaryIO, Dict, List, Optional, Tuple

import numpy as np
import torch

from .config import TreeParam
from .data import FVec, ensure_numpy
from .node import Node, NodeStat, as_float32
from . import shap as treeshap

logger = logging.getLogger(__name__)

#: Node counts must stay strictly below the positive ``int32`` range.
MAX_NODE_COUNT = int(np.iinfo(np.int32).max)


class RegTree:
    """Binary regression tree stored in an index-addressed arena.

    Nodes are addressed by integer ids that stay valid for the lifetime of the
    tree: deleting a node only tombstones it and pushes its id on a free list
    for :meth:`alloc_node` to hand out again. Roots occupy ids
    ``[0, param.num_roots)``.

    ``tree[nid]`` and :meth:`stat` expose the records for introspection. Use
    the tree-level mutators (:meth:`set_leaf`, :meth:`set_split`,
    :meth:`set_stat`) so derived caches are invalidated, or call
    :meth:`mark_dirty` after editing records directly.
    """

    def __init__(self, param: Optional[TreeParam] = None) -> None:
        self.param = param.copy() if param is not None else TreeParam()
        self._nodes: List[Node] = []
        self._stats: List[NodeStat] = []
        self._leaf_vector = np.empty(0, dtype=np.float32)
        self._deleted: List[int] = []
        self._version = 0
        self._mean_values: Optional[np.ndarray] = None
        self._mean_version = -1
        self._compiled: Dict[str, Dict[str, torch.Tensor]] = {}
        self._compiled_version = -1
        self.init_model()

    # ------------------------------------------------------------------
    # arena
    # ------------------------------------------------------------------

    def init_model(self) -> None:
        """Reset the tree to ``num_roots`` root leaves holding ``0``."""
        param = self.param
        param.num_nodes = param.num_roots
        param.num_deleted = 0
        self._nodes = [Node() for _ in range(param.num_nodes)]
        self._stats = [NodeStat() for _ in range(param.num_nodes)]
        self._leaf_vector = np.zeros(param.num_nodes * param.size_leaf_vector, dtype=np.float32)
        self._deleted = []
        for node in self._nodes:
            node.set_leaf(0.0)
            node.set_parent(-1)
        self.mark_dirty()

    @classmethod
    def _restore(
        cls,
        param: TreeParam,
        nodes: List[Node],
        stats: List[NodeStat],
        leaf_vector: np.ndarray,
        deleted: List[int],
    ) -> "RegTree":
        tree = cls.__new__(cls)
        tree.param = param
        tree._nodes = nodes
        tree._stats = stats
        tree._leaf_vector = np.asarray(leaf_vector, dtype=np.float32)
        tree._deleted = deleted
        tree._version = 0
        tree._mean_values = None
        tree._mean_version = -1
        tree._compiled = {}
        tree._compiled_version = -1
        return tree

    def mark_dirty(self) -> None:
        """Invalidate derived state after a structural or value mutation."""
        self._version += 1

    @property
    def version(self) -> int:
        return self._version

    def alloc_node(self) -> int:
        """Return a reusable tombstoned id, or grow the arena by one node.

        The returned node must be set to a leaf or a split before it becomes
        reachable from a live parent.
        """
        param = self.param
        if param.num_deleted != 0:
            nid = self._deleted.pop()
            param.num_deleted -= 1
            self._nodes[nid].reuse()
            logger.debug("reusing deleted node %d", nid)
            self.mark_dirty()
            return nid
        if param.num_nodes + 1 >= MAX_NODE_COUNT:
            raise RuntimeError("number of nodes in the tree exceed 2^31")
        nid = param.num_nodes
        param.num_nodes += 1
        self._nodes.append(Node())
        self._stats.append(NodeStat())
        if param.size_leaf_vector:
            grown = np.zeros(param.size_leaf_vector, dtype=np.float32)
            self._leaf_vector = np.concatenate([self._leaf_vector, grown])
        self.mark_dirty()
        return nid

    def delete_node(self, nid: int) -> None:
        """Tombstone ``nid``; parent and child links are kept for trace back."""
        if nid < self.param.num_roots:
            raise ValueError(f"root node {nid} cannot be deleted")
        node = self._nodes[nid]
        if node.is_deleted:
            raise ValueError(f"node {nid} is already deleted")
        self._deleted.append(nid)
        node.mark_delete()
        self.param.num_deleted += 1
        self.mark_dirty()

    def change_to_leaf(self, rid: int, value: float) -> None:
        """Turn ``rid`` into a leaf holding ``value``, deleting its two leaf children."""
        node = self._nodes[rid]
        if node.is_leaf:
            raise RuntimeError(f"node {rid} is already a leaf")
        if not (self._nodes[node.cleft].is_leaf and self._nodes[node.cright].is_leaf):
            raise RuntimeError(f"children of node {rid} must both be leaves")
        self.delete_node(node.cleft)
        self.delete_node(node.cright)
        node.set_leaf(value)
        self.mark_dirty()

    def collapse_to_leaf(self, rid: int, value: float) -> None:
        """Collapse the whole subtree below ``rid`` into a single leaf.

        Inner collapses store a placeholder ``0.0``; only the final value of
        ``rid`` is meaningful.
        """
        node = self._nodes[rid]
        if node.is_leaf:
            return
        if not self._nodes[node.cleft].is_leaf:
            self.collapse_to_leaf(node.cleft, 0.0)
        if not self._nodes[node.cright].is_leaf:
            self.collapse_to_leaf(node.cright, 0.0)
        logger.debug("collapsing node %d into a leaf", rid)
        self.change_to_leaf(rid, value)

    def add_children(self, nid: int) -> Tuple[int, int]:
        """Attach two fresh leaf children to ``nid`` and return their ids."""
        left = self.alloc_node()
        right = self.alloc_node()
        self._nodes[left].set_leaf(0.0)
        self._nodes[right].set_leaf(0.0)
        self._nodes[nid].cleft_ = left
        self._nodes[nid].cright_ = right
        self._nodes[left].set_parent(nid, True)
        self._nodes[right].set_parent(nid, False)
        self.mark_dirty()
        return left, right

    def add_right_child(self, nid: int) -> int:
        """Attach a single right child to a node that has no children yet.

        ``nid`` keeps ``cleft == -1``, so it still routes as a leaf; the right
        slot carries auxiliary information.
        """
        node = self._nodes[nid]
        if node.cleft != -1 or node.cright != -1:
            raise RuntimeError(f"node {nid} already has children")
        right = self.alloc_node()
        self._nodes[right].set_leaf(0.0)
        node.set_right_child(right)
        self._nodes[right].set_parent(nid, False)
        self.mark_dirty()
        return right

    def set_leaf(self, nid: int, value: float, right: int = -1) -> None:
        self._nodes[nid].set_leaf(value, right)
        self.mark_dirty()

    def set_split(self, nid: int, split_index: int, split_cond: float, default_left: bool = False) -> None:
        self._nodes[nid].set_split(split_index, split_cond, default_left)
        self.mark_dirty()

    def set_stat(
        self,
        nid: int,
        *,
        loss_chg: Optional[float] = None,
        sum_hess: Optional[float] = None,
        base_weight: Optional[float] = None,
        leaf_child_cnt: Optional[int] = None,
    ) -> None:
        stat = self._stats[nid]
        if loss_chg is not None:
            stat.loss_chg = as_float32(loss_chg)
        if sum_hess is not None:
            stat.sum_hess = as_float32(sum_hess)
        if base_weight is not None:
            stat.base_weight = as_float32(base_weight)
        if leaf_child_cnt is not None:
            stat.leaf_child_cnt = int(leaf_child_cnt)
        self.mark_dirty()

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    def __getitem__(self, nid: int) -> Node:
        return self._nodes[nid]

    def __len__(self) -> int:
        return self.param.num_nodes

    @property
    def nodes(self) -> List[Node]:
        return self._nodes

    @property
    def stats(self) -> List[NodeStat]:
        return self._stats

    @property
    def leaf_vector(self) -> np.ndarray:
        return self._leaf_vector

    @property
    def free_list(self) -> List[int]:
        return list(self._deleted)

    def stat(self, nid: int) -> NodeStat:
        return self._stats[nid]

    def leafvec(self, nid: int) -> Optional[np.ndarray]:
        """Writable view on the leaf vector of ``nid``, or ``None`` when disabled."""
        if self._leaf_vector.size == 0:
            return None
        width = self.param.size_leaf_vector
        return self._leaf_vector[nid * width:(nid + 1) * width]

    @property
    def num_extra_nodes(self) -> int:
        """Number of live nodes besides the roots."""
        return self.param.num_nodes - self.param.num_roots - self.param.num_deleted

    def get_depth(self, nid: int, pass_rchild: bool = False) -> int:
        """Edges between ``nid`` and its root; right edges skipped if ``pass_rchild``."""
        depth = 0
        while not self._nodes[nid].is_root:
            if not pass_rchild or self._nodes[nid].is_left_child:
                depth += 1
            nid = self._nodes[nid].parent
        return depth

    def max_depth(self, nid: Optional[int] = None) -> int:
        if nid is None:
            return max(self.max_depth(root) for root in range(self.param.num_roots))
        node = self._nodes[nid]
        if node.is_leaf:
            return 0
        return max(self.max_depth(node.cleft), self.max_depth(node.cright)) + 1

    # ------------------------------------------------------------------
    # traversal
    # ------------------------------------------------------------------

    def get_next(self, pid: int, fvalue: float, is_unknown: bool) -> int:
        node = self._nodes[pid]
        if is_unknown:
            return node.cdefault
        if fvalue < node.split_cond:
            return node.cleft
        return node.cright

    def get_leaf_index(self, feat: FVec, root_id: int = 0) -> int:
        pid = root_id
        node = self._nodes[pid]
        while not node.is_leaf:
            split_index = node.split_index
            pid = self.get_next(pid, feat.fvalue(split_index), feat.is_missing(split_index))
            node = self._nodes[pid]
        return pid

    def predict(self, feat: FVec, root_id: int = 0) -> float:
        return self._nodes[self.get_leaf_index(feat, root_id)].leaf_value

    # ------------------------------------------------------------------
    # node mean values
    # ------------------------------------------------------------------

    def fill_node_mean_values(self) -> np.ndarray:
        """Hessian-weighted mean leaf value below every node, cached per version."""
        if self._mean_values is not None and self._mean_version == self._version:
            return self._mean_values
        means = [0.0] * self.param.num_nodes
        for root_id in range(self.param.num_roots):
            self._fill_node_mean_value(root_id, means)
        logger.debug("computed mean values for %d nodes", len(means))
        self._mean_values = np.asarray(means, dtype=np.float64)
        self._mean_version = self._version
        return self._mean_values

    def _fill_node_mean_value(self, nid: int, means: List[float]) -> float:
        node = self._nodes[nid]
        if node.is_leaf:
            result = node.leaf_value
        else:
            sum_hess = self._stats[nid].sum_hess
            if sum_hess == 0:
                raise ValueError(f"internal node {nid} has zero hessian weight")
            result = self._fill_node_mean_value(node.cleft, means) * self._stats[node.cleft].sum_hess
            result += self._fill_node_mean_value(node.cright, means) * self._stats[node.cright].sum_hess
            result /= sum_hess
        means[nid] = result
        return result

    @property
    def node_mean_values(self) -> np.ndarray:
        return self.fill_node_mean_values()

    # ------------------------------------------------------------------
    # feature attribution
    # ------------------------------------------------------------------

    def calculate_contributions(
        self,
        feat: FVec,
        root_id: int = 0,
        out: Optional[np.ndarray] = None,
        condition: int = 0,
        condition_feature: int = 0,
    ) -> np.ndarray:
        """Exact TreeSHAP attributions; slot ``feat.size`` holds the bias."""
        return treeshap.calculate_contributions(
            self, feat, root_id, out, condition=condition, condition_feature=condition_feature
        )

    def calculate_contributions_approx(
        self, feat: FVec, root_id: int = 0, out: Optional[np.ndarray] = None
    ) -> np.ndarray:
        return treeshap.calculate_contributions_approx(self, feat, root_id, out)

    def calculate_interaction_contributions(self, feat: FVec, root_id: int = 0) -> np.ndarray:
        return treeshap.calculate_interaction_contributions(self, feat, root_id)

    # ------------------------------------------------------------------
    # batch routing
    # ------------------------------------------------------------------

    def _ensure_compiled(self, device: torch.device) -> Dict[str, torch.Tensor]:
        if self._compiled_version != self._version:
            self._compiled.clear()
            self._compiled_version = self._version
        key = str(device)
        compiled = self._compiled.get(key)
        if compiled is not None:
            return compiled

        nodes = self._nodes
        is_leaf = [n.is_leaf or n.is_deleted for n in nodes]
        split_features = [0 if leaf else n.split_index for n, leaf in zip(nodes, is_leaf)]
        width = max(split_features, default=-1) + 1 if not all(is_leaf) else 0
        compiled = {
            "feature": torch.tensor(split_features, dtype=torch.int64, device=device),
            "threshold": torch.tensor([n.split_cond for n in nodes], dtype=torch.float32, device=device),
            "left": torch.tensor([n.cleft for n in nodes], dtype=torch.int64, device=device),
            "right": torch.tensor([n.cright for n in nodes], dtype=torch.int64, device=device),
            "default_left": torch.tensor([n.default_left for n in nodes], dtype=torch.bool, device=device),
            "is_leaf": torch.tensor(is_leaf, dtype=torch.bool, device=device),
            "value": torch.tensor([n.leaf_value for n in nodes], dtype=torch.float32, device=device),
            "width": torch.tensor(width, dtype=torch.int64),
        }
        self._compiled[key] = compiled
        return compiled

    def predict_leaf_dense(self, X: np.ndarray | torch.Tensor, root_id: int = 0) -> np.ndarray | torch.Tensor:
        """Leaf id reached by every row of ``X``; ``NaN`` marks a missing value."""
        if isinstance(X, torch.Tensor):
            return self._route_torch(X, root_id)
        return self._route_numpy(ensure_numpy(X), root_id)

    def predict_dense(self, X: np.ndarray | torch.Tensor, root_id: int = 0) -> np.ndarray | torch.Tensor:
        """Vectorised :meth:`predict` over the rows of a dense matrix."""
        leaves = self.predict_leaf_dense(X, root_id)
        if isinstance(leaves, torch.Tensor):
            value = self._ensure_compiled(leaves.device)["value"]
            return value.index_select(0, leaves)
        value = self._ensure_compiled(torch.device("cpu"))["value"].numpy()
        return value[leaves]

    def _route_numpy(self, X: np.ndarray, root_id: int) -> np.ndarray:
        if X.ndim != 2:
            raise ValueError("X must be 2D")
        compiled = self._ensure_compiled(torch.device("cpu"))
        feature = compiled["feature"].numpy()
        threshold = compiled["threshold"].numpy()
        left = compiled["left"].numpy()
        right = compiled["right"].numpy()
        default_left = compiled["default_left"].numpy()
        is_leaf = compiled["is_leaf"].numpy()
        width = int(compiled["width"])

        X_f = X.astype(np.float32, copy=False)
        if X_f.shape[1] < width:
            pad = np.full((X_f.shape[0], width - X_f.shape[1]), np.nan, dtype=np.float32)
            X_f = np.concatenate([X_f, pad], axis=1)

        n_rows = X_f.shape[0]
        node_idx = np.full(n_rows, root_id, dtype=np.int64)
        active = np.arange(n_rows, dtype=np.int64)
        while active.size > 0:
            nodes = node_idx[active]
            leaf_mask = is_leaf[nodes]
            if leaf_mask.any():
                active = active[~leaf_mask]
                nodes = nodes[~leaf_mask]
                if active.size == 0:
                    break
            vals = X_f[active, feature[nodes]]
            missing = np.isnan(vals)
            go_left = np.where(missing, default_left[nodes], vals < threshold[nodes])
            node_idx[active] = np.where(go_left, left[nodes], right[nodes])
        return node_idx

    def _route_torch(self, X: torch.Tensor, root_id: int) -> torch.Tensor:
        if X.ndim != 2:
            raise ValueError("X must be 2D")
        device = X.device
        c = self._ensure_compiled(device)
        width = int(c["width"])

        X_f = X.to(torch.float32)
        if X_f.shape[1] < width:
            pad = torch.full((X_f.shape[0], width - X_f.shape[1]), float("nan"), dtype=torch.float32, device=device)
            X_f = torch.cat([X_f, pad], dim=1)

        n_rows = X_f.shape[0]
        node_idx = torch.full((n_rows,), root_id, dtype=torch.int64, device=device)
        active = torch.arange(n_rows, dtype=torch.int64, device=device)
        while active.numel() > 0:
            nodes = node_idx.index_select(0, active)
            leaf_mask = c["is_leaf"].index_select(0, nodes)
            if leaf_mask.any():
                active = active[~leaf_mask]
                nodes = nodes[~leaf_mask]
                if active.numel() == 0:
                    break
            feat = c["feature"].index_select(0, nodes)
            vals = X_f.index_select(0, active).gather(1, feat.view(-1, 1)).squeeze(1)
            missing = torch.isnan(vals)
            go_left = torch.where(missing, c["default_left"].index_select(0, nodes), vals < c["threshold"].index_select(0, nodes))
            next_idx = torch.where(go_left, c["left"].index_select(0, nodes), c["right"].index_select(0, nodes))
            node_idx.index_copy_(0, active, next_idx)
        return node_idx

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def save(self, stream: BinaryIO) -> None:
        from .codec import save

        save(self, stream)

    @classmethod
    def load(cls, stream: BinaryIO) -> "RegTree":
        from .codec import load

        return load(stream)
