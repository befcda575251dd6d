"""Binary codec for a single tree.

Layout (host byte order, no version tag):

1. tree header: ``PARAM_WORDS`` ``int32`` words, reserved padding included;
2. ``num_nodes`` node records ``(int32 parent, int32 cleft, int32 cright,
   uint32 sindex, float32 info)``;
3. ``num_nodes`` stat records ``(float32 loss_chg, float32 sum_hess,
   float32 base_weight, int32 leaf_child_cnt)``;
4. when ``size_leaf_vector != 0``: a ``uint64`` element count followed by the
   ``float32`` leaf vector.

Sequencing several trees, and any header for the sequence, belongs to the
caller.
"""

from __future__ import annotations

import io
import json
import logging
from typing import BinaryIO, List

import numpy as np

from .config import PARAM_WORDS, TreeParam
from .model import RegTree
from .node import Node, NodeStat

logger = logging.getLogger(__name__)

NODE_DTYPE = np.dtype(
    [
        ("parent", "=i4"),
        ("cleft", "=i4"),
        ("cright", "=i4"),
        ("sindex", "=u4"),
        ("info", "=f4"),
    ]
)
STAT_DTYPE = np.dtype(
    [
        ("loss_chg", "=f4"),
        ("sum_hess", "=f4"),
        ("base_weight", "=f4"),
        ("leaf_child_cnt", "=i4"),
    ]
)
_PARAM_DTYPE = np.dtype("=i4")
_LENGTH_DTYPE = np.dtype("=u8")
_FLOAT_DTYPE = np.dtype("=f4")


def _read_exact(stream: BinaryIO, nbytes: int, what: str) -> bytes:
    data = stream.read(nbytes)
    if data is None or len(data) != nbytes:
        got = 0 if data is None else len(data)
        raise ValueError(f"truncated tree stream: expected {nbytes} bytes of {what}, got {got}")
    return data


def _summary(tree: RegTree) -> str:
    param = tree.param
    return json.dumps(
        {
            "num_roots": param.num_roots,
            "num_nodes": param.num_nodes,
            "num_deleted": param.num_deleted,
            "num_feature": param.num_feature,
            "size_leaf_vector": param.size_leaf_vector,
        }
    )


def save(tree: RegTree, stream: BinaryIO) -> None:
    """Write ``tree`` to ``stream``."""
    param = tree.param
    if param.num_nodes != len(tree.nodes) or param.num_nodes != len(tree.stats):
        raise RuntimeError(
            f"node storage ({len(tree.nodes)} nodes, {len(tree.stats)} stats) "
            f"disagrees with num_nodes={param.num_nodes}"
        )
    if param.num_nodes == 0:
        raise RuntimeError("cannot save a tree without nodes")

    nodes = np.array(
        [(n.parent_, n.cleft_, n.cright_, n.sindex_, n.info_) for n in tree.nodes],
        dtype=NODE_DTYPE,
    )
    stats = np.array(
        [(s.loss_chg, s.sum_hess, s.base_weight, s.leaf_child_cnt) for s in tree.stats],
        dtype=STAT_DTYPE,
    )
    stream.write(param.to_array().tobytes())
    stream.write(nodes.tobytes())
    stream.write(stats.tobytes())
    if param.size_leaf_vector != 0:
        leaf_vector = np.ascontiguousarray(tree.leaf_vector, dtype=_FLOAT_DTYPE)
        stream.write(np.asarray([leaf_vector.size], dtype=_LENGTH_DTYPE).tobytes())
        stream.write(leaf_vector.tobytes())

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("saved tree %s", _summary(tree))


def load(stream: BinaryIO) -> RegTree:
    """Read one tree from ``stream``, rebuilding and checking its free list."""
    header = _read_exact(stream, PARAM_WORDS * _PARAM_DTYPE.itemsize, "tree header")
    param = TreeParam.from_array(np.frombuffer(header, dtype=_PARAM_DTYPE))
    num_nodes = param.num_nodes
    if num_nodes <= 0:
        raise ValueError(f"corrupt tree stream: num_nodes={num_nodes}")

    raw_nodes = np.frombuffer(
        _read_exact(stream, num_nodes * NODE_DTYPE.itemsize, "node records"), dtype=NODE_DTYPE
    )
    raw_stats = np.frombuffer(
        _read_exact(stream, num_nodes * STAT_DTYPE.itemsize, "stat records"), dtype=STAT_DTYPE
    )
    nodes = [
        Node(parent, cleft, cright, sindex, info)
        for parent, cleft, cright, sindex, info in raw_nodes.tolist()
    ]
    stats = [
        NodeStat(loss_chg, sum_hess, base_weight, leaf_child_cnt)
        for loss_chg, sum_hess, base_weight, leaf_child_cnt in raw_stats.tolist()
    ]

    leaf_vector = np.empty(0, dtype=np.float32)
    if param.size_leaf_vector != 0:
        length = np.frombuffer(
            _read_exact(stream, _LENGTH_DTYPE.itemsize, "leaf vector length"), dtype=_LENGTH_DTYPE
        )[0]
        expected = num_nodes * param.size_leaf_vector
        if int(length) != expected:
            raise ValueError(
                f"corrupt tree stream: leaf vector holds {int(length)} values, expected {expected}"
            )
        payload = _read_exact(stream, int(length) * _FLOAT_DTYPE.itemsize, "leaf vector")
        leaf_vector = np.frombuffer(payload, dtype=_FLOAT_DTYPE).astype(np.float32)

    deleted: List[int] = [
        nid for nid in range(param.num_roots, num_nodes) if nodes[nid].is_deleted
    ]
    if len(deleted) != param.num_deleted:
        raise ValueError(
            f"corrupt tree stream: found {len(deleted)} deleted nodes, header says {param.num_deleted}"
        )

    tree = RegTree._restore(param, nodes, stats, leaf_vector, deleted)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("loaded tree %s", _summary(tree))
    return tree


def save_bytes(tree: RegTree) -> bytes:
    buffer = io.BytesIO()
    save(tree, buffer)
    return buffer.getvalue()


def load_bytes(data: bytes) -> RegTree:
    return load(io.BytesIO(data))
