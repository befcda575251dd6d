import io
import logging

import numpy as np
import pytest

from boostree.codec import NODE_DTYPE, STAT_DTYPE, load, load_bytes, save, save_bytes
from boostree.config import PARAM_WORDS, TreeParam
from boostree.data import FVec, SparseRow
from boostree.model import RegTree

from conftest import build_example_tree, build_random_tree


def _assert_same_tree(a: RegTree, b: RegTree) -> None:
    assert a.param == b.param
    assert a.nodes == b.nodes
    assert a.stats == b.stats
    np.testing.assert_array_equal(a.leaf_vector, b.leaf_vector)
    assert sorted(a.free_list) == sorted(b.free_list)


def test_record_sizes():
    assert NODE_DTYPE.itemsize == 20
    assert STAT_DTYPE.itemsize == 16
    assert PARAM_WORDS == 37


def test_roundtrip_example_tree(example_tree):
    example_tree.set_stat(0, loss_chg=1.5, base_weight=-0.25, leaf_child_cnt=2)
    data = save_bytes(example_tree)
    assert len(data) == PARAM_WORDS * 4 + example_tree.param.num_nodes * 36
    restored = load_bytes(data)
    _assert_same_tree(example_tree, restored)
    assert restored.stat(0).loss_chg == 1.5
    assert restored.stat(0).leaf_child_cnt == 2


def test_roundtrip_keeps_tombstones_and_reuses_them():
    tree = build_random_tree(3, n_features=4, depth=4)
    internal = [
        nid for nid in range(len(tree))
        if not tree[nid].is_leaf
        and tree[tree[nid].cleft].is_leaf
        and tree[tree[nid].cright].is_leaf
    ]
    assert internal
    nid = internal[0]
    children = {tree[nid].cleft, tree[nid].cright}
    tree.change_to_leaf(nid, 0.5)

    restored = load_bytes(save_bytes(tree))
    _assert_same_tree(tree, restored)
    assert restored.param.num_deleted == 2
    assert set(restored.free_list) == children
    assert restored.alloc_node() in children
    assert restored.param.num_deleted == 1


def test_roundtrip_preserves_predictions():
    tree = build_random_tree(6, n_features=3, depth=5)
    restored = load_bytes(save_bytes(tree))
    feat = FVec(3)
    for pairs in ([(0, 0.1), (2, -0.3)], [(1, 1.0)], []):
        row = SparseRow.from_pairs(pairs)
        feat.fill(row)
        assert restored.predict(feat) == tree.predict(feat)
        np.testing.assert_allclose(
            restored.calculate_contributions(feat), tree.calculate_contributions(feat)
        )
        feat.drop(row)


def test_leaf_vector_section():
    tree = RegTree(TreeParam(size_leaf_vector=2))
    left, right = tree.add_children(0)
    tree.leafvec(left)[:] = [0.5, -0.5]
    tree.leafvec(right)[:] = [1.0, 2.0]
    data = save_bytes(tree)
    assert len(data) == PARAM_WORDS * 4 + 3 * 36 + 8 + 3 * 2 * 4
    restored = load_bytes(data)
    _assert_same_tree(tree, restored)
    np.testing.assert_array_equal(restored.leafvec(right), [1.0, 2.0])


def test_reserved_words_survive():
    tree = RegTree()
    tree.param.reserved[4] = 77
    tree.param.max_depth = 3
    restored = load_bytes(save_bytes(tree))
    assert restored.param.reserved[4] == 77
    assert restored.param.max_depth == 3


def test_stream_api_leaves_trailing_bytes():
    first, second = build_example_tree(), RegTree()
    buffer = io.BytesIO()
    save(first, buffer)
    save(second, buffer)
    buffer.seek(0)
    _assert_same_tree(first, load(buffer))
    _assert_same_tree(second, load(buffer))
    assert buffer.read() == b""


def _patch_header(data: bytes, word: int, value: int) -> bytes:
    header = np.frombuffer(data[: PARAM_WORDS * 4], dtype="=i4").copy()
    header[word] = value
    return header.tobytes() + data[PARAM_WORDS * 4 :]


def test_zero_nodes_rejected(example_tree):
    with pytest.raises(ValueError):
        load_bytes(_patch_header(save_bytes(example_tree), 1, 0))


def test_deleted_count_mismatch_rejected():
    tree = build_example_tree()
    tree.change_to_leaf(tree[0].cleft, 1.0)
    data = save_bytes(tree)
    with pytest.raises(ValueError):
        load_bytes(_patch_header(data, 2, 1))


@pytest.mark.parametrize("cut", [1, 20, 200])
def test_truncated_stream_rejected(example_tree, cut: int):
    data = save_bytes(example_tree)
    with pytest.raises(ValueError):
        load_bytes(data[:-cut])


def test_save_rejects_inconsistent_header(example_tree):
    example_tree.param.num_nodes += 1
    with pytest.raises(RuntimeError):
        save_bytes(example_tree)


def test_codec_logs_summary_at_debug(example_tree, caplog):
    with caplog.at_level(logging.DEBUG, logger="boostree.codec"):
        load_bytes(save_bytes(example_tree))
    messages = [r.getMessage() for r in caplog.records if r.name == "boostree.codec"]
    assert any(m.startswith("saved tree") for m in messages)
    assert any('"num_nodes": 5' in m for m in messages)


@pytest.mark.parametrize("length", [2, 7])
def test_leaf_vector_length_mismatch_rejected(length: int):
    tree = RegTree(TreeParam(size_leaf_vector=2))
    tree.add_children(0)
    data = bytearray(save_bytes(tree))
    offset = PARAM_WORDS * 4 + 3 * 36
    data[offset : offset + 8] = np.asarray([length], dtype="=u8").tobytes()
    with pytest.raises(ValueError):
        load_bytes(bytes(data))
