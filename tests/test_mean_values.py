import numpy as np
import pytest

from boostree.data import FVec, SparseRow

from conftest import build_random_tree, random_rows


def test_mean_values_are_hessian_weighted(example_tree):
    means = example_tree.fill_node_mean_values()
    left = example_tree[0].cleft
    assert means[left] == pytest.approx((2.0 * 1.0 + 4.0 * 2.0) / 6.0)
    assert means[0] == pytest.approx((6.0 * means[left] + 4.0 * 3.0) / 10.0)
    assert means[0] == pytest.approx(2.2)
    assert means[example_tree[0].cright] == 3.0


def test_mean_cache_reused_until_mutation(example_tree):
    first = example_tree.fill_node_mean_values()
    assert example_tree.fill_node_mean_values() is first
    # same node count, different value
    example_tree.set_leaf(example_tree[0].cright, 5.0)
    second = example_tree.fill_node_mean_values()
    assert second is not first
    assert second[0] == pytest.approx((6.0 * second[1] + 4.0 * 5.0) / 10.0)


def test_direct_record_edits_need_mark_dirty(example_tree):
    first = example_tree.fill_node_mean_values()
    example_tree.stat(0).sum_hess = 20.0
    assert example_tree.fill_node_mean_values() is first
    example_tree.mark_dirty()
    assert example_tree.fill_node_mean_values()[0] == pytest.approx((6.0 * first[1] + 12.0) / 20.0)


def test_zero_hessian_internal_node_rejected(example_tree):
    example_tree.set_stat(0, sum_hess=0.0)
    with pytest.raises(ValueError):
        example_tree.fill_node_mean_values()


def test_approx_contributions_example(example_tree):
    feat = FVec(2)
    feat.fill(SparseRow.from_pairs([(0, 0.2), (1, 2.0)]))
    out = example_tree.calculate_contributions_approx(feat)
    assert out.shape == (3,)
    assert out[2] == pytest.approx(2.2)
    assert out[0] == pytest.approx(10.0 / 6.0 - 2.2)
    assert out[1] == pytest.approx(2.0 - 10.0 / 6.0)
    assert out.sum() == pytest.approx(2.0)


def test_approx_contributions_accumulate(example_tree):
    feat = FVec(2)
    feat.fill(SparseRow.from_pairs([(0, 0.9)]))
    out = np.ones(3)
    example_tree.calculate_contributions_approx(feat, out=out)
    np.testing.assert_allclose(out, [1.0 + 3.0 - 2.2, 1.0, 1.0 + 2.2])


@pytest.mark.parametrize("seed", [3, 4])
def test_approx_conserves_prediction(seed: int):
    tree = build_random_tree(seed, n_features=3, depth=5)
    feat = FVec(3)
    for row in random_rows(seed, n_rows=25, n_features=3):
        sparse = SparseRow.from_dense(row)
        feat.fill(sparse)
        out = tree.calculate_contributions_approx(feat)
        assert out.sum() == pytest.approx(tree.predict(feat), abs=1e-9)
        feat.drop(sparse)


def test_approx_on_single_leaf_tree():
    from boostree.model import RegTree

    tree = RegTree()
    tree.set_leaf(0, 4.0)
    out = tree.calculate_contributions_approx(FVec(2))
    np.testing.assert_array_equal(out, [0.0, 0.0, 4.0])


def test_out_shape_checked(example_tree):
    with pytest.raises(ValueError):
        example_tree.calculate_contributions_approx(FVec(2), out=np.zeros(5))
