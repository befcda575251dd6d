import numpy as np
import pytest

from boostree.config import NUM_RESERVED, PARAM_WORDS, TreeParam


def test_param_defaults():
    param = TreeParam()
    assert param.num_roots == 1
    assert param.num_nodes == 1
    assert param.num_deleted == 0
    assert param.size_leaf_vector == 0
    assert param.reserved == [0] * NUM_RESERVED


def test_param_packs_to_37_words():
    param = TreeParam(num_roots=2, num_nodes=9, num_deleted=1, max_depth=3, num_feature=5)
    words = param.to_array()
    assert words.shape == (PARAM_WORDS,) == (37,)
    assert words.dtype == np.dtype("=i4")
    np.testing.assert_array_equal(words[:6], [2, 9, 1, 3, 5, 0])
    assert TreeParam.from_array(words) == param


def test_configure_accepts_user_fields_only():
    param = TreeParam().configure(num_feature=12, size_leaf_vector=2)
    assert param.num_feature == 12
    assert param.size_leaf_vector == 2
    with pytest.raises(ValueError):
        param.configure(num_nodes=4)
    with pytest.raises(ValueError):
        param.configure(num_roots=0)


@pytest.mark.parametrize("field", ["num_roots", "num_feature", "size_leaf_vector"])
def test_lower_bounds_rejected(field: str):
    with pytest.raises(ValueError):
        TreeParam(**{field: -1})


def test_copy_is_independent():
    param = TreeParam(num_feature=3)
    clone = param.copy()
    clone.reserved[0] = 7
    clone.num_nodes = 5
    assert param.reserved[0] == 0
    assert param.num_nodes == 1
