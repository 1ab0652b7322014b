"""
Unit tests for the tree boosting building blocks.

Tests numerical correctness of:
- Label coding, initial score and pseudo-residual computation
- Softmax posteriors
- Leaf output (Newton step) rules
- Bag sampling and out-of-bag error
- Attribute resolution
- Classification metrics
"""

import numpy as np
import pytest

import sys
from pathlib import Path

# Add src directory to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from treeboost.attributes import (
    AttributeType, attribute_types, compute_num_input_vars, resolve_attributes
)
from treeboost.exceptions import ConfigError
from treeboost.node_output import KClassNodeOutput, TwoClassNodeOutput, node_output_for
from treeboost.utils import (
    bag_size, class_probabilities, compute_metrics_classification, initial_log_odds,
    logistic_negative_gradient, multiclass_negative_gradient, oob_error_rate,
    sample_bag, sigmoid, to_margin_labels
)


# =========================
# Test Label Coding and Residuals
# =========================

def test_to_margin_labels():
    y = np.array([0, 1, 1, 0])
    np.testing.assert_array_equal(to_margin_labels(y), [-1, 1, 1, -1])


def test_initial_log_odds_formula():
    """f_0 = 0.5 * log((1 + ȳ) / (1 - ȳ)) for y ∈ {-1, +1}."""
    y = np.array([1, 1, 1, -1])
    mu = np.mean(y)
    expected = 0.5 * np.log((1 + mu) / (1 - mu))
    assert initial_log_odds(y) == pytest.approx(expected, rel=1e-12)


def test_initial_log_odds_single_minority_is_finite():
    y = np.full(50, -1)
    y[17] = 1
    assert np.isfinite(initial_log_odds(y))


def test_logistic_negative_gradient():
    """Residuals must equal 2y / (1 + exp(2yF))."""
    y = np.array([1, -1, 1, -1])
    h = np.array([-0.5, 1.2, 0.3, -1.0])

    residuals = logistic_negative_gradient(y, h)
    expected = 2.0 * y / (1.0 + np.exp(2.0 * y * h))

    np.testing.assert_allclose(residuals, expected, rtol=1e-10)


def test_logistic_negative_gradient_writes_into_buffer():
    y = np.array([1, -1])
    h = np.array([0.0, 0.0])
    out = np.empty(2)

    result = logistic_negative_gradient(y, h, out=out)

    assert result is out
    np.testing.assert_allclose(out, [1.0, -1.0])


def test_binary_residual_has_sign_of_label():
    rng = np.random.default_rng(0)
    y = np.where(rng.random(500) < 0.5, -1, 1)
    h = rng.uniform(-20, 20, size=500)

    residuals = logistic_negative_gradient(y, h)

    np.testing.assert_array_equal(np.sign(residuals), y)
    assert np.all(np.abs(residuals) <= 2.0)


def test_sigmoid_stability():
    """Test sigmoid is numerically stable for large inputs."""
    p_pos = sigmoid(np.array([100.0, 500.0]))
    p_neg = sigmoid(np.array([-100.0, -500.0]))

    np.testing.assert_allclose(p_pos, 1.0, atol=1e-10)
    np.testing.assert_allclose(p_neg, 0.0, atol=1e-10)


def test_class_probabilities_are_row_stochastic():
    rng = np.random.default_rng(3)
    h = rng.normal(scale=5.0, size=(4, 200))

    p = class_probabilities(h)

    np.testing.assert_allclose(p.sum(axis=0), 1.0, rtol=1e-12)
    assert np.all(p > 0.0) and np.all(p <= 1.0)


def test_class_probabilities_stable_for_large_scores():
    h = np.array([[1000.0, -1000.0], [999.0, -1001.0], [0.0, -2000.0]])

    p = class_probabilities(h)

    assert np.all(np.isfinite(p))
    np.testing.assert_allclose(p.sum(axis=0), 1.0)
    expected = np.exp([0.0, -1.0]) / np.exp([0.0, -1.0]).sum()
    np.testing.assert_allclose(p[:2, 0], expected, rtol=1e-10)


def test_class_probabilities_writes_into_buffer():
    rng = np.random.default_rng(8)
    h = rng.normal(scale=30.0, size=(3, 50))
    out = np.empty_like(h)

    result = class_probabilities(h, out=out)

    assert result is out
    np.testing.assert_allclose(out, class_probabilities(h), rtol=1e-10, atol=1e-300)
    np.testing.assert_allclose(out.sum(axis=0), 1.0)


def test_multiclass_negative_gradient():
    y_onehot = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
    p = np.array([[0.5, 0.2], [0.3, 0.7], [0.2, 0.1]])

    residuals = multiclass_negative_gradient(y_onehot, p)

    np.testing.assert_allclose(residuals, y_onehot - p)
    np.testing.assert_allclose(residuals.sum(axis=0), 0.0, atol=1e-12)


# =========================
# Test Leaf Output Rules
# =========================

def test_two_class_node_output_newton_step():
    residuals = np.array([1.0, -0.5, 0.25])
    abs_r = np.abs(residuals)
    expected = residuals.sum() / np.sum(abs_r * (2.0 - abs_r))

    assert TwoClassNodeOutput().compute(residuals) == pytest.approx(expected, rel=1e-12)


def test_two_class_node_output_zero_denominator():
    assert TwoClassNodeOutput().compute(np.array([0.0, 0.0])) == 0.0


def test_k_class_node_output_newton_step():
    residuals = np.array([0.5, -0.25, 0.6])
    abs_r = np.abs(residuals)
    k = 3
    expected = (k - 1) / k * residuals.sum() / np.sum(abs_r * (1.0 - abs_r))

    assert KClassNodeOutput(k).compute(residuals) == pytest.approx(expected, rel=1e-12)


def test_k_class_node_output_falls_back_to_mean():
    """Saturated residuals (|r| in {0, 1}) make the denominator vanish."""
    output = KClassNodeOutput(4)

    assert output.compute(np.array([1.0, 1.0, 0.0])) == pytest.approx(2.0 / 3.0)
    assert output.compute(np.array([1.0, -1.0])) == pytest.approx(0.0)


def test_k_class_node_output_rejects_single_class():
    with pytest.raises(ValueError):
        KClassNodeOutput(1)


def test_node_output_dispatch():
    assert isinstance(node_output_for(2), TwoClassNodeOutput)
    output = node_output_for(5)
    assert isinstance(output, KClassNodeOutput)
    assert output.k == 5


def test_leaf_values_per_leaf():
    leaf_ids = np.array([1, 1, 2, 4, 4, 4])
    residuals = np.array([1.0, 0.5, -1.0, 0.2, -0.1, 0.4])
    output = TwoClassNodeOutput()

    values = output.leaf_values(leaf_ids, residuals, n_nodes=5)

    assert values.shape == (5,)
    assert values[0] == 0.0 and values[3] == 0.0
    assert values[1] == pytest.approx(output.compute(residuals[:2]))
    assert values[2] == pytest.approx(output.compute(residuals[2:3]))
    assert values[4] == pytest.approx(output.compute(residuals[3:]))


def test_k_class_leaf_values_match_per_leaf_compute():
    rng = np.random.default_rng(2)
    leaf_ids = rng.choice([1, 3, 4, 6], size=200)
    residuals = rng.uniform(-0.9, 0.9, size=200)
    residuals[leaf_ids == 6] = 1.0  # saturated leaf takes the mean fallback
    output = KClassNodeOutput(3)

    values = output.leaf_values(leaf_ids, residuals, n_nodes=7)

    for node in range(7):
        mask = leaf_ids == node
        expected = output.compute(residuals[mask]) if mask.any() else 0.0
        assert values[node] == pytest.approx(expected, rel=1e-10, abs=1e-12)
    assert values[6] == pytest.approx(1.0)


# =========================
# Test Sampling and OOB Error
# =========================

def test_bag_size_rounds_half_up():
    assert bag_size(10, 0.25) == 3
    assert bag_size(100, 0.7) == 70
    assert bag_size(100, 1.0) == 100
    assert bag_size(3, 0.1) == 1


def test_sample_bag_distinct_and_reuses_buffer():
    rng = np.random.default_rng(0)
    perm = np.arange(50)

    bag = sample_bag(perm, 20, rng)

    assert len(bag) == 20
    assert len(np.unique(bag)) == 20
    assert np.shares_memory(bag, perm)
    np.testing.assert_array_equal(np.sort(perm), np.arange(50))


def test_sample_bag_deterministic():
    bag_a = sample_bag(np.arange(30), 10, np.random.default_rng(7)).copy()
    bag_b = sample_bag(np.arange(30), 10, np.random.default_rng(7)).copy()
    np.testing.assert_array_equal(bag_a, bag_b)


def test_oob_error_rate():
    y_true = np.array([1, -1, 1, -1, 1])
    y_pred = np.array([1, 1, -1, -1, 1])
    oob = np.array([True, True, True, False, False])

    assert oob_error_rate(y_true, y_pred, oob) == pytest.approx(2.0 / 3.0)


def test_oob_error_rate_without_oob_rows_is_zero():
    y = np.array([0, 1, 2])
    assert oob_error_rate(y, y[::-1], np.zeros(3, dtype=bool)) == 0.0


# =========================
# Test Attribute Resolution
# =========================

def test_resolve_attributes_from_string():
    attrs = resolve_attributes("Q,C,q, c")
    assert attrs == [
        AttributeType.QUANTITATIVE, AttributeType.CATEGORICAL,
        AttributeType.QUANTITATIVE, AttributeType.CATEGORICAL,
    ]
    assert resolve_attributes("[Q,C]") == [AttributeType.QUANTITATIVE, AttributeType.CATEGORICAL]


def test_resolve_attributes_from_sequence_and_none():
    assert resolve_attributes(None) is None
    assert resolve_attributes(["C", AttributeType.QUANTITATIVE]) == [
        AttributeType.CATEGORICAL, AttributeType.QUANTITATIVE
    ]


def test_resolve_attributes_rejects_unknown_type():
    with pytest.raises(ConfigError):
        resolve_attributes("Q,X")


def test_attribute_types_inferred_and_checked():
    assert attribute_types(None, 3) == [AttributeType.QUANTITATIVE] * 3
    with pytest.raises(ConfigError):
        attribute_types([AttributeType.CATEGORICAL], 3)


@pytest.mark.parametrize("num_vars, n_features, expected", [
    (None, 16, 4),
    (None, 10, 4),
    (0.5, 10, 5),
    (1.0, 10, 10),
    (0.01, 10, 1),
    (3, 10, 3),
    (50, 10, 10),
])
def test_compute_num_input_vars(num_vars, n_features, expected):
    assert compute_num_input_vars(num_vars, n_features) == expected


def test_compute_num_input_vars_rejects_non_positive():
    with pytest.raises(ConfigError):
        compute_num_input_vars(0, 10)


# =========================
# Test Metrics
# =========================

def test_compute_metrics_classification_binary():
    y_true = np.array([0, 1, 1, 0])
    proba = np.array([[0.9, 0.1], [0.2, 0.8], [0.4, 0.6], [0.3, 0.7]])

    metrics = compute_metrics_classification(y_true, proba)

    assert metrics["accuracy"] == pytest.approx(0.75)
    assert metrics["roc_auc"] == pytest.approx(0.75)
    assert metrics["log_loss"] > 0.0


def test_compute_metrics_classification_missing_class_has_nan_auc():
    y_true = np.array([0, 1, 1])
    proba = np.array([[0.8, 0.1, 0.1], [0.1, 0.8, 0.1], [0.2, 0.7, 0.1]])

    metrics = compute_metrics_classification(y_true, proba)

    assert metrics["accuracy"] == pytest.approx(1.0)
    assert np.isnan(metrics["roc_auc"])
