"""
Utility functions for LogitBoost: label coding, pseudo-residuals, sampling and metrics.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
- Friedman, J. H. (2002). Stochastic gradient boosting. Computational Statistics
  & Data Analysis, 38(4), 367-378.
"""

from typing import Optional, Tuple

import numpy as np
from scipy.special import expit, logsumexp, softmax
from sklearn.metrics import accuracy_score, log_loss, roc_auc_score, zero_one_loss


# ===========================
# Label Coding and Initialisation
# ===========================

def to_margin_labels(y: np.ndarray) -> np.ndarray:
    """Map binary labels {0, 1} to {-1, +1}."""
    return np.where(y == 1, 1, -1)


def initial_log_odds(y_margin: np.ndarray) -> float:
    """
    Initial score for binomial deviance with y ∈ {-1, +1}.

    f_0 = 0.5 * log((1 + ȳ) / (1 - ȳ)), half the log-odds of the positive class.
    Finite whenever both labels are present.
    """
    mu = np.mean(y_margin)
    return float(0.5 * np.log((1.0 + mu) / (1.0 - mu)))


# ===========================
# Pseudo-Residuals
# ===========================

def sigmoid(x: np.ndarray) -> np.ndarray:
    """Numerically stable sigmoid function."""
    return expit(x)


def logistic_negative_gradient(y_margin: np.ndarray, h: np.ndarray,
                               out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Negative gradient of L(y, F) = log(1 + exp(-2yF)) with y ∈ {-1, +1}.

    -∂L/∂F = 2y / (1 + exp(2yF)), computed as 2y * sigmoid(-2yF).
    The result always has the sign of y.
    """
    result = 2.0 * y_margin * expit(-2.0 * y_margin * h)
    if out is None:
        return result
    np.copyto(out, result)
    return out


def class_probabilities(h: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Softmax over classes of the running scores.

    Args:
        h: Scores, shape (n_classes, n_samples).
        out: Optional buffer of the same shape to write the result into.

    Returns:
        Posterior probabilities of the same shape; each column sums to 1.
        Computed in log space, so large scores do not overflow.
    """
    if out is None:
        return softmax(h, axis=0)
    np.subtract(h, logsumexp(h, axis=0), out=out)
    return np.exp(out, out=out)


def multiclass_negative_gradient(y_onehot: np.ndarray, p: np.ndarray,
                                 out: Optional[np.ndarray] = None) -> np.ndarray:
    """Negative gradient of multinomial deviance: 1{y = j} - p_j."""
    return np.subtract(y_onehot, p, out=out)


# ===========================
# Sampling
# ===========================

def bag_size(n_samples: int, subsample: float) -> int:
    """Number of rows per bag, rounded half up and at least 1."""
    return max(1, int(np.floor(n_samples * subsample + 0.5)))


def sample_bag(perm: np.ndarray, n_bag: int, rng: np.random.Generator) -> np.ndarray:
    """
    Draw n_bag distinct row indices without replacement.

    Shuffles ``perm`` in place and returns a view of its first n_bag entries,
    so the buffer is reused across iterations.
    """
    rng.shuffle(perm)
    return perm[:n_bag]


def shuffle_rows(X, y: np.ndarray, rng: np.random.Generator) -> Tuple[object, np.ndarray]:
    """Shuffle the rows of X (dense or sparse) and y with the same permutation."""
    order = rng.permutation(X.shape[0])
    return X[order], y[order]


# ===========================
# Metrics
# ===========================

def oob_error_rate(y_true: np.ndarray, y_pred: np.ndarray, oob_mask: np.ndarray) -> float:
    """Misclassification rate over out-of-bag rows; 0 when there are none."""
    if not np.any(oob_mask):
        return 0.0
    return float(zero_one_loss(y_true[oob_mask], y_pred[oob_mask]))


def compute_metrics_classification(
    y_true: np.ndarray,
    y_pred_proba: np.ndarray
) -> dict:
    """
    Compute classification metrics.

    Args:
        y_true: Integer labels, shape (n_samples,).
        y_pred_proba: Class probabilities, shape (n_samples, n_classes).
    """
    n_classes = y_pred_proba.shape[1]
    labels = np.arange(n_classes)
    y_pred = np.argmax(y_pred_proba, axis=1)

    # Clip probabilities for log_loss
    y_pred_proba_clipped = np.clip(y_pred_proba, 1e-15, 1 - 1e-15)
    y_pred_proba_clipped /= y_pred_proba_clipped.sum(axis=1, keepdims=True)

    logloss = log_loss(y_true, y_pred_proba_clipped, labels=labels)
    accuracy = accuracy_score(y_true, y_pred)

    # ROC AUC only if every class is present
    if len(np.unique(y_true)) != n_classes:
        auc = np.nan
    elif n_classes == 2:
        auc = roc_auc_score(y_true, y_pred_proba[:, 1])
    else:
        auc = roc_auc_score(y_true, y_pred_proba, multi_class="ovr", labels=labels)

    return {
        "log_loss": logloss,
        "accuracy": accuracy,
        "roc_auc": auc
    }
