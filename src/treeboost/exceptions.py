"""
Exception hierarchy for tree boosting.

ConfigError and DataError are raised before the first tree is fit;
LearnerError wraps any failure of the tree learner and aborts the run.
"""


class TreeBoostError(Exception):
    """Base class for all treeboost errors."""


class ConfigError(TreeBoostError, ValueError):
    """A hyper-parameter is outside its documented range."""


class DataError(TreeBoostError, ValueError):
    """Training data is unusable (shape mismatch, bad or too few labels)."""


class LearnerError(TreeBoostError, RuntimeError):
    """The regression tree learner failed to fit or route samples."""
