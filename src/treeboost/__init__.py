"""
Gradient tree boosting classifier with LogitBoost leaf updates.

Implements L2_TreeBoost (two classes) and L_K_TreeBoost (K classes) from
Friedman (2001), "Greedy function approximation: A gradient boosting machine",
with stochastic subsampling, out-of-bag error estimates and one emitted
record per boosting iteration.
"""

from .attributes import AttributeType
from .core import GradientTreeBoostingClassifier
from .emitter import IterationRecord, ProgressReporter, decode_model, records_to_frame
from .exceptions import ConfigError, DataError, LearnerError, TreeBoostError

__version__ = "0.1.0"
__all__ = [
    "GradientTreeBoostingClassifier",
    "AttributeType",
    "IterationRecord",
    "ProgressReporter",
    "decode_model",
    "records_to_frame",
    "TreeBoostError",
    "ConfigError",
    "DataError",
    "LearnerError",
]
