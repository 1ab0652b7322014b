"""
Packaging and forwarding of per-iteration boosting output.

Every boosting iteration produces one IterationRecord: the serialized trees
of the iteration (one for binary problems, one per class otherwise), the
intercept, the shrinkage, the summed variable importance and the out-of-bag
error rate. Records are handed to an optional sink as soon as they exist, so
a partially trained model is usable before training finishes.
"""

import base64
import logging
import zlib
from typing import Callable, Iterable, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .tree import RegressionTree

logger = logging.getLogger(__name__)

RECORD_COLUMNS = [
    "iteration", "pred_models", "intercept", "shrinkage", "var_importance", "oob_error_rate"
]


class IterationRecord(NamedTuple):
    iteration: int
    models: Tuple[bytes, ...]
    intercept: float
    shrinkage: float
    importance: np.ndarray
    oob_error_rate: float


class ProgressReporter:
    """
    Host-side progress hooks. The base implementation does nothing.

    Subclass to forward heartbeats and counters to a job runner.
    """

    def report_progress(self) -> None:
        pass

    def increment(self, counter: str, amount: int = 1) -> None:
        pass


def encode_model(tree: RegressionTree) -> bytes:
    """Serialize a tree and compact the bytes."""
    return zlib.compress(tree.serialize())


def decode_model(data: bytes) -> RegressionTree:
    """Inverse of encode_model."""
    return RegressionTree.deserialize(zlib.decompress(data))


class IterationEmitter:
    """
    Builds IterationRecords and forwards them to the sink and reporter.

    Args:
        n_features: Number of source features (length of the importance vector).
        n_iterations: Total number of iterations, used for log messages.
        sink: Callable receiving each record. Exceptions it raises abort training.
        reporter: Progress hooks; a no-op reporter is used when None.
    """

    def __init__(
        self,
        n_features: int,
        n_iterations: int,
        sink: Optional[Callable[[IterationRecord], None]] = None,
        reporter: Optional[ProgressReporter] = None
    ):
        self.n_features = n_features
        self.n_iterations = n_iterations
        self.sink = sink
        self.reporter = reporter if reporter is not None else ProgressReporter()

    def aggregate_importance(self, trees: Sequence[RegressionTree]) -> np.ndarray:
        importance = np.zeros(self.n_features)
        for tree in trees:
            importance += tree.importance()
        return importance

    def emit(
        self,
        iteration: int,
        trees: Sequence[RegressionTree],
        intercept: float,
        shrinkage: float,
        oob_error_rate: float
    ) -> IterationRecord:
        importance = self.aggregate_importance(trees)
        importance.setflags(write=False)
        record = IterationRecord(
            iteration=iteration,
            models=tuple(encode_model(tree) for tree in trees),
            intercept=float(intercept),
            shrinkage=float(shrinkage),
            importance=importance,
            oob_error_rate=float(oob_error_rate)
        )

        if self.sink is not None:
            self.sink(record)
        self.reporter.report_progress()
        self.reporter.increment("iteration", 1)

        logger.debug(
            f"Forwarded the output of {iteration}-th boosting iteration out of {self.n_iterations}"
        )
        return record


def records_to_frame(records: Iterable[IterationRecord]) -> pd.DataFrame:
    """
    Tabulate records with one row per iteration.

    Models are rendered as base64 text so the frame can be written to CSV or
    a text column; decode with ``decode_model(base64.b64decode(text))``.
    """
    rows = [
        {
            "iteration": r.iteration,
            "pred_models": [base64.b64encode(m).decode("ascii") for m in r.models],
            "intercept": r.intercept,
            "shrinkage": r.shrinkage,
            "var_importance": r.importance.tolist(),
            "oob_error_rate": r.oob_error_rate,
        }
        for r in records
    ]
    return pd.DataFrame(rows, columns=RECORD_COLUMNS)
