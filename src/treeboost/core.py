"""
Gradient tree boosting for binary and multi-class classification.

Implements stochastic gradient boosting with the LogitBoost leaf updates of
Friedman (2001): L2_TreeBoost (Algorithm 5) for two classes and
L_K_TreeBoost (Algorithm 6) for K > 2 classes, with per-iteration row
subsampling and out-of-bag error estimation.

Training emits one IterationRecord per boosting iteration; ``iter_fit``
yields them as they are produced and ``fit`` collects them.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
  Annals of Statistics, 29(5), 1189-1232.
- Friedman, J. H. (2002). Stochastic gradient boosting. Computational Statistics
  & Data Analysis, 38(4), 367-378.
- Hastie, T., Tibshirani, R., & Friedman, J. (2009). The Elements of Statistical
  Learning (2nd ed.). Springer. Chapter 10.
"""

from typing import Callable, Iterator, List, Optional, Tuple
import logging
import numbers

import numpy as np
from sklearn.exceptions import NotFittedError
from sklearn.utils import check_array, column_or_1d

from .attributes import AttributeSpec, attribute_types, compute_num_input_vars, resolve_attributes
from .emitter import IterationEmitter, IterationRecord, ProgressReporter
from .exceptions import ConfigError, DataError
from .node_output import node_output_for
from .tree import DesignMatrix, FeatureEncoder, RegressionTree
from .utils import (
    bag_size, class_probabilities, initial_log_odds, logistic_negative_gradient,
    multiclass_negative_gradient, oob_error_rate, sample_bag, shuffle_rows,
    sigmoid, to_margin_labels
)


class GradientTreeBoostingClassifier:
    """
    Gradient tree boosting classifier with logistic (binomial or multinomial) deviance.

    Binary case (labels {0, 1}, recoded to y ∈ {-1, +1}):
    1. Initialisation: f_0 = 0.5 * log((1 + ȳ) / (1 - ȳ)).
    2. For m = 1 to M:
       a. Draw a bag of round(n * subsample) rows without replacement.
       b. Pseudo-residuals: r_i = 2y_i / (1 + exp(2 y_i F_{m-1}(x_i))).
       c. Fit a regression tree to r on the bag; each leaf outputs
          γ = Σ r_i / Σ |r_i| (2 - |r_i|).
       d. Update: F_m(x) = F_{m-1}(x) + ν * tree_m(x).
       e. Out-of-bag error: misclassification of sign(F_m) on rows outside the bag.

    K-class case: one score F_j per class, p_j = softmax(F)_j, residuals
    r_ij = 1{y_i = j} - p_ij, one tree per class and iteration (each on its own
    bag) with leaf outputs γ = (K-1)/K * Σ r / Σ |r| (1 - |r|).
    """

    def __init__(
        self,
        n_estimators: int = 500,
        learning_rate: float = 0.05,
        subsample: float = 0.7,
        num_vars: Optional[float] = None,
        max_depth: int = 8,
        max_leaf_nodes: Optional[int] = None,
        min_samples_split: int = 5,
        min_samples_leaf: int = 1,
        random_state: Optional[int] = None,
        attribute_types: AttributeSpec = None,
        verbose: bool = False
    ):
        """
        Args:
            n_estimators: Number of boosting iterations (M).
            learning_rate: Shrinkage parameter ν ∈ (0, 1]. Multiplies tree contributions.
            subsample: Fraction of rows drawn (without replacement) per tree, in (0, 1].
            num_vars: Candidate features per split. None for ceil(sqrt(n_features)),
                a value in (0, 1] for a fraction of the features, or a count.
            max_depth: Maximum depth of individual trees.
            max_leaf_nodes: Maximum number of leaves per tree, None for unbounded.
            min_samples_split: A node with at least this many samples may be split.
            min_samples_leaf: Minimum samples required in a leaf node.
            random_state: Seed for shuffling, bagging and feature subsetting.
                None draws fresh entropy, recorded in ``seed_``.
            attribute_types: Per-column types, e.g. "Q,C,Q". Inferred when None.
            verbose: Enable logging output.
        """
        self.n_estimators = n_estimators
        self.learning_rate = learning_rate
        self.subsample = subsample
        self.num_vars = num_vars
        self.max_depth = max_depth
        self.max_leaf_nodes = max_leaf_nodes
        self.min_samples_split = min_samples_split
        self.min_samples_leaf = min_samples_leaf
        self.random_state = random_state
        self.attribute_types = attribute_types
        self.verbose = verbose

        # Model state
        self.intercept_: float = 0.0
        self.n_classes_: int = 0
        self.n_features_in_: int = 0
        self.seed_: Optional[int] = None
        self.encoder_: Optional[FeatureEncoder] = None
        self.trees_: List[List[RegressionTree]] = []  # one list per iteration

        # Training history
        self.records_: List[IterationRecord] = []
        self.oob_errors_: List[float] = []

        # Setup logging
        self.logger = logging.getLogger(__name__)
        if self.verbose:
            logging.basicConfig(level=logging.INFO)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_params(self):
        def is_int(value):
            return isinstance(value, numbers.Integral) and not isinstance(value, bool)

        def is_real(value):
            return isinstance(value, numbers.Real) and not isinstance(value, bool)

        if not is_int(self.n_estimators) or self.n_estimators < 1:
            raise ConfigError(f"Invalid number of trees: {self.n_estimators}")
        if not is_real(self.learning_rate) or not 0.0 < self.learning_rate <= 1.0:
            raise ConfigError(f"Invalid shrinkage: {self.learning_rate}")
        if not is_real(self.subsample) or not 0.0 < self.subsample <= 1.0:
            raise ConfigError(f"Invalid sampling fraction: {self.subsample}")
        if self.num_vars is not None and (not is_real(self.num_vars) or not self.num_vars > 0):
            raise ConfigError(f"Invalid number of variables: {self.num_vars}")
        if not is_int(self.max_depth) or self.max_depth < 1:
            raise ConfigError(f"Invalid maxDepth: {self.max_depth}")
        if self.max_leaf_nodes is not None and (
                not is_int(self.max_leaf_nodes) or self.max_leaf_nodes < 2):
            raise ConfigError(f"Invalid maxLeafNodes: {self.max_leaf_nodes}")
        if not is_int(self.min_samples_split) or self.min_samples_split <= 0:
            raise ConfigError(f"Invalid minSamplesSplit: {self.min_samples_split}")
        if not is_int(self.min_samples_leaf) or self.min_samples_leaf < 1:
            raise ConfigError(f"Invalid minSamplesLeaf: {self.min_samples_leaf}")
        if self.random_state is not None and (
                not is_int(self.random_state) or self.random_state < 0):
            raise ConfigError(f"Invalid seed: {self.random_state}")
        return resolve_attributes(self.attribute_types)

    @staticmethod
    def _check_data(X, y) -> Tuple[object, np.ndarray, int]:
        try:
            X = check_array(X, accept_sparse="csr", dtype=np.float64)
            y = column_or_1d(y)
        except ValueError as exc:
            raise DataError(str(exc)) from exc

        if X.shape[0] != y.shape[0]:
            raise DataError(
                f"The sizes of X and Y don't match: {X.shape[0]} != {y.shape[0]}"
            )
        if y.dtype.kind not in "iub":
            if y.dtype.kind != "f" or not np.all(np.isfinite(y)) or np.any(y != np.round(y)):
                raise DataError(f"Class labels must be integers, got dtype {y.dtype}")
        y = y.astype(np.intp)
        if np.any(y < 0):
            raise DataError("Negative class labels are not supported")
        if len(np.unique(y)) < 2:
            raise DataError("Only one class label is present")
        return X, y, int(y.max()) + 1

    def _tree_params(self, num_vars: int) -> dict:
        return {
            "num_vars": num_vars,
            "max_depth": self.max_depth,
            "max_leaf_nodes": self.max_leaf_nodes,
            "min_samples_split": self.min_samples_split,
            "min_samples_leaf": self.min_samples_leaf,
        }

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def iter_fit(
        self,
        X,
        y,
        sink: Optional[Callable[[IterationRecord], None]] = None,
        reporter: Optional[ProgressReporter] = None
    ) -> Iterator[IterationRecord]:
        """
        Validate inputs and return a generator of per-iteration records.

        Parameters and data are checked eagerly, so a ConfigError or DataError
        is raised by this call before any tree is fit.

        Args:
            X: Training features, shape (n_samples, n_features), dense or CSR.
            y: Non-negative integer class labels, shape (n_samples,).
            sink: Optional callable receiving each record as it is produced.
            reporter: Optional progress hooks.

        Returns:
            Iterator over n_estimators IterationRecords.
        """
        attributes = self._check_params()
        X, y, k = self._check_data(X, y)
        n_samples, n_features = X.shape
        attributes = attribute_types(attributes, n_features)
        num_vars = compute_num_input_vars(self.num_vars, n_features)

        # Independent streams for shuffling, bagging and the tree learner
        seed_seq = np.random.SeedSequence(self.random_state)
        shuffle_seq, bag_seq, tree_seq = seed_seq.spawn(3)
        bag_rng = np.random.default_rng(bag_seq)
        tree_rng = np.random.default_rng(tree_seq)

        # Remove any ordering bias of the input rows
        X, y = shuffle_rows(X, y, np.random.default_rng(shuffle_seq))

        self.encoder_ = FeatureEncoder(attributes).fit(X)
        design = self.encoder_.prepare(X)

        self.seed_ = seed_seq.entropy
        self.n_classes_ = k
        self.n_features_in_ = n_features
        self.intercept_ = 0.0
        self.trees_ = []
        self.records_ = []
        self.oob_errors_ = []

        self.logger.info(
            f"k: {k}, numTrees: {self.n_estimators}, shrinkage: {self.learning_rate}, "
            f"subsample: {self.subsample}, numVars: {num_vars}, maxDepth: {self.max_depth}, "
            f"minSamplesSplit: {self.min_samples_split}, maxLeafs: {self.max_leaf_nodes}, "
            f"seed: {self.seed_}"
        )

        emitter = IterationEmitter(n_features, self.n_estimators, sink=sink, reporter=reporter)
        tree_params = self._tree_params(num_vars)
        if k == 2:
            return self._boost_binary(design, y, emitter, bag_rng, tree_rng, tree_params)
        return self._boost_multiclass(design, y, k, emitter, bag_rng, tree_rng, tree_params)

    def fit(
        self,
        X,
        y,
        sink: Optional[Callable[[IterationRecord], None]] = None,
        reporter: Optional[ProgressReporter] = None
    ) -> "GradientTreeBoostingClassifier":
        """
        Fit the classifier, running all boosting iterations.

        Args:
            X: Training features, shape (n_samples, n_features), dense or CSR.
            y: Non-negative integer class labels, shape (n_samples,).
            sink: Optional callable receiving each record as it is produced.
            reporter: Optional progress hooks.

        Returns:
            self
        """
        for _ in self.iter_fit(X, y, sink=sink, reporter=reporter):
            pass
        return self

    def _forward(
        self,
        emitter: IterationEmitter,
        iteration: int,
        trees: List[RegressionTree],
        intercept: float,
        oob_error: float
    ) -> IterationRecord:
        record = emitter.emit(iteration, trees, intercept, self.learning_rate, oob_error)
        self.trees_.append(trees)
        self.records_.append(record)
        self.oob_errors_.append(oob_error)

        if self.verbose and iteration % 10 == 0:
            self.logger.info(
                f"Iteration {iteration}/{self.n_estimators}: oob_error_rate={oob_error:.6f}"
            )
        return record

    def _boost_binary(
        self,
        design: DesignMatrix,
        y: np.ndarray,
        emitter: IterationEmitter,
        bag_rng: np.random.Generator,
        tree_rng: np.random.Generator,
        tree_params: dict
    ) -> Iterator[IterationRecord]:
        n_samples = design.n_rows
        n_bag = bag_size(n_samples, self.subsample)

        y_margin = to_margin_labels(y)
        intercept = initial_log_odds(y_margin)
        self.intercept_ = intercept

        h = np.full(n_samples, intercept)  # current F(x_i)
        response = np.empty(n_samples)     # pseudo-residuals fed to the tree
        perm = np.arange(n_samples)
        in_bag = np.zeros(n_samples, dtype=bool)
        output = node_output_for(2)

        for m in range(self.n_estimators):
            emitter.reporter.report_progress()

            # (a) Sample the bag
            bag = sample_bag(perm, n_bag, bag_rng)
            in_bag[bag] = True

            # (b) Pseudo-residuals of the binomial deviance
            logistic_negative_gradient(y_margin, h, out=response)

            # (c) Fit tree with Newton-step leaves
            tree = RegressionTree.fit(design, response, bag, output, rng=tree_rng, **tree_params)

            # (d) Update scores with shrinkage
            h += self.learning_rate * tree.predict(design)

            # (e) Out-of-bag error estimate
            prediction = np.where(h > 0, 1, -1)
            oob_error = oob_error_rate(y_margin, prediction, ~in_bag)

            yield self._forward(emitter, m + 1, [tree], intercept, oob_error)
            in_bag[:] = False

    def _boost_multiclass(
        self,
        design: DesignMatrix,
        y: np.ndarray,
        k: int,
        emitter: IterationEmitter,
        bag_rng: np.random.Generator,
        tree_rng: np.random.Generator,
        tree_params: dict
    ) -> Iterator[IterationRecord]:
        n_samples = design.n_rows
        n_bag = bag_size(n_samples, self.subsample)

        h = np.zeros((k, n_samples))         # boosted score per class
        p = np.empty((k, n_samples))         # posterior probabilities
        response = np.empty((k, n_samples))  # pseudo-residuals per class
        y_onehot = (y[np.newaxis, :] == np.arange(k)[:, np.newaxis]).astype(np.float64)
        perm = np.arange(n_samples)
        in_bag = np.zeros(n_samples, dtype=bool)
        output = node_output_for(k)

        for m in range(self.n_estimators):
            # (a) Softmax over classes, (b) residuals for every class
            class_probabilities(h, out=p)
            multiclass_negative_gradient(y_onehot, p, out=response)

            # (c) One tree per class, each on a fresh bag
            trees = []
            for j in range(k):
                emitter.reporter.report_progress()

                bag = sample_bag(perm, n_bag, bag_rng)
                in_bag[bag] = True

                tree = RegressionTree.fit(
                    design, response[j], bag, output, rng=tree_rng, **tree_params
                )
                h[j] += self.learning_rate * tree.predict(design)
                trees.append(tree)

            # (d) Out-of-bag error on rows outside every bag of this iteration
            prediction = np.argmax(h, axis=0)
            oob_error = oob_error_rate(y, prediction, ~in_bag)

            yield self._forward(emitter, m + 1, trees, 0.0, oob_error)
            in_bag[:] = False

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def _check_is_fitted(self):
        if not self.trees_:
            raise NotFittedError(
                f"This {type(self).__name__} instance is not fitted yet. Call 'fit' first."
            )

    def decision_function(self, X, up_to_iteration: Optional[int] = None) -> np.ndarray:
        """
        Raw boosted scores.

        Args:
            X: Features, shape (n_samples, n_features), dense or CSR.
            up_to_iteration: Use only the first k iterations (for staged predictions).

        Returns:
            Shape (n_samples,) for binary problems, (n_samples, n_classes) otherwise.
        """
        self._check_is_fitted()
        X = check_array(X, accept_sparse="csr", dtype=np.float64)
        if X.shape[1] != self.n_features_in_:
            raise DataError(
                f"X has {X.shape[1]} features, but the model was fit with {self.n_features_in_}"
            )
        design = self.encoder_.prepare(X)
        iterations = self.trees_[:up_to_iteration]

        if self.n_classes_ == 2:
            F = np.full(X.shape[0], self.intercept_)
            for (tree,) in iterations:
                F += self.learning_rate * tree.predict(design)
            return F

        F = np.zeros((X.shape[0], self.n_classes_))
        for trees in iterations:
            for j, tree in enumerate(trees):
                F[:, j] += self.learning_rate * tree.predict(design)
        return F

    def predict_proba(self, X) -> np.ndarray:
        """
        Predict class probabilities.

        Returns:
            Probabilities, shape (n_samples, n_classes).
        """
        F = self.decision_function(X)
        if self.n_classes_ == 2:
            # F is half the log-odds for the {-1, +1} coding
            p1 = sigmoid(2.0 * F)
            return np.column_stack([1.0 - p1, p1])
        return class_probabilities(F.T).T

    def predict(self, X) -> np.ndarray:
        """Predict class labels, shape (n_samples,)."""
        F = self.decision_function(X)
        if self.n_classes_ == 2:
            return (F > 0).astype(int)
        return np.argmax(F, axis=1)

    @property
    def feature_importances_(self) -> np.ndarray:
        """Variable importance summed over all iterations, normalised to sum to 1."""
        self._check_is_fitted()
        total = np.sum([r.importance for r in self.records_], axis=0)
        norm = total.sum()
        return total / norm if norm > 0 else total
