"""
Regression tree learner used as the weak learner of the boosting loop.

Tree induction is delegated to scikit-learn's DecisionTreeRegressor; the
leaf values it learns (mean residual) are replaced by the Newton step of a
NodeOutput rule, following the gamma-per-leaf update of Algorithm 10.4 in
"The Elements of Statistical Learning".

Categorical attributes are one-hot expanded so that each split on them is an
equality test (x == c versus the rest).
"""

import logging
import pickle
from typing import List, NamedTuple, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from sklearn.preprocessing import OneHotEncoder
from sklearn.tree import DecisionTreeRegressor

from .attributes import AttributeType
from .exceptions import LearnerError
from .node_output import NodeOutput

logger = logging.getLogger(__name__)

# Input dtype of sklearn's tree builder; converting once avoids a copy per fit
DTYPE = np.float32


class DesignMatrix(NamedTuple):
    """Encoded training matrix, built once and shared by every tree of a run."""
    fit_matrix: object    # ndarray, or CSC matrix for sparse input
    route_matrix: object  # ndarray, or CSR matrix for sparse input
    encoder: "FeatureEncoder"

    @property
    def n_rows(self) -> int:
        return self.route_matrix.shape[0]


class FeatureEncoder:
    """
    Maps raw feature rows to the matrix layout consumed by the tree learner.

    Quantitative columns are kept as is and come first; each categorical
    column is expanded into one indicator column per observed category.
    """

    def __init__(self, attributes: Sequence[AttributeType]):
        self.attributes: List[AttributeType] = list(attributes)
        self.quantitative_ = np.array(
            [i for i, a in enumerate(self.attributes) if a is AttributeType.QUANTITATIVE],
            dtype=np.intp
        )
        self.categorical_ = np.array(
            [i for i, a in enumerate(self.attributes) if a is AttributeType.CATEGORICAL],
            dtype=np.intp
        )
        self.onehot_: Optional[OneHotEncoder] = None
        self.sources_: Optional[np.ndarray] = None  # source feature of each encoded column

    @property
    def n_features(self) -> int:
        return len(self.attributes)

    def _categorical_block(self, X) -> np.ndarray:
        block = X[:, self.categorical_]
        return block.toarray() if sp.issparse(block) else block

    def fit(self, X) -> "FeatureEncoder":
        if len(self.categorical_) > 0:
            self.onehot_ = OneHotEncoder(handle_unknown="ignore", dtype=DTYPE)
            self.onehot_.fit(self._categorical_block(X))
            onehot_sources = np.concatenate([
                np.full(len(categories), column, dtype=np.intp)
                for column, categories in zip(self.categorical_, self.onehot_.categories_)
            ])
        else:
            onehot_sources = np.empty(0, dtype=np.intp)
        self.sources_ = np.concatenate([self.quantitative_, onehot_sources])
        return self

    def transform(self, X):
        """Encode raw rows (2-D dense, sparse, or a single 1-D row)."""
        if sp.issparse(X):
            X = sp.csr_matrix(X)
            if len(self.categorical_) == 0:
                return X.astype(DTYPE)
            onehot = self.onehot_.transform(self._categorical_block(X))
            return sp.hstack([X[:, self.quantitative_], onehot], format="csr", dtype=DTYPE)

        X = np.atleast_2d(np.asarray(X, dtype=np.float64))
        if len(self.categorical_) == 0:
            return np.ascontiguousarray(X, dtype=DTYPE)
        onehot = self.onehot_.transform(self._categorical_block(X)).toarray()
        return np.ascontiguousarray(np.hstack([X[:, self.quantitative_], onehot]), dtype=DTYPE)

    def prepare(self, X) -> DesignMatrix:
        encoded = self.transform(X)
        if sp.issparse(encoded):
            # sklearn fits on CSC and routes samples on CSR
            return DesignMatrix(encoded.tocsc(), encoded, self)
        return DesignMatrix(encoded, encoded, self)

    def max_features(self, num_vars: int):
        """Candidate encoded columns per split for num_vars source features."""
        if len(self.categorical_) == 0:
            return min(num_vars, self.n_features)
        # A categorical feature spans several encoded columns; keep the same share
        return min(num_vars / self.n_features, 1.0)

    def source_importance(self, encoded_importance: np.ndarray) -> np.ndarray:
        """Fold per-encoded-column importance back onto the source features."""
        return np.bincount(
            self.sources_, weights=encoded_importance, minlength=self.n_features
        )


class RegressionTree:
    """
    A fitted regression tree with LogitBoost leaf values.

    Attributes:
        estimator: The underlying sklearn DecisionTreeRegressor.
        leaf_values: Output value per tree node, indexed by node id.
        encoder: FeatureEncoder mapping raw rows to the estimator's input.
    """

    def __init__(self, estimator: DecisionTreeRegressor, leaf_values: np.ndarray,
                 encoder: FeatureEncoder):
        self.estimator = estimator
        self.leaf_values = leaf_values
        self.encoder = encoder

    @classmethod
    def fit(
        cls,
        design: DesignMatrix,
        response: np.ndarray,
        bag: np.ndarray,
        output: NodeOutput,
        num_vars: int,
        max_depth: int = 8,
        max_leaf_nodes: Optional[int] = None,
        min_samples_split: int = 5,
        min_samples_leaf: int = 1,
        rng: Optional[np.random.Generator] = None
    ) -> "RegressionTree":
        """
        Fit one tree to the response restricted to the bag.

        Args:
            design: Encoded training matrix.
            response: Pseudo-residual per training row, shape (n_rows,).
            bag: Row indices sampled for this tree.
            output: Leaf output rule.
            num_vars: Candidate features per split.
            max_depth: Maximum tree depth.
            max_leaf_nodes: Maximum leaf count, None for unbounded.
            min_samples_split: Minimum samples a node needs to be split.
            min_samples_leaf: Minimum samples per leaf.
            rng: Generator for feature subsetting.

        Returns:
            The fitted tree.

        Raises:
            LearnerError: If the learner fails to fit or route samples.
        """
        if rng is None:
            rng = np.random.default_rng()
        # Out-of-bag rows get zero weight and are skipped by the splitter
        sample_weight = np.bincount(bag, minlength=design.n_rows).astype(np.float64)
        estimator = DecisionTreeRegressor(
            criterion="squared_error",
            max_depth=max_depth,
            max_features=design.encoder.max_features(num_vars),
            max_leaf_nodes=max_leaf_nodes,
            min_samples_split=max(2, min_samples_split),
            min_samples_leaf=min_samples_leaf,
            random_state=int(rng.integers(np.iinfo(np.int32).max))
        )
        try:
            estimator.fit(design.fit_matrix, response, sample_weight=sample_weight)
            leaf_ids = estimator.apply(design.route_matrix[bag])
        except Exception as exc:
            raise LearnerError(f"Failed to fit regression tree: {exc}") from exc

        leaf_values = output.leaf_values(leaf_ids, response[bag], estimator.tree_.node_count)
        logger.debug(f"Fitted tree: depth={estimator.get_depth()}, leaves={estimator.get_n_leaves()}")
        return cls(estimator, leaf_values, design.encoder)

    def predict(self, X):
        """
        Tree output for each row.

        Args:
            X: A DesignMatrix, a raw 2-D (dense or sparse) matrix, or one 1-D row.

        Returns:
            Array of shape (n_rows,), or a float for a single 1-D row.
        """
        if isinstance(X, DesignMatrix):
            return self.leaf_values[self.estimator.apply(X.route_matrix)]
        single_row = not sp.issparse(X) and np.ndim(X) == 1
        values = self.leaf_values[self.estimator.apply(self.encoder.transform(X))]
        return float(values[0]) if single_row else values

    def importance(self) -> np.ndarray:
        """Unnormalised impurity decrease per source feature."""
        encoded = self.estimator.tree_.compute_feature_importances(normalize=False)
        return self.encoder.source_importance(encoded)

    @property
    def n_leaves(self) -> int:
        return self.estimator.get_n_leaves()

    def serialize(self) -> bytes:
        return pickle.dumps(self, protocol=pickle.HIGHEST_PROTOCOL)

    @classmethod
    def deserialize(cls, data: bytes) -> "RegressionTree":
        tree = pickle.loads(data)
        if not isinstance(tree, cls):
            raise TypeError(f"Expected a serialized {cls.__name__}, got {type(tree).__name__}")
        return tree
