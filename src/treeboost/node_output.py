"""
Leaf output rules for LogitBoost regression trees.

The tree learner partitions samples by squared error on the pseudo-residuals;
the value stored in each leaf is then replaced by a single Newton-Raphson step
for the logistic loss, computed from the residuals routed to that leaf.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
  Annals of Statistics, 29(5), 1189-1232. Algorithms 5 (L2_TreeBoost) and 6 (L_K_TreeBoost).
"""

import numpy as np


class NodeOutput:
    """
    Computes leaf output values from the residuals routed to each leaf.

    Subclasses give the per-sample denominator term and the step that
    combines the per-leaf sums into an output value.
    """

    def denominator_terms(self, residuals: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def step(
        self, numerator: np.ndarray, denominator: np.ndarray, count: np.ndarray
    ) -> np.ndarray:
        raise NotImplementedError

    def compute(self, residuals: np.ndarray) -> float:
        """Output value of a single leaf holding ``residuals``."""
        residuals = np.asarray(residuals, dtype=np.float64)
        value = self.step(
            np.array([residuals.sum()]),
            np.array([self.denominator_terms(residuals).sum()]),
            np.array([len(residuals)])
        )
        return float(value[0])

    def leaf_values(
        self, leaf_ids: np.ndarray, residuals: np.ndarray, n_nodes: int
    ) -> np.ndarray:
        """
        Output value for every node of a fitted tree.

        Args:
            leaf_ids: Leaf index of each in-bag sample, shape (n_samples,).
            residuals: Pseudo-residual of each in-bag sample, shape (n_samples,).
            n_nodes: Total node count of the tree.

        Returns:
            Array of shape (n_nodes,); internal nodes are left at 0.
        """
        count = np.bincount(leaf_ids, minlength=n_nodes)
        numerator = np.bincount(leaf_ids, weights=residuals, minlength=n_nodes)
        denominator = np.bincount(
            leaf_ids, weights=self.denominator_terms(residuals), minlength=n_nodes
        )

        values = np.zeros(n_nodes)
        leaves = count > 0
        values[leaves] = self.step(numerator[leaves], denominator[leaves], count[leaves])
        return values


class TwoClassNodeOutput(NodeOutput):
    """
    Leaf value for two-class logistic loss with labels in {-1, +1}.

    γ = Σ r_i / Σ |r_i| (2 - |r_i|)
    """

    def denominator_terms(self, residuals):
        abs_r = np.abs(residuals)
        return abs_r * (2.0 - abs_r)

    def step(self, numerator, denominator, count):
        # Residuals saturate to exactly 0 or ±2 once |h| is very large
        return np.divide(
            numerator, denominator,
            out=np.zeros_like(numerator, dtype=np.float64), where=denominator != 0
        )

    def __repr__(self):
        return "TwoClassNodeOutput()"


class KClassNodeOutput(NodeOutput):
    """
    Leaf value for K-class logistic loss.

    γ = (K - 1) / K * Σ r_i / Σ |r_i| (1 - |r_i|)

    Falls back to the mean residual when the denominator is below EPSILON.
    """

    EPSILON = 1e-10

    def __init__(self, k: int):
        if k < 2:
            raise ValueError(f"K-class node output needs k >= 2, got {k}")
        self.k = k

    def denominator_terms(self, residuals):
        abs_r = np.abs(residuals)
        return abs_r * (1.0 - abs_r)

    def step(self, numerator, denominator, count):
        degenerate = denominator < self.EPSILON
        safe = np.where(degenerate, 1.0, denominator)
        newton = (self.k - 1.0) / self.k * (numerator / safe)
        return np.where(degenerate, numerator / count, newton)

    def __repr__(self):
        return f"KClassNodeOutput(k={self.k})"


def node_output_for(k: int) -> NodeOutput:
    """Leaf output rule for a problem with k classes."""
    if k == 2:
        return TwoClassNodeOutput()
    return KClassNodeOutput(k)
