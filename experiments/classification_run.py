"""
Classification experiments on the Breast Cancer (binary) and Wine (3-class) datasets.

Trains the LogitBoost tree boosting classifier, reports held-out metrics,
plots the out-of-bag error per boosting iteration and writes the
per-iteration model table.
"""

import sys
from pathlib import Path

EXPERIMENT_DIR = Path(__file__).parent
sys.path.insert(0, str(EXPERIMENT_DIR.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.datasets import load_breast_cancer, load_wine
from sklearn.model_selection import train_test_split
from sklearn.tree import DecisionTreeClassifier
from sklearn.metrics import confusion_matrix

from treeboost.core import GradientTreeBoostingClassifier
from treeboost.emitter import records_to_frame
from treeboost.utils import compute_metrics_classification

# Set style
plt.style.use('seaborn-v0_8-darkgrid')

DATASETS = {
    'breast_cancer': load_breast_cancer,
    'wine': load_wine,
}

PARAMS = {
    'n_estimators': 200,
    'learning_rate': 0.1,
    'subsample': 0.7,
    'max_depth': 4,
    'random_state': 42,
}


def load_and_prepare_data(name):
    """Load a dataset and split 80/20."""
    print(f"Loading {name} dataset...")
    X, y = DATASETS[name](return_X_y=True)

    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=0.2, random_state=42, stratify=y
    )

    print(f"Train: {X_train.shape}, Test: {X_test.shape}")
    print(f"Class distribution - Train: {np.bincount(y_train)}, Test: {np.bincount(y_test)}")

    return X_train, X_test, y_train, y_test


def baseline_comparison(X_train, X_test, y_train, y_test):
    """Baseline: single DecisionTreeClassifier."""
    print("\nBaseline: Single Decision Tree Classifier")

    dt = DecisionTreeClassifier(max_depth=3, random_state=42)
    dt.fit(X_train, y_train)

    metrics = compute_metrics_classification(y_test, dt.predict_proba(X_test))
    print(f"Test Accuracy: {metrics['accuracy']:.4f}")
    print(f"Test ROC AUC:  {metrics['roc_auc']:.4f}")

    return metrics


def run_boosting(name, X_train, X_test, y_train, y_test):
    """Fit the boosted model, streaming records as they are produced."""
    print(f"\nGradient tree boosting on {name}: {PARAMS}")

    clf = GradientTreeBoostingClassifier(**PARAMS, verbose=False)
    for record in clf.iter_fit(X_train, y_train):
        if record.iteration % 50 == 0:
            print(f"  iteration {record.iteration}: oob_error_rate={record.oob_error_rate:.4f}")

    train_metrics = compute_metrics_classification(y_train, clf.predict_proba(X_train))
    test_metrics = compute_metrics_classification(y_test, clf.predict_proba(X_test))

    print(f"Train Accuracy: {train_metrics['accuracy']:.4f}")
    print(f"Test Accuracy:  {test_metrics['accuracy']:.4f}")
    print(f"Test ROC AUC:   {test_metrics['roc_auc']:.4f}")
    print(f"Test Log Loss:  {test_metrics['log_loss']:.6f}")

    print("\nConfusion Matrix:")
    print(confusion_matrix(y_test, clf.predict(X_test)))

    return clf, test_metrics


def plot_oob_curves(models):
    """OOB error per iteration for every fitted model."""
    fig, ax = plt.subplots(figsize=(10, 6))

    for name, clf in models.items():
        ax.plot(np.arange(1, len(clf.oob_errors_) + 1), clf.oob_errors_, label=name, linewidth=2)

    ax.set_xlabel('Iteration')
    ax.set_ylabel('Out-of-bag Error Rate')
    ax.set_title('Out-of-bag Error during Boosting')
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(EXPERIMENT_DIR / 'classification_oob_error.png', dpi=150)
    print("\nSaved plot: classification_oob_error.png")


def plot_feature_importance(name, clf, top=10):
    importances = clf.feature_importances_
    order = np.argsort(importances)[::-1][:top]

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.barh(np.arange(len(order)), importances[order][::-1])
    ax.set_yticks(np.arange(len(order)))
    ax.set_yticklabels([f'x{i}' for i in order[::-1]])
    ax.set_xlabel('Normalised importance')
    ax.set_title(f'Variable Importance - {name}')

    plt.tight_layout()
    plt.savefig(EXPERIMENT_DIR / f'classification_{name}_importance.png', dpi=150)
    print(f"Saved plot: classification_{name}_importance.png")


def main():
    """Run all classification experiments."""
    print("="*60)
    print("Gradient Tree Boosting Classification Experiments")
    print("="*60)

    models = {}
    results = []

    for name in DATASETS:
        print("\n" + "="*60)
        X_train, X_test, y_train, y_test = load_and_prepare_data(name)

        baseline = baseline_comparison(X_train, X_test, y_train, y_test)
        clf, metrics = run_boosting(name, X_train, X_test, y_train, y_test)
        models[name] = clf

        records_to_frame(clf.records_).to_csv(
            EXPERIMENT_DIR / f'classification_{name}_records.csv', index=False
        )
        plot_feature_importance(name, clf)

        results.append({
            'dataset': name,
            'n_classes': clf.n_classes_,
            'baseline_acc': baseline['accuracy'],
            'test_acc': metrics['accuracy'],
            'test_auc': metrics['roc_auc'],
            'test_logloss': metrics['log_loss'],
            'final_oob_error': clf.oob_errors_[-1],
        })

    plot_oob_curves(models)

    results = pd.DataFrame(results)
    results.to_csv(EXPERIMENT_DIR / 'classification_results.csv', index=False)

    print("\n" + "="*60)
    print("Results Summary")
    print("="*60)
    print(results.to_string(index=False))


if __name__ == "__main__":
    main()
