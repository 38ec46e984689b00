"""
Multiclass ROC-AUC (macro average of one-vs-rest AUCs).
"""
from typing import Dict, Sequence

import numpy as np
from sklearn.metrics import roc_auc_score

from utils.exceptions import DegenerateFoldError


def check_classes_present(y_true: Sequence[str], classes: Sequence[str]) -> None:
    """
    Raise DegenerateFoldError if any class has no positive example in y_true,
    since its one-vs-rest AUC would be undefined.
    """
    present = set(np.asarray(y_true).tolist())
    absent = [c for c in classes if c not in present]
    if absent:
        raise DegenerateFoldError(f"Classes {absent} absent from evaluation labels ({len(y_true)} rows).")


def one_vs_rest_auc(y_true: Sequence[str], proba: np.ndarray, classes: Sequence[str]) -> Dict[str, float]:
    """Per-class one-vs-rest AUC; probability columns follow `classes` order."""
    y_true = np.asarray(y_true)
    proba = np.asarray(proba, dtype=float)
    if proba.shape != (len(y_true), len(classes)):
        raise ValueError(f"Probability matrix shape {proba.shape} does not match ({len(y_true)}, {len(classes)})")
    check_classes_present(y_true, classes)

    scores = {}
    for j, cls in enumerate(classes):
        positives = y_true == cls
        if positives.all():
            raise DegenerateFoldError(f"Only class '{cls}' present; one-vs-rest AUC undefined.")
        scores[cls] = float(roc_auc_score(positives.astype(int), proba[:, j]))
    return scores


def multiclass_roc_auc(y_true: Sequence[str], proba: np.ndarray, classes: Sequence[str]) -> float:
    """Unweighted mean of the one-vs-rest AUCs."""
    return float(np.mean(list(one_vs_rest_auc(y_true, proba, classes).values())))
