"""
Evaluation Engine Module
========================

Responsibility:
- Multiclass ROC-AUC (unweighted mean of one-vs-rest AUCs).
- Detection of label classes missing from an evaluation subset.
"""

from .metrics import check_classes_present, one_vs_rest_auc, multiclass_roc_auc

__all__ = ['check_classes_present', 'one_vs_rest_auc', 'multiclass_roc_auc']
