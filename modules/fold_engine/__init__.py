"""
Fold Engine Module
==================

Responsibility:
- Stratified, seeded k-fold assignment over the training partition.
- Fit/validation index pairs for cross-validation.
"""

from .fold_engine import FoldEngine, FoldAssignment, assign_folds

__all__ = ['FoldEngine', 'FoldAssignment', 'assign_folds']
