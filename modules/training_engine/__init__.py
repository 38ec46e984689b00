"""
Training Engine Module
======================

Responsibility:
- Refits the selected configuration on the full training partition.
- Fits the final feature recipe state (fresh, never a per-fold state).
- Scores the model exactly once on the held-out partition.
- Persists the model (.pkl), recipe state, predictions and final report.
"""

from .training_engine import FinalEvaluator, FinalReport

__all__ = ['FinalEvaluator', 'FinalReport']
