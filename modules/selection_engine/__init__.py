"""
Selection Engine
================

Responsibility:
- Reduce cell results to per-configuration scores (mean, sd, successful folds).
- Rank configurations within a family and pick the best across families.
- Persist the leaderboard and the chosen configuration.
"""

from .selection_engine import (
    SelectionEngine,
    TuningResult,
    ConfigScore,
    aggregate_family,
    select_best,
    ranking_key,
)

__all__ = ['SelectionEngine', 'TuningResult', 'ConfigScore', 'aggregate_family', 'select_best', 'ranking_key']
