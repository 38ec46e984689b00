"""
HPO Search Engine
=================

Responsibility:
- Grid search over (family x hyperparameter config x fold) cells.
- Stratified cross-validation with a per-fold, leakage-safe feature recipe.
- Append-only cell results with resume from the checkpoint store.
- Per-family tuning tables (mean, spread, successful folds).
"""

from .hpo_search_engine import HPOSearchEngine, ResultCollector, CellTask, run_cell

__all__ = ['HPOSearchEngine', 'ResultCollector', 'CellTask', 'run_cell']
