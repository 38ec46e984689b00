"""
Feature Recipe Module
=====================

Responsibility:
- Fit dummy encoding and standardisation statistics on a training subset.
- Apply the frozen state to any frame with an identical column layout.
"""

from .feature_recipe import FeatureRecipe, RecipeState, NumericStat

__all__ = ['FeatureRecipe', 'RecipeState', 'NumericStat']
