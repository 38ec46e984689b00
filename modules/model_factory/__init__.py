"""
Model Factory Module
====================

Responsibility:
- Registry of classifier families behind a uniform train/predict_proba contract.
- Declarative hyperparameter grids and their deterministic enumeration.
"""

from .grid_spec import GridSpec, HyperparameterSpec, ModelConfig
from .model_factory import ModelFactory, ModelFamily

__all__ = ['ModelFactory', 'ModelFamily', 'GridSpec', 'HyperparameterSpec', 'ModelConfig']
