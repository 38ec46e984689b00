import abc
import inspect
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import sklearn
from packaging import version
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.neighbors import KNeighborsClassifier

from modules.model_factory.grid_spec import GridSpec, HyperparameterSpec
from utils.exceptions import ConfigurationError, ModelTrainingFailure

# From scikit-learn 1.8 the penalty follows l1_ratio and `penalty` is deprecated
PENALTY_FROM_L1_RATIO = version.parse(sklearn.__version__).release >= (1, 8)


class ModelFamily(abc.ABC):
    """
    Uniform train/predict contract for one classifier family.

    Subclasses declare their tunable grid and translate a hyperparameter
    assignment into a scikit-learn estimator; everything else (fitting,
    failure wrapping, probability column alignment) lives here.
    """

    name: str = ""

    def __init__(self, seed: Optional[int] = None, options: Optional[Dict[str, Any]] = None):
        self.seed = seed
        self.options = options or {}

    @abc.abstractmethod
    def default_grid(self) -> GridSpec:
        raise NotImplementedError

    @abc.abstractmethod
    def build(self, params: Dict[str, Any], n_rows: int) -> Any:
        """Return an unfitted estimator for the given hyperparameters."""
        raise NotImplementedError

    def train(self, X: np.ndarray, y: np.ndarray, params: Dict[str, Any]) -> Any:
        try:
            model = self.build(params, len(X))
            model.fit(X, y)
        except Exception as e:
            raise ModelTrainingFailure(f"{self.name} {params}: training failed: {e}") from e
        return model

    def predict_proba(self, model: Any, X: np.ndarray, classes: Sequence[str]) -> np.ndarray:
        """
        Class probabilities with columns in `classes` order.

        Classes the model never saw during training get probability 0.
        """
        try:
            proba = model.predict_proba(X)
        except Exception as e:
            raise ModelTrainingFailure(f"{self.name}: prediction failed: {e}") from e

        classes = list(classes)
        out = np.zeros((len(X), len(classes)))
        for j, cls in enumerate(model.classes_):
            if cls not in classes:
                raise ModelTrainingFailure(f"{self.name}: model predicts unknown class '{cls}'")
            out[:, classes.index(cls)] = proba[:, j]
        return out

    def _with_options(self, estimator_class, defaults: Dict[str, Any]) -> Dict[str, Any]:
        """Estimator defaults overlaid with `models.options.<family>` from the config."""
        merged = dict(defaults)
        merged.update(ModelFactory._filter_params(estimator_class, self.options))
        return merged


class NearestNeighborFamily(ModelFamily):
    name = "nearest_neighbor"

    def default_grid(self) -> GridSpec:
        return GridSpec(self.name, (
            HyperparameterSpec("neighbors", 1, 10, 10, integer=True, minimum=1),
        ))

    def build(self, params, n_rows):
        kwargs = self._with_options(KNeighborsClassifier, {'weights': 'distance'})
        kwargs['n_neighbors'] = int(params['neighbors'])
        return KNeighborsClassifier(**kwargs)


class MultinomialFamily(ModelFamily):
    """Multinomial logistic regression with a fixed zero penalty (one config)."""
    name = "multinomial"

    def default_grid(self) -> GridSpec:
        return GridSpec(self.name, ())

    def build(self, params, n_rows):
        kwargs = self._with_options(LogisticRegression, {'max_iter': 1000})
        kwargs['C'] = np.inf
        return LogisticRegression(**kwargs)


class ElasticNetFamily(ModelFamily):
    """
    Elastic-net multinomial logistic regression.

    `penalty` is the glmnet-style lambda on the mean loss; scikit-learn puts C on
    the summed loss, hence C = 1 / (penalty * n_rows). `mixture` is l1_ratio.
    """
    name = "elastic_net"

    def default_grid(self) -> GridSpec:
        return GridSpec(self.name, (
            HyperparameterSpec("penalty", -10, 0, 10, scale="log10", minimum=0),
            HyperparameterSpec("mixture", 0, 1, 10, minimum=0, maximum=1),
        ))

    def build(self, params, n_rows):
        kwargs = self._with_options(LogisticRegression, {'max_iter': 1000, 'tol': 1e-3})
        kwargs.update({
            'solver': 'saga',
            'C': 1.0 / (float(params['penalty']) * max(n_rows, 1)),
            'l1_ratio': float(params['mixture']),
            'random_state': self.seed,
        })
        if not PENALTY_FROM_L1_RATIO:
            kwargs['penalty'] = 'elasticnet'
        return LogisticRegression(**kwargs)


class RandomForestFamily(ModelFamily):
    name = "random_forest"

    def default_grid(self) -> GridSpec:
        return GridSpec(self.name, (
            HyperparameterSpec("mtry", 1, 5, 10, integer=True, minimum=1),
            HyperparameterSpec("trees", 200, 500, 10, integer=True, minimum=1),
            HyperparameterSpec("min_n", 10, 20, 10, integer=True, minimum=2),
        ))

    def build(self, params, n_rows):
        kwargs = self._with_options(RandomForestClassifier, {'n_jobs': 1})
        kwargs.update({
            'max_features': int(params['mtry']),
            'n_estimators': int(params['trees']),
            'min_samples_split': int(params['min_n']),
            'random_state': self.seed,
        })
        return RandomForestClassifier(**kwargs)


class ModelFactory:
    """
    Registry of classifier families with a unified interface.
    Registry order is also the final tiebreak when two families score equally.
    """

    FAMILIES = {
        NearestNeighborFamily.name: NearestNeighborFamily,
        MultinomialFamily.name: MultinomialFamily,
        ElasticNetFamily.name: ElasticNetFamily,
        RandomForestFamily.name: RandomForestFamily,
    }

    @classmethod
    def create(cls, family: str, seed: Optional[int] = None, options: Optional[Dict[str, Any]] = None) -> ModelFamily:
        """
        Create and return a family instance.
        """
        if family not in cls.FAMILIES:
            raise ConfigurationError(f"Unknown model family: {family}. Available: {cls.get_available_models()}")
        return cls.FAMILIES[family](seed=seed, options=options)

    @classmethod
    def get_available_models(cls) -> List[str]:
        """Return list of all supported family tags."""
        return list(cls.FAMILIES.keys())

    @classmethod
    def family_order(cls, family: str) -> int:
        names = cls.get_available_models()
        return names.index(family) if family in names else len(names)

    @classmethod
    def grids_from_config(cls, config: Dict[str, Any]) -> Dict[str, GridSpec]:
        """
        Grid per enabled family, with `grids.<family>` overrides applied.

        Raises:
            ConfigurationError: unknown family or invalid grid range.
        """
        families = config.get('models', {}).get('families') or cls.get_available_models()
        overrides = config.get('grids', {}) or {}
        unknown = sorted(set(overrides) - set(cls.FAMILIES))
        if unknown:
            raise ConfigurationError(f"Grid overrides for unknown families: {unknown}")

        grids = {}
        for family in families:
            grid = cls.create(family).default_grid().with_overrides(overrides.get(family))
            grid.validate()
            grids[family] = grid
        return grids

    @staticmethod
    def _filter_params(model_class, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Remove parameters from `params` that are not accepted by `model_class` constructor.
        """
        sig = inspect.signature(model_class.__init__)

        valid_keys = [
            p.name for p in sig.parameters.values()
            if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
        ]

        # Always allow **kwargs if the model supports it
        has_kwargs = any(p.kind == p.VAR_KEYWORD for p in sig.parameters.values())

        if has_kwargs:
            return params

        return {k: v for k, v in params.items() if k in valid_keys}
