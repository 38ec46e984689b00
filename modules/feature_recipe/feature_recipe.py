"""
Leakage-safe feature preprocessing.

A FeatureRecipe describes *which* columns are transformed; fitting it on a
training subset produces a frozen RecipeState holding the dummy-encoding table
and the standardisation statistics. Applying a state never looks at the
statistics of the frame being transformed.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from utils.cache import fingerprint
from utils.exceptions import (
    DataValidationError,
    DegenerateFeatureError,
    UnseenCategoryError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NumericStat:
    name: str
    mean: float
    std: float


@dataclass(frozen=True)
class RecipeState:
    """
    Immutable result of fitting a FeatureRecipe.

    Attributes:
        response: Name of the label column.
        numeric: Standardisation statistics, in output column order.
        categorical: (predictor, levels) pairs; levels are sorted and the first
            one is the reference level that gets no indicator column.
        n_fit_rows: Number of rows the state was fitted on.
    """
    response: str
    numeric: Tuple[NumericStat, ...]
    categorical: Tuple[Tuple[str, Tuple[str, ...]], ...]
    n_fit_rows: int

    @property
    def feature_names(self) -> List[str]:
        names = [stat.name for stat in self.numeric]
        for predictor, levels in self.categorical:
            names.extend(f"{predictor}_{level}" for level in levels[1:])
        return names

    @property
    def predictors(self) -> List[str]:
        return [stat.name for stat in self.numeric] + [name for name, _ in self.categorical]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'response': self.response,
            'numeric': [[s.name, s.mean, s.std] for s in self.numeric],
            'categorical': [[name, list(levels)] for name, levels in self.categorical],
            'n_fit_rows': self.n_fit_rows,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RecipeState":
        return cls(
            response=payload['response'],
            numeric=tuple(NumericStat(n, float(m), float(s)) for n, m, s in payload['numeric']),
            categorical=tuple((name, tuple(levels)) for name, levels in payload['categorical']),
            n_fit_rows=int(payload['n_fit_rows']),
        )

    def checksum(self) -> str:
        """SHA-256 of the canonical JSON form; floats are written with repr precision."""
        return fingerprint(json.dumps(self.to_dict(), sort_keys=True))


class FeatureRecipe:
    """
    Dummy encoding for categorical predictors plus z-scoring for numeric ones.

    Output column order is fixed by the recipe: numeric predictors first (in the
    order given), then one indicator column per non-reference level of each
    categorical predictor.
    """

    def __init__(self, numeric_predictors: Sequence[str], categorical_predictors: Sequence[str], response: str):
        self.numeric_predictors = list(numeric_predictors)
        self.categorical_predictors = list(categorical_predictors)
        self.response = response

        overlap = set(self.numeric_predictors) & set(self.categorical_predictors)
        if overlap:
            raise DataValidationError(f"Predictors listed as both numeric and categorical: {sorted(overlap)}")
        if self.response in self.numeric_predictors + self.categorical_predictors:
            raise DataValidationError(f"Response '{self.response}' cannot also be a predictor.")

    @classmethod
    def from_config(cls, config: dict) -> "FeatureRecipe":
        data = config.get('data', {})
        return cls(
            numeric_predictors=data['numeric_predictors'],
            categorical_predictors=data['categorical_predictors'],
            response=data['response'],
        )

    def spec(self) -> Dict[str, Any]:
        """Recipe definition hashed into checkpoint keys."""
        return {
            'numeric': self.numeric_predictors,
            'categorical': self.categorical_predictors,
            'response': self.response,
            'encoding': 'dummy_drop_first_alphabetical',
            'scaling': 'zscore_ddof1',
        }

    def fit(self, train_df: pd.DataFrame) -> RecipeState:
        """
        Fit encoding table and scaling statistics on the training subset only.

        Raises:
            DataValidationError: Missing columns or missing values.
            DegenerateFeatureError: A numeric predictor is constant (or has a
                single row) so its standard deviation is zero or undefined.
        """
        self._check_columns(train_df, self.numeric_predictors + self.categorical_predictors + [self.response])
        if train_df.empty:
            raise DataValidationError("Cannot fit a recipe on an empty frame.")

        numeric = []
        for col in self.numeric_predictors:
            values = train_df[col].astype(float)
            mean = float(values.mean())
            std = float(values.std(ddof=1))
            if not np.isfinite(std) or std == 0.0:
                raise DegenerateFeatureError(
                    f"Numeric predictor '{col}' has zero variance on {len(train_df)} training rows."
                )
            numeric.append(NumericStat(col, mean, std))

        categorical = []
        for col in self.categorical_predictors:
            levels = tuple(sorted(train_df[col].astype(str).unique()))
            categorical.append((col, levels))

        return RecipeState(
            response=self.response,
            numeric=tuple(numeric),
            categorical=tuple(categorical),
            n_fit_rows=len(train_df),
        )

    def apply(self, state: RecipeState, df: pd.DataFrame, strict: bool = False) -> np.ndarray:
        """
        Transform any frame with a fitted state.

        Args:
            state: Frozen statistics from `fit`.
            df: Frame containing the state's predictor columns.
            strict: If True, a level missing from the encoding table raises
                UnseenCategoryError; otherwise it is encoded as the reference level.

        Returns:
            float64 matrix of shape (len(df), len(state.feature_names)).
        """
        self._check_columns(df, state.predictors)

        blocks = []
        for stat in state.numeric:
            blocks.append(((df[stat.name].to_numpy(dtype=float) - stat.mean) / stat.std)[:, None])

        for predictor, levels in state.categorical:
            values = df[predictor].astype(str).to_numpy()
            known = np.isin(values, levels)
            if not known.all():
                unseen = sorted(set(values[~known]))
                if strict:
                    raise UnseenCategoryError(
                        f"Levels {unseen} of '{predictor}' are absent from the fitted encoding {list(levels)}."
                    )
                logger.debug(f"{int((~known).sum())} rows with unseen '{predictor}' levels {unseen} mapped to reference '{levels[0]}'.")
            indicators = np.column_stack([values == level for level in levels[1:]]) if len(levels) > 1 \
                else np.empty((len(df), 0))
            blocks.append(indicators.astype(float))

        if not blocks:
            return np.empty((len(df), 0))
        return np.hstack(blocks)

    def apply_frame(self, state: RecipeState, df: pd.DataFrame, strict: bool = False) -> pd.DataFrame:
        """Same as `apply`, keeping the row index and output column names."""
        return pd.DataFrame(self.apply(state, df, strict=strict), index=df.index, columns=state.feature_names)

    @staticmethod
    def labels(state: RecipeState, df: pd.DataFrame) -> np.ndarray:
        """Response values as strings."""
        if state.response not in df.columns:
            raise DataValidationError(f"Response column '{state.response}' missing.")
        return df[state.response].astype(str).to_numpy()

    @staticmethod
    def _check_columns(df: pd.DataFrame, columns: Sequence[str]) -> None:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise DataValidationError(f"Missing required columns: {missing}")
        nan_cols = [c for c in columns if df[c].isna().any()]
        if nan_cols:
            raise DataValidationError(f"Missing values in columns: {nan_cols}")
