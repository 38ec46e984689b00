import logging
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from utils import constants

OPENING_CODES = ["A00", "B00", "C20", "C50", "D00"]


def make_match_frame(n: int = 300, seed: int = 0) -> pd.DataFrame:
    """
    Synthetic match records with the pipeline schema.

    The outcome depends on the rating difference, so every classifier family
    scores clearly above chance; draws are the minority class.
    """
    rng = np.random.default_rng(seed)
    rating_a = rng.integers(1200, 2200, n)
    rating_b = rng.integers(1200, 2200, n)
    strength = (rating_a - rating_b) / 200.0 + rng.normal(0, 1.0, n)
    label = np.where(strength > 0.8, "white", np.where(strength < -0.8, "black", "draw"))

    df = pd.DataFrame({
        constants.TURN_COUNT: rng.integers(10, 120, n),
        constants.RATING_A: rating_a,
        constants.RATING_B: rating_b,
        constants.OPENING_CODE: rng.choice(OPENING_CODES, n),
        constants.OPENING_PLY: rng.integers(1, 12, n),
        constants.LABEL: label,
    })
    df.index.name = constants.ROW_INDEX
    return df


@pytest.fixture
def mock_logger():
    return MagicMock(spec=logging.Logger)


@pytest.fixture
def match_df():
    return make_match_frame()


@pytest.fixture
def pipeline_config(tmp_path):
    """Small grids and a single worker so a full search stays fast."""
    return {
        'data': {
            'numeric_predictors': list(constants.NUMERIC_PREDICTORS),
            'categorical_predictors': list(constants.CATEGORICAL_PREDICTORS),
            'response': constants.LABEL,
            'classes': ['black', 'draw', 'white'],
        },
        'splitting': {'train_proportion': 0.8, 'stratify_column': constants.LABEL, 'seed': 42},
        'cross_validation': {'folds': 3, 'stratify_column': constants.OPENING_CODE},
        'models': {'families': ['nearest_neighbor', 'multinomial', 'elastic_net', 'random_forest']},
        'grids': {
            'nearest_neighbor': {'neighbors': {'range': [1, 5], 'levels': 3}},
            'elastic_net': {
                'penalty': {'range': [-4, -1], 'levels': 2},
                'mixture': {'range': [0, 1], 'levels': 2},
            },
            'random_forest': {
                'mtry': {'range': [1, 2], 'levels': 2},
                'trees': {'range': [10, 20], 'levels': 2},
                'min_n': {'range': [2, 4], 'levels': 1},
            },
        },
        'execution': {'n_jobs': 1, 'backend': 'loky', 'enable_cache': True,
                      'cache_root': str(tmp_path / "cache"), 'log_every_cells': 10},
        'resources': {'max_hpo_configs': 100},
        'outputs': {'base_results_dir': str(tmp_path / "results"), 'save_excel_copy': False, 'save_models': True},
        'logging': {'level': 'INFO', 'log_to_console': False, 'log_to_file': False},
    }


@pytest.fixture
def match_frame_factory():
    return make_match_frame
