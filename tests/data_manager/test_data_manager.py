import pytest
import numpy as np
import pandas as pd
from pathlib import Path

from modules.data_manager import DataManager
from utils.exceptions import DataValidationError
from utils import constants

RAW_NAMES = {new: raw for raw, new in constants.DEFAULT_COLUMN_MAP.items()}


def raw_export(make_frame, n=200, extra_codes=0):
    """Match records under the raw export column names, plus unused columns."""
    df = make_frame(n).reset_index(drop=True).rename(columns=RAW_NAMES)
    df['id'] = [f"g{i}" for i in range(len(df))]
    df['rated'] = True
    if extra_codes:
        df.loc[:extra_codes - 1, 'opening_eco'] = [f"E{i:02d}" for i in range(extra_codes)]
    return df


@pytest.fixture
def data_config(tmp_path):
    def _make(df, name="games.csv"):
        path = tmp_path / name
        if name.endswith(".csv"):
            df.to_csv(path, index=False)
        elif name.endswith(".parquet"):
            df.to_parquet(path, index=False)
        else:
            df.to_excel(path, index=False)
        return {
            'data': {
                'file_path': str(path),
                'numeric_predictors': list(constants.NUMERIC_PREDICTORS),
                'categorical_predictors': list(constants.CATEGORICAL_PREDICTORS),
                'response': constants.LABEL,
                'classes': ['black', 'draw', 'white'],
                'top_opening_codes': 5,
            },
            'outputs': {'base_results_dir': str(tmp_path / "results")},
        }
    return _make


@pytest.mark.parametrize("name", ["games.csv", "games.parquet", "games.xlsx"])
def test_load_and_validate(data_config, match_frame_factory, mock_logger, name):
    config = data_config(raw_export(match_frame_factory), name)
    df = DataManager(config, mock_logger).execute("test_run")

    assert list(df.columns) == list(constants.NUMERIC_PREDICTORS) + [constants.OPENING_CODE, constants.LABEL]
    assert df.index.name == constants.ROW_INDEX
    assert df[constants.RATING_A].dtype == np.int64
    assert len(df) == 200

    out = Path(config['outputs']['base_results_dir']) / constants.DATA_INTEGRITY_DIR
    assert (out / constants.VALIDATED_DATA_FILE).exists()
    stats = pd.read_parquet(out / constants.COLUMN_STATS_FILE)
    assert set(stats['column']) == set(df.columns)


def test_rare_opening_codes_dropped_keeping_row_identity(data_config, match_frame_factory, mock_logger):
    config = data_config(raw_export(match_frame_factory, extra_codes=3))
    df = DataManager(config, mock_logger).execute("test_run")

    assert df[constants.OPENING_CODE].nunique() == 5
    assert not df[constants.OPENING_CODE].str.startswith("E").any()
    # identities are the original file positions
    assert list(df.index) == list(range(3, 200))


def test_missing_file(data_config, match_frame_factory, mock_logger):
    config = data_config(raw_export(match_frame_factory))
    config['data']['file_path'] = str(Path(config['data']['file_path']).with_name("nope.csv"))
    with pytest.raises(DataValidationError, match="not found"):
        DataManager(config, mock_logger).execute("test_run")


def test_missing_column(data_config, match_frame_factory, mock_logger):
    config = data_config(raw_export(match_frame_factory).drop(columns=['opening_ply']))
    with pytest.raises(DataValidationError, match="Missing required columns"):
        DataManager(config, mock_logger).execute("test_run")


def test_missing_values(data_config, match_frame_factory, mock_logger):
    df = raw_export(match_frame_factory)
    df.loc[5, 'white_rating'] = np.nan
    config = data_config(df)
    with pytest.raises(DataValidationError, match="Missing values"):
        DataManager(config, mock_logger).execute("test_run")


def test_unknown_label(data_config, match_frame_factory, mock_logger):
    df = raw_export(match_frame_factory)
    df.loc[0, 'winner'] = 'aborted'
    config = data_config(df)
    config['data']['top_opening_codes'] = None
    with pytest.raises(DataValidationError, match="aborted"):
        DataManager(config, mock_logger).execute("test_run")


def test_unsupported_extension(data_config, match_frame_factory, mock_logger, tmp_path):
    config = data_config(raw_export(match_frame_factory))
    path = tmp_path / "games.json"
    path.write_text("{}")
    config['data']['file_path'] = str(path)
    with pytest.raises(DataValidationError, match="Unsupported file extension"):
        DataManager(config, mock_logger).execute("test_run")


def test_keep_top_levels_breaks_ties_by_name(mock_logger):
    dm = DataManager({'data': {}}, mock_logger)
    dm.data = pd.DataFrame({'c': ['b', 'b', 'a', 'a', 'c']})
    dm.keep_top_levels('c', 1)
    assert set(dm.data['c']) == {'a'}


def test_opening_codes_collapse_to_volume_letter(data_config, match_frame_factory, mock_logger):
    config = data_config(raw_export(match_frame_factory, extra_codes=3))
    config['data']['top_opening_codes'] = None
    config['data']['opening_code_prefix'] = 1
    df = DataManager(config, mock_logger).execute("test_run")

    assert sorted(df[constants.OPENING_CODE].unique()) == ['A', 'B', 'C', 'D', 'E']
    assert len(df) == 200
