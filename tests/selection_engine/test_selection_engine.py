import json
import pytest
import numpy as np
import pandas as pd
from pathlib import Path

from modules.model_factory import ModelConfig
from modules.selection_engine import (
    ConfigScore,
    SelectionEngine,
    TuningResult,
    aggregate_family,
    select_best,
)
from utils.exceptions import ModelTrainingFailure, PipelineStateError
from utils import constants


def knn(k):
    return ModelConfig('nearest_neighbor', (('neighbors', k),))


def records(config, aucs):
    out = []
    for fold, auc in enumerate(aucs, start=1):
        status = 'success' if auc is not None else 'training_failure'
        out.append({'family': config.family, 'config_hash': config.config_hash, 'fold': fold,
                    'status': status, 'roc_auc': auc})
    return out


class TestAggregateFamily:

    def test_mean_and_sample_std(self):
        config = knn(3)
        result = aggregate_family('nearest_neighbor', [config], records(config, [0.6, 0.7, 0.8]), k=3)
        score = result.scores[config]

        assert score.mean == pytest.approx(0.7)
        assert score.std == pytest.approx(np.std([0.6, 0.7, 0.8], ddof=1))
        assert (score.n_success, score.n_failed) == (3, 0)

    def test_single_success_has_zero_std(self):
        config = knn(3)
        result = aggregate_family('nearest_neighbor', [config], records(config, [0.6, None, None]), k=3)
        score = result.scores[config]
        assert score.std == 0.0 and score.n_success == 1 and score.n_failed == 2

    def test_all_failed_is_undefined_and_last(self):
        good, bad = knn(3), knn(5)
        cells = records(good, [0.6, 0.6]) + records(bad, [None, None])
        result = aggregate_family('nearest_neighbor', [bad, good], cells, k=2)

        assert not result.scores[bad].defined
        assert np.isnan(result.scores[bad].mean)
        assert [c for c, _ in result.ranked()] == [good, bad]

    def test_waits_for_every_fold(self):
        config = knn(3)
        with pytest.raises(PipelineStateError, match=r"folds \[3\]"):
            aggregate_family('nearest_neighbor', [config], records(config, [0.6, 0.7]), k=3)

    def test_other_family_records_ignored(self):
        config = knn(3)
        other = ModelConfig('multinomial', ())
        cells = records(config, [0.6, 0.7]) + records(other, [0.9, 0.9])
        result = aggregate_family('nearest_neighbor', [config], cells, k=2)
        assert list(result.scores) == [config]


class TestRanking:

    def test_mean_then_std_then_simplicity(self):
        scores = {
            knn(9): ConfigScore(0.70, 0.01, 5, 0),
            knn(7): ConfigScore(0.70, 0.01, 5, 0),
            knn(5): ConfigScore(0.70, 0.05, 5, 0),
            knn(3): ConfigScore(0.72, 0.09, 5, 0),
        }
        ranked = [c for c, _ in TuningResult('nearest_neighbor', scores).ranked()]
        assert ranked == [knn(3), knn(7), knn(9), knn(5)]

    def test_scores_are_read_only(self):
        result = TuningResult('nearest_neighbor', {knn(3): ConfigScore(0.7, 0.0, 1, 0)})
        with pytest.raises(TypeError):
            result.scores[knn(5)] = ConfigScore(0.8, 0.0, 1, 0)

    def test_to_frame_columns(self):
        result = TuningResult('nearest_neighbor', {knn(3): ConfigScore(0.7, 0.01, 5, 0)})
        frame = result.to_frame()
        assert list(frame.columns) == ['family', 'config', 'config_hash', 'params', 'param_neighbors',
                                       'mean_roc_auc', 'std_roc_auc', 'n_success', 'n_failed', 'rank']
        assert json.loads(frame.loc[0, 'params']) == {'neighbors': 3}


class TestSelectBest:

    def test_global_argmax(self):
        rf = ModelConfig('random_forest', (('mtry', 2), ('trees', 200), ('min_n', 10)))
        results = {
            'nearest_neighbor': TuningResult('nearest_neighbor', {knn(5): ConfigScore(0.66, 0.01, 5, 0)}),
            'random_forest': TuningResult('random_forest', {rf: ConfigScore(0.74, 0.02, 5, 0)}),
        }
        assert select_best(results) == rf

    def test_exact_tie_prefers_simpler_config(self):
        mlr = ModelConfig('multinomial', ())
        results = {
            'nearest_neighbor': TuningResult('nearest_neighbor', {knn(5): ConfigScore(0.7, 0.01, 5, 0)}),
            'multinomial': TuningResult('multinomial', {mlr: ConfigScore(0.7, 0.01, 5, 0)}),
        }
        assert select_best(results) == mlr

    def test_skips_families_without_defined_scores(self):
        mlr = ModelConfig('multinomial', ())
        results = {
            'multinomial': TuningResult('multinomial', {mlr: ConfigScore(np.nan, np.nan, 0, 5)}),
            'nearest_neighbor': TuningResult('nearest_neighbor', {knn(5): ConfigScore(0.6, 0.01, 5, 0)}),
        }
        assert select_best(results) == knn(5)

    def test_every_family_failed(self):
        mlr = ModelConfig('multinomial', ())
        results = {'multinomial': TuningResult('multinomial', {mlr: ConfigScore(np.nan, np.nan, 0, 5)})}
        with pytest.raises(ModelTrainingFailure):
            select_best(results)


class TestSelectionEngine:

    def test_execute_writes_leaderboard_and_best(self, pipeline_config, mock_logger):
        mlr = ModelConfig('multinomial', ())
        results = {
            'nearest_neighbor': TuningResult('nearest_neighbor', {
                knn(3): ConfigScore(0.61, 0.02, 3, 0),
                knn(5): ConfigScore(0.65, 0.02, 3, 0),
            }),
            'multinomial': TuningResult('multinomial', {mlr: ConfigScore(0.70, 0.03, 3, 0)}),
        }
        best = SelectionEngine(pipeline_config, mock_logger).execute(results, "test_run")
        assert best == mlr

        out = Path(pipeline_config['outputs']['base_results_dir']) / constants.MODEL_SELECTION_DIR
        board = pd.read_parquet(out / constants.LEADERBOARD_FILE)
        assert list(board['family']) == ['multinomial', 'nearest_neighbor']
        assert list(board['rank']) == [1, 2]
        assert board.loc[1, 'config'] == 'nearest_neighbor(neighbors=5)'

        saved = json.loads((out / constants.BEST_CONFIG_FILE).read_text())
        assert saved['family'] == 'multinomial'
        assert saved['params'] == {}
        assert saved['cv_mean_roc_auc'] == pytest.approx(0.70)
