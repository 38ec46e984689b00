"""
Metric aggregation and best-configuration selection.

Per-cell ROC-AUC values are reduced to one (mean, sd, successful folds) score
per configuration. Configurations are ranked by mean (descending), then by
lower spread, then by simplicity; configurations with no successful fold rank
last. The winner across families is the best of every family's best entry.
"""
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from modules.base.base_engine import BaseEngine
from modules.model_factory import ModelConfig, ModelFactory
from utils.error_handling import handle_engine_errors
from utils.exceptions import ModelTrainingFailure, PipelineStateError
from utils.file_io import save_dataframe, save_json
from utils import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigScore:
    mean: float
    std: float
    n_success: int
    n_failed: int

    @property
    def defined(self) -> bool:
        return self.n_success > 0 and bool(np.isfinite(self.mean))


def ranking_key(config: ModelConfig, score: ConfigScore) -> Tuple:
    """Sort key: defined first, higher mean, lower sd, simpler config."""
    if not score.defined:
        return (1, 0.0, np.inf, config.simplicity_key())
    std = score.std if np.isfinite(score.std) else np.inf
    return (0, -score.mean, std, config.simplicity_key())


@dataclass(frozen=True, eq=False)
class TuningResult:
    """Read-only mapping ModelConfig -> ConfigScore for one family."""
    family: str
    scores: Mapping[ModelConfig, ConfigScore]

    def __post_init__(self):
        object.__setattr__(self, 'scores', MappingProxyType(dict(self.scores)))

    def ranked(self) -> List[Tuple[ModelConfig, ConfigScore]]:
        return sorted(self.scores.items(), key=lambda item: ranking_key(*item))

    def best(self) -> Optional[Tuple[ModelConfig, ConfigScore]]:
        ranked = self.ranked()
        if not ranked or not ranked[0][1].defined:
            return None
        return ranked[0]

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for rank, (config, score) in enumerate(self.ranked(), start=1):
            row = {
                'family': self.family,
                'config': config.label(),
                'config_hash': config.config_hash,
                'params': json.dumps(config.as_dict(), sort_keys=True),
            }
            row.update({f"param_{k}": v for k, v in config.params})
            row.update({
                'mean_roc_auc': score.mean,
                'std_roc_auc': score.std,
                'n_success': score.n_success,
                'n_failed': score.n_failed,
                'rank': rank,
            })
            rows.append(row)
        return pd.DataFrame(rows)


def summarize_scores(values: Sequence[float], n_failed: int) -> ConfigScore:
    values = np.asarray([v for v in values if v is not None], dtype=float)
    if values.size == 0:
        return ConfigScore(mean=np.nan, std=np.nan, n_success=0, n_failed=n_failed)
    std = float(np.std(values, ddof=1)) if values.size > 1 else 0.0
    return ConfigScore(mean=float(np.mean(values)), std=std, n_success=int(values.size), n_failed=n_failed)


def aggregate_family(family: str, configurations: Sequence[ModelConfig],
                     records: Iterable[Dict[str, Any]], k: int) -> TuningResult:
    """
    Reduce cell records to one score per configuration.

    Acts as a barrier: every configuration must have a record (success or
    recorded failure) for each of its k folds.

    Raises:
        PipelineStateError: a configuration is missing fold records.
    """
    by_hash: Dict[str, Dict[int, Dict[str, Any]]] = {}
    for record in records:
        if record['family'] != family:
            continue
        by_hash.setdefault(record['config_hash'], {})[int(record['fold'])] = record

    scores = {}
    for config in configurations:
        folds = by_hash.get(config.config_hash, {})
        missing = sorted(set(range(1, k + 1)) - set(folds))
        if missing:
            raise PipelineStateError(f"{config.label()}: no result yet for folds {missing}")
        ok = [r['roc_auc'] for r in folds.values() if r['status'] == 'success']
        scores[config] = summarize_scores(ok, n_failed=k - len(ok))
        if not ok:
            logger.warning(f"{config.label()}: every fold failed; ranked last.")
    return TuningResult(family, scores)


def select_best(results: Mapping[str, TuningResult]) -> ModelConfig:
    """
    Global argmax over each family's best entry.

    Raises:
        ModelTrainingFailure: no configuration in any family has a defined mean.
    """
    candidates = []
    for family, result in results.items():
        best = result.best()
        if best is not None:
            config, score = best
            candidates.append((ranking_key(config, score) + (ModelFactory.family_order(family),), config))
    if not candidates:
        raise ModelTrainingFailure("No configuration produced a defined cross-validated score.")
    return min(candidates, key=lambda c: c[0])[1]


class SelectionEngine(BaseEngine):
    """
    Builds the cross-family leaderboard and picks the configuration to refit.
    """

    def _get_engine_directory_name(self) -> str:
        return constants.MODEL_SELECTION_DIR

    @handle_engine_errors("Model Selection")
    def execute(self, results: Mapping[str, TuningResult], run_id: str) -> ModelConfig:
        self.logger.info(f"Selecting best configuration across {len(results)} families...")

        leaderboard = self.leaderboard(results)
        save_dataframe(leaderboard, self.output_dir / constants.LEADERBOARD_FILE, excel_copy=self.excel_copy, index=False)

        best = select_best(results)
        score = results[best.family].scores[best]
        save_json({
            'run_id': run_id,
            'family': best.family,
            'params': best.as_dict(),
            'config_hash': best.config_hash,
            'cv_mean_roc_auc': score.mean,
            'cv_std_roc_auc': score.std,
            'cv_successful_folds': score.n_success,
        }, self.output_dir / constants.BEST_CONFIG_FILE)

        self.logger.info(f"Best Config Found: {best.label()} (CV ROC-AUC: {score.mean:.4f} +/- {score.std:.4f})")
        return best

    @staticmethod
    def leaderboard(results: Mapping[str, TuningResult]) -> pd.DataFrame:
        """One row per family: its best configuration, ordered like select_best."""
        rows = []
        for family, result in results.items():
            best = result.best()
            defined = sum(1 for s in result.scores.values() if s.defined)
            if best is None:
                rows.append({'family': family, 'config': None, 'mean_roc_auc': np.nan, 'std_roc_auc': np.nan,
                             'n_success': 0, 'configs_evaluated': len(result.scores), 'configs_defined': defined,
                             '_key': (1,)})
                continue
            config, score = best
            rows.append({
                'family': family,
                'config': config.label(),
                'mean_roc_auc': score.mean,
                'std_roc_auc': score.std,
                'n_success': score.n_success,
                'configs_evaluated': len(result.scores),
                'configs_defined': defined,
                '_key': ranking_key(config, score) + (ModelFactory.family_order(family),),
            })
        rows.sort(key=lambda r: r['_key'])
        for rank, row in enumerate(rows, start=1):
            row.pop('_key')
            row['rank'] = rank
        return pd.DataFrame(rows)
