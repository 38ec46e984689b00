import pandas as pd
import numpy as np
import json
import time
import logging
import datetime
import shutil
import threading
import contextlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Tuple
from joblib import Parallel, delayed

from modules.base.base_engine import BaseEngine
from modules.evaluation_engine.metrics import check_classes_present, multiclass_roc_auc
from modules.feature_recipe import FeatureRecipe
from modules.fold_engine import FoldAssignment
from modules.model_factory import GridSpec, ModelConfig, ModelFactory
from modules.selection_engine.selection_engine import TuningResult, aggregate_family
from utils.cache import dataframe_version
from utils.checkpoint_store import CheckpointStore
from utils.error_handling import handle_engine_errors
from utils.exceptions import (
    ConfigurationError,
    DegenerateFoldError,
    ModelTrainingFailure,
    PipelineStateError,
)
from utils.file_io import NumpyEncoder, read_json, save_dataframe, save_json
from utils import constants

STATUS_SUCCESS = "success"
STATUS_DEGENERATE_FOLD = "degenerate_fold"
STATUS_TRAINING_FAILURE = "training_failure"

CellKey = Tuple[str, str, int]


# --- Helper: Safe File Locking ---
@contextlib.contextmanager
def file_lock(lock_file: Path, timeout: int = 60, poll_interval: float = 0.1):
    """
    A cross-platform file locking mechanism using a directory (atomic on most OS).
    Prevents race conditions when writing to the progress file.
    """
    lock_dir = lock_file.parent / (lock_file.name + ".lock")
    start_time = time.time()

    while True:
        try:
            lock_dir.mkdir(exist_ok=False)
            break
        except FileExistsError:
            if time.time() - start_time > timeout:
                logging.warning(f"Lock timeout expired for {lock_file}. Forcing release.")
                try:
                    shutil.rmtree(lock_dir)
                except OSError:
                    pass # Race condition on removal
            time.sleep(poll_interval)

    try:
        yield
    finally:
        try:
            shutil.rmtree(lock_dir)
        except OSError:
            pass


@dataclass(frozen=True, eq=False)
class CellTask:
    """One (config, fold) unit of work."""
    config: ModelConfig
    config_id: int
    fold_id: int
    fit_index: np.ndarray
    val_index: np.ndarray
    seed: int
    options: Dict[str, Any]

    @property
    def key(self) -> CellKey:
        return (self.config.family, self.config.config_hash, self.fold_id)


def run_cell(task: CellTask, train_df: pd.DataFrame, recipe: FeatureRecipe, classes: Sequence[str]) -> Dict[str, Any]:
    """
    Evaluate one config on one fold.

    A fresh RecipeState is fitted on the fold's fitting rows only. Fold-level
    failures (missing class in validation, estimator errors) are returned as a
    status; DegenerateFeatureError propagates.
    """
    start_time = time.time()
    entry = {
        'family': task.config.family,
        'config_id': task.config_id,
        'config_hash': task.config.config_hash,
        'params': task.config.as_dict(),
        'fold': task.fold_id,
        'status': STATUS_SUCCESS,
        'roc_auc': None,
        'error': None,
        'n_fit': len(task.fit_index),
        'n_val': len(task.val_index),
    }

    fit_df = train_df.loc[task.fit_index]
    val_df = train_df.loc[task.val_index]
    try:
        y_val = val_df[recipe.response].astype(str).to_numpy()
        check_classes_present(y_val, classes)

        state = recipe.fit(fit_df)
        X_fit = recipe.apply(state, fit_df)
        X_val = recipe.apply(state, val_df)
        y_fit = FeatureRecipe.labels(state, fit_df)

        family = ModelFactory.create(task.config.family, seed=task.seed, options=task.options)
        model = family.train(X_fit, y_fit, task.config.as_dict())
        proba = family.predict_proba(model, X_val, classes)
        entry['roc_auc'] = multiclass_roc_auc(y_val, proba, classes)
    except DegenerateFoldError as e:
        entry['status'] = STATUS_DEGENERATE_FOLD
        entry['error'] = str(e)
    except ModelTrainingFailure as e:
        entry['status'] = STATUS_TRAINING_FAILURE
        entry['error'] = str(e)

    entry['duration_sec'] = time.time() - start_time
    return entry


class ResultCollector:
    """
    Append-only, thread-safe store of cell results keyed by (family, config_hash, fold).

    Every accepted record is also appended to a JSONL progress file so an
    interrupted search can resume without recomputation.
    """

    def __init__(self, progress_file: Optional[Path] = None):
        self.progress_file = progress_file
        self._lock = threading.Lock()
        self._results: Dict[CellKey, Dict[str, Any]] = {}

    @staticmethod
    def key_of(entry: Dict[str, Any]) -> CellKey:
        return (entry['family'], entry['config_hash'], int(entry['fold']))

    def load(self) -> int:
        """Load previously persisted cells; returns how many were restored."""
        if self.progress_file is None or not self.progress_file.exists():
            return 0
        restored = 0
        with open(self.progress_file, 'r') as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    # Truncated last line from an interrupted write
                    continue
                with self._lock:
                    key = self.key_of(entry)
                    if key not in self._results:
                        self._results[key] = entry
                        restored += 1
        return restored

    def add(self, entry: Dict[str, Any]) -> bool:
        """Record a cell result; returns False if the key was already present."""
        key = self.key_of(entry)
        with self._lock:
            if key in self._results:
                return False
            self._results[key] = entry
            if self.progress_file is not None:
                with file_lock(self.progress_file):
                    with open(self.progress_file, 'a') as f:
                        f.write(json.dumps(entry, cls=NumpyEncoder) + "\n")
        return True

    def __contains__(self, key: CellKey) -> bool:
        with self._lock:
            return key in self._results

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def records(self, family: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            values = list(self._results.values())
        if family is None:
            return values
        return [r for r in values if r['family'] == family]


class HPOSearchEngine(BaseEngine):
    """
    Grid search over every (family, config, fold) cell.

    - Cells run on a joblib worker pool and share nothing but read-only inputs.
    - Results stream into a ResultCollector backed by a JSONL progress file
      inside the content-addressed checkpoint directory (resume capability).
      With caching off the file sits in the results directory and is only
      reused on an explicit resume of the same inputs.
    - A deadline (execution.max_hours) stops scheduling between cells.
    - Per-family TuningResult tables are persisted as each family completes.
    """

    def __init__(self, config: dict, logger: logging.Logger):
        super().__init__(config, logger)
        execution = self.config.get('execution', {})
        self.n_jobs = execution.get('n_jobs', -1)
        self.backend = execution.get('backend', 'loky')
        self.max_hours = execution.get('max_hours')
        self.log_every = execution.get('log_every_cells', 50)
        self.model_options = self.config.get('models', {}).get('options', {}) or {}

        # Resource Limits
        self.max_configs = self.config.get('resources', {}).get('max_hpo_configs', 1000)
        self.progress_file: Optional[Path] = None
        self.collector: Optional[ResultCollector] = None

    def _get_engine_directory_name(self) -> str:
        return constants.GRID_SEARCH_DIR

    @handle_engine_errors("Grid Search")
    def execute(self, train_df: pd.DataFrame, folds: FoldAssignment, run_id: str,
                families: Optional[Sequence[str]] = None, resume: bool = False) -> Dict[str, TuningResult]:
        """
        Run the grid search and return one TuningResult per family.

        Args:
            train_df: Training partition (never the test rows).
            folds: Fold assignment over train_df.
            run_id: Run identifier.
            families: Optional subset of the configured families.
            resume: Reuse the progress file left in the output directory by an
                earlier run with identical inputs. Content-addressed checkpoints
                (execution.enable_cache) are always reused.
        """
        self.logger.info("Starting Grid Search...")

        recipe = FeatureRecipe.from_config(self.config)
        grids = ModelFactory.grids_from_config(self.config)
        if families:
            unknown = sorted(set(families) - set(grids))
            if unknown:
                raise ConfigurationError(f"Requested families are not configured: {unknown}")
            grids = {f: g for f, g in grids.items() if f in families}

        total_configs = sum(g.size for g in grids.values())
        if total_configs > self.max_configs:
            raise ConfigurationError(
                f"Grid size ({total_configs}) exceeds safety limit ({self.max_configs}). "
                "Reduce the grids or increase 'resources.max_hpo_configs'."
            )
        self.logger.info(
            f"Grid: {total_configs} configs x {folds.k} folds = {total_configs * folds.k} cells "
            f"({', '.join(f'{f}={g.size}' for f, g in grids.items())})"
        )

        classes = self._classes(train_df, recipe.response)
        inputs = self._search_inputs(train_df, folds, recipe, grids)
        store = self._checkpoint_store(inputs)
        if store is not None:
            self.progress_file = store.directory / constants.HPO_PROGRESS_FILE
        else:
            self.progress_file = self.output_dir / constants.HPO_PROGRESS_FILE
            self._prepare_local_progress(CheckpointStore.make_key(**inputs), run_id, resume)
        self.collector = ResultCollector(self.progress_file)
        restored = self.collector.load()
        if restored:
            self.logger.info(f"Resumed grid search: {restored} cells already completed.")

        deadline = time.time() + self.max_hours * 3600 if self.max_hours else None
        results: Dict[str, TuningResult] = {}
        for family, grid in grids.items():
            tasks = self.build_tasks(grid, folds)
            pending = [t for t in tasks if t.key not in self.collector]
            self.logger.info(f"[{family}] {len(tasks)} cells, {len(pending)} pending.")

            completed = self._run_tasks(pending, train_df, recipe, classes, deadline)
            if not completed:
                self._save_cell_table()
                raise PipelineStateError(
                    f"Grid search stopped at the deadline during '{family}'. "
                    "Completed cells are checkpointed; rerun (with --resume when caching is off) to continue."
                )

            result = aggregate_family(family, grid.configurations(), self.collector.records(family), folds.k)
            self._persist_family(result, store)
            results[family] = result
            best = result.best()
            if best is not None:
                config, score = best
                self.logger.info(f"[{family}] best {config.label()} mean ROC-AUC={score.mean:.4f} (sd={score.std:.4f})")

        self._save_cell_table()
        return results

    def build_tasks(self, grid: GridSpec, folds: FoldAssignment) -> List[CellTask]:
        """Cells in grid enumeration order, folds 1..k within each config."""
        seed = self._seed('model')
        options = self.model_options.get(grid.family, {})
        splits = list(folds.splits())
        tasks = []
        for config_id, config in enumerate(grid.configurations(), start=1):
            for fold_id, fit_idx, val_idx in splits:
                tasks.append(CellTask(config, config_id, fold_id, fit_idx, val_idx, seed, options))
        return tasks

    def _run_tasks(self, tasks: List[CellTask], train_df: pd.DataFrame, recipe: FeatureRecipe,
                   classes: List[str], deadline: Optional[float]) -> bool:
        """Execute cells; returns False if the deadline interrupted the batch."""
        if not tasks:
            return True

        outputs = Parallel(n_jobs=self.n_jobs, backend=self.backend, return_as="generator")(
            delayed(run_cell)(task, train_df, recipe, classes) for task in tasks
        )
        processed = 0
        for entry in outputs:
            entry['timestamp'] = datetime.datetime.now().isoformat()
            self.collector.add(entry)
            processed += 1
            self._log_cell(entry)

            if processed % self.log_every == 0:
                self.logger.info(f"Processed {processed}/{len(tasks)} cells...")

            if deadline is not None and time.time() > deadline and processed < len(tasks):
                self.logger.warning(f"Deadline reached after {processed} cells; stopping scheduling.")
                # Closing the generator cancels the remaining cells
                outputs.close()
                return False
        return True

    def _log_cell(self, entry: Dict[str, Any]) -> None:
        status = entry['status']
        where = f"{entry['family']} config {entry['config_id']} fold {entry['fold']}"
        if status == STATUS_DEGENERATE_FOLD:
            self.logger.warning(f"Degenerate fold, excluded from mean: {where}: {entry['error']}")
        elif status == STATUS_TRAINING_FAILURE:
            self.logger.error(f"Training failure, excluded from mean: {where}: {entry['error']}")
        else:
            self.logger.debug(f"{where}: ROC-AUC={entry['roc_auc']:.4f}")

    def _classes(self, train_df: pd.DataFrame, response: str) -> List[str]:
        configured = self.config.get('data', {}).get('classes')
        if configured:
            return [str(c) for c in configured]
        return sorted(train_df[response].astype(str).unique())

    def _search_inputs(self, train_df, folds, recipe, grids) -> Dict[str, Any]:
        """Everything a cell score depends on."""
        return {
            'stage': "grid_search",
            'dataset': dataframe_version(train_df),
            'recipe': recipe.spec(),
            'grids': {f: g.to_dict() for f, g in grids.items()},
            'folds': folds.digest(),
            'model_seed': self._seed('model'),
            'options': self.model_options,
        }

    def _checkpoint_store(self, inputs: Dict[str, Any]) -> Optional[CheckpointStore]:
        if not self._cache_enabled():
            return None
        store = CheckpointStore.for_inputs(self._cache_root(), **inputs)
        self.logger.info(f"Grid search checkpoint key: {store.key}")
        return store

    def _prepare_local_progress(self, key: str, run_id: str, resume: bool) -> None:
        """
        Guard the uncached progress file, which lives in the (reusable) results
        directory rather than under a content key.

        Without `resume` any earlier progress is discarded. With `resume` it is
        kept only if it was written for the same search inputs.
        """
        key_file = self.output_dir / constants.HPO_PROGRESS_KEY_FILE
        previous = read_json(key_file).get('key') if key_file.exists() else None

        if self.progress_file.exists():
            if not resume:
                self.logger.info(f"Discarding grid search progress from a previous run: {self.progress_file}")
                self.progress_file.unlink()
            elif previous != key:
                raise PipelineStateError(
                    f"Cannot resume grid search: progress in {self.progress_file} was written for "
                    f"different inputs (key {previous}, now {key})."
                )
        save_json({'key': key, 'run_id': run_id}, key_file)

    def _persist_family(self, result: TuningResult, store: Optional[CheckpointStore]) -> None:
        table = result.to_frame()
        if store is not None:
            store.save_frame(f"{result.family}_tuning", table, index=False)
        save_dataframe(table, self.output_dir / f"{result.family}{constants.TUNING_RESULTS_SUFFIX}",
                       excel_copy=self.excel_copy, index=False)

    def _save_cell_table(self) -> None:
        if self.collector is None or not len(self.collector):
            return
        cells = pd.DataFrame(self.collector.records())
        cells['params'] = cells['params'].apply(lambda p: json.dumps(p, sort_keys=True))
        cells = cells.sort_values(['family', 'config_id', 'fold']).reset_index(drop=True)
        save_dataframe(cells, self.output_dir / "all_cells.parquet", excel_copy=self.excel_copy, index=False)
