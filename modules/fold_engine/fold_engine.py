"""
FoldEngine for the Match Outcome Pipeline.

Assigns every training record to one of k cross-validation folds, stratified
on a categorical column. Within a class the members are shuffled with a seeded
generator and dealt round-robin; the dealing position carries over from one
class to the next so the overall fold sizes stay balanced as well.
"""
import logging
from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np
import pandas as pd

from modules.base.base_engine import BaseEngine
from utils.cache import dataframe_version
from utils.checkpoint_store import CheckpointStore
from utils.error_handling import handle_engine_errors
from utils.exceptions import ConfigurationError
from utils.file_io import save_dataframe
from utils import constants


def _read_only(values: np.ndarray) -> np.ndarray:
    values = np.array(values, copy=True)
    values.flags.writeable = False
    return values


@dataclass(frozen=True, eq=False)
class FoldAssignment:
    """
    Mapping from training row label to fold id in 1..k.

    `row_index` and `fold_ids` are aligned read-only arrays.
    """
    row_index: np.ndarray
    fold_ids: np.ndarray
    k: int
    stratify_column: str
    seed: int

    def __post_init__(self):
        object.__setattr__(self, 'row_index', _read_only(self.row_index))
        object.__setattr__(self, 'fold_ids', _read_only(self.fold_ids))

    def fold_of(self, row_label) -> int:
        pos = np.flatnonzero(self.row_index == row_label)
        if len(pos) != 1:
            raise KeyError(row_label)
        return int(self.fold_ids[pos[0]])

    def fold_sizes(self) -> pd.Series:
        return pd.Series(self.fold_ids).value_counts().reindex(range(1, self.k + 1), fill_value=0)

    def splits(self) -> Iterator[Tuple[int, np.ndarray, np.ndarray]]:
        """Yield (fold_id, fit row labels, validation row labels) for folds 1..k."""
        for fold_id in range(1, self.k + 1):
            in_fold = self.fold_ids == fold_id
            yield fold_id, self.row_index[~in_fold], self.row_index[in_fold]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({constants.ROW_INDEX: self.row_index, 'fold': self.fold_ids})

    def digest(self) -> str:
        """Content hash used in downstream checkpoint keys."""
        return dataframe_version(self.to_frame())


def assign_folds(train_df: pd.DataFrame, stratify_column: str, k: int, seed: int) -> FoldAssignment:
    """
    Stratified k-fold assignment.

    Raises:
        ConfigurationError: k < 2, k larger than the number of rows, or an
            unknown stratification column.
    """
    if k < 2:
        raise ConfigurationError(f"Number of folds must be >= 2, got {k}")
    if stratify_column not in train_df.columns:
        raise ConfigurationError(f"Stratification column '{stratify_column}' not found.")
    if k > len(train_df):
        raise ConfigurationError(f"Cannot build {k} folds from {len(train_df)} training rows.")

    rng = np.random.default_rng(seed)
    labels = train_df[stratify_column].to_numpy()
    row_parts, fold_parts = [], []
    offset = 0
    for cls in sorted(pd.unique(labels), key=str):
        members = train_df.index[labels == cls].to_numpy()
        shuffled = members[rng.permutation(len(members))]
        folds = (offset + np.arange(len(shuffled))) % k + 1
        offset = (offset + len(shuffled)) % k
        row_parts.append(shuffled)
        fold_parts.append(folds)

    return FoldAssignment(
        row_index=np.concatenate(row_parts),
        fold_ids=np.concatenate(fold_parts).astype(np.int64),
        k=k,
        stratify_column=stratify_column,
        seed=seed,
    )


class FoldEngine(BaseEngine):
    """
    Builds (and caches) the fold assignment used by the grid search.
    """

    def __init__(self, config: dict, logger: logging.Logger):
        super().__init__(config, logger)
        cv_cfg = self.config.get('cross_validation', {})
        self.k = cv_cfg.get('folds', 5)
        self.stratify_column = cv_cfg.get('stratify_column', constants.OPENING_CODE)

    def _get_engine_directory_name(self) -> str:
        return constants.FOLDS_DIR

    @handle_engine_errors("Fold Assignment")
    def execute(self, train_df: pd.DataFrame, run_id: str) -> FoldAssignment:
        self.logger.info(f"Assigning {self.k} folds stratified on '{self.stratify_column}'...")
        seed = self._seed('cv')

        store = None
        if self._cache_enabled():
            store = CheckpointStore.for_inputs(
                self._cache_root(),
                stage="folds",
                train=dataframe_version(train_df),
                stratify_column=self.stratify_column,
                k=self.k,
                seed=seed,
            )
            cached = store.load_frame("fold_assignment")
            if cached is not None and set(cached[constants.ROW_INDEX]) == set(train_df.index):
                self.logger.info(f"Loaded cached fold assignment (key={store.key}).")
                assignment = FoldAssignment(
                    row_index=cached[constants.ROW_INDEX].to_numpy(),
                    fold_ids=cached['fold'].to_numpy(),
                    k=self.k,
                    stratify_column=self.stratify_column,
                    seed=seed,
                )
                self._save_assignment(assignment, train_df)
                return assignment

        assignment = assign_folds(train_df, self.stratify_column, self.k, seed)
        if store is not None:
            store.save_frame("fold_assignment", assignment.to_frame(), index=False)

        self._save_assignment(assignment, train_df)
        self.logger.info(f"Fold sizes: {assignment.fold_sizes().to_dict()}")
        return assignment

    def _save_assignment(self, assignment: FoldAssignment, train_df: pd.DataFrame) -> None:
        save_dataframe(assignment.to_frame(), self.output_dir / constants.FOLD_ASSIGNMENT_FILE, excel_copy=self.excel_copy, index=False)

        # Per-class fold sizes (rows: class, columns: fold id)
        classes = train_df.loc[assignment.row_index, assignment.stratify_column].astype(str).to_numpy()
        balance = pd.crosstab(pd.Series(classes, name='class'), pd.Series(assignment.fold_ids, name='fold'))
        balance.columns = [f"fold_{c}" for c in balance.columns]
        save_dataframe(balance.reset_index(), self.output_dir / constants.FOLD_BALANCE_FILE, excel_copy=self.excel_copy, index=False)
