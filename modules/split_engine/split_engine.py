"""
SplitEngine for the Match Outcome Pipeline.

This module partitions the validated dataset into a training partition and a
held-out test partition. Every label class is shuffled and cut separately so
that each class keeps (up to rounding) the target training proportion. The
test partition is wrapped so that it can be handed out exactly once, to the
final evaluation.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from modules.base.base_engine import BaseEngine
from utils.cache import dataframe_version
from utils.checkpoint_store import CheckpointStore
from utils.error_handling import handle_engine_errors
from utils.exceptions import ConfigurationError, LeakageError
from utils.file_io import save_dataframe
from utils import constants


@dataclass(frozen=True, eq=False)
class Partition:
    """
    Disjoint Train/Test subsets of a dataset.

    `test` is private: read it through `claim_test()`, which succeeds once.
    """
    train: pd.DataFrame
    _test: pd.DataFrame = field(repr=False)
    stratify_column: str
    proportion: float
    seed: int
    _claims: List[str] = field(default_factory=list, repr=False, compare=False)

    @property
    def test_index(self) -> pd.Index:
        return self._test.index

    @property
    def test_claimed(self) -> bool:
        return bool(self._claims)

    def claim_test(self, claimant: str = "final_evaluation") -> pd.DataFrame:
        """Release the held-out rows. A second claim raises LeakageError."""
        if self._claims:
            raise LeakageError(
                f"Test partition already claimed by '{self._claims[0]}'; '{claimant}' may not read it again."
            )
        self._claims.append(claimant)
        return self._test


def partition_dataset(df: pd.DataFrame, stratify_column: str, proportion: float, seed: int) -> Partition:
    """
    Stratified train/test split.

    Each class's row labels are permuted with a seeded generator (classes in
    sorted order) and cut at floor(p * n + 0.5); train slices are concatenated
    in class order, likewise the test slices.

    Raises:
        ConfigurationError: p outside (0, 1), unknown column, empty frame, or a
            class with fewer than 2 members.
    """
    if not (0.0 < proportion < 1.0):
        raise ConfigurationError(f"train proportion must be between 0 and 1 (exclusive), got {proportion}")
    if stratify_column not in df.columns:
        raise ConfigurationError(f"Stratification column '{stratify_column}' not found.")
    if df.empty:
        raise ConfigurationError("Cannot partition an empty dataset.")

    counts = df[stratify_column].value_counts()
    too_small = counts[counts < 2]
    if not too_small.empty:
        raise ConfigurationError(
            f"Classes with fewer than 2 members cannot be stratified: {too_small.to_dict()}"
        )

    rng = np.random.default_rng(seed)
    train_parts, test_parts = [], []
    for label in sorted(counts.index, key=str):
        members = df.index[df[stratify_column] == label].to_numpy()
        shuffled = members[rng.permutation(len(members))]
        cut = int(np.floor(proportion * len(members) + 0.5))
        train_parts.append(shuffled[:cut])
        test_parts.append(shuffled[cut:])

    train_idx = np.concatenate(train_parts)
    test_idx = np.concatenate(test_parts)
    return Partition(
        train=df.loc[train_idx],
        _test=df.loc[test_idx],
        stratify_column=stratify_column,
        proportion=proportion,
        seed=seed,
    )


class SplitEngine(BaseEngine):
    """
    Runs the stratified partitioning step of the pipeline and persists it.

    The partition is content-addressed by (dataset version, stratification
    column, proportion, seed) and reloaded from the checkpoint store on reruns.
    Only the training rows are written to the results directory; the test
    partition is recorded by index so no downstream step can read it early.
    """

    def __init__(self, config: dict, logger: logging.Logger):
        super().__init__(config, logger)
        split_cfg = self.config.get('splitting', {})
        self.stratify_column = split_cfg.get('stratify_column', constants.LABEL)
        self.proportion = split_cfg.get('train_proportion', 0.8)

    def _get_engine_directory_name(self) -> str:
        return constants.MASTER_SPLITS_DIR

    @handle_engine_errors("Data Splitting")
    def execute(self, df: pd.DataFrame, run_id: str) -> Partition:
        """
        Execute the splitting workflow.

        Returns:
            Partition
        """
        self.logger.info("Starting Split Engine execution...")
        seed = self._seed('split')

        store = None
        if self._cache_enabled():
            store = CheckpointStore.for_inputs(
                self._cache_root(),
                stage="partition",
                dataset=dataframe_version(df),
                stratify_column=self.stratify_column,
                proportion=self.proportion,
                seed=seed,
            )
            cached = self._try_load_cached_split(store, df)
            if cached is not None:
                self.logger.info(f"Loaded cached partition (key={store.key}).")
                self._save_split(cached, df)
                return cached

        partition = partition_dataset(df, self.stratify_column, self.proportion, seed)

        if store is not None:
            self._store_cached_split(store, partition)

        self._save_split(partition, df)
        self.logger.info(
            f"Partition saved: Train={len(partition.train)}, Test={len(partition.test_index)} "
            f"(stratified on '{self.stratify_column}', p={self.proportion}, seed={seed})"
        )
        return partition

    def _try_load_cached_split(self, store: CheckpointStore, df: pd.DataFrame) -> Optional[Partition]:
        train_idx = store.load_frame("partition_train")
        test_idx = store.load_frame("partition_test")
        if train_idx is None or test_idx is None:
            return None
        try:
            train = df.loc[train_idx[constants.ROW_INDEX].to_numpy()]
            test = df.loc[test_idx[constants.ROW_INDEX].to_numpy()]
        except KeyError:
            self.logger.warning("Cached partition does not match the dataset index; recomputing.")
            return None
        return Partition(
            train=train,
            _test=test,
            stratify_column=self.stratify_column,
            proportion=self.proportion,
            seed=self._seed('split'),
        )

    def _store_cached_split(self, store: CheckpointStore, partition: Partition) -> None:
        store.save_frame("partition_train", pd.DataFrame({constants.ROW_INDEX: partition.train.index}), index=False)
        store.save_frame("partition_test", pd.DataFrame({constants.ROW_INDEX: partition.test_index}), index=False)

    def _save_split(self, partition: Partition, df: pd.DataFrame) -> None:
        save_dataframe(partition.train, self.output_dir / constants.TRAIN_SPLIT_FILE, excel_copy=self.excel_copy, index=True)
        save_dataframe(
            pd.DataFrame({constants.ROW_INDEX: partition.test_index}),
            self.output_dir / constants.TEST_INDEX_FILE,
            excel_copy=False,
            index=False,
        )
        self._generate_balance_report(partition, df)

    def _generate_balance_report(self, partition: Partition, df: pd.DataFrame) -> pd.DataFrame:
        """Save a report showing per-class train fraction against the target proportion."""
        col = partition.stratify_column
        total_counts = df[col].value_counts()
        train_counts = partition.train[col].value_counts()

        report = []
        for label in sorted(total_counts.index, key=str):
            total = int(total_counts[label])
            n_train = int(train_counts.get(label, 0))
            report.append({
                'class': str(label),
                'total': total,
                'train': n_train,
                'test': total - n_train,
                'train_fraction': n_train / total,
                'target_proportion': partition.proportion,
                'deviation': n_train / total - partition.proportion,
            })

        report_df = pd.DataFrame(report)
        save_dataframe(report_df, self.output_dir / constants.SPLIT_BALANCE_FILE, excel_copy=self.excel_copy, index=False)
        return report_df
