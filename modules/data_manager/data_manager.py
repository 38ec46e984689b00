import pandas as pd
import numpy as np
import os
import logging
from pathlib import Path
from typing import Dict, List, Optional

from utils.exceptions import DataValidationError
from utils.file_io import save_dataframe
from utils.error_handling import handle_engine_errors
from utils import constants

class DataManager:
    """
    Manages loading, validation, and preparation of the raw match records.

    - Raw export columns are renamed to the pipeline schema (data.column_map).
    - ECO codes can be collapsed to their volume letter (data.opening_code_prefix).
    - Rare opening codes can be dropped (data.top_opening_codes).
    - Every record gets its identity (row_index) once, at load time.
    """

    def __init__(self, config: dict, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.data: Optional[pd.DataFrame] = None
        self.base_dir = Path(self.config.get('outputs', {}).get('base_results_dir', 'results'))

        data_cfg = self.config.get('data', {})
        self.numeric_columns: List[str] = list(data_cfg.get('numeric_predictors', constants.NUMERIC_PREDICTORS))
        self.categorical_columns: List[str] = list(data_cfg.get('categorical_predictors', constants.CATEGORICAL_PREDICTORS))
        self.response: str = data_cfg.get('response', constants.LABEL)
        self.column_map: Dict[str, str] = data_cfg.get('column_map', constants.DEFAULT_COLUMN_MAP)

    @property
    def required_columns(self) -> List[str]:
        return self.numeric_columns + self.categorical_columns + [self.response]

    @handle_engine_errors("Data Management")
    def execute(self, run_id: str) -> pd.DataFrame:
        """
        Execute complete data loading and validation workflow.

        Args:
            run_id: Unique identifier for the run.

        Returns:
            pd.DataFrame: The validated dataset, indexed by row_index.
        """
        self.logger.info("Starting Data Manager execution...")

        output_dir = self.base_dir / constants.DATA_INTEGRITY_DIR
        output_dir.mkdir(parents=True, exist_ok=True)
        excel_copy = self.config.get("outputs", {}).get("save_excel_copy", False)

        self.load_data()
        self.rename_columns()
        self.validate_columns()
        stats_df = self.validate_missing()
        self.coerce_types()

        prefix = self.config['data'].get('opening_code_prefix')
        if prefix:
            self.truncate_levels(constants.OPENING_CODE, int(prefix))

        top_k = self.config['data'].get('top_opening_codes')
        if top_k:
            self.keep_top_levels(constants.OPENING_CODE, int(top_k))

        self.report_class_balance()

        save_path = output_dir / constants.VALIDATED_DATA_FILE
        save_dataframe(self.data, save_path, excel_copy=excel_copy, index=True)
        self.logger.info(f"Saved validated data to {save_path}")

        save_dataframe(stats_df, output_dir / constants.COLUMN_STATS_FILE, excel_copy=excel_copy, index=False)
        return self.data

    def load_data(self) -> pd.DataFrame:
        """
        Load data from file path specified in config with strict path checks.
        """
        file_path_str = self.config['data']['file_path']
        absolute_file_path = self._resolve_path(file_path_str)

        self.logger.info(f"Loading data from {absolute_file_path}")

        ext = absolute_file_path.suffix.lower()
        try:
            if ext in ('.xlsx', '.xls'):
                self.data = pd.read_excel(absolute_file_path)
            elif ext == '.csv':
                self.data = pd.read_csv(absolute_file_path)
            elif ext == '.parquet':
                self.data = pd.read_parquet(absolute_file_path)
            else:
                raise DataValidationError(f"Unsupported file extension: {ext}")
        except (OSError, ValueError) as e:
            raise DataValidationError(f"Failed to load data: {str(e)}") from e

        if self.data.empty:
            raise DataValidationError("Loaded dataframe is empty.")

        # Record identity: position in the source file, never reassigned
        self.data = self.data.reset_index(drop=True)
        self.data.index.name = constants.ROW_INDEX

        self.logger.info(f"Data loaded successfully. Shape: {self.data.shape}")
        return self.data

    def _resolve_path(self, file_path_str: str) -> Path:
        project_root = Path.cwd()
        allowed_data_dir = (project_root / "data" / "raw").resolve()

        file_path = Path(file_path_str)
        if file_path.is_absolute():
            absolute_file_path = file_path.resolve()
        else:
            absolute_file_path = (allowed_data_dir / file_path).resolve()

        # Test runs read from tmp_path, outside data/raw
        if "PYTEST_CURRENT_TEST" not in os.environ:
            try:
                absolute_file_path.relative_to(allowed_data_dir)
            except ValueError:
                raise DataValidationError(f"Security Alert: Path is outside the allowed data directory: {file_path_str}")

        if not absolute_file_path.exists():
            raise DataValidationError(f"Data file not found: {absolute_file_path}")
        return absolute_file_path

    def rename_columns(self) -> None:
        """Map raw export names onto the record schema; already-mapped frames pass through."""
        present = {raw: new for raw, new in self.column_map.items() if raw in self.data.columns and raw != new}
        if present:
            self.data = self.data.rename(columns=present)
            self.logger.debug(f"Renamed columns: {present}")

    def validate_columns(self) -> None:
        """Ensure all required columns exist."""
        if self.data is None or self.data.empty:
            raise DataValidationError("Dataframe is empty or None.")

        missing = [col for col in self.required_columns if col not in self.data.columns]
        if missing:
            raise DataValidationError(f"Missing required columns in dataset: {missing}")

        extra = [c for c in self.data.columns if c not in self.required_columns]
        if extra:
            self.logger.info(f"Dropping {len(extra)} columns not used by the pipeline.")
            self.data = self.data[self.required_columns]

    def validate_missing(self) -> pd.DataFrame:
        """Check for missing and infinite values and return per-column statistics."""
        stats = []
        bad = []
        for col in self.required_columns:
            series = self.data[col]
            nan_count = int(series.isna().sum())
            entry = {'column': col, 'dtype': str(series.dtype), 'nan_count': nan_count,
                     'n_unique': int(series.nunique())}
            if pd.api.types.is_numeric_dtype(series):
                inf_count = int(np.isinf(series.astype(float)).sum())
                entry.update({'inf_count': inf_count, 'min': float(series.min()),
                              'max': float(series.max()), 'mean': float(series.mean())})
                nan_count += inf_count
            if nan_count:
                bad.append(col)
                self.logger.warning(f"Column '{col}' contains {nan_count} missing or infinite values.")
            stats.append(entry)

        if bad:
            raise DataValidationError(f"Missing values in required columns: {bad}")
        return pd.DataFrame(stats)

    def coerce_types(self) -> None:
        """Integer numerics, string categories."""
        for col in self.numeric_columns:
            values = pd.to_numeric(self.data[col], errors='coerce')
            if values.isna().any():
                raise DataValidationError(f"Column '{col}' has non-numeric values.")
            if not np.allclose(values, np.round(values)):
                raise DataValidationError(f"Column '{col}' must hold whole numbers.")
            self.data[col] = values.round().astype('int64')
        for col in self.categorical_columns + [self.response]:
            self.data[col] = self.data[col].astype(str)

    def truncate_levels(self, column: str, prefix: int) -> None:
        """Collapse codes to their first `prefix` characters (ECO code -> ECO volume letter)."""
        before = self.data[column].nunique()
        self.data[column] = self.data[column].str[:prefix]
        self.logger.info(f"Collapsed '{column}' from {before} to {self.data[column].nunique()} levels (prefix={prefix}).")

    def keep_top_levels(self, column: str, top_k: int) -> None:
        """Keep rows whose `column` level is among the top_k most frequent (ties by name)."""
        if column not in self.data.columns:
            raise DataValidationError(f"Cannot filter on missing column '{column}'.")
        counts = self.data[column].value_counts()
        ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        keep = [level for level, _ in ordered[:top_k]]
        before = len(self.data)
        self.data = self.data[self.data[column].isin(keep)]
        if self.data.empty:
            raise DataValidationError(f"No rows left after keeping the top {top_k} '{column}' levels.")
        self.logger.info(f"Kept top {top_k} '{column}' levels {sorted(keep)}: {len(self.data)}/{before} rows.")

    def report_class_balance(self) -> None:
        counts = self.data[self.response].value_counts().sort_index()
        self.logger.info(f"Class balance ({self.response}): {counts.to_dict()}")
        configured = self.config['data'].get('classes')
        if configured:
            unknown = sorted(set(counts.index) - {str(c) for c in configured})
            if unknown:
                raise DataValidationError(f"Labels {unknown} are not among the configured classes {configured}.")
