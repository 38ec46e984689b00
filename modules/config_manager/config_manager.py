import json
import os
import hashlib
import sys
import logging
import platform
import jsonschema
import psutil  # Required for memory awareness
from datetime import datetime
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Dict, Any, Optional

from modules.model_factory import ModelFactory
from utils.exceptions import ConfigurationError
from utils import constants

class ConfigurationManager:
    """
    Manages system configuration loading, validation, and access.
    Acts as the single source of truth and safety guard for the pipeline.

    Validation runs in three passes: JSON schema (structure and types),
    logical rules (bounds, cross-field consistency), and resource guards
    (grid size, memory).
    """

    # Default Resource Limits (Safety Guardrails)
    DEFAULT_MAX_HPO_CONFIGS = 1000  # Prevent accidental combinatoric explosions

    def __init__(self, config_path: str = "config/config.json",
                 schema_path: str = "config/schema.json"):
        """
        Initialize the ConfigurationManager.

        Args:
            config_path (str): Path to the user configuration JSON.
            schema_path (str): Path to the JSON schema definition.
        """
        self.config_path = config_path
        self.schema_path = schema_path
        self.config: Dict[str, Any] = {}
        self.schema: Dict[str, Any] = {}
        self.run_id: Optional[str] = None
        self.logger = logging.getLogger("config_manager")

    def load_and_validate(self) -> Dict[str, Any]:
        """
        Main entry point. Loads config, validates schema/logic/resources,
        and propagates seeds.

        Returns:
            Dict[str, Any]: The fully validated and hydrated configuration.

        Raises:
            ConfigurationError: If any validation step fails.
        """
        self.config = self._load_json(self.config_path)
        self.schema = self._load_json(self.schema_path)

        self._validate_schema()
        self._validate_logic()
        self._validate_resources()
        self._propagate_seeds()

        return self.config

    def apply_overrides(self, families=None) -> Dict[str, Any]:
        """Apply CLI overrides (family subset) and re-run the logical checks."""
        if families:
            self.config.setdefault('models', {})['families'] = list(families)
            self._validate_logic()
            self._validate_resources()
        return self.config

    def save_artifacts(self, output_dir: str) -> None:
        """
        Save configuration artifacts to the run directory for full reproducibility.

        Saves:
        1. config_used.json: The exact config object in memory.
        2. config_hash.txt: SHA256 hash for versioning.
        3. run_metadata.json: Environment details (Python version, platform, library versions).
        """
        config_dir = Path(output_dir) / constants.CONFIG_DIR
        config_dir.mkdir(parents=True, exist_ok=True)

        with open(config_dir / constants.CONFIG_USED_FILE, 'w') as f:
            json.dump(self.config, f, indent=2)

        config_str = json.dumps(self.config, sort_keys=True)
        config_hash = hashlib.sha256(config_str.encode()).hexdigest()

        with open(config_dir / constants.CONFIG_HASH_FILE, 'w') as f:
            f.write(config_hash)

        metadata = {
            'run_id': self.run_id,
            'start_time': datetime.now().isoformat(),
            'python_version': sys.version,
            'platform': platform.platform(),
            'config_hash': config_hash,
            'working_directory': os.getcwd(),
            'cpu_count': psutil.cpu_count(logical=True),
            'library_versions': self._library_versions(),
        }

        with open(config_dir / constants.RUN_METADATA_FILE, 'w') as f:
            json.dump(metadata, f, indent=2)

    @staticmethod
    def _library_versions() -> Dict[str, str]:
        import joblib
        import numpy
        import pandas
        import sklearn
        return {
            'numpy': numpy.__version__,
            'pandas': pandas.__version__,
            'scikit-learn': sklearn.__version__,
            'joblib': joblib.__version__,
            'jsonschema': package_version('jsonschema'),
        }

    def _load_json(self, path: str) -> Dict[str, Any]:
        """Safely load a JSON file."""
        if not os.path.exists(path):
            raise ConfigurationError(f"File not found: {path}")
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {str(e)}")

    def _validate_schema(self) -> None:
        """Validate config structure against JSON schema."""
        try:
            jsonschema.validate(instance=self.config, schema=self.schema)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(f"Schema validation failed: {e.message}")

    def _validate_logic(self) -> None:
        """Comprehensive logical validation."""
        # --- Data Section ---
        data = self.config.get('data', {})
        for key in ['file_path', 'response']:
            if not data.get(key):
                raise ConfigurationError(f"Data '{key}' must be specified and non-empty.")
        numeric = data.get('numeric_predictors', [])
        categorical = data.get('categorical_predictors', [])
        if not numeric and not categorical:
            raise ConfigurationError("At least one predictor must be configured.")
        overlap = set(numeric) & set(categorical)
        if overlap:
            raise ConfigurationError(f"Predictors listed as both numeric and categorical: {sorted(overlap)}")
        if data['response'] in numeric or data['response'] in categorical:
            raise ConfigurationError(f"Response '{data['response']}' cannot also be a predictor.")
        classes = data.get('classes')
        if classes is not None and len(set(classes)) < 2:
            raise ConfigurationError("data.classes must list at least two distinct classes.")
        top_k = data.get('top_opening_codes')
        if top_k is not None and top_k < 1:
            raise ConfigurationError(f"data.top_opening_codes must be >= 1, got {top_k}")
        prefix = data.get('opening_code_prefix')
        if prefix is not None and prefix < 1:
            raise ConfigurationError(f"data.opening_code_prefix must be >= 1, got {prefix}")

        # --- Splitting Section ---
        split = self.config.get('splitting', {})
        proportion = split.get('train_proportion', 0.8)
        if not (0.0 < proportion < 1.0):
            raise ConfigurationError(f"train_proportion must be between 0 and 1 (exclusive), got {proportion}")
        if split.get('seed', 42) < 0:
            raise ConfigurationError("Splitting seed must be non-negative.")

        # --- Cross-Validation Section ---
        cv = self.config.get('cross_validation', {})
        folds = cv.get('folds', 5)
        if folds < 2:
            raise ConfigurationError(f"cross_validation.folds must be >= 2, got {folds}.")

        # --- Models & Grids ---
        available = ModelFactory.get_available_models()
        families = self.config.get('models', {}).get('families') or available
        unknown = [f for f in families if f not in available]
        if unknown:
            raise ConfigurationError(f"Unknown model families {unknown}. Available: {available}")
        if len(set(families)) != len(families):
            raise ConfigurationError(f"Duplicate model families: {families}")
        options = self.config.get('models', {}).get('options', {}) or {}
        unknown_opts = sorted(set(options) - set(available))
        if unknown_opts:
            raise ConfigurationError(f"Model options given for unknown families: {unknown_opts}")

        # Raises ConfigurationError on bad ranges, levels, bounds or names
        ModelFactory.grids_from_config(self.config)

        # Execution validation
        execution = self.config.get('execution', {})
        if 'max_hours' in execution and execution['max_hours'] is not None and execution['max_hours'] <= 0:
            raise ConfigurationError(f"execution.max_hours must be > 0, got {execution['max_hours']}")
        if 'n_jobs' in execution:
            n_jobs = execution['n_jobs']
            if n_jobs == 0 or n_jobs < -1:
                raise ConfigurationError(f"execution.n_jobs must be -1 (all cores) or a positive integer, got {n_jobs}")

    def _validate_resources(self) -> None:
        """
        Validate against system resources.
        Calculates total grid size and ensures it fits within safe limits to prevent crashes.
        """
        resources = self.config.get('resources', {})

        # 1. Grid Explosion Check
        grids = ModelFactory.grids_from_config(self.config)
        total_configs = sum(grid.size for grid in grids.values())
        max_configs = resources.get('max_hpo_configs', self.DEFAULT_MAX_HPO_CONFIGS)

        if total_configs > max_configs:
            raise ConfigurationError(
                f"HPO Grid Explosion Detected! Total configurations ({total_configs}) exceeds "
                f"safety limit ({max_configs}). Reduce grid search space or increase 'resources.max_hpo_configs'."
            )
        folds = self.config.get('cross_validation', {}).get('folds', 5)
        self.logger.info(f"HPO Grid Size validated: {total_configs} combinations x {folds} folds (Limit: {max_configs})")

        # 2. Memory Limits Check
        system_ram_mb = int(psutil.virtual_memory().total / (1024 * 1024))
        # Default safety buffer: 80% of system RAM
        safe_ram_limit = int(system_ram_mb * 0.8)

        config_max_ram = resources.get('max_memory_mb', safe_ram_limit)

        if config_max_ram > system_ram_mb:
            self.logger.warning(
                f"Configured max_memory_mb ({config_max_ram}MB) exceeds physical system RAM ({system_ram_mb}MB). "
                "This may lead to instability."
            )

        # Inject the safe limit back into config if not present, for other modules to use
        if 'resources' not in self.config:
            self.config['resources'] = {}
        self.config['resources']['max_memory_mb'] = config_max_ram

    def _propagate_seeds(self) -> None:
        """
        Propagate master seed to internal components to ensure full pipeline reproducibility.
        Uses large, non-overlapping offsets to avoid correlation between components.
        """
        master_seed = self.config['splitting']['seed']

        self.config['_internal_seeds'] = {
            'split': master_seed,
            'cv': master_seed + 1000,
            'model': master_seed + 2000,
        }
        self.logger.debug(f"Seeds propagated from master ({master_seed}): {self.config['_internal_seeds']}")
