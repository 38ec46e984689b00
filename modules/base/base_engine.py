import abc
import logging
from pathlib import Path
from typing import Dict, Any

class BaseEngine(abc.ABC):
    """
    Abstract base class for all pipeline engines.

    Provides common functionality for:
    - Configuration and logger attachment.
    - Output directory management under the numbered results layout.
    - Access to the seeds propagated by the ConfigurationManager.
    """

    def __init__(self, config: Dict[str, Any], logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.base_dir = Path(self.config.get('outputs', {}).get('base_results_dir', 'results'))
        self.engine_dir_name = self._get_engine_directory_name()
        self.output_dir = self.base_dir / self.engine_dir_name
        self.excel_copy = self.config.get('outputs', {}).get('save_excel_copy', False)

        self._setup_directories()

    @abc.abstractmethod
    def _get_engine_directory_name(self) -> str:
        """
        Determines the directory name for the engine's output.
        e.g., '03_MasterDataSplits', '05_GridSearch'
        """
        raise NotImplementedError("Subclasses must implement _get_engine_directory_name.")

    def _setup_directories(self):
        """
        Creates the main output directory for the engine.
        """
        skip_dirs = self.config.get('outputs', {}).get('skip_dir_creation', False)
        if skip_dirs:
            # Directory creation explicitly disabled (used for compute-only helpers)
            return

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Output directory for {self.__class__.__name__}: {self.output_dir}")

    def _seed(self, component: str) -> int:
        """Seed for a pipeline component ('split', 'cv', 'model')."""
        seeds = self.config.get('_internal_seeds', {})
        if component in seeds:
            return int(seeds[component])
        return int(self.config.get('splitting', {}).get('seed', 42))

    def _cache_root(self) -> Path:
        execution = self.config.get('execution', {})
        return Path(execution.get('cache_root') or self.base_dir)

    def _cache_enabled(self) -> bool:
        return bool(self.config.get('execution', {}).get('enable_cache', True))

    @abc.abstractmethod
    def execute(self, *args, **kwargs) -> Any:
        """
        Main execution method for the engine.
        This must be implemented by all subclasses.
        """
        pass
