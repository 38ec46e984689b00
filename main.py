#!/usr/bin/env python
"""
Match Outcome Model Selection - Main Entry Point
Orchestrates the model-selection pipeline: stratified split, stratified k-fold
grid search over four classifier families, selection, and a single held-out
evaluation of the refitted winner.
"""
import os
import sys
import logging
import argparse
import traceback
import random
from pathlib import Path

import numpy as np

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

# Core Infrastructure
from modules.config_manager import ConfigurationManager
from modules.logging_config import LoggingConfigurator
from modules.data_manager import DataManager
from modules.split_engine import SplitEngine
from modules.fold_engine import FoldEngine
from modules.hpo_search_engine import HPOSearchEngine
from modules.selection_engine import SelectionEngine
from modules.training_engine import FinalEvaluator
from utils.exceptions import MatchMLException
from utils import constants


def parse_arguments(argv=None):
    """
    Parse command-line arguments for configurable pipeline execution.

    Returns:
        argparse.Namespace: Parsed command-line arguments.
    """
    parser = argparse.ArgumentParser(
        description="Match Outcome Model Selection - Grid Search & Held-out Evaluation",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config/config.json",
        help="Path to the configuration JSON file"
    )

    parser.add_argument(
        "--schema",
        type=str,
        default="config/schema.json",
        help="Path to the configuration JSON schema"
    )

    parser.add_argument(
        "--run-id",
        type=str,
        default=None,
        help="Optional run identifier (defaults to the results directory name)"
    )

    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume in the existing results directory; grid cells completed there for identical inputs are reused"
    )

    parser.add_argument(
        "--families",
        nargs="+",
        default=None,
        help="Restrict the grid search to these model families"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and setup without running the pipeline"
    )

    return parser.parse_args(argv)


def setup_global_determinism(config: dict, logger: logging.Logger):
    """
    Seed the global generators. Components that shuffle use their own
    seeded numpy Generators; this covers anything that falls back to globals.
    """
    seed = config.get('splitting', {}).get('seed', 42)
    logger.info(f"Setting Global Deterministic Seed: {seed}")

    random.seed(seed)
    np.random.seed(seed)
    os.environ['PYTHONHASHSEED'] = str(seed)


def validate_environment(logger: logging.Logger):
    """
    Validate the runtime environment and dependencies.

    Raises:
        RuntimeError: If critical dependencies are missing or incompatible.
    """
    logger.info("Validating environment...")

    if sys.version_info < (3, 9):
        raise RuntimeError(f"Python 3.9+ required, found {sys.version_info.major}.{sys.version_info.minor}")

    required_packages = [
        'pandas', 'numpy', 'sklearn', 'joblib', 'jsonschema', 'pyarrow', 'psutil', 'colorama'
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        raise RuntimeError(f"Missing required packages: {', '.join(missing)}")

    logger.info("Environment validation passed")


def setup_run_directory(config: dict, run_id: str = None, resume: bool = False, logger: logging.Logger = None):
    """
    Setup or resume the run directory structure.

    Returns:
        tuple: (run_dir Path, run_id string)
    """
    base_results_dir = config.get('outputs', {}).get('base_results_dir', 'results')

    if run_id:
        run_dir = Path(f"{base_results_dir}_{run_id}").absolute()
    else:
        run_dir = Path(base_results_dir).absolute()
        run_id = run_dir.name

    if resume:
        if not run_dir.exists():
            raise MatchMLException(f"Cannot resume: directory '{run_dir}' does not exist")
        if logger:
            logger.info(f"Resuming from existing run: {run_id}")
    else:
        run_dir.mkdir(parents=True, exist_ok=True)
        if logger:
            logger.info(f"Created new run directory: {run_id}")

    for folder in constants.TOP_LEVEL_RESULT_DIRS:
        (run_dir / folder).mkdir(parents=True, exist_ok=True)

    return run_dir, run_id


def phase_banner(logger: logging.Logger, title: str):
    logger.info("\n" + "=" * 60)
    logger.info(title)
    logger.info("=" * 60)


def run_pipeline(config: dict, run_id: str, logger: logging.Logger, families=None, resume: bool = False):
    """
    Execute every phase in order and return the FinalReport.
    """
    phase_banner(logger, "PHASE 1: DATA INGESTION & SPLITTING")
    validated_data = DataManager(config, logger).execute(run_id)
    logger.info(f"Data loaded: {len(validated_data)} records")

    partition = SplitEngine(config, logger).execute(validated_data, run_id)
    logger.info(f"Partition created - Train: {len(partition.train)}, Test: {len(partition.test_index)}")

    phase_banner(logger, "PHASE 2: CROSS-VALIDATED GRID SEARCH")
    folds = FoldEngine(config, logger).execute(partition.train, run_id)
    results = HPOSearchEngine(config, logger).execute(partition.train, folds, run_id,
                                                      families=families, resume=resume)

    phase_banner(logger, "PHASE 3: MODEL SELECTION")
    best = SelectionEngine(config, logger).execute(results, run_id)

    phase_banner(logger, "PHASE 4: FINAL REFIT & HELD-OUT EVALUATION")
    return FinalEvaluator(config, logger).execute(partition, best, run_id)


def main(argv=None):
    """
    Main pipeline orchestration function.

    Returns:
        int: Exit code (0 for success, 1 for errors, 130 when interrupted)
    """
    logger = None

    try:
        args = parse_arguments(argv)

        print("\n" + "=" * 80)
        print("    MATCH OUTCOME MODEL SELECTION PIPELINE")
        print("=" * 80 + "\n")

        # ---------------------------------------------------------------
        # PHASE 0: INITIALIZATION & VALIDATION
        # ---------------------------------------------------------------
        config_manager = ConfigurationManager(config_path=args.config, schema_path=args.schema)
        config = config_manager.load_and_validate()
        config_manager.apply_overrides(families=args.families)

        logging_configurator = LoggingConfigurator(config, level_override='DEBUG' if args.verbose else None)
        logging_configurator.setup()
        logger = logging_configurator.get_logger('pipeline')

        logger.info("Pipeline initialization started")
        logger.info(f"Configuration loaded from: {args.config}")

        validate_environment(logger)

        run_dir, run_id = setup_run_directory(
            config,
            run_id=args.run_id,
            resume=args.resume,
            logger=logger
        )
        config_manager.run_id = run_id
        config['outputs']['base_results_dir'] = str(run_dir)

        config_manager.save_artifacts(str(run_dir))
        setup_global_determinism(config, logger)

        logger.info(f"Run ID: {run_id}")
        logger.info(f"Output Directory: {run_dir}")

        if args.dry_run:
            logger.info("Dry run mode: validation complete. Exiting without running pipeline.")
            print("\n[SUCCESS] Configuration validated successfully.")
            return 0

        report = run_pipeline(config, run_id, logger, families=args.families, resume=args.resume)

        # ---------------------------------------------------------------
        # COMPLETION
        # ---------------------------------------------------------------
        logger.info("\n" + "-" * 60)
        logger.info("PIPELINE COMPLETED SUCCESSFULLY")
        logger.info(f"Selected: {report.config.label()}")
        logger.info(f"Held-out ROC-AUC: {report.roc_auc:.4f}")
        logger.info(f"Output Directory: {run_dir}")
        logger.info("-" * 60 + "\n")

        print(f"\n[SUCCESS] Best family: {report.family} | held-out ROC-AUC: {report.roc_auc:.4f}")
        print(f"Results saved to: {run_dir}")
        return 0

    except MatchMLException as e:
        msg = f"Pipeline Error: {str(e)}"
        print(f"\n[ERROR] {msg}")
        if logger:
            logger.critical(msg, exc_info=True)
        else:
            traceback.print_exc()
        return 1

    except KeyboardInterrupt:
        print("\n[INTERRUPTED] Pipeline interrupted by user. Completed grid cells are checkpointed.")
        if logger:
            logger.warning("Pipeline interrupted by user (Ctrl+C)")
        return 130

    except Exception as e:
        msg = f"Unexpected Error: {str(e)}"
        print(f"\n[CRITICAL] {msg}")
        if logger:
            logger.critical(msg, exc_info=True)
        else:
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
