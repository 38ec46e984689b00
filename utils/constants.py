# utils/constants.py

# --- Top-Level Result Directories ---
# Sequentially numbered for proper sorting with clear, self-explanatory names

CONFIG_DIR = "01_RunConfiguration"          # Run config, metadata, seeds
DATA_INTEGRITY_DIR = "02_DataQualityChecks"  # Validated data, column stats
MASTER_SPLITS_DIR = "03_MasterDataSplits"   # Single train/test partition
FOLDS_DIR = "04_CrossValidationFolds"       # Fold assignment over train
GRID_SEARCH_DIR = "05_GridSearch"           # Per-cell progress, per-family tuning tables
MODEL_SELECTION_DIR = "06_ModelSelection"   # Leaderboard, best configuration
FINAL_MODEL_DIR = "07_FinalModel"           # Refit model, held-out report

# Canonical list used when building the base results structure (in order).
TOP_LEVEL_RESULT_DIRS = [
    CONFIG_DIR,
    DATA_INTEGRITY_DIR,
    MASTER_SPLITS_DIR,
    FOLDS_DIR,
    GRID_SEARCH_DIR,
    MODEL_SELECTION_DIR,
    FINAL_MODEL_DIR,
]

CHECKPOINT_NAMESPACE = "checkpoints"

# --- File Names ---
CONFIG_USED_FILE = "config_used.json"
CONFIG_HASH_FILE = "config_hash.txt"
RUN_METADATA_FILE = "run_metadata.json"
VALIDATED_DATA_FILE = "validated_data.parquet"
COLUMN_STATS_FILE = "column_stats.parquet"
TRAIN_SPLIT_FILE = "train.parquet"
TEST_INDEX_FILE = "test_index.parquet"
SPLIT_BALANCE_FILE = "split_balance_report.parquet"
FOLD_ASSIGNMENT_FILE = "fold_assignment.parquet"
FOLD_BALANCE_FILE = "fold_balance_report.parquet"
HPO_PROGRESS_FILE = "hpo_progress.jsonl"
HPO_PROGRESS_KEY_FILE = "hpo_progress_key.json"
TUNING_RESULTS_SUFFIX = "_tuning_results.parquet"
LEADERBOARD_FILE = "family_leaderboard.parquet"
BEST_CONFIG_FILE = "best_configuration.json"
FINAL_MODEL_FILE = "final_model.pkl"
RECIPE_STATE_FILE = "recipe_state.json"
TEST_PREDICTIONS_FILE = "test_predictions.parquet"
FINAL_REPORT_FILE = "final_report.json"

# --- Record Schema ---
ROW_INDEX = "row_index"
TURN_COUNT = "turn_count"
RATING_A = "rating_a"
RATING_B = "rating_b"
OPENING_CODE = "opening_code"
OPENING_PLY = "opening_ply"
LABEL = "label"

NUMERIC_PREDICTORS = [TURN_COUNT, RATING_A, RATING_B, OPENING_PLY]
CATEGORICAL_PREDICTORS = [OPENING_CODE]

# Raw column names of the public Lichess games export.
DEFAULT_COLUMN_MAP = {
    "turns": TURN_COUNT,
    "white_rating": RATING_A,
    "black_rating": RATING_B,
    "opening_eco": OPENING_CODE,
    "opening_ply": OPENING_PLY,
    "winner": LABEL,
}
