import pandas as pd
import numpy as np
import joblib
import logging
import time
import gc
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from modules.base.base_engine import BaseEngine
from modules.evaluation_engine.metrics import multiclass_roc_auc, one_vs_rest_auc
from modules.feature_recipe import FeatureRecipe, RecipeState
from modules.model_factory import ModelConfig, ModelFactory, ModelFamily
from modules.split_engine import Partition
from utils.error_handling import handle_engine_errors
from utils.exceptions import (
    EvaluationError,
    LeakageError,
    MatchMLException,
    PipelineStateError,
)
from utils.file_io import save_dataframe, save_json
from utils import constants

UNTRAINED = "UNTRAINED"
FITTED = "FITTED"
EVALUATED = "EVALUATED"


@dataclass(frozen=True, eq=False)
class FinalReport:
    """Outcome of the single held-out evaluation."""
    family: str
    config: ModelConfig
    roc_auc: float
    per_class_auc: Dict[str, float]
    predictions: pd.DataFrame = field(repr=False)
    recipe_checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'family': self.family,
            'params': self.config.as_dict(),
            'config_hash': self.config.config_hash,
            'test_roc_auc': self.roc_auc,
            'per_class_auc': self.per_class_auc,
            'n_test': len(self.predictions),
            'recipe_checksum': self.recipe_checksum,
        }


class FinalEvaluator(BaseEngine):
    """
    Refits the chosen configuration on the full training partition and scores
    it once on the held-out partition.

    Lifecycle: UNTRAINED -> fit() -> FITTED -> evaluate() -> EVALUATED.
    Any other call order raises PipelineStateError.
    """

    def __init__(self, config: dict, logger: logging.Logger):
        super().__init__(config, logger)
        self.state = UNTRAINED
        self.recipe = FeatureRecipe.from_config(self.config)
        self.classes = self.config.get('data', {}).get('classes')
        self.model_config: Optional[ModelConfig] = None
        self.recipe_state: Optional[RecipeState] = None
        self.family: Optional[ModelFamily] = None
        self.model: Any = None
        self._checksum: Optional[str] = None

    def _get_engine_directory_name(self) -> str:
        return constants.FINAL_MODEL_DIR

    @handle_engine_errors("Final Evaluation")
    def execute(self, partition: Partition, model_config: ModelConfig, run_id: str) -> FinalReport:
        """Fit on Train, then evaluate on Test."""
        self.fit(partition.train, model_config)
        report = self.evaluate(partition)
        self.logger.info(f"[{run_id}] Held-out ROC-AUC for {model_config.label()}: {report.roc_auc:.4f}")
        return report

    def fit(self, train_df: pd.DataFrame, model_config: ModelConfig) -> Any:
        """
        Train the chosen configuration on the full training partition.

        A fresh RecipeState is fitted here; none of the per-fold states are reused.
        """
        if self.state != UNTRAINED:
            raise PipelineStateError(f"fit() called in state {self.state}; a FinalEvaluator fits once.")

        self.logger.info(f"Starting Final Model Training: {model_config.label()} on {len(train_df)} rows...")
        self.recipe_state = self.recipe.fit(train_df)
        X = self.recipe.apply(self.recipe_state, train_df)
        y = FeatureRecipe.labels(self.recipe_state, train_df)
        if self.classes is None:
            self.classes = sorted(np.unique(y).tolist())
        self.classes = [str(c) for c in self.classes]

        self.family = ModelFactory.create(model_config.family, seed=self._seed('model'),
                                          options=self.config.get('models', {}).get('options', {}).get(model_config.family))

        start_time = time.time()
        self.model = self.family.train(X, y, model_config.as_dict())
        duration = time.time() - start_time
        self.logger.info(f"Training completed in {duration:.2f} seconds.")

        self.model_config = model_config
        self._checksum = self.recipe_state.checksum()
        self.state = FITTED
        self._save_training_artifacts(X.shape, duration)

        # Estimators may keep references to large intermediates
        del X, y
        gc.collect()
        return self.model

    def evaluate(self, partition: Partition) -> FinalReport:
        """
        Score the fitted model on the held-out partition.

        Raises:
            PipelineStateError: not fitted, or already evaluated.
            LeakageError: the test rows were already claimed, or the recipe
                state changed during evaluation.
            UnseenCategoryError: a test level absent from the training encoding.
            EvaluationError: scoring failed.
        """
        if self.state != FITTED:
            raise PipelineStateError(f"evaluate() called in state {self.state}; expected {FITTED}.")

        test_df = partition.claim_test("final_evaluation")
        self.logger.info(f"Evaluating on {len(test_df)} held-out rows...")

        X_test = self.recipe.apply(self.recipe_state, test_df, strict=True)
        y_test = FeatureRecipe.labels(self.recipe_state, test_df)
        try:
            proba = self.family.predict_proba(self.model, X_test, self.classes)
            per_class = one_vs_rest_auc(y_test, proba, self.classes)
            score = multiclass_roc_auc(y_test, proba, self.classes)
        except (MatchMLException, ValueError) as e:
            raise EvaluationError(f"Held-out scoring failed: {e}") from e

        checksum = self.recipe_state.checksum()
        if checksum != self._checksum:
            raise LeakageError("Recipe state changed during final evaluation.")

        predictions = pd.DataFrame(proba, index=test_df.index, columns=[f"prob_{c}" for c in self.classes])
        predictions.index.name = constants.ROW_INDEX
        predictions.insert(0, 'true_label', y_test)
        predictions.insert(1, 'pred_label', np.asarray(self.classes)[proba.argmax(axis=1)])

        report = FinalReport(
            family=self.model_config.family,
            config=self.model_config,
            roc_auc=score,
            per_class_auc=per_class,
            predictions=predictions,
            recipe_checksum=checksum,
        )
        self.state = EVALUATED

        save_dataframe(predictions, self.output_dir / constants.TEST_PREDICTIONS_FILE, excel_copy=self.excel_copy, index=True)
        save_json(report.to_dict(), self.output_dir / constants.FINAL_REPORT_FILE)
        return report

    def _save_training_artifacts(self, input_shape, duration: float) -> None:
        save_json(self.recipe_state.to_dict(), self.output_dir / constants.RECIPE_STATE_FILE)
        if not self.config.get('outputs', {}).get('save_models', True):
            return

        model_path = self.output_dir / constants.FINAL_MODEL_FILE
        joblib.dump(self.model, model_path)
        self.logger.info(f"Model saved to {model_path}")

        save_json({
            'family': self.model_config.family,
            'params': self.model_config.as_dict(),
            'features': self.recipe_state.feature_names,
            'classes': self.classes,
            'input_shape': list(input_shape),
            'training_time_sec': duration,
            'recipe_checksum': self._checksum,
            'timestamp': time.strftime("%Y-%m-%d %H:%M:%S"),
        }, self.output_dir / "training_metadata.json")
