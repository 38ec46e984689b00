"""
Custom exception hierarchy for the Match Outcome Model Selection System.
"""

class MatchMLException(Exception):
    """Base exception for all system errors."""
    pass

class ConfigurationError(MatchMLException):
    """Configuration validation failed (split proportion, folds, grids, schema)."""
    pass

class DataValidationError(MatchMLException):
    """Data validation failed."""
    pass

class UnseenCategoryError(DataValidationError):
    """A categorical level was not part of the fitted encoding table."""
    pass

class DegenerateFoldError(MatchMLException):
    """A label class is absent from a validation fold; one-vs-rest AUC is undefined."""
    pass

class DegenerateFeatureError(MatchMLException):
    """A numeric predictor has zero variance on the fitting subset."""
    pass

class ModelTrainingFailure(MatchMLException):
    """Model training failed."""
    pass

class EvaluationError(MatchMLException):
    """Held-out evaluation failed."""
    pass

class LeakageError(MatchMLException):
    """Held-out data was touched more than once or influenced a fitted state."""
    pass

class PipelineStateError(MatchMLException):
    """A stage was invoked out of order."""
    pass
