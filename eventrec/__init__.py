"""Two-stage event recommender: matrix factorization → CatBoost ranking."""

from eventrec.config import RecommenderConfig
from eventrec.exceptions import (
    InsufficientDataError,
    ModelsNotTrainedError,
    RecommenderError,
    TrainingCancelledError,
    TrainingInProgressError,
    UnknownIdentifierError,
)
from eventrec.service import RecommenderService

__all__ = [
    "RecommenderConfig",
    "RecommenderService",
    "RecommenderError",
    "InsufficientDataError",
    "ModelsNotTrainedError",
    "TrainingCancelledError",
    "TrainingInProgressError",
    "UnknownIdentifierError",
]
