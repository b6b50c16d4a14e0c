"""Error taxonomy of the recommender core."""


class RecommenderError(Exception):
    """Base class for all recommender errors."""


class InsufficientDataError(RecommenderError):
    """Too few labelled (user, event) pairs to train a model."""


class UnknownIdentifierError(RecommenderError, KeyError):
    """A raw user/event id was not seen when the model was trained."""

    def __init__(self, kind: str, raw_id) -> None:
        super().__init__(f"Unknown {kind} id: {raw_id!r}")
        self.kind = kind
        self.raw_id = raw_id

    def __str__(self) -> str:
        return self.args[0]


class ModelsNotTrainedError(RecommenderError):
    """Serving was requested before any successful training run."""


class TrainingInProgressError(RecommenderError):
    """Another training run holds the model directory."""


class TrainingCancelledError(RecommenderError):
    """Training was cancelled at a stage boundary."""
