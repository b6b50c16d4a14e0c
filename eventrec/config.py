"""Configuration for the event recommender pipeline."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
MODEL_DIR = Path(os.environ.get("EVENTREC_MODEL_DIR") or PROJECT_ROOT / "data" / "models" / "event_recommender")

# Preference labels (max-of-signals)
SCORE_VIEW = 0.2
SCORE_INTERESTED = 0.7
SCORE_GOING = 1.0
RATING_SCORES: Dict[int, float] = {1: 0.4, 2: 0.55, 3: 0.7, 4: 0.85, 5: 1.0}

# Stage A → Stage B candidate pool size
CANDIDATES_PER_USER = 100
MIN_TRAINING_PAIRS = 20  # Below this a factorization is meaningless

# Negative sampling for ranker training
NEG_PER_POS_MULT = 3
MAX_NEG_PER_USER = 100
NEGATIVE_SAMPLING_SEED = 123

# Feature engineering constants
RECENCY_HALF_LIFE_DAYS = 30.0
ENGAGEMENT_WINDOW_DAYS = 30
DWELL_NORM_MS = 2000.0
DAYS_TO_EVENT_MIN = -7.0
DAYS_TO_EVENT_MAX = 60.0

# Published model versions to keep on disk
KEEP_VERSIONS = 3


@dataclass
class RecommenderConfig:
    """All tunables of the two-stage pipeline in one place.

    Defaults mirror the module-level constants above so scripts can keep
    reading ``config.MODEL_DIR`` etc. directly.
    """

    model_dir: Path = MODEL_DIR

    score_view: float = SCORE_VIEW
    score_interested: float = SCORE_INTERESTED
    score_going: float = SCORE_GOING
    rating_scores: Dict[int, float] = field(default_factory=lambda: dict(RATING_SCORES))

    candidates_per_user: int = CANDIDATES_PER_USER
    min_training_pairs: int = MIN_TRAINING_PAIRS

    # Stage A: matrix factorization
    mf_factors: int = 32
    mf_iterations: int = 60
    mf_regularization: float = 0.025
    mf_learning_rate: float = 0.05
    mf_random_state: int = 42

    # Stage B: CatBoost ranker
    ranker_iterations: int = 200
    ranker_learning_rate: float = 0.1
    ranker_depth: int = 6
    ranker_loss: str = "YetiRank"
    ranker_random_seed: int = 42
    ranker_verbose: int = 0

    neg_per_pos_mult: int = NEG_PER_POS_MULT
    max_neg_per_user: int = MAX_NEG_PER_USER
    negative_sampling_seed: int = NEGATIVE_SAMPLING_SEED

    recency_half_life_days: float = RECENCY_HALF_LIFE_DAYS
    engagement_window_days: int = ENGAGEMENT_WINDOW_DAYS
    dwell_norm_ms: float = DWELL_NORM_MS
    days_to_event_min: float = DAYS_TO_EVENT_MIN
    days_to_event_max: float = DAYS_TO_EVENT_MAX

    keep_versions: int = KEEP_VERSIONS

    def __post_init__(self) -> None:
        self.model_dir = Path(self.model_dir)

    def score_rated(self, rating) -> float:
        """Map a 1..5 star rating onto [0, 1]; missing or non-positive → 0."""
        if rating is None:
            return 0.0
        try:
            r = int(rating)
        except (TypeError, ValueError):
            return 0.0
        if r <= 0:
            return 0.0
        r = min(r, max(self.rating_scores))
        return float(self.rating_scores.get(r, 0.0))
