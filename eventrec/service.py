"""
RecommenderService: trains the two-stage pipeline against an EventStore and
serves personal event recommendations from the published model version.

No trained model on disk: ``recommend()`` returns ``[]`` with a warning.
Cold-start (user unseen in training): the whole catalog is ranked on
non-personalised features.
"""

import logging
import os
import threading
from functools import lru_cache
from typing import Dict, List, Optional

from eventrec.config import RecommenderConfig
from eventrec.data_loader import EventStore, load_snapshot
from eventrec.exceptions import ModelsNotTrainedError
from eventrec.feature_engineer import utc_now
from eventrec.model_registry import ModelRegistry
from eventrec.models.two_stage_recommender import TwoStageRecommender
from eventrec.preprocessor import PreferenceAggregator
from eventrec.training.orchestrator import TrainingOrchestrator, TrainingSummary

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
class RecommenderService:
    """
    Facade over training and serving. Holds a reference to an immutable
    TwoStageRecommender and swaps it wholesale when a new version is
    published.
    """

    def __init__(
        self,
        store: EventStore,
        config: Optional[RecommenderConfig] = None,
    ) -> None:
        self.store = store
        self.config = config or RecommenderConfig()
        self.registry = ModelRegistry(self.config.model_dir, self.config.keep_versions)
        self._model: Optional[TwoStageRecommender] = None
        self._load_lock = threading.Lock()

    # ── Private helpers ───────────────────────────────────────────────────

    def _current_model(self) -> TwoStageRecommender:
        """Published model, reloaded when the registry's CURRENT moved on."""
        model = self._model
        version = self.registry.current_version()
        if model is not None and model.version == version:
            return model
        with self._load_lock:
            model = self._model
            if model is not None and model.version == self.registry.current_version():
                return model
            model = self.registry.load_current(config=self.config)
            self._model = model
            logger.info(f"Serving model version {model.version}")
            return model

    def _record(self, user_id, event_ids: List, at) -> None:
        record = getattr(self.store, "record_recommendations", None)
        if record is None or not event_ids:
            return
        try:
            record(user_id, event_ids, at)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not record recommendations for {user_id!r}: {exc}")

    # ── Public interface ──────────────────────────────────────────────────

    def train(self, now=None, cancel_event: Optional[threading.Event] = None) -> TrainingSummary:
        """Run the full training pipeline and start serving the new version.

        Raises:
            InsufficientDataError: too few labelled pairs; prior models kept.
        """
        orchestrator = TrainingOrchestrator(
            self.store, config=self.config, registry=self.registry, now=now
        )
        summary = orchestrator.run(cancel_event=cancel_event)
        with self._load_lock:
            self._model = orchestrator.model_
        return summary

    def models_exist(self) -> bool:
        return self.registry.models_exist()

    def last_training_summary(self) -> Optional[Dict]:
        """Summary written by the run that produced the published version."""
        return self.registry.read_summary()

    def recommend_with_scores(
        self,
        user_id,
        top_n: int = 6,
        now=None,
        explain: bool = False,
    ) -> List[Dict]:
        """Ranked ``{'event_id', 'score'[, 'explanation']}`` dicts, best first."""
        if top_n <= 0:
            return []
        try:
            model = self._current_model()
        except ModelsNotTrainedError:
            logger.warning("No trained models; returning no recommendations")
            return []
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to load published model: {exc}")
            return []

        now = now if now is not None else utc_now()
        snapshot = load_snapshot(self.store, user_ids=[user_id])
        own_interactions = snapshot.interactions[snapshot.interactions["user_id"] == user_id]
        own_clicks = snapshot.clicks[snapshot.clicks["user_id"] == user_id]
        prefs = PreferenceAggregator(self.config).aggregate(own_interactions, own_clicks)

        results = model.recommend(
            user_id, snapshot, prefs, n=top_n, now=now, explain=explain
        )
        logger.debug(f"Recommended {len(results)} events to {user_id!r}")
        self._record(user_id, [r["event_id"] for r in results], now)
        return results

    def recommend(self, user_id, top_n: int = 6, now=None) -> List:
        """Ordered event ids; ``[]`` when no model is trained."""
        return [r["event_id"] for r in self.recommend_with_scores(user_id, top_n=top_n, now=now)]

    def __repr__(self) -> str:
        return f"RecommenderService(store={self.store!r}, registry={self.registry!r})"


# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_recommender_service() -> RecommenderService:
    """Process-wide singleton over the default model dir.

    Reads PostgreSQL when ``EVENTREC_DSN`` is set, the demo store otherwise.
    """
    dsn = os.environ.get("EVENTREC_DSN")
    if dsn:
        from eventrec.database import PostgresEventStore

        return RecommenderService(PostgresEventStore(dsn))

    from eventrec.demo_data import build_demo_store

    logger.warning("EVENTREC_DSN not set; serving from the demo store")
    return RecommenderService(build_demo_store())
