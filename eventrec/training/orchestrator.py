"""Train the two-stage event recommender end to end.

Stages:
    1. EXTRACTING          : bulk-read the store into a StoreSnapshot
    2. AGGREGATING         : max-of-signals preference labels
    3. FITTING_STAGE_A     : matrix factorization over observed labels
    4. SAMPLING_NEGATIVES  : negatives + feature rows for the ranker
    5. FITTING_STAGE_B     : CatBoost YetiRank
    6. PERSISTING          : stage → publish (atomic pointer swap)

A run is all-or-nothing: any failure or cancellation discards the staging
directory and leaves the published version untouched.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from eventrec.config import RecommenderConfig
from eventrec.data_loader import EventStore, load_snapshot
from eventrec.exceptions import (
    InsufficientDataError,
    TrainingCancelledError,
    TrainingInProgressError,
)
from eventrec.feature_engineer import FeatureBuilder, utc_now
from eventrec.model_registry import ModelRegistry, new_version_name
from eventrec.models.catboost_ranker import RANKER_FEATURE_COLS, CatBoostRanker
from eventrec.models.mf_recommender import MatrixFactorizationRecommender
from eventrec.models.two_stage_recommender import TwoStageRecommender
from eventrec.preprocessor import PreferenceAggregator
from eventrec.training.ranker_dataset import build_ranker_dataset

logger = logging.getLogger(__name__)

# One writer per model directory within this process
_DIR_LOCKS: Dict[str, threading.Lock] = {}
_DIR_LOCKS_GUARD = threading.Lock()


def _lock_for(model_dir: Path) -> threading.Lock:
    key = str(Path(model_dir).resolve())
    with _DIR_LOCKS_GUARD:
        return _DIR_LOCKS.setdefault(key, threading.Lock())


class TrainingState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    AGGREGATING = "aggregating"
    FITTING_STAGE_A = "fitting_stage_a"
    SAMPLING_NEGATIVES = "sampling_negatives"
    FITTING_STAGE_B = "fitting_stage_b"
    PERSISTING = "persisting"


@dataclass
class TrainingSummary:
    """What a successful run produced; also stored as training_summary.json."""

    version: str
    trained_at: str
    n_users: int
    n_events: int
    n_pairs: int
    n_ranker_rows: int
    n_ranker_positives: int
    n_ranker_negatives: int
    mf_train_rmse: float
    ranker_tree_count: Optional[int] = None
    timings_sec: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


class TrainingOrchestrator:
    """Runs one training pass against an EventStore and publishes the result.

    Args:
        store: Source of interactions, clicks, events, follows and venues.
        config: Pipeline tunables.
        registry: Version registry (defaults to one over ``config.model_dir``).
        now: Reference time for features; defaults to the wall clock per run.
    """

    def __init__(
        self,
        store: EventStore,
        config: Optional[RecommenderConfig] = None,
        registry: Optional[ModelRegistry] = None,
        now=None,
    ) -> None:
        self.store = store
        self.config = config or RecommenderConfig()
        self.registry = registry or ModelRegistry(self.config.model_dir, self.config.keep_versions)
        self.now = now
        self.state = TrainingState.IDLE
        self.model_: Optional[TwoStageRecommender] = None
        self.ranker_dataset_: Optional[pd.DataFrame] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, cancel_event: Optional[threading.Event] = None) -> TrainingSummary:
        """Execute all stages.

        Raises:
            TrainingInProgressError: another run holds this model directory.
            TrainingCancelledError: ``cancel_event`` was set between stages.
            InsufficientDataError: fewer labelled pairs than ``min_training_pairs``.
        """
        lock = _lock_for(self.registry.model_dir)
        if not lock.acquire(blocking=False):
            raise TrainingInProgressError(
                f"Training already running for {self.registry.model_dir}"
            )
        try:
            return self._run(cancel_event)
        finally:
            self.state = TrainingState.IDLE
            lock.release()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _enter(self, state: TrainingState, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TrainingCancelledError(f"Training cancelled before {state.value}")
        self.state = state
        logger.info("=" * 60)
        logger.info(f"Stage: {state.name}")
        logger.info("=" * 60)

    def _run(self, cancel_event: Optional[threading.Event]) -> TrainingSummary:
        cfg = self.config
        now = self.now if self.now is not None else utc_now()
        timings: Dict[str, float] = {}

        # ── 1. Extract ────────────────────────────────────────────────────
        self._enter(TrainingState.EXTRACTING, cancel_event)
        t0 = time.time()
        snapshot = load_snapshot(self.store)
        timings["extract"] = round(time.time() - t0, 3)

        # ── 2. Aggregate ──────────────────────────────────────────────────
        self._enter(TrainingState.AGGREGATING, cancel_event)
        t0 = time.time()
        prefs = PreferenceAggregator(cfg).aggregate(snapshot.interactions, snapshot.clicks)
        timings["aggregate"] = round(time.time() - t0, 3)
        if len(prefs) < cfg.min_training_pairs:
            raise InsufficientDataError(
                f"Need at least {cfg.min_training_pairs} labelled pairs, got {len(prefs)}"
            )

        # ── 3. Stage A ────────────────────────────────────────────────────
        self._enter(TrainingState.FITTING_STAGE_A, cancel_event)
        t0 = time.time()
        mf = MatrixFactorizationRecommender(
            factors=cfg.mf_factors,
            iterations=cfg.mf_iterations,
            regularization=cfg.mf_regularization,
            learning_rate=cfg.mf_learning_rate,
            min_training_pairs=cfg.min_training_pairs,
            random_state=cfg.mf_random_state,
        )
        mf.fit(prefs.reset_index())
        timings["fit_stage_a"] = round(time.time() - t0, 3)

        # ── 4. Negatives + ranker rows ────────────────────────────────────
        self._enter(TrainingState.SAMPLING_NEGATIVES, cancel_event)
        t0 = time.time()
        builder = FeatureBuilder(snapshot, prefs, candidate_model=mf, now=now, config=cfg)
        ranker_df = build_ranker_dataset(prefs, snapshot, builder, config=cfg)
        timings["sample_negatives"] = round(time.time() - t0, 3)

        # ── 5. Stage B ────────────────────────────────────────────────────
        self._enter(TrainingState.FITTING_STAGE_B, cancel_event)
        t0 = time.time()
        ranker = CatBoostRanker(
            iterations=cfg.ranker_iterations,
            learning_rate=cfg.ranker_learning_rate,
            depth=cfg.ranker_depth,
            loss_function=cfg.ranker_loss,
            random_seed=cfg.ranker_random_seed,
            verbose=cfg.ranker_verbose,
        )
        ranker.fit(ranker_df[RANKER_FEATURE_COLS], ranker_df["label"], ranker_df["group_id"])
        timings["fit_stage_b"] = round(time.time() - t0, 3)

        # ── 6. Persist ────────────────────────────────────────────────────
        self._enter(TrainingState.PERSISTING, cancel_event)
        t0 = time.time()
        version = new_version_name()
        n_pos = int(ranker_df["label"].sum())
        summary = TrainingSummary(
            version=version,
            trained_at=pd.Timestamp.now(tz="UTC").isoformat(),
            n_users=len(mf.user_mapper_),
            n_events=len(mf.item_mapper_),
            n_pairs=len(prefs),
            n_ranker_rows=len(ranker_df),
            n_ranker_positives=n_pos,
            n_ranker_negatives=len(ranker_df) - n_pos,
            mf_train_rmse=round(float(mf.train_rmse_), 6),
            ranker_tree_count=ranker.tree_count_,
            timings_sec=timings,
        )
        model = TwoStageRecommender(mf, ranker, config=cfg, version=version)

        staging = self.registry.stage(version)
        try:
            model.save(staging)
            timings["persist"] = round(time.time() - t0, 3)
            model.write_summary(staging, summary.to_dict())
            self.registry.publish(staging, version)
        except BaseException:
            self.registry.discard(staging)
            raise

        self.model_ = model
        self.ranker_dataset_ = ranker_df
        self._log_summary(summary)
        return summary

    @staticmethod
    def _log_summary(summary: TrainingSummary) -> None:
        logger.info("=" * 60)
        logger.info("TRAINING SUMMARY")
        logger.info("=" * 60)
        logger.info(f"  version        : {summary.version}")
        logger.info(f"  users / events : {summary.n_users:,} / {summary.n_events:,}")
        logger.info(f"  labelled pairs : {summary.n_pairs:,}")
        logger.info(
            f"  ranker rows    : {summary.n_ranker_rows:,} "
            f"({summary.n_ranker_positives:,} pos / {summary.n_ranker_negatives:,} neg)"
        )
        logger.info(f"  MF train RMSE  : {summary.mf_train_rmse:.4f}")
        for stage, sec in summary.timings_sec.items():
            logger.info(f"  {stage:<15}: {sec:.2f}s")
        logger.info("=" * 60)
