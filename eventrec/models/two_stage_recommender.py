"""Two-Stage Recommender: MF Candidate Generation + CatBoost Re-ranking.

Pipeline:
    1. MatrixFactorizationRecommender  →  top-K candidate pool per user
    2. FeatureBuilder                  →  ranker rows for the pool
    3. CatBoostRanker                  →  top-N ordered events

An instance is an immutable loaded-model value: it is built once by training
or :meth:`load` and replaced wholesale on retrain, never mutated.

For cold-start users (unseen during MF training) Stage 1 forwards the whole
event catalog unordered and Stage 2 ranks it on non-personalised features.

Usage:
    rec = TwoStageRecommender.load(path)
    results = rec.recommend("alice", snapshot, preferences, n=6)
    # [{'event_id': 4, 'score': 0.83}, ...]
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from eventrec.config import RecommenderConfig
from eventrec.data_loader import StoreSnapshot
from eventrec.feature_engineer import FeatureBuilder
from eventrec.models.catboost_ranker import CatBoostRanker
from eventrec.models.mf_recommender import MatrixFactorizationRecommender

logger = logging.getLogger(__name__)

SUMMARY_FILE = "training_summary.json"


class TwoStageRecommender:
    """Full inference pipeline: MF retrieval → CatBoost ranking.

    Args:
        candidate_model: Fitted MatrixFactorizationRecommender (stage 1).
        ranker: Fitted CatBoostRanker (stage 2).
        config: Feature constants and candidate pool size.
        version: Registry version the artifacts were loaded from.
    """

    def __init__(
        self,
        candidate_model: MatrixFactorizationRecommender,
        ranker: CatBoostRanker,
        config: Optional[RecommenderConfig] = None,
        version: Optional[str] = None,
    ) -> None:
        self.candidate_model = candidate_model
        self.ranker = ranker
        self.config = config or RecommenderConfig()
        self.version = version

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def recommend(
        self,
        user_id,
        snapshot: StoreSnapshot,
        preferences: pd.Series,
        n: int = 10,
        now=None,
        n_candidates: Optional[int] = None,
        explain: bool = False,
    ) -> List[Dict]:
        """Recommend top-N events for a user.

        Args:
            user_id: Target user.
            snapshot: Store tables prefetched for this request.
            preferences: Aggregated preference labels (for affinities).
            n: Final number of recommendations.
            n_candidates: Stage-1 pool size (defaults to config).
            explain: If True, attach SHAP explanation to each result.

        Returns:
            List of dicts ordered by score descending:
                {'event_id': ..., 'score': float,
                 'explanation': dict}   ← only when explain=True
        """
        event_ids = snapshot.event_ids
        if not event_ids or n <= 0:
            return []

        # --- Stage 1: candidate pool ---
        pool_size = n_candidates or self.config.candidates_per_user
        candidates = self.candidate_model.top_candidates(user_id, event_ids, pool_size)
        if not candidates:
            return []

        # --- Stage 2: features + re-rank ---
        builder = FeatureBuilder(
            snapshot, preferences, candidate_model=self.candidate_model, now=now, config=self.config
        )
        X = builder.build_matrix(user_id, candidates)
        ranked = self.ranker.rank(candidates, X, n)

        results = [{"event_id": eid, "score": round(score, 6)} for eid, score in ranked]
        if explain and results:
            position = {eid: i for i, eid in enumerate(candidates)}
            rows = X.iloc[[position[r["event_id"]] for r in results]]
            for entry, explanation in zip(results, self.ranker.explain(rows)):
                entry["explanation"] = explanation
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Path, summary: Optional[Dict] = None) -> None:
        """Save both sub-models (and the training summary) to directory.

        Layout:
            <path>/
                mf/                     ← MatrixFactorizationRecommender + id maps
                ranker/                 ← CatBoostRanker artifacts
                training_summary.json
        """
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        self.candidate_model.save(path / "mf")
        self.ranker.save(path / "ranker")
        if summary is not None:
            self.write_summary(path, summary)

        logger.info(f"TwoStageRecommender saved to {path}")

    @staticmethod
    def write_summary(path: Path, summary: Dict) -> None:
        with open(Path(path) / SUMMARY_FILE, "w") as f:
            json.dump(summary, f, indent=2, default=str)

    @staticmethod
    def artifacts_present(path: Path) -> bool:
        path = Path(path)
        return (path / "mf" / "mf_factors.npz").is_file() and (
            path / "ranker" / "catboost_model.cbm"
        ).is_file()

    @classmethod
    def load(
        cls,
        path: Path,
        config: Optional[RecommenderConfig] = None,
        version: Optional[str] = None,
    ) -> "TwoStageRecommender":
        """Load TwoStageRecommender from directory saved by :meth:`save`."""
        path = Path(path)

        candidate_model = MatrixFactorizationRecommender.load(path / "mf")
        ranker = CatBoostRanker.load(path / "ranker")

        logger.info(f"TwoStageRecommender loaded from {path}")
        return cls(
            candidate_model=candidate_model,
            ranker=ranker,
            config=config,
            version=version,
        )

    def __repr__(self) -> str:
        return (
            f"TwoStageRecommender("
            f"version={self.version!r}, "
            f"stage1={self.candidate_model!r}, "
            f"stage2={self.ranker!r})"
        )
