"""Collapse raw interaction signals into one preference label per (user, event)."""
import logging
from typing import Optional

import numpy as np
import pandas as pd

from eventrec.config import RecommenderConfig
from eventrec.data_loader import InteractionStatus, normalize_clicks, normalize_interactions

logger = logging.getLogger(__name__)

PREFERENCE_COL = "preference"


class PreferenceAggregator:
    """Max-of-signals preference labelling.

    A (user, event) pair gets the strongest of:
        - click                → ``score_view``
        - status Interested    → ``score_interested``
        - status Going         → ``score_going``
        - star rating 1..5     → ``config.score_rated(rating)``

    Pairs whose strongest signal is 0 are dropped; negatives are sampled
    separately when the ranking dataset is built.
    """

    def __init__(self, config: Optional[RecommenderConfig] = None):
        self.config = config or RecommenderConfig()

    def status_weight(self, status) -> float:
        status = InteractionStatus.parse(status)
        if status == InteractionStatus.GOING:
            return self.config.score_going
        if status == InteractionStatus.INTERESTED:
            return self.config.score_interested
        return 0.0

    def interaction_weight(self, status, rating=None) -> float:
        """Weight of one interaction record (status and rating, no clicks)."""
        if rating is not None and pd.isna(rating):
            rating = None
        return max(self.status_weight(status), self.config.score_rated(rating))

    def aggregate(self, interactions: pd.DataFrame, clicks: pd.DataFrame) -> pd.Series:
        """Build the preference label series.

        Args:
            interactions: Frame with user_id, event_id, status, rating.
            clicks: Frame with user_id (nullable), event_id.

        Returns:
            Series named ``preference`` indexed by (user_id, event_id), sorted,
            values in (0, 1].
        """
        interactions = normalize_interactions(interactions)
        clicks = normalize_clicks(clicks)

        frames = []
        if len(interactions):
            weighted = interactions[["user_id", "event_id"]].copy()
            weighted[PREFERENCE_COL] = [
                self.interaction_weight(s, r)
                for s, r in zip(interactions["status"], interactions["rating"])
            ]
            frames.append(weighted)

        known_clicks = clicks.dropna(subset=["user_id"])
        if len(known_clicks):
            clicked = known_clicks[["user_id", "event_id"]].copy()
            clicked[PREFERENCE_COL] = self.config.score_view
            frames.append(clicked)

        if not frames:
            logger.info("No interaction signals to aggregate")
            return self._empty()

        signals = pd.concat(frames, ignore_index=True)
        prefs = (
            signals.groupby(["user_id", "event_id"])[PREFERENCE_COL]
            .max()
            .astype(np.float64)
        )
        prefs = prefs[prefs > 0].sort_index()

        logger.info(
            f"Aggregated {len(signals):,} signals → {len(prefs):,} labelled pairs "
            f"({prefs.index.get_level_values('user_id').nunique() if len(prefs) else 0:,} users)"
        )
        return prefs

    @staticmethod
    def _empty() -> pd.Series:
        index = pd.MultiIndex.from_tuples([], names=["user_id", "event_id"])
        return pd.Series([], index=index, dtype=np.float64, name=PREFERENCE_COL)
