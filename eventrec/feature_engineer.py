"""Feature engineering for the Stage-2 ranker.

One :class:`FeatureBuilder` produces the ranker rows both when the training
set is built and when a request is served. Both paths construct it from a
:class:`StoreSnapshot`, the aggregated preferences and a reference ``now``;
nothing else feeds the formulas.
"""
import logging
import math
from typing import Dict, Iterable, Optional

import pandas as pd

from eventrec.config import RecommenderConfig
from eventrec.data_loader import InteractionStatus, StoreSnapshot, to_utc_naive
from eventrec.exceptions import UnknownIdentifierError
from eventrec.models.catboost_ranker import RANKER_FEATURE_COLS
from eventrec.models.mf_recommender import MatrixFactorizationRecommender

logger = logging.getLogger(__name__)

# affinity name → event attribute it is computed over
AFFINITY_DIMS: Dict[str, str] = {
    "user_cat_affinity": "category_id",
    "user_hour_affinity": "hour",
    "user_dow_affinity": "dow",
    "organizer_user_prior": "organizer_id",
}

SECONDS_PER_DAY = 86400.0


def utc_now() -> pd.Timestamp:
    return to_utc_naive(pd.Timestamp.now(tz="UTC"))


class FeatureBuilder:
    """Builds ranker feature rows for (user, event) pairs.

    All lookups are prefetched in the constructor so the per-candidate work
    is dictionary access only.

    Args:
        snapshot: Bulk-loaded store tables.
        preferences: Aggregated preference labels indexed by (user_id, event_id).
        candidate_model: Fitted Stage-A model supplying ``mf_score`` (optional).
        now: Reference time for recency / timing / engagement-window features.
        config: Feature constants.
    """

    def __init__(
        self,
        snapshot: StoreSnapshot,
        preferences: pd.Series,
        candidate_model: Optional[MatrixFactorizationRecommender] = None,
        now=None,
        config: Optional[RecommenderConfig] = None,
    ) -> None:
        self.config = config or RecommenderConfig()
        self.snapshot = snapshot
        self.candidate_model = candidate_model
        self.now = to_utc_naive(now) if now is not None else utc_now()

        self._events = {row.event_id: row for row in snapshot.events.itertuples(index=False)}
        self._clicks_cnt, self._clicks_dwell = self._engagement_tables(snapshot.clicks)
        self._totals, self._status_by_event = self._social_tables(snapshot.interactions)
        self._affinity = self._affinity_tables(preferences, snapshot.events)

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    def _engagement_tables(self, clicks: pd.DataFrame):
        cutoff = self.now - pd.Timedelta(days=self.config.engagement_window_days)
        recent = clicks[(clicks["clicked_at"] >= cutoff) & (clicks["clicked_at"] <= self.now)]
        grouped = recent.groupby("event_id")
        counts = grouped.size().astype(float).to_dict()
        dwell = (grouped["dwell_ms"].sum(min_count=0) / self.config.dwell_norm_ms).to_dict()
        return counts, dwell

    @staticmethod
    def _social_tables(interactions: pd.DataFrame):
        # the latest record per (user, event) carries the current status
        latest = (
            interactions.sort_values("timestamp", kind="stable")
            .drop_duplicates(["user_id", "event_id"], keep="last")
        )
        totals: Dict = {}
        status_by_event: Dict = {}
        for user_id, event_id, status in zip(latest["user_id"], latest["event_id"], latest["status"]):
            status = InteractionStatus(int(status))
            if status == InteractionStatus.NONE:
                continue
            going, interested = totals.get(event_id, (0, 0))
            if status == InteractionStatus.GOING:
                going += 1
            else:
                interested += 1
            totals[event_id] = (going, interested)
            status_by_event.setdefault(event_id, {})[user_id] = status
        return totals, status_by_event

    @staticmethod
    def _affinity_tables(preferences: pd.Series, events: pd.DataFrame) -> Dict[str, Dict]:
        tables: Dict[str, Dict] = {name: {} for name in AFFINITY_DIMS}
        if len(preferences) == 0 or len(events) == 0:
            return tables

        df = preferences.rename("weight").reset_index().merge(
            events[["event_id", "category_id", "organizer_id", "date_time"]],
            on="event_id",
            how="inner",
        )
        if df.empty:
            return tables
        df["hour"] = df["date_time"].dt.hour
        df["dow"] = df["date_time"].dt.dayofweek

        user_totals = df.groupby("user_id")["weight"].sum()
        for name, column in AFFINITY_DIMS.items():
            sums = df.groupby(["user_id", column])["weight"].sum()
            shares = sums.div(user_totals, level="user_id")
            tables[name] = shares.to_dict()
        return tables

    # ------------------------------------------------------------------
    # Feature groups
    # ------------------------------------------------------------------

    def _popularity_features(self, user_id, event_id, event) -> Dict[str, float]:
        return {
            "organizer_score": float(self.snapshot.organizer_counts.get(event.organizer_id, 0.0)),
            "venue_capacity": float(self.snapshot.venue_capacity.get(event.venue_id, 0.0) or 0.0),
            "category_id": float(event.category_id),
            "event_clicks_30d": float(self._clicks_cnt.get(event_id, 0.0)),
            "event_dwell_30d": float(self._clicks_dwell.get(event_id, 0.0)),
        }

    def _timing_features(self, user_id, event_id, event) -> Dict[str, float]:
        start = event.date_time
        if pd.isna(start):
            raise ValueError("event has no scheduled time")
        delta_days = (start - self.now).total_seconds() / SECONDS_PER_DAY
        days_ago = max(0.0, -delta_days)
        return {
            "event_recency": math.exp(-days_ago / self.config.recency_half_life_days),
            "hour_of_day": float(start.hour),
            "day_of_week": float(start.dayofweek),
            "is_upcoming": 1.0 if start >= self.now else 0.0,
            "days_to_event": min(max(delta_days, self.config.days_to_event_min), self.config.days_to_event_max),
        }

    def _social_features(self, user_id, event_id, event) -> Dict[str, float]:
        followees = self.snapshot.followees.get(user_id) or set()
        total_going, total_interested = self._totals.get(event_id, (0, 0))
        statuses = self._status_by_event.get(event_id, {})
        fr_going = sum(1 for f in followees if statuses.get(f) == InteractionStatus.GOING)
        fr_interested = sum(1 for f in followees if statuses.get(f) == InteractionStatus.INTERESTED)
        return {
            "friends_going_rate": fr_going / total_going if total_going else 0.0,
            "friends_interested_rate": fr_interested / total_interested if total_interested else 0.0,
        }

    def _affinity_features(self, user_id, event_id, event) -> Dict[str, float]:
        start = event.date_time
        values = {
            "category_id": event.category_id,
            "organizer_id": event.organizer_id,
            "hour": None if pd.isna(start) else start.hour,
            "dow": None if pd.isna(start) else start.dayofweek,
        }
        return {
            name: float(self._affinity[name].get((user_id, values[column]), 0.0))
            for name, column in AFFINITY_DIMS.items()
        }

    def _mf_feature(self, user_id, event_id, event) -> Dict[str, float]:
        if self.candidate_model is None:
            return {"mf_score": 0.0}
        try:
            return {"mf_score": self.candidate_model.score(user_id, event_id)}
        except UnknownIdentifierError:
            return {"mf_score": 0.0}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_features(self, user_id, event_id) -> Dict[str, float]:
        """Feature row for one (user, event) pair.

        A failing feature group keeps its neutral default (0) instead of
        aborting the row.
        """
        row = dict.fromkeys(RANKER_FEATURE_COLS, 0.0)
        event = self._events.get(event_id)
        if event is None:
            logger.warning(f"Event {event_id!r} not in snapshot; using default features")
            return row

        for group in (
            self._popularity_features,
            self._timing_features,
            self._social_features,
            self._affinity_features,
            self._mf_feature,
        ):
            try:
                row.update(group(user_id, event_id, event))
            except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
                logger.warning(
                    f"{group.__name__} degraded for ({user_id!r}, {event_id!r}): {exc}"
                )
        return row

    def build_matrix(self, user_id, event_ids: Iterable) -> pd.DataFrame:
        """Stack :meth:`build_features` rows in ``RANKER_FEATURE_COLS`` order."""
        rows = [self.build_features(user_id, event_id) for event_id in event_ids]
        return pd.DataFrame(rows, columns=RANKER_FEATURE_COLS, dtype=float)
