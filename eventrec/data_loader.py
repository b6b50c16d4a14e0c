"""Data access layer: the external event store interface and snapshot loading."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

import pandas as pd

logger = logging.getLogger(__name__)

# Columns for each table
INTERACTION_COLS = ["user_id", "event_id", "status", "rating", "timestamp"]
CLICK_COLS = ["user_id", "event_id", "clicked_at", "dwell_ms"]
EVENT_COLS = ["event_id", "category_id", "venue_id", "organizer_id", "date_time"]


class InteractionStatus(IntEnum):
    NONE = 0
    INTERESTED = 1
    GOING = 2

    @classmethod
    def parse(cls, value) -> "InteractionStatus":
        """Accept enum members, ints or names ("going", "Interested", ...)."""
        if value is None or (isinstance(value, float) and pd.isna(value)):
            return cls.NONE
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                return cls(int(value))
        return cls(int(value))


def to_utc_naive(value) -> pd.Timestamp:
    """Normalise a datetime-like to a tz-naive UTC ``pd.Timestamp``."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def _normalize_times(series: pd.Series) -> pd.Series:
    converted = pd.to_datetime(series, utc=True)
    return converted.dt.tz_localize(None)


def normalize_interactions(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce an interactions frame to INTERACTION_COLS with typed columns."""
    df = df.reindex(columns=INTERACTION_COLS).copy()
    df["status"] = df["status"].map(lambda s: int(InteractionStatus.parse(s))).astype("int64")
    df["rating"] = pd.to_numeric(df["rating"], errors="coerce")
    if len(df):
        df["timestamp"] = _normalize_times(df["timestamp"])
    return df.reset_index(drop=True)


def normalize_clicks(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce a clicks frame to CLICK_COLS with typed columns."""
    df = df.reindex(columns=CLICK_COLS).copy()
    df["dwell_ms"] = pd.to_numeric(df["dwell_ms"], errors="coerce")
    if len(df):
        df["clicked_at"] = _normalize_times(df["clicked_at"])
    return df.reset_index(drop=True)


def normalize_events(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce an events frame to EVENT_COLS with typed columns."""
    df = df.reindex(columns=EVENT_COLS).copy()
    if len(df):
        df["date_time"] = _normalize_times(df["date_time"])
    return df.reset_index(drop=True)


@runtime_checkable
class EventStore(Protocol):
    """Read-only view of the relational store the recommender consumes.

    Implementations may additionally provide:

    * ``venue_capacities()``: ``{venue_id: capacity}`` for every venue in one
      read; :func:`load_snapshot` prefers it over per-venue lookups.
    * ``record_recommendations(user_id, event_ids, at)``; the service calls
      it when present.
    """

    def list_interactions(self) -> pd.DataFrame: ...

    def list_clicks(self, since: Optional[datetime] = None) -> pd.DataFrame: ...

    def list_events(self) -> pd.DataFrame: ...

    def list_followees(self, user_id) -> List: ...

    def venue_capacity(self, venue_id) -> Optional[int]: ...

    def organizer_event_count(self, organizer_id) -> int: ...


class InMemoryEventStore:
    """EventStore backed by pandas DataFrames (demo data, tests, notebooks)."""

    def __init__(
        self,
        interactions: Optional[pd.DataFrame] = None,
        clicks: Optional[pd.DataFrame] = None,
        events: Optional[pd.DataFrame] = None,
        venues: Optional[Dict] = None,
        follows: Optional[Iterable] = None,
    ) -> None:
        self.interactions = normalize_interactions(
            interactions if interactions is not None else pd.DataFrame(columns=INTERACTION_COLS)
        )
        self.clicks = normalize_clicks(
            clicks if clicks is not None else pd.DataFrame(columns=CLICK_COLS)
        )
        self.events = normalize_events(
            events if events is not None else pd.DataFrame(columns=EVENT_COLS)
        )
        self.venues: Dict = dict(venues or {})
        self.follows: Dict[object, Set] = {}
        for follower, followee in follows or []:
            self.follows.setdefault(follower, set()).add(followee)
        self.recommendation_log: List[Dict] = []

    def list_interactions(self) -> pd.DataFrame:
        return self.interactions.copy()

    def list_clicks(self, since: Optional[datetime] = None) -> pd.DataFrame:
        if since is None:
            return self.clicks.copy()
        return self.clicks[self.clicks["clicked_at"] >= to_utc_naive(since)].reset_index(drop=True)

    def list_events(self) -> pd.DataFrame:
        return self.events.copy()

    def list_followees(self, user_id) -> List:
        return sorted(self.follows.get(user_id, set()), key=str)

    def venue_capacity(self, venue_id) -> Optional[int]:
        return self.venues.get(venue_id)

    def venue_capacities(self) -> Dict:
        return dict(self.venues)

    def organizer_event_count(self, organizer_id) -> int:
        return int((self.events["organizer_id"] == organizer_id).sum())

    def record_recommendations(self, user_id, event_ids: List, at: datetime) -> None:
        for event_id in event_ids:
            self.recommendation_log.append(
                {"user_id": user_id, "event_id": event_id, "recommended_at": at}
            )

    # ── Mutations used by demos and tests ─────────────────────────────────

    def set_status(self, user_id, event_id, status, rating=None, timestamp=None) -> None:
        """Upsert an interaction by (user_id, event_id)."""
        ts = to_utc_naive(timestamp or pd.Timestamp.now(tz="UTC"))
        mask = (self.interactions["user_id"] == user_id) & (self.interactions["event_id"] == event_id)
        row = {
            "user_id": user_id,
            "event_id": event_id,
            "status": int(InteractionStatus.parse(status)),
            "rating": rating,
            "timestamp": ts,
        }
        others = self.interactions[~mask]
        self.interactions = normalize_interactions(
            pd.concat([others, pd.DataFrame([row])], ignore_index=True)
        )

    def add_click(self, user_id, event_id, clicked_at=None, dwell_ms=None) -> None:
        row = {
            "user_id": user_id,
            "event_id": event_id,
            "clicked_at": to_utc_naive(clicked_at or pd.Timestamp.now(tz="UTC")),
            "dwell_ms": dwell_ms,
        }
        self.clicks = normalize_clicks(pd.concat([self.clicks, pd.DataFrame([row])], ignore_index=True))

    def __repr__(self) -> str:
        return (
            f"InMemoryEventStore({len(self.events)} events, "
            f"{len(self.interactions)} interactions, {len(self.clicks)} clicks)"
        )


@dataclass(frozen=True)
class StoreSnapshot:
    """Everything the feature builder needs, fetched in bulk up front."""

    interactions: pd.DataFrame
    clicks: pd.DataFrame
    events: pd.DataFrame
    venue_capacity: Dict = field(default_factory=dict)
    organizer_counts: Dict = field(default_factory=dict)
    followees: Dict[object, Set] = field(default_factory=dict)

    @property
    def event_ids(self) -> List:
        return sorted(self.events["event_id"].tolist())


def load_snapshot(store: EventStore, user_ids: Optional[Iterable] = None) -> StoreSnapshot:
    """Read all tables the pipeline needs from ``store`` in one pass.

    Args:
        store: External event store.
        user_ids: Users whose followees are needed. ``None`` means every user
            that appears in interactions or clicks (training).

    Returns:
        StoreSnapshot with normalised frames and prefetched lookups.
    """
    interactions = normalize_interactions(store.list_interactions())
    clicks = normalize_clicks(store.list_clicks(None))
    events = normalize_events(store.list_events())

    venue_ids = events["venue_id"].dropna().unique().tolist()
    bulk_capacities = getattr(store, "venue_capacities", None)
    if bulk_capacities is not None:
        capacities = bulk_capacities()
    else:
        capacities = {venue_id: store.venue_capacity(venue_id) for venue_id in venue_ids}
    venue_capacity: Dict = {}
    for venue_id in venue_ids:
        capacity = capacities.get(venue_id)
        venue_capacity[venue_id] = float(capacity) if capacity is not None else 0.0

    # events holds the whole catalog, so per-organizer counts need no extra queries
    organizer_counts: Dict = {
        organizer_id: float(n) for organizer_id, n in events.groupby("organizer_id").size().items()
    }

    if user_ids is None:
        user_ids = set(interactions["user_id"].dropna().tolist()) | set(clicks["user_id"].dropna().tolist())
    followees = {uid: set(store.list_followees(uid)) for uid in user_ids}

    logger.info(
        f"Loaded snapshot: {len(events):,} events, {len(interactions):,} interactions, "
        f"{len(clicks):,} clicks, {len(followees):,} users with follow lists"
    )
    return StoreSnapshot(
        interactions=interactions,
        clicks=clicks,
        events=events,
        venue_capacity=venue_capacity,
        organizer_counts=organizer_counts,
        followees=followees,
    )
