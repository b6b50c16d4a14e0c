"""Demo catalogue: 3 users, 12 upcoming events, 26 interactions, 6 clicks.

Event dates and click times are relative to ``now`` so the seed always looks
fresh. Ids are small integers for events/taxonomy and handles for users.
"""
import logging
from typing import Dict, List, Optional, Tuple

import pandas as pd

from eventrec.data_loader import InMemoryEventStore, InteractionStatus, to_utc_naive

logger = logging.getLogger(__name__)

USERS: List[str] = ["alice", "bob", "carol"]

CATEGORIES: Dict[int, str] = {1: "Music", 2: "Tech", 3: "Sports"}

# venue_id → (name, capacity)
VENUES: Dict[int, Tuple[str, int]] = {
    1: ("City Hall", 800),
    2: ("Tech Hub", 300),
    3: ("Stadium A", 15000),
    4: ("Community Center", 500),
    5: ("Open Air Park", 5000),
}

ORGANIZERS: Dict[int, str] = {
    1: "LiveNation",
    2: "CodeWorks",
    3: "AthletiCo",
    4: "CityCulture",
    5: "DevGuild",
}

# (title, days from now, category_id, venue_id, organizer_id)
EVENTS: List[Tuple[str, int, int, int, int]] = [
    ("Jazz Night", 3, 1, 1, 1),
    ("Rock Fest", 10, 1, 1, 1),
    ("AI Summit", 5, 2, 2, 2),
    ("Hack Night", 1, 2, 2, 2),
    ("Derby Match", 7, 3, 3, 3),
    ("Symphony Gala", 14, 1, 1, 4),
    ("Indie Jam", 4, 1, 5, 1),
    ("Cloud Expo", 12, 2, 4, 5),
    ("AI Workshop", 8, 2, 2, 2),
    ("Data Night", 2, 2, 4, 5),
    ("City Run 10K", 9, 3, 5, 3),
    ("Championship Final", 20, 3, 3, 3),
]

EVENT_TITLES: Dict[int, str] = {i: title for i, (title, *_rest) in enumerate(EVENTS, start=1)}

_G = InteractionStatus.GOING
_I = InteractionStatus.INTERESTED

# (user, title, status, rating)
INTERACTIONS: List[Tuple[str, str, InteractionStatus, int]] = [
    ("alice", "AI Summit", _I, 5),
    ("alice", "Hack Night", _G, 4),
    ("alice", "Jazz Night", _I, 3),
    ("alice", "Cloud Expo", _I, 4),
    ("alice", "AI Workshop", _G, 5),
    ("alice", "Data Night", _I, 4),
    ("alice", "Indie Jam", _I, 3),
    ("bob", "Rock Fest", _G, 5),
    ("bob", "Jazz Night", _I, 4),
    ("bob", "Derby Match", _I, 2),
    ("bob", "City Run 10K", _G, 4),
    ("bob", "Championship Final", _I, 5),
    ("bob", "Indie Jam", _G, 4),
    ("bob", "Symphony Gala", _I, 3),
    ("carol", "AI Summit", _I, 5),
    ("carol", "Derby Match", _G, 4),
    ("carol", "Cloud Expo", _I, 4),
    ("carol", "AI Workshop", _I, 5),
    ("carol", "Data Night", _G, 5),
    ("carol", "Symphony Gala", _I, 4),
    ("carol", "Rock Fest", _I, 4),
    # cross-category extras
    ("alice", "City Run 10K", _I, 3),
    ("alice", "Championship Final", _I, 4),
    ("bob", "AI Workshop", _I, 3),
    ("bob", "Data Night", _I, 4),
    ("carol", "Indie Jam", _I, 3),
]

# (user, title, dwell_ms, minutes ago)
CLICKS: List[Tuple[str, str, int, int]] = [
    ("alice", "AI Summit", 4200, 5),
    ("alice", "AI Workshop", 3600, 12),
    ("bob", "Rock Fest", 5200, 8),
    ("bob", "Indie Jam", 1800, 3),
    ("carol", "Data Night", 2500, 20),
    ("carol", "Symphony Gala", 3000, 15),
]

# (follower, followee)
FOLLOWS: List[Tuple[str, str]] = [
    ("alice", "carol"),
    ("bob", "alice"),
    ("carol", "alice"),
]


def build_demo_store(now=None) -> InMemoryEventStore:
    """Fresh in-memory store holding the demo catalogue, relative to ``now``."""
    now = to_utc_naive(now) if now is not None else to_utc_naive(pd.Timestamp.now(tz="UTC"))
    event_id_of = {title: event_id for event_id, title in EVENT_TITLES.items()}

    events = pd.DataFrame(
        [
            {
                "event_id": event_id,
                "category_id": category_id,
                "venue_id": venue_id,
                "organizer_id": organizer_id,
                "date_time": now + pd.Timedelta(days=days),
            }
            for event_id, (_, days, category_id, venue_id, organizer_id) in enumerate(EVENTS, start=1)
        ]
    )

    interactions = pd.DataFrame(
        [
            {
                "user_id": user,
                "event_id": event_id_of[title],
                "status": int(status),
                "rating": rating,
                "timestamp": now - pd.Timedelta(minutes=len(INTERACTIONS) - i),
            }
            for i, (user, title, status, rating) in enumerate(INTERACTIONS)
        ]
    )

    clicks = pd.DataFrame(
        [
            {
                "user_id": user,
                "event_id": event_id_of[title],
                "clicked_at": now - pd.Timedelta(minutes=minutes_ago),
                "dwell_ms": dwell_ms,
            }
            for user, title, dwell_ms, minutes_ago in CLICKS
        ]
    )

    store = InMemoryEventStore(
        interactions=interactions,
        clicks=clicks,
        events=events,
        venues={venue_id: capacity for venue_id, (_, capacity) in VENUES.items()},
        follows=FOLLOWS,
    )
    logger.info(f"Built demo store: {store!r}")
    return store
