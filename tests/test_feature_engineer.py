import math

import pandas as pd
import pytest

from eventrec.data_loader import InMemoryEventStore, InteractionStatus, load_snapshot
from eventrec.feature_engineer import FeatureBuilder
from eventrec.models.catboost_ranker import RANKER_FEATURE_COLS
from eventrec.preprocessor import PreferenceAggregator

JAZZ_NIGHT, AI_SUMMIT, DERBY_MATCH, DATA_NIGHT, AI_WORKSHOP = 1, 3, 5, 10, 9


@pytest.fixture
def builder(demo_snapshot, demo_prefs, now):
    return FeatureBuilder(demo_snapshot, demo_prefs, now=now)


def _small_store(now, venues=None):
    events = pd.DataFrame(
        [
            {"event_id": 1, "category_id": 1, "venue_id": 1, "organizer_id": 1,
             "date_time": now - pd.Timedelta(days=30)},
            {"event_id": 2, "category_id": 1, "venue_id": 2, "organizer_id": 1,
             "date_time": now + pd.Timedelta(days=100)},
            {"event_id": 3, "category_id": 2, "venue_id": 1, "organizer_id": 2,
             "date_time": None},
        ]
    )
    clicks = pd.DataFrame(
        [
            {"user_id": "u1", "event_id": 2, "clicked_at": now - pd.Timedelta(days=1), "dwell_ms": 1000},
            {"user_id": None, "event_id": 2, "clicked_at": now - pd.Timedelta(days=2), "dwell_ms": 3000},
            {"user_id": "u1", "event_id": 2, "clicked_at": now - pd.Timedelta(days=40), "dwell_ms": 9000},
            {"user_id": "u1", "event_id": 2, "clicked_at": now + pd.Timedelta(hours=1), "dwell_ms": 9000},
        ]
    )
    interactions = pd.DataFrame(
        [{"user_id": "u1", "event_id": 1, "status": InteractionStatus.GOING, "rating": None,
          "timestamp": now - pd.Timedelta(days=31)}]
    )
    return InMemoryEventStore(
        interactions=interactions,
        clicks=clicks,
        events=events,
        venues=venues if venues is not None else {1: 100},
    )


def _small_builder(now, venues=None):
    store = _small_store(now, venues)
    snapshot = load_snapshot(store)
    prefs = PreferenceAggregator().aggregate(snapshot.interactions, snapshot.clicks)
    return FeatureBuilder(snapshot, prefs, now=now)


def test_row_has_every_ranker_feature(builder):
    row = builder.build_features("alice", JAZZ_NIGHT)
    assert list(row) == RANKER_FEATURE_COLS
    assert all(math.isfinite(v) for v in row.values())


def test_popularity_and_timing(builder, now):
    row = builder.build_features("alice", JAZZ_NIGHT)

    assert row["organizer_score"] == 3.0      # LiveNation runs 3 demo events
    assert row["venue_capacity"] == 800.0
    assert row["category_id"] == 1.0
    assert row["is_upcoming"] == 1.0
    assert row["days_to_event"] == pytest.approx(3.0)
    assert row["event_recency"] == pytest.approx(1.0)
    assert row["hour_of_day"] == float(now.hour)
    assert row["day_of_week"] == float((now + pd.Timedelta(days=3)).dayofweek)


def test_click_engagement(builder):
    summit = builder.build_features("bob", AI_SUMMIT)
    workshop = builder.build_features("bob", AI_WORKSHOP)

    assert summit["event_clicks_30d"] == 1.0
    assert summit["event_dwell_30d"] == pytest.approx(2.1)
    assert workshop["event_dwell_30d"] == pytest.approx(1.8)


def test_social_rates_use_followees(builder):
    # Data Night: carol Going; alice and bob Interested
    alice = builder.build_features("alice", DATA_NIGHT)   # follows carol
    bob = builder.build_features("bob", DATA_NIGHT)       # follows alice

    assert alice["friends_going_rate"] == pytest.approx(1.0)
    assert alice["friends_interested_rate"] == 0.0
    assert bob["friends_going_rate"] == 0.0
    assert bob["friends_interested_rate"] == pytest.approx(0.5)


def test_affinities_are_shares_of_history(builder):
    music = builder.build_features("alice", JAZZ_NIGHT)["user_cat_affinity"]
    tech = builder.build_features("alice", AI_SUMMIT)["user_cat_affinity"]
    sports = builder.build_features("alice", DERBY_MATCH)["user_cat_affinity"]

    assert music + tech + sports == pytest.approx(1.0)
    assert tech > music
    # all demo events start at the same hour
    assert builder.build_features("alice", DERBY_MATCH)["user_hour_affinity"] == pytest.approx(1.0)


def test_user_without_history_gets_zero_affinities(builder):
    row = builder.build_features("dave", JAZZ_NIGHT)
    assert row["user_cat_affinity"] == 0.0
    assert row["organizer_user_prior"] == 0.0
    assert row["friends_going_rate"] == 0.0
    assert row["mf_score"] == 0.0


def test_unknown_event_gets_defaults(builder):
    row = builder.build_features("alice", 999)
    assert set(row.values()) == {0.0}


def test_past_and_far_events_are_clipped(now):
    b = _small_builder(now)
    past = b.build_features("u1", 1)
    far = b.build_features("u1", 2)

    assert past["is_upcoming"] == 0.0
    assert past["days_to_event"] == -7.0
    assert past["event_recency"] == pytest.approx(math.exp(-1.0))
    assert far["days_to_event"] == 60.0


def test_engagement_window_excludes_old_and_future_clicks(now):
    row = _small_builder(now).build_features("u1", 2)
    # one signed-in and one anonymous click inside the last 30 days
    assert row["event_clicks_30d"] == 2.0
    assert row["event_dwell_30d"] == pytest.approx(2.0)


def test_missing_schedule_and_venue_degrade_single_features(now):
    row = _small_builder(now, venues={}).build_features("u1", 3)

    assert row["venue_capacity"] == 0.0
    assert row["days_to_event"] == 0.0
    assert row["is_upcoming"] == 0.0
    assert row["organizer_score"] == 1.0
    assert row["category_id"] == 2.0


def test_matrix_follows_candidate_order(builder):
    X = builder.build_matrix("alice", [DATA_NIGHT, JAZZ_NIGHT])
    assert list(X.columns) == RANKER_FEATURE_COLS
    assert X.iloc[1]["venue_capacity"] == 800.0
    assert len(builder.build_matrix("alice", [])) == 0
