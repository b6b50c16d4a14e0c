import pandas as pd
import pytest

from eventrec.config import RecommenderConfig
from eventrec.data_loader import InteractionStatus
from eventrec.preprocessor import PreferenceAggregator

T0 = pd.Timestamp("2026-03-01 10:00:00")


def _interactions(rows):
    return pd.DataFrame(
        [{"user_id": u, "event_id": e, "status": s, "rating": r, "timestamp": T0} for u, e, s, r in rows]
    )


def _clicks(rows):
    return pd.DataFrame(
        [{"user_id": u, "event_id": e, "clicked_at": T0, "dwell_ms": 1000} for u, e in rows]
    )


def test_strongest_signal_wins():
    interactions = _interactions(
        [
            ("u1", 1, InteractionStatus.INTERESTED, 5),     # rating beats status
            ("u1", 2, InteractionStatus.GOING, None),       # status only
            ("u1", 3, InteractionStatus.INTERESTED, 1),     # status beats rating
            ("u2", 1, InteractionStatus.NONE, 3),           # rating only
        ]
    )
    clicks = _clicks([("u1", 2), ("u1", 4), ("u2", 1)])

    prefs = PreferenceAggregator().aggregate(interactions, clicks)

    assert prefs[("u1", 1)] == pytest.approx(1.0)
    assert prefs[("u1", 2)] == pytest.approx(1.0)
    assert prefs[("u1", 3)] == pytest.approx(0.7)
    assert prefs[("u1", 4)] == pytest.approx(0.2)     # click only
    assert prefs[("u2", 1)] == pytest.approx(0.7)     # rating 3 beats the click
    assert prefs.name == "preference"
    assert list(prefs.index.names) == ["user_id", "event_id"]


def test_zero_signal_pairs_and_anonymous_clicks_are_dropped():
    interactions = _interactions([("u1", 1, InteractionStatus.NONE, None)])
    clicks = pd.DataFrame(
        [{"user_id": None, "event_id": 2, "clicked_at": T0, "dwell_ms": 500}]
    )

    prefs = PreferenceAggregator().aggregate(interactions, clicks)

    assert len(prefs) == 0


def test_ratings_above_scale_are_clipped():
    cfg = RecommenderConfig()
    assert cfg.score_rated(9) == pytest.approx(1.0)
    assert cfg.score_rated(0) == 0.0
    assert cfg.score_rated(None) == 0.0
    assert cfg.score_rated("bad") == 0.0
    assert cfg.score_rated(2) == pytest.approx(0.55)


def test_status_names_are_accepted():
    agg = PreferenceAggregator()
    assert agg.status_weight("going") == pytest.approx(1.0)
    assert agg.status_weight("Interested") == pytest.approx(0.7)
    assert agg.status_weight(0) == 0.0


def test_empty_inputs_give_empty_series():
    prefs = PreferenceAggregator().aggregate(pd.DataFrame(), pd.DataFrame())
    assert len(prefs) == 0
    assert list(prefs.index.names) == ["user_id", "event_id"]


def test_demo_data_yields_26_labelled_pairs(demo_prefs):
    # every demo click lands on a pair that already has an interaction
    assert len(demo_prefs) == 26
    assert set(demo_prefs.index.get_level_values("user_id")) == {"alice", "bob", "carol"}
    assert (demo_prefs > 0).all() and (demo_prefs <= 1).all()
