from datetime import datetime
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest

from eventrec.data_loader import EventStore, InMemoryEventStore, load_snapshot
from eventrec.database import PostgresEventStore


@pytest.fixture
def mock_db():
    """Patch psycopg2.connect; yields (connect, conn, cursor)."""
    with patch("eventrec.database.psycopg2.connect") as connect:
        conn = MagicMock()
        cur = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cur
        connect.return_value = conn
        yield connect, conn, cur


def test_store_satisfies_protocol():
    assert isinstance(PostgresEventStore("postgresql://u:p@h/db"), EventStore)


def test_list_events_normalises_rows(mock_db):
    _, conn, cur = mock_db
    cur.fetchall.return_value = [
        {"event_id": 1, "category_id": 2, "venue_id": 3, "organizer_id": 4,
         "date_time": datetime(2026, 3, 5, 18, 0)},
    ]

    events = PostgresEventStore("postgresql://u:p@h/db").list_events()

    assert list(events.columns) == ["event_id", "category_id", "venue_id", "organizer_id", "date_time"]
    assert events.loc[0, "date_time"] == pd.Timestamp("2026-03-05 18:00")
    assert '"Events"' in cur.execute.call_args[0][0]
    conn.commit.assert_called_once()
    conn.close.assert_called_once()


def test_clicks_since_adds_filter(mock_db):
    _, _, cur = mock_db
    cur.fetchall.return_value = []

    clicks = PostgresEventStore("postgresql://u:p@h/db").list_clicks(since=datetime(2026, 2, 1))

    sql, params = cur.execute.call_args[0]
    assert '"ClickedAt" >= %s' in sql
    assert params == (datetime(2026, 2, 1),)
    assert clicks.empty


def test_missing_venue_capacity_is_none(mock_db):
    _, _, cur = mock_db
    cur.fetchone.return_value = None
    assert PostgresEventStore("postgresql://u:p@h/db").venue_capacity(7) is None

    cur.fetchone.return_value = {"capacity": 300}
    assert PostgresEventStore("postgresql://u:p@h/db").venue_capacity(7) == 300


def test_followees_and_organizer_count(mock_db):
    _, _, cur = mock_db
    cur.fetchall.return_value = [{"followee_id": "carol"}, {"followee_id": "bob"}]
    cur.fetchone.return_value = {"n": 5}
    store = PostgresEventStore("postgresql://u:p@h/db")

    assert store.list_followees("alice") == ["carol", "bob"]
    assert store.organizer_event_count(2) == 5


def test_query_error_rolls_back(mock_db):
    _, conn, cur = mock_db
    cur.execute.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        PostgresEventStore("postgresql://u:p@h/db").list_interactions()

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    conn.close.assert_called_once()


def test_record_recommendations_inserts_one_row_per_event(mock_db):
    _, conn, _ = mock_db
    with patch("eventrec.database.psycopg2.extras.execute_values") as execute_values:
        PostgresEventStore("postgresql://u:p@h/db").record_recommendations(
            "alice", [3, 9], datetime(2026, 3, 2, 12, 0)
        )

    _, sql, rows = execute_values.call_args[0]
    assert '"RecommendationLogs"' in sql
    assert rows == [("alice", 3, datetime(2026, 3, 2, 12, 0)), ("alice", 9, datetime(2026, 3, 2, 12, 0))]
    conn.commit.assert_called_once()


def test_venue_capacities_reads_all_venues_at_once(mock_db):
    connect, _, cur = mock_db
    cur.fetchall.return_value = [
        {"venue_id": 3, "capacity": 15000},
        {"venue_id": 7, "capacity": None},
    ]

    capacities = PostgresEventStore("postgresql://u:p@h/db").venue_capacities()

    assert capacities == {3: 15000, 7: None}
    assert '"Venues"' in cur.execute.call_args[0][0]
    connect.assert_called_once()


def _events_frame():
    return pd.DataFrame(
        [{"event_id": 1, "category_id": 1, "venue_id": 4, "organizer_id": 2,
          "date_time": datetime(2026, 3, 5)},
         {"event_id": 2, "category_id": 1, "venue_id": 9, "organizer_id": 2,
          "date_time": datetime(2026, 3, 6)}]
    )


def test_snapshot_over_postgres_store():
    store = MagicMock(spec=PostgresEventStore)
    store.list_interactions.return_value = pd.DataFrame(
        [{"user_id": "alice", "event_id": 1, "status": 2, "rating": None,
          "timestamp": datetime(2026, 3, 1)}]
    )
    store.list_clicks.return_value = pd.DataFrame(columns=["user_id", "event_id", "clicked_at", "dwell_ms"])
    store.list_events.return_value = _events_frame()
    store.venue_capacities.return_value = {4: 120, 9: None, 11: 80}
    store.list_followees.return_value = []

    snapshot = load_snapshot(store)

    store.venue_capacities.assert_called_once_with()
    store.venue_capacity.assert_not_called()
    store.organizer_event_count.assert_not_called()
    assert snapshot.venue_capacity == {4: 120.0, 9: 0.0}
    assert snapshot.organizer_counts == {2: 2.0}
    assert snapshot.followees == {"alice": set()}


class _PerVenueStore(InMemoryEventStore):
    venue_capacities = None


def test_snapshot_falls_back_to_per_venue_lookups():
    store = _PerVenueStore(events=_events_frame(), venues={4: 300})

    snapshot = load_snapshot(store)

    assert snapshot.venue_capacity == {4: 300.0, 9: 0.0}
    assert snapshot.organizer_counts == {2: 2.0}
