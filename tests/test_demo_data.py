from eventrec.demo_data import CATEGORIES, ORGANIZERS, VENUES


def test_demo_catalogue_sizes(demo_store):
    assert len(demo_store.list_events()) == 12
    assert len(demo_store.list_interactions()) == 26
    assert len(demo_store.list_clicks()) == 6
    assert set(demo_store.list_interactions()["user_id"]) == {"alice", "bob", "carol"}
    assert len(CATEGORIES) == 3
    assert len(VENUES) == 5
    assert len(ORGANIZERS) == 5


def test_demo_events_are_upcoming(demo_store, now):
    events = demo_store.list_events()
    assert (events["date_time"] > now).all()


def test_demo_clicks_carry_dwell(demo_store):
    clicks = demo_store.list_clicks()
    assert clicks["dwell_ms"].notna().all()
    assert demo_store.venue_capacity(3) == 15000


def test_set_status_upserts(demo_store):
    demo_store.set_status("alice", 2, "going", rating=5)
    demo_store.set_status("alice", 2, "interested")

    rows = demo_store.list_interactions()
    rows = rows[(rows["user_id"] == "alice") & (rows["event_id"] == 2)]
    assert len(rows) == 1
    assert rows.iloc[0]["status"] == 1
