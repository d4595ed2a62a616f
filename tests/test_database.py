import sqlite3
from datetime import datetime, timezone

import pytest

from localrecs.models import UserRef


def test_init_db_creates_tables(fresh_db):
    with fresh_db.get_db(read_only=True) as conn:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {"items", "users", "interactions", "collections", "collection_items"} <= tables


def test_import_and_read_back(fresh_db, sample_library):
    store = fresh_db.LibraryStore()
    counts = store.import_library(sample_library)

    assert counts == {"items": 6, "users": 2, "interactions": 1}

    items = store.get_items()
    assert [i.item_id for i in items] == ["i1", "i2", "i3", "i4", "i5", "i6"]
    assert items[1].genres == ["Drama", "Sci-Fi"]
    assert items[1].tags == ["space", "robots"]
    assert items[1].people == []
    assert store.get_item("i3").title == "Laugh Riot"
    assert store.get_item("missing") is None

    users = store.get_users()
    assert [u.user_id for u in users] == ["alice", "bob"]
    assert store.get_user("bob").display_name == "Bob"
    assert store.get_user("nobody") is None


def test_reimport_updates_in_place(fresh_db, sample_library):
    store = fresh_db.LibraryStore()
    store.import_library(sample_library)
    sample_library["items"][0]["title"] = "Space Drama (Director's Cut)"
    store.import_library(sample_library)

    assert store.stats()["items"] == 6
    assert store.get_item("i1").title == "Space Drama (Director's Cut)"


def test_import_accepts_aliases_and_skips_invalid(fresh_db):
    store = fresh_db.LibraryStore()
    counts = store.import_library({
        "items": [{"id": 42, "name": "Answer"}, {"title": "no id"}],
        "users": [{"id": "u1"}],
        "interactions": [
            {"user_id": "u1", "item_id": 42, "finished": True, "played_fraction": 0.5, "favorite_or_like": True},
            {"user_id": "u1"},
        ],
    })
    assert counts == {"items": 1, "users": 1, "interactions": 1}
    assert store.get_item("42").title == "Answer"

    [inter] = store.get_interactions(UserRef("u1"))
    assert inter.finished is True
    assert inter.favorite_or_like is True
    assert inter.played_fraction == 0.5


def test_interactions_newest_first_and_normalized(fresh_db):
    store = fresh_db.LibraryStore()
    store.import_library({
        "users": [{"user_id": "u1"}],
        "interactions": [
            {"user_id": "u1", "item_id": "old", "last_played": "2024-01-01T00:00:00", "rating": 8},
            {"user_id": "u1", "item_id": "new", "last_played": "2024-03-01T00:00:00+02:00", "play_fraction": 1.7},
            {"user_id": "u1", "item_id": "mid", "last_played": "2024-02-01T00:00:00+00:00", "rating": 15},
        ],
    })
    interactions = store.get_interactions(UserRef("u1"))

    assert [i.item_id for i in interactions] == ["new", "mid", "old"]
    by_id = {i.item_id: i for i in interactions}
    assert by_id["old"].rating01 == pytest.approx(0.8)
    assert by_id["mid"].rating01 == 1.0
    assert by_id["new"].rating01 is None
    assert by_id["new"].played_fraction == 1.0
    assert by_id["old"].when.tzinfo is not None


def test_missing_or_invalid_timestamps_use_now(fresh_db):
    store = fresh_db.LibraryStore()
    store.import_library({
        "users": [{"user_id": "u1"}],
        "interactions": [
            {"user_id": "u1", "item_id": "a"},
            {"user_id": "u1", "item_id": "b", "last_played": "last tuesday"},
        ],
    })
    before = datetime.now(timezone.utc)
    interactions = store.get_interactions(UserRef("u1"))

    assert len(interactions) == 2
    assert all(i.when >= before for i in interactions)


def test_upsert_collection_replaces_contents(fresh_db):
    store = fresh_db.LibraryStore()
    user = UserRef("alice", "Alice")

    assert store.upsert_collection(user, "Top picks for Alice", ["i2", "i3", "i2"]) is True
    assert store.get_collection("alice", "Top picks for Alice") == ["i2", "i3"]

    assert store.upsert_collection(user, "Top picks for Alice", ["i4"]) is True
    assert store.get_collection("alice", "Top picks for Alice") == ["i4"]

    rows = store.list_collections()
    assert len(rows) == 1
    assert rows[0]["n_items"] == 1


def test_dry_run_upsert_writes_nothing(fresh_db):
    store = fresh_db.LibraryStore()
    assert store.upsert_collection(UserRef("alice"), "Top picks for alice", ["i2"], dry_run=True) is False
    assert store.list_collections() == []
    assert store.get_collection("alice", "Top picks for alice") == []


def test_list_collections_filters_by_user(fresh_db):
    store = fresh_db.LibraryStore()
    store.upsert_collection(UserRef("alice"), "A", ["i1"])
    store.upsert_collection(UserRef("bob"), "B", ["i1", "i2"])

    assert [r["name"] for r in store.list_collections("bob")] == ["B"]
    assert len(store.list_collections()) == 2

    stats = store.stats()
    assert stats["collections"] == 2
    assert stats["collection_items"] == 3


def test_nested_transactions_commit_once(fresh_db):
    with fresh_db.get_db() as outer:
        outer.execute("INSERT INTO users (user_id, name) VALUES ('u1', 'One')")
        with fresh_db.get_db() as inner:
            inner.execute("INSERT INTO users (user_id, name) VALUES ('u2', 'Two')")

    assert fresh_db.LibraryStore().stats()["users"] == 2


def test_outer_failure_rolls_back_inner_writes(fresh_db):
    with pytest.raises(sqlite3.IntegrityError):
        with fresh_db.get_db() as outer:
            with fresh_db.get_db() as inner:
                inner.execute("INSERT INTO users (user_id, name) VALUES ('u1', 'One')")
            outer.execute("INSERT INTO users (user_id, name) VALUES ('u1', 'Dup')")

    assert fresh_db.LibraryStore().stats()["users"] == 0


def test_load_json_and_parse_timestamp(fresh_db):
    assert fresh_db.load_json(None) == []
    assert fresh_db.load_json('["a", "b"]') == ["a", "b"]
    assert fresh_db.load_json(["x"]) == ["x"]
    assert fresh_db.load_json("{not json") == []

    assert fresh_db.parse_timestamp_utc(None) is None
    naive = fresh_db.parse_timestamp_utc("2024-01-01T10:00:00")
    assert naive == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    shifted = fresh_db.parse_timestamp_utc("2024-01-01T10:00:00+02:00")
    assert shifted == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def test_import_skips_interactions_with_non_numeric_values(fresh_db, sample_library):
    sample_library["interactions"] += [
        {"user_id": "alice", "item_id": "i3", "rating": "great"},
        {"user_id": "alice", "item_id": "i4", "play_fraction": "half"},
        {"user_id": "alice", "item_id": "i5", "rating": "7", "play_fraction": "0.5"},
    ]
    store = fresh_db.LibraryStore()
    counts = store.import_library(sample_library)

    assert counts["interactions"] == 2
    assert counts["items"] == 6
    by_id = {i.item_id: i for i in store.get_interactions(UserRef("alice"))}
    assert set(by_id) == {"i1", "i5"}
    assert by_id["i5"].rating01 == pytest.approx(0.7)
    assert by_id["i5"].played_fraction == 0.5


def test_stored_non_numeric_values_do_not_break_reads(fresh_db):
    with fresh_db.get_db() as conn:
        conn.execute(
            "INSERT INTO interactions (user_id, item_id, last_played, played, play_fraction, rating) "
            "VALUES ('u1', 'a', '2024-01-01T00:00:00', 1, 'most', 'great')"
        )

    [inter] = fresh_db.LibraryStore().get_interactions(UserRef("u1"))
    assert inter.rating01 is None
    assert inter.played_fraction == 0.0
    assert inter.finished is True
