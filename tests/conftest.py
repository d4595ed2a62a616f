import importlib
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


REFERENCE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("LOCALRECS_DB", str(db_path))
    import localrecs.config as config

    importlib.reload(config)
    yield config

    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("LOCALRECS_DB", str(db_path))

    import localrecs.config as config
    import localrecs.database as database

    database.close_pool()
    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()

    monkeypatch.undo()
    importlib.reload(config)
    importlib.reload(database)


@pytest.fixture
def sample_library():
    """Small catalog where the two space dramas share tokens and the rest are disjoint."""
    return {
        "items": [
            {"item_id": "i1", "title": "Space Drama", "genres": ["Drama", "Sci-Fi"], "tags": ["space"]},
            {"item_id": "i2", "title": "Star Voyage", "genres": ["Drama", "Sci-Fi"], "tags": ["space", "robots"]},
            {"item_id": "i3", "title": "Laugh Riot", "genres": ["Comedy"], "tags": ["romance"]},
            {"item_id": "i4", "title": "Haunted House", "genres": ["Horror"], "tags": ["ghosts"]},
            {"item_id": "i5", "title": "Desert Sun", "genres": ["Western"], "tags": ["cowboys"]},
            {"item_id": "i6", "title": "Ocean Deep", "genres": ["Documentary"], "tags": ["nature"]},
        ],
        "users": [
            {"user_id": "alice", "name": "Alice"},
            {"user_id": "bob", "name": "Bob"},
        ],
        "interactions": [
            {
                "user_id": "alice",
                "item_id": "i1",
                "last_played": "2024-05-31T12:00:00+00:00",
                "played": True,
                "play_fraction": 1.0,
            },
        ],
    }
