import sqlite3
import json
import logging
import math
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable

from .config import DB_PATH
from .models import CatalogItem, Interaction, UserRef

logger = logging.getLogger(__name__)


def parse_timestamp_utc(timestamp_str: str | None) -> datetime | None:
    """
    Parse an ISO format timestamp string to an aware UTC datetime.

    Naive timestamps are assumed to already be UTC, which keeps
    comparisons against ``datetime.now(timezone.utc)`` safe.
    """
    if not timestamp_str:
        return None
    dt = datetime.fromisoformat(timestamp_str)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ConnectionPool:
    """
    One SQLite connection per thread for the library store.

    sqlite3 connections stay on the thread that opened them, and each
    thread keeps its own get_db() nesting depth.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._depths: dict[int, int] = {}

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        # collection_items rows cascade with their collection
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                conn = self._open()
                self._connections[thread_id] = conn
                self._depths[thread_id] = 0
                logger.debug(f"Opened library connection for thread {thread_id}")
            return conn

    def enter(self) -> bool:
        """Bump this thread's nesting depth; True when this is the outermost block."""
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._depths.get(thread_id, 0)
            self._depths[thread_id] = depth + 1
        return depth == 0

    def leave(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._depths[thread_id] = max(0, self._depths.get(thread_id, 1) - 1)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Could not close library connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._depths.clear()
        logger.debug("Library connections closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Yield the library connection for this thread.

    Blocks may nest: an import that upserts items, users and interactions
    inside one outer block is committed (or rolled back) as a unit when
    the outermost block exits. Read-only blocks never commit.
    """
    pool = _get_pool()
    conn = pool.connection()
    outermost = pool.enter()
    try:
        yield conn
        if outermost and not read_only:
            conn.commit()
    except Exception:
        if outermost:
            conn.rollback()
        raise
    finally:
        pool.leave()


def close_pool():
    """Drop every pooled connection; registered with atexit by the CLI."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                item_id TEXT PRIMARY KEY,
                title TEXT,
                overview TEXT,
                genres TEXT,        -- JSON list
                tags TEXT,          -- JSON list
                people TEXT,        -- JSON list
                studios TEXT,       -- JSON list
                item_type TEXT DEFAULT 'movie'
            );

            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                name TEXT
            );

            CREATE TABLE IF NOT EXISTS interactions (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                last_played TEXT,             -- ISO timestamp
                played INTEGER DEFAULT 0,
                play_fraction REAL DEFAULT 0,
                favorite INTEGER DEFAULT 0,
                rating REAL,                  -- 0-10 scale
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS collections (
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (user_id, name)
            );

            CREATE TABLE IF NOT EXISTS collection_items (
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                position INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                PRIMARY KEY (user_id, name, position),
                FOREIGN KEY (user_id, name) REFERENCES collections(user_id, name) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id);
        """)


def _row_to_item(row) -> CatalogItem:
    return CatalogItem(
        item_id=row["item_id"],
        title=row["title"],
        overview=row["overview"],
        genres=load_json(row["genres"]),
        tags=load_json(row["tags"]),
        people=load_json(row["people"]),
        studios=load_json(row["studios"]),
        item_type=row["item_type"] or "movie",
    )


def _finite_float(value) -> float | None:
    """None stays None; anything else must be a finite number (raises ValueError/TypeError)."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"expected a number, got {value!r}")
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(f"expected a finite number, got {value!r}")
    return result


def _row_to_interaction(row, now: datetime) -> Interaction:
    try:
        when = parse_timestamp_utc(row["last_played"]) or now
    except (ValueError, TypeError):
        logger.warning(f"Invalid last_played '{row['last_played']}' for item {row['item_id']}, using now")
        when = now
    try:
        fraction = _finite_float(row["play_fraction"]) or 0.0
    except (ValueError, TypeError):
        logger.warning(f"Invalid play_fraction '{row['play_fraction']}' for item {row['item_id']}, using 0")
        fraction = 0.0
    try:
        rating = _finite_float(row["rating"])
    except (ValueError, TypeError):
        logger.warning(f"Invalid rating '{row['rating']}' for item {row['item_id']}, ignoring it")
        rating = None
    return Interaction(
        item_id=row["item_id"],
        when=when,
        finished=bool(row["played"]),
        favorite_or_like=bool(row["favorite"]),
        played_fraction=min(1.0, max(0.0, fraction)),
        rating01=min(1.0, max(0.0, rating / 10.0)) if rating is not None else None,
    )


def _first(record: dict, *keys, default=None):
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


class LibraryStore:
    """
    Local SQLite library: catalog, users, watch history and generated rows.

    Implements CatalogSource, InteractionSource and ResultConsumer.
    """

    def get_items(self) -> list[CatalogItem]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("SELECT * FROM items ORDER BY rowid").fetchall()
        return [_row_to_item(row) for row in rows]

    def get_item(self, item_id: str) -> CatalogItem | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM items WHERE item_id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None

    def get_users(self) -> list[UserRef]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("SELECT user_id, name FROM users ORDER BY rowid").fetchall()
        return [UserRef(user_id=row["user_id"], name=row["name"] or "") for row in rows]

    def get_user(self, user_id: str) -> UserRef | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT user_id, name FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return UserRef(user_id=row["user_id"], name=row["name"] or "") if row else None

    def get_interactions(self, user: UserRef) -> list[Interaction]:
        """The user's interactions, newest first."""
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM interactions WHERE user_id = ? ORDER BY rowid",
                (user.user_id,),
            ).fetchall()
        now = datetime.now(timezone.utc)
        interactions = [_row_to_interaction(row, now) for row in rows]
        return sorted(interactions, key=lambda i: i.when_utc, reverse=True)

    def upsert_collection(
        self,
        user: UserRef,
        name: str,
        item_ids: Iterable[str],
        dry_run: bool = False,
    ) -> bool:
        """Replace the contents of a user-scoped named row, keeping rank order."""
        if dry_run:
            return False

        ordered = list(dict.fromkeys(item_ids))
        now = datetime.now(timezone.utc).isoformat()
        with get_db() as conn:
            conn.execute(
                """
                INSERT INTO collections (user_id, name, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id, name) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (user.user_id, name, now),
            )
            conn.execute(
                "DELETE FROM collection_items WHERE user_id = ? AND name = ?",
                (user.user_id, name),
            )
            conn.executemany(
                "INSERT INTO collection_items (user_id, name, position, item_id) VALUES (?, ?, ?, ?)",
                [(user.user_id, name, pos, item_id) for pos, item_id in enumerate(ordered)],
            )
        logger.debug(f"Upserted '{name}' for {user.user_id} with {len(ordered)} items")
        return True

    def get_collection(self, user_id: str, name: str) -> list[str]:
        with get_db(read_only=True) as conn:
            rows = conn.execute(
                """
                SELECT item_id FROM collection_items
                WHERE user_id = ? AND name = ?
                ORDER BY position
                """,
                (user_id, name),
            ).fetchall()
        return [row["item_id"] for row in rows]

    def list_collections(self, user_id: str | None = None) -> list[dict]:
        query = """
            SELECT c.user_id, c.name, c.updated_at, COUNT(ci.item_id) AS n_items
            FROM collections c
            LEFT JOIN collection_items ci ON ci.user_id = c.user_id AND ci.name = c.name
        """
        params: tuple = ()
        if user_id:
            query += " WHERE c.user_id = ?"
            params = (user_id,)
        query += " GROUP BY c.user_id, c.name ORDER BY c.user_id, c.name"
        with get_db(read_only=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def import_library(self, payload: dict) -> dict[str, int]:
        """
        Bulk load ``{"items": [...], "users": [...], "interactions": [...]}``.

        Existing rows with the same keys are updated in place, so re-importing
        a document is idempotent.
        """
        item_rows = []
        for item in payload.get("items", []):
            item_id = _first(item, "item_id", "id")
            if item_id is None:
                logger.warning(f"Skipping item without an id: {item}")
                continue
            item_rows.append((
                str(item_id),
                item.get("title") or item.get("name"),
                item.get("overview"),
                json.dumps(item.get("genres") or []),
                json.dumps(item.get("tags") or []),
                json.dumps(item.get("people") or []),
                json.dumps(item.get("studios") or []),
                _first(item, "item_type", "type", default="movie"),
            ))

        user_rows = []
        for user in payload.get("users", []):
            user_id = _first(user, "user_id", "id")
            if user_id is None:
                logger.warning(f"Skipping user without an id: {user}")
                continue
            user_rows.append((str(user_id), user.get("name") or ""))

        interaction_rows = []
        for inter in payload.get("interactions", []):
            user_id = inter.get("user_id")
            item_id = inter.get("item_id")
            if user_id is None or item_id is None:
                logger.warning(f"Skipping interaction missing user_id/item_id: {inter}")
                continue
            try:
                fraction = _finite_float(_first(inter, "play_fraction", "played_fraction", default=0.0))
                rating = _finite_float(inter.get("rating"))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping interaction {user_id}/{item_id} with a non-numeric value: {e}")
                continue
            interaction_rows.append((
                str(user_id),
                str(item_id),
                _first(inter, "last_played", "when"),
                int(bool(_first(inter, "played", "finished", default=False))),
                fraction,
                int(bool(_first(inter, "favorite", "favorite_or_like", default=False))),
                rating,
            ))

        with get_db() as conn:
            conn.executemany(
                """
                INSERT INTO items (item_id, title, overview, genres, tags, people, studios, item_type)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                    title = excluded.title,
                    overview = excluded.overview,
                    genres = excluded.genres,
                    tags = excluded.tags,
                    people = excluded.people,
                    studios = excluded.studios,
                    item_type = excluded.item_type
                """,
                item_rows,
            )
            conn.executemany(
                """
                INSERT INTO users (user_id, name) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET name = excluded.name
                """,
                user_rows,
            )
            conn.executemany(
                """
                INSERT INTO interactions
                (user_id, item_id, last_played, played, play_fraction, favorite, rating)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, item_id) DO UPDATE SET
                    last_played = excluded.last_played,
                    played = excluded.played,
                    play_fraction = excluded.play_fraction,
                    favorite = excluded.favorite,
                    rating = excluded.rating
                """,
                interaction_rows,
            )

        counts = {
            "items": len(item_rows),
            "users": len(user_rows),
            "interactions": len(interaction_rows),
        }
        logger.info(
            f"Imported {counts['items']} items, {counts['users']} users, "
            f"{counts['interactions']} interactions"
        )
        return counts

    def stats(self) -> dict[str, int]:
        with get_db(read_only=True) as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("items", "users", "interactions", "collections", "collection_items")
            }
