import argparse
import atexit
import json
import logging
import re
import signal
from pathlib import Path

from .config import NOTIFICATION_WEBHOOK_URL, NOTIFICATION_TIMEOUT, RecsSettings
from .database import LibraryStore, close_pool, init_db
from .models import ItemVector, ScoredItem
from .pipeline import run_recommendations
from .profile import build_profile
from .recommender import nearest_neighbors, rank
from .utils import retry_with_backoff
from .vectorizer import TfIdfVectorizer

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)

_cancel_requested = False


def _request_cancel(signum, frame) -> None:
    global _cancel_requested
    if _cancel_requested:
        raise KeyboardInterrupt
    _cancel_requested = True
    logger.warning("Interrupt received, finishing current user then stopping (press again to abort)")


@retry_with_backoff(max_retries=3, initial_delay=1.0)
def _post_notification(url: str, message: str) -> None:
    import httpx

    response = httpx.post(url, json={"content": message}, timeout=NOTIFICATION_TIMEOUT)
    response.raise_for_status()


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return

    try:
        _post_notification(NOTIFICATION_WEBHOOK_URL, message)
    except Exception as exc:  # pragma: no cover - best-effort notifications
        logger.warning(f"Failed to send notification: {exc}")


def _validate_id(value: str, kind: str = "id") -> str:
    """
    Validate a user or item identifier.
    Raises ValueError for empty ids or ids with whitespace/control characters.
    """
    cleaned = value.strip()
    if not cleaned or not re.match(r'^[A-Za-z0-9._:-]+$', cleaned):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return cleaned


def _fit_catalog(store: LibraryStore) -> tuple[TfIdfVectorizer, list[ItemVector], dict[str, str | None]]:
    items = store.get_items()
    vectorizer = TfIdfVectorizer()
    item_vectors = vectorizer.fit_transform((item.item_id, item.tokens()) for item in items)
    titles = {item.item_id: item.title for item in items}
    return vectorizer, item_vectors, titles


def _output_scored(
    scored: list[ScoredItem],
    titles: dict[str, str | None],
    heading: str,
    output_format: str = "text",
) -> None:
    if output_format == "json":
        print(json.dumps(
            [
                {"item_id": s.item_id, "title": titles.get(s.item_id), "score": round(s.score, 4)}
                for s in scored
            ],
            indent=2,
        ))
        return

    logger.info(f"\n{heading}:")
    for i, s in enumerate(scored, 1):
        logger.info(f"{i}. {titles.get(s.item_id) or s.item_id} - Score: {s.score:.3f}")


def cmd_import(args: argparse.Namespace) -> None:
    """Load catalog, users and watch history from a JSON document."""
    path = Path(args.file)
    if not path.exists():
        logger.error(f"File not found: {path}")
        return
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {path}: {e}")
        return

    counts = LibraryStore().import_library(payload)
    logger.info(
        f"Imported {counts['items']} items, {counts['users']} users, "
        f"{counts['interactions']} interactions from {path}"
    )


def cmd_run(args: argparse.Namespace) -> None:
    """Recompute recommendation rows for every user."""
    global _cancel_requested
    _cancel_requested = False
    settings = RecsSettings.from_args(args)
    store = LibraryStore()

    previous_handler = signal.signal(signal.SIGINT, _request_cancel)
    try:
        summary = run_recommendations(
            store,
            store,
            store,
            settings,
            should_cancel=lambda: _cancel_requested,
            show_progress=not getattr(args, "no_progress", False),
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    send_notification(summary.describe())


def cmd_recommend(args: argparse.Namespace) -> None:
    """Show top picks for a single user."""
    user_id = _validate_id(args.user_id, "user id")
    store = LibraryStore()
    user = store.get_user(user_id)
    if user is None:
        logger.error(f"No user found with id '{user_id}'")
        return

    settings = RecsSettings.from_args(args)
    _, item_vectors, titles = _fit_catalog(store)
    interactions = store.get_interactions(user)[:max(1, settings.recent_items_to_learn_from)]
    if not interactions:
        logger.error(f"User '{user_id}' has no watch history yet")
        return

    profile = build_profile(
        interactions,
        {iv.item_id: iv for iv in item_vectors},
        half_life_days=settings.half_life_days,
        w_finished=settings.finished_weight,
        w_partial_over_40=settings.partial_over_40_weight,
        w_favorite=settings.favorite_or_like_weight,
        w_rating=settings.rating_weight,
    )
    ranked = rank(
        profile,
        item_vectors,
        {i.item_id for i in interactions},
        settings.minimum_score_threshold,
        settings.max_items_per_row,
    )
    if not ranked:
        logger.info(f"No recommendations above {settings.minimum_score_threshold} for {user.display_name}")
        return
    _output_scored(ranked, titles, f"Top picks for {user.display_name}", args.format)


def cmd_similar(args: argparse.Namespace) -> None:
    """Find items similar to a specific item."""
    item_id = _validate_id(args.item_id, "item id")
    store = LibraryStore()
    settings = RecsSettings.from_args(args)
    _, item_vectors, titles = _fit_catalog(store)

    anchor = next((iv for iv in item_vectors if iv.item_id == item_id), None)
    if anchor is None:
        logger.error(f"No item found with id '{item_id}'")
        return

    neighbors = nearest_neighbors(
        anchor,
        item_vectors,
        set(),
        settings.max_items_per_row,
        settings.minimum_score_threshold,
    )
    if not neighbors:
        logger.info(f"No items similar to {titles.get(item_id) or item_id}")
        return
    _output_scored(neighbors, titles, f"Items similar to {titles.get(item_id) or item_id}", args.format)


def cmd_profile(args: argparse.Namespace) -> None:
    """Show the heaviest tokens of a user's interest profile."""
    user_id = _validate_id(args.user_id, "user id")
    store = LibraryStore()
    user = store.get_user(user_id)
    if user is None:
        logger.error(f"No user found with id '{user_id}'")
        return

    settings = RecsSettings()
    vectorizer, item_vectors, _ = _fit_catalog(store)
    interactions = store.get_interactions(user)[:max(1, settings.recent_items_to_learn_from)]
    profile = build_profile(
        interactions,
        {iv.item_id: iv for iv in item_vectors},
        half_life_days=settings.half_life_days,
        w_finished=settings.finished_weight,
        w_partial_over_40=settings.partial_over_40_weight,
        w_favorite=settings.favorite_or_like_weight,
        w_rating=settings.rating_weight,
    )
    if not profile:
        logger.info(f"{user.display_name} has no profile yet (no usable interactions)")
        return

    logger.info(f"\nProfile for {user.display_name} ({len(interactions)} interactions, {len(profile)} tokens):")
    for token, weight in vectorizer.describe(profile, top_n=args.top):
        logger.info(f"  {token:<40} {weight:.4f}")


def cmd_collections(args: argparse.Namespace) -> None:
    """List stored recommendation rows."""
    user_id = _validate_id(args.user, "user id") if args.user else None
    rows = LibraryStore().list_collections(user_id)
    if not rows:
        logger.info("No collections stored yet. Run 'localrecs run' first.")
        return
    logger.info("\nCollections:")
    for row in rows:
        logger.info(f"  [{row['user_id']}] {row['name']} ({row['n_items']} items, updated {row['updated_at']})")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    stats = LibraryStore().stats()
    logger.info("\nDatabase Statistics:")
    logger.info(f"  Items: {stats['items']}")
    logger.info(f"  Users: {stats['users']}")
    logger.info(f"  Interactions: {stats['interactions']}")
    logger.info(f"  Collections: {stats['collections']} ({stats['collection_items']} entries)")


def _add_scoring_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--max-items", "--limit", dest="max_items", type=int,
                        help="Maximum items per row")
    parser.add_argument("--min-score", type=float, help="Minimum cosine score to keep an item")


def main():
    parser = argparse.ArgumentParser(description="Local content-based recommendations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import a library JSON document")
    import_parser.add_argument("file", help="JSON file with items, users and interactions")
    import_parser.set_defaults(func=cmd_import)

    run_parser = subparsers.add_parser("run", help="Recompute recommendation rows for all users")
    _add_scoring_args(run_parser)
    run_parser.add_argument("--half-life", type=int, help="Recency half-life in days")
    run_parser.add_argument("--recent", type=int, help="Most recent interactions to learn from")
    run_parser.add_argument("--dry-run", action="store_true", help="Compute rows without writing them")
    run_parser.add_argument("--enable-cf", action="store_true",
                            help="Blend in collaborative filtering (best effort)")
    run_parser.add_argument("--no-top-picks", action="store_true", help="Skip the top picks row")
    run_parser.add_argument("--no-because", action="store_true", help="Skip 'because you watched' rows")
    run_parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    run_parser.set_defaults(func=cmd_run)

    rec_parser = subparsers.add_parser("recommend", help="Show top picks for one user")
    rec_parser.add_argument("user_id", help="User id")
    _add_scoring_args(rec_parser)
    rec_parser.add_argument("--format", choices=["text", "json"], default="text")
    rec_parser.set_defaults(func=cmd_recommend)

    similar_parser = subparsers.add_parser("similar", help="Find items similar to a specific item")
    similar_parser.add_argument("item_id", help="Item id")
    _add_scoring_args(similar_parser)
    similar_parser.add_argument("--format", choices=["text", "json"], default="text")
    similar_parser.set_defaults(func=cmd_similar)

    profile_parser = subparsers.add_parser("profile", help="Show a user's interest profile")
    profile_parser.add_argument("user_id", help="User id")
    profile_parser.add_argument("--top", type=int, default=20, help="Number of tokens to show")
    profile_parser.set_defaults(func=cmd_profile)

    collections_parser = subparsers.add_parser("collections", help="List stored recommendation rows")
    collections_parser.add_argument("--user", help="Only show rows for this user id")
    collections_parser.set_defaults(func=cmd_collections)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    init_db()
    try:
        args.func(args)
    except ValueError as e:
        logger.error(str(e))


if __name__ == "__main__":
    main()
