"""
One full recommendation run: vectorize the catalog once, then build a
profile and ranked rows for every user and hand them to the consumer.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from tqdm import tqdm

from .collaborative import CollaborativeModel
from .config import RecsSettings
from .interfaces import CatalogSource, InteractionSource, ResultConsumer
from .models import Interaction, ItemVector, ScoredItem, UserRef
from .naming import because_you_watched, top_picks_for
from .profile import build_profile, signal_weight
from .recommender import blend_with_collaborative, nearest_neighbors, rank
from .utils import format_top
from .vectorizer import TfIdfVectorizer

logger = logging.getLogger(__name__)

TASK_NAME = "Local Recommendations"


@dataclass
class RunSummary:
    users_total: int = 0
    users_with_interactions: int = 0
    collections_written: int = 0
    rows_skipped: int = 0
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def describe(self) -> str:
        status = "cancelled" if self.cancelled else "completed"
        return (
            f"{TASK_NAME} {status}: {self.users_total} users processed, "
            f"{self.users_with_interactions} had interactions, "
            f"{self.collections_written} rows written, {self.rows_skipped} anchors skipped "
            f"in {self.elapsed_seconds:.1f}s"
        )


def _fit_collaborative(
    histories: dict[str, list[Interaction]],
    settings: RecsSettings,
) -> CollaborativeModel | None:
    """Fit the optional CF model; any failure just disables CF for this run."""
    strengths = [
        (
            user_id,
            inter.item_id,
            signal_weight(
                inter,
                settings.finished_weight,
                settings.partial_over_40_weight,
                settings.favorite_or_like_weight,
                settings.rating_weight,
            ),
        )
        for user_id, interactions in histories.items()
        for inter in interactions
    ]
    try:
        return CollaborativeModel(n_factors=settings.cf_n_factors).fit(strengths)
    except Exception as e:
        logger.warning(f"Collaborative filtering unavailable, using content scores only: {e}")
        return None


def _apply_collaborative(
    model: CollaborativeModel | None,
    user: UserRef,
    ranked: list[ScoredItem],
    settings: RecsSettings,
) -> list[ScoredItem]:
    if model is None or not ranked:
        return ranked
    try:
        cf_scores = model.score_items(user.user_id, [s.item_id for s in ranked])
        return blend_with_collaborative(ranked, cf_scores, settings.cf_blend_weight)
    except Exception as e:
        logger.warning(f"Collaborative blend failed for {user.user_id}, keeping content ranking: {e}")
        return ranked


def run_recommendations(
    catalog: CatalogSource,
    signals: InteractionSource,
    consumer: ResultConsumer,
    settings: RecsSettings | None = None,
    should_cancel: Callable[[], bool] | None = None,
    show_progress: bool = False,
    reference_time: datetime | None = None,
) -> RunSummary:
    """
    Recompute every user's rows from scratch.

    Args:
        catalog: Supplies the items to vectorize
        signals: Supplies users and their watch history
        consumer: Receives ranked rows (top picks, because-you-watched)
        settings: Run settings (defaults from config)
        should_cancel: Checked between users; returning True stops the run
        show_progress: Show a tqdm progress bar over users
        reference_time: "Now" for recency decay (default: current UTC time)
    """
    settings = settings or RecsSettings()
    now = reference_time or datetime.now(timezone.utc)
    summary = RunSummary()
    started = time.time()

    logger.info(f"{TASK_NAME} start at {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"Settings: {settings.describe()}")

    items = catalog.get_items()
    logger.info(f"Found {len(items)} catalog items")
    if not items:
        logger.warning("No catalog items found. Nothing to recommend.")
        summary.elapsed_seconds = time.time() - started
        return summary

    titles = {item.item_id: item.title for item in items}
    vectorizer = TfIdfVectorizer()
    item_vectors: list[ItemVector] = vectorizer.fit_transform(
        (item.item_id, item.tokens()) for item in items
    )
    vector_by_id = {iv.item_id: iv for iv in item_vectors}

    users = signals.get_users()
    summary.users_total = len(users)
    logger.info(f"Found {len(users)} users")
    if not users:
        logger.warning("No users found. Nothing to recommend.")
        summary.elapsed_seconds = time.time() - started
        return summary

    recent_limit = max(1, settings.recent_items_to_learn_from)

    # CF needs every history up front; otherwise each user's is read in the loop
    histories: dict[str, list[Interaction]] = {}
    cf_model = None
    if settings.enable_collaborative_filtering:
        histories = {
            user.user_id: signals.get_interactions(user)[:recent_limit]
            for user in users
        }
        cf_model = _fit_collaborative(histories, settings)

    for user in tqdm(users, desc="Users", disable=not show_progress):
        if should_cancel is not None and should_cancel():
            logger.warning("Cancellation requested, stopping before next user")
            summary.cancelled = True
            break

        interactions = histories.get(user.user_id)
        if interactions is None:
            interactions = signals.get_interactions(user)[:recent_limit]
        if not interactions:
            logger.info(f"User {user.display_name} has no interactions, skipping")
            continue
        summary.users_with_interactions += 1

        profile = build_profile(
            interactions,
            vector_by_id,
            half_life_days=settings.half_life_days,
            w_finished=settings.finished_weight,
            w_partial_over_40=settings.partial_over_40_weight,
            w_favorite=settings.favorite_or_like_weight,
            w_rating=settings.rating_weight,
            reference_time=now,
        )
        exclude = {inter.item_id for inter in interactions}

        ranked = rank(
            profile,
            item_vectors,
            exclude,
            settings.minimum_score_threshold,
            settings.max_items_per_row,
        )
        ranked = _apply_collaborative(cf_model, user, ranked, settings)
        logger.info(
            f"Generated {len(ranked)} top picks for {user.display_name} "
            f"from {len(interactions)} interactions (threshold: {settings.minimum_score_threshold})"
        )
        if settings.dry_run:
            logger.debug(f"Top picks top: {format_top(ranked)}")

        if settings.create_top_picks_row and ranked:
            if consumer.upsert_collection(
                user, top_picks_for(user), [s.item_id for s in ranked], settings.dry_run
            ):
                summary.collections_written += 1

        if not settings.create_because_rows:
            continue

        anchors = [inter for inter in interactions if inter.finished][:settings.because_rows_per_user]
        labels_written: set[str] = set()
        for anchor in anchors:
            label = because_you_watched(titles.get(anchor.item_id))
            if label in labels_written:
                logger.debug(f"Row '{label}' already written for {user.display_name}, skipping {anchor.item_id}")
                continue

            anchor_vector = vector_by_id.get(anchor.item_id)
            if anchor_vector is None:
                logger.warning(f"Item vector not found for item {anchor.item_id}, skipping")
                summary.rows_skipped += 1
                continue

            neighbors = nearest_neighbors(
                anchor_vector,
                item_vectors,
                exclude,
                settings.max_items_per_row,
                settings.minimum_score_threshold,
            )
            if settings.dry_run:
                logger.debug(f"Because {anchor.item_id} top: {format_top(neighbors)}")
            if not neighbors:
                continue

            labels_written.add(label)
            if consumer.upsert_collection(
                user, label, [s.item_id for s in neighbors], settings.dry_run
            ):
                summary.collections_written += 1

    summary.elapsed_seconds = time.time() - started
    logger.info(summary.describe())
    logger.info(f"{TASK_NAME} end at {datetime.now(timezone.utc).isoformat()}")
    return summary
