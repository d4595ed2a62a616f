import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Mapping

from .config import (
    HALF_LIFE_DAYS,
    FINISHED_WEIGHT,
    PARTIAL_OVER_40_WEIGHT,
    FAVORITE_OR_LIKE_WEIGHT,
    RATING_WEIGHT,
    PARTIAL_PLAY_THRESHOLD,
)
from .models import Interaction, ItemVector, SparseVector
from .vectorizer import l2_normalize

logger = logging.getLogger(__name__)


def signal_weight(
    interaction: Interaction,
    w_finished: float = FINISHED_WEIGHT,
    w_partial_over_40: float = PARTIAL_OVER_40_WEIGHT,
    w_favorite: float = FAVORITE_OR_LIKE_WEIGHT,
    w_rating: float = RATING_WEIGHT,
) -> float:
    """
    Combine the watch signals of one interaction into a single weight.

    Signals are additive: a finished item that was also played past 40%
    collects both the finished and the partial weight.
    """
    weight = 0.0
    if interaction.finished:
        weight += w_finished
    if interaction.played_fraction >= PARTIAL_PLAY_THRESHOLD:
        weight += w_partial_over_40
    if interaction.favorite_or_like:
        weight += w_favorite
    rating = interaction.rating01 if interaction.rating01 is not None else 0.0
    weight += min(1.0, max(0.0, rating)) * w_rating
    return weight


def decay_factor(
    when: datetime,
    reference_time: datetime,
    half_life_days: float = HALF_LIFE_DAYS,
) -> float:
    """
    Exponential recency decay: exp(-age_days / max(1, half_life_days)).

    Timestamps in the future count as zero age.
    """
    age_days = (reference_time - when).total_seconds() / 86400.0
    if age_days < 0:
        age_days = 0.0
    return math.exp(-age_days / max(1.0, float(half_life_days)))


def build_profile(
    interactions: Iterable[Interaction],
    item_vector_by_id: Mapping[str, ItemVector],
    half_life_days: float = HALF_LIFE_DAYS,
    w_finished: float = FINISHED_WEIGHT,
    w_partial_over_40: float = PARTIAL_OVER_40_WEIGHT,
    w_favorite: float = FAVORITE_OR_LIKE_WEIGHT,
    w_rating: float = RATING_WEIGHT,
    reference_time: datetime | None = None,
) -> SparseVector:
    """
    Fold a user's interactions into one normalized interest vector.

    Each interaction adds signal_weight * decay times its item vector to
    the accumulator. Interactions whose item has no vector in this run, or
    whose signal weight is not positive, contribute nothing. The result
    lives in the same vocabulary as item_vector_by_id and must only be
    compared against vectors from the same fitting pass.

    Args:
        interactions: The user's history, already capped by the caller
        item_vector_by_id: Item vectors from the current fitting pass
        half_life_days: Decay time constant in days (floored at 1)
        w_finished: Weight for finished items
        w_partial_over_40: Weight for items played at least 40%
        w_favorite: Weight for favorites/likes
        w_rating: Multiplier for the normalized [0, 1] rating
        reference_time: "Now" for age calculation (default: current UTC time)
    """
    now = reference_time or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    accumulator: dict[int, float] = defaultdict(float)
    used = 0
    missing = 0

    for interaction in interactions:
        item_vector = item_vector_by_id.get(interaction.item_id)
        if item_vector is None:
            missing += 1
            continue

        weight = signal_weight(interaction, w_finished, w_partial_over_40, w_favorite, w_rating)
        if weight <= 0:
            continue

        effective = weight * decay_factor(interaction.when_utc, now, half_life_days)
        for token_id, value in item_vector.vector.items():
            accumulator[token_id] += value * effective
        used += 1

    if missing:
        logger.debug(f"Skipped {missing} interactions without an item vector")
    logger.debug(f"Built profile from {used} interactions ({len(accumulator)} tokens)")

    return l2_normalize(accumulator)
