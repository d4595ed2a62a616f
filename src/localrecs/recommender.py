import logging
from typing import Iterable, Mapping

from .cosine import similarity
from .models import ItemVector, ScoredItem, SparseVector

logger = logging.getLogger(__name__)


def _top(scored: list[ScoredItem], max_items: int) -> list[ScoredItem]:
    # sorted() is stable, so equal scores keep candidate order
    return sorted(scored, key=lambda s: -s.score)[:max(1, max_items)]


def rank(
    user_profile: SparseVector,
    candidates: Iterable[ItemVector],
    exclude: set[str] | frozenset[str],
    min_score: float,
    max_items: int,
) -> list[ScoredItem]:
    """
    Score candidates against a user profile and return the best ones.

    Excluded ids are skipped, scores below min_score are dropped, and at
    most max(1, max_items) entries come back, highest score first.
    """
    scored = []
    for candidate in candidates:
        if candidate.item_id in exclude:
            continue
        score = similarity(user_profile, candidate.vector)
        if score >= min_score:
            scored.append(ScoredItem(item_id=candidate.item_id, score=score))
    return _top(scored, max_items)


def nearest_neighbors(
    anchor: ItemVector,
    candidates: Iterable[ItemVector],
    exclude: set[str] | frozenset[str],
    max_items: int,
    min_score: float,
) -> list[ScoredItem]:
    """Items most similar to an anchor item; the anchor itself is always excluded."""
    scored = []
    for candidate in candidates:
        if candidate.item_id == anchor.item_id or candidate.item_id in exclude:
            continue
        score = similarity(anchor.vector, candidate.vector)
        if score >= min_score:
            scored.append(ScoredItem(item_id=candidate.item_id, score=score))
    return _top(scored, max_items)


def _min_max(scores: Mapping[str, float]) -> dict[str, float]:
    if not scores:
        return {}
    min_s, max_s = min(scores.values()), max(scores.values())
    range_s = max_s - min_s if max_s > min_s else 1.0
    return {item_id: (score - min_s) / range_s for item_id, score in scores.items()}


def blend_with_collaborative(
    ranked: list[ScoredItem],
    cf_scores: Mapping[str, float],
    weight: float,
) -> list[ScoredItem]:
    """
    Re-order a content-based list using collaborative-filtering scores.

    Both score sets are min-max normalized over the ranked items, then
    combined as (1 - weight) * content + weight * cf. Membership and
    length of the list never change; items without a CF score count as 0.
    """
    if not ranked or not cf_scores:
        return list(ranked)

    weight = min(1.0, max(0.0, weight))
    content_norm = _min_max({s.item_id: s.score for s in ranked})
    cf_norm = _min_max({s.item_id: cf_scores[s.item_id] for s in ranked if s.item_id in cf_scores})

    blended = [
        ScoredItem(
            item_id=s.item_id,
            score=(1 - weight) * content_norm[s.item_id] + weight * cf_norm.get(s.item_id, 0.0),
        )
        for s in ranked
    ]
    return sorted(blended, key=lambda s: -s.score)
