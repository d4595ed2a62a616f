from dataclasses import dataclass, field
from datetime import datetime, timezone

from .tokenizer import tokenize

# token id -> weight; absent ids are implicitly zero
SparseVector = dict[int, float]


@dataclass(frozen=True)
class ItemVector:
    """L2-normalized TF-IDF representation of one catalog item."""
    item_id: str
    vector: SparseVector = field(default_factory=dict)


@dataclass(frozen=True)
class Interaction:
    """One user's watch signal for one item."""
    item_id: str
    when: datetime
    finished: bool = False
    favorite_or_like: bool = False
    played_fraction: float = 0.0
    rating01: float | None = None

    @property
    def when_utc(self) -> datetime:
        # Naive timestamps are stored as UTC
        if self.when.tzinfo is None:
            return self.when.replace(tzinfo=timezone.utc)
        return self.when.astimezone(timezone.utc)


@dataclass(frozen=True)
class ScoredItem:
    item_id: str
    score: float


@dataclass(frozen=True)
class UserRef:
    user_id: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.user_id


@dataclass
class CatalogItem:
    """Catalog metadata for a movie or series, as supplied by the catalog source."""
    item_id: str
    title: str | None = None
    overview: str | None = None
    genres: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    people: list[str] = field(default_factory=list)
    studios: list[str] = field(default_factory=list)
    item_type: str = "movie"

    def tokens(self):
        return tokenize(self.genres, self.tags, self.people, self.studios, self.title, self.overview)
