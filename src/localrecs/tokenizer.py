"""
Turn item metadata into namespaced canonical tokens.

Tokens look like ``genre:drama`` or ``overview:courage``. Repeats are kept
on purpose: they raise term frequency in the vectorizer.
"""
from itertools import islice
from typing import Iterable, Iterator

from .config import MIN_KEYWORD_LENGTH, OVERVIEW_KEYWORD_CAP, STOPWORDS, TOKEN_NAMESPACES

GENRE, TAG, PERSON, STUDIO, TITLE, OVERVIEW = TOKEN_NAMESPACES


def canonical(value: str) -> str:
    return value.strip().lower()


def extract_keywords(text: str | None) -> Iterator[str]:
    """
    Yield lowercase alphanumeric keywords from free text.

    Anything that is not a letter or a decimal digit (punctuation,
    superscripts, roman-numeral signs) becomes whitespace, then words
    shorter than MIN_KEYWORD_LENGTH and stopwords are dropped.
    """
    if not text or not text.strip():
        return
    normalized = "".join(ch if ch.isalpha() or ch.isdecimal() else " " for ch in text.lower())
    for word in normalized.split():
        if len(word) < MIN_KEYWORD_LENGTH:
            continue
        if word in STOPWORDS:
            continue
        yield word


def _namespaced(namespace: str, values: Iterable[str] | None) -> Iterator[str]:
    for value in values or ():
        if value is None:
            continue
        yield f"{namespace}:{canonical(str(value))}"


def tokenize(
    genres: Iterable[str] | None,
    tags: Iterable[str] | None,
    people: Iterable[str] | None,
    studios: Iterable[str] | None,
    title: str | None,
    overview: str | None,
) -> Iterator[str]:
    """
    Lazily produce tokens in field order: genres, tags, people, studios,
    title keywords, then at most OVERVIEW_KEYWORD_CAP overview keywords.
    """
    yield from _namespaced(GENRE, genres)
    yield from _namespaced(TAG, tags)
    yield from _namespaced(PERSON, people)
    yield from _namespaced(STUDIO, studios)

    for keyword in extract_keywords(title):
        yield f"{TITLE}:{keyword}"
    for keyword in islice(extract_keywords(overview), OVERVIEW_KEYWORD_CAP):
        yield f"{OVERVIEW}:{keyword}"
