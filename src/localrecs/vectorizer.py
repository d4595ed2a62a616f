import logging
import math
from collections import Counter
from types import MappingProxyType
from typing import Iterable, Mapping

import numpy as np

from .models import ItemVector, SparseVector

logger = logging.getLogger(__name__)


def l2_normalize(weights: Mapping[int, float]) -> SparseVector:
    """
    Scale weights to unit L2 norm, stored at float32 precision.

    A zero norm is treated as 1.0 so an all-zero input comes back as the
    empty vector. Weights that round to zero are dropped.
    """
    norm = math.sqrt(sum(w * w for w in weights.values()))
    if norm <= 0:
        norm = 1.0
    normalized: SparseVector = {}
    for token_id, weight in weights.items():
        value = float(np.float32(weight / norm))
        if value != 0:
            normalized[token_id] = value
    return normalized


class TfIdfVectorizer:
    """
    Vocabulary plus smoothed-IDF table for one fitting pass.

    Each run owns its own instance. Token ids are assigned in first-seen
    order, so ids (and vectors) from different instances are not
    comparable.
    """

    def __init__(self):
        self._token_to_id: dict[str, int] = {}
        self._id_to_token: list[str] = []
        self._idf: dict[int, float] = {}
        self.n_documents = 0

    @property
    def vocabulary(self) -> Mapping[str, int]:
        return MappingProxyType(self._token_to_id)

    @property
    def idf(self) -> Mapping[int, float]:
        return MappingProxyType(self._idf)

    def token_for(self, token_id: int) -> str | None:
        if 0 <= token_id < len(self._id_to_token):
            return self._id_to_token[token_id]
        return None

    def _get_or_add_token_id(self, token: str) -> int:
        token_id = self._token_to_id.get(token)
        if token_id is None:
            token_id = len(self._id_to_token)
            self._token_to_id[token] = token_id
            self._id_to_token.append(token)
        return token_id

    def fit_transform(self, items: Iterable[tuple[str, Iterable[str]]]) -> list[ItemVector]:
        """
        Build the vocabulary and IDF table over the whole catalog and return
        one normalized TF-IDF vector per item, in input order.

        idf[t] = ln(N / (1 + df[t])) with N = max(1, n_items). Tokens present
        in nearly every item get a negative idf; that is kept, not floored.
        """
        df: Counter[int] = Counter()
        corpus: list[tuple[str, list[int]]] = []

        for item_id, tokens in items:
            token_ids = [self._get_or_add_token_id(tok) for tok in tokens]
            # Document frequency counts each token once per item
            df.update(set(token_ids))
            corpus.append((item_id, token_ids))

        self.n_documents = len(corpus)
        n_docs = max(1, self.n_documents)
        self._idf = {tid: math.log(n_docs / (1 + count)) for tid, count in df.items()}

        vectors = []
        for item_id, token_ids in corpus:
            tf = Counter(token_ids)
            weights = {tid: count * self._idf.get(tid, 0.0) for tid, count in tf.items()}
            vectors.append(ItemVector(item_id=item_id, vector=l2_normalize(weights)))

        logger.info(
            f"Vectorized {len(vectors)} items over a vocabulary of {len(self._id_to_token)} tokens"
        )
        return vectors

    def describe(self, vector: Mapping[int, float], top_n: int = 10) -> list[tuple[str, float]]:
        """Map the heaviest weights of a vector back to their token strings."""
        ranked = sorted(vector.items(), key=lambda kv: -kv[1])[:top_n]
        return [(self.token_for(tid) or f"#{tid}", weight) for tid, weight in ranked]
