import logging
from typing import Iterable

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import svds

from .config import CF_N_FACTORS

logger = logging.getLogger(__name__)


class CollaborativeModel:
    """
    Optional matrix factorization over implicit interaction strengths.

    Decomposes the user-item strength matrix S ≈ U @ Σ @ V^T with truncated
    SVD after removing global/user/item biases. This is an enhancement on
    top of the content-based scores: callers must treat any exception from
    fit() as "no CF this run" and carry on.
    """

    def __init__(self, n_factors: int = CF_N_FACTORS):
        self.n_factors = n_factors
        self.user_factors = None
        self.item_factors = None
        self.user_index: dict[str, int] = {}
        self.item_index: dict[str, int] = {}
        self.global_mean = 0.0
        self.user_biases = None
        self.item_biases = None
        self.is_fitted = False

    def fit(self, strengths: Iterable[tuple[str, str, float]]) -> "CollaborativeModel":
        """
        Fit on (user_id, item_id, strength) triples; non-positive strengths are ignored.

        Raises ValueError when there is no signal or fewer than two users/items.
        """
        self.is_fitted = False

        merged: dict[tuple[str, str], float] = {}
        for user_id, item_id, strength in strengths:
            if strength > 0:
                key = (user_id, item_id)
                merged[key] = max(merged.get(key, 0.0), float(strength))

        if not merged:
            raise ValueError("Cannot fit collaborative model because no interaction signal was provided.")

        users = list(dict.fromkeys(u for u, _ in merged))
        items = list(dict.fromkeys(i for _, i in merged))
        self.user_index = {u: idx for idx, u in enumerate(users)}
        self.item_index = {i: idx for idx, i in enumerate(items)}
        n_users, n_items = len(users), len(items)

        k = min(self.n_factors, min(n_users, n_items) - 1)
        if k < 1:
            raise ValueError(
                f"Collaborative model needs at least 2 users and 2 items (got {n_users}x{n_items})."
            )

        rows = [self.user_index[u] for u, _ in merged]
        cols = [self.item_index[i] for _, i in merged]
        data = list(merged.values())
        S = csr_matrix((data, (rows, cols)), shape=(n_users, n_items), dtype=np.float64)

        self.global_mean = float(np.mean(data))

        user_sums = np.array(S.sum(axis=1)).flatten()
        user_counts = np.array(S.getnnz(axis=1), dtype=np.float64)
        user_counts[user_counts == 0] = 1
        self.user_biases = (user_sums / user_counts) - self.global_mean

        item_sums = np.array(S.sum(axis=0)).flatten()
        item_counts = np.array(S.getnnz(axis=0), dtype=np.float64)
        item_counts[item_counts == 0] = 1
        self.item_biases = (item_sums / item_counts) - self.global_mean

        # Center observed entries only
        centered = S.copy()
        row_of_entry = np.repeat(np.arange(n_users), np.diff(centered.indptr))
        centered.data -= (
            self.global_mean
            + self.user_biases[row_of_entry]
            + self.item_biases[centered.indices]
        )

        U, sigma, Vt = svds(centered, k=k)
        sigma_sqrt = np.sqrt(sigma)
        self.user_factors = U * sigma_sqrt
        self.item_factors = (Vt.T * sigma_sqrt).T  # Shape: (k, n_items)
        self.is_fitted = True

        logger.info(f"Fitted collaborative model with {k} factors on {n_users} users × {n_items} items")
        return self

    def score_items(self, user_id: str, item_ids: Iterable[str]) -> dict[str, float]:
        """Predicted strength per item; unknown users/items and unfitted models yield nothing."""
        if not self.is_fitted or self.user_factors is None or self.item_factors is None:
            return {}
        user_idx = self.user_index.get(user_id)
        if user_idx is None:
            return {}

        user_vec = self.user_factors[user_idx]
        scores = {}
        for item_id in item_ids:
            item_idx = self.item_index.get(item_id)
            if item_idx is None:
                continue
            scores[item_id] = float(
                self.global_mean
                + self.user_biases[user_idx]
                + self.item_biases[item_idx]
                + user_vec @ self.item_factors[:, item_idx]
            )
        return scores
