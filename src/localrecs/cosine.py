import math
from typing import Mapping


def similarity(a: Mapping[int, float], b: Mapping[int, float]) -> float:
    """
    Cosine similarity between two sparse vectors keyed by token id.

    The dot product walks the smaller mapping and probes the larger one;
    each norm is taken over the vector's own entries. Negative weights
    (from negative idf) are kept as-is. Returns 0.0 when either side is
    empty or has zero norm.
    """
    if not a or not b:
        return 0.0

    smaller, larger = (a, b) if len(a) <= len(b) else (b, a)
    dot = 0.0
    for token_id, weight in smaller.items():
        other = larger.get(token_id)
        if other is not None:
            dot += weight * other

    a_norm = math.sqrt(sum(w * w for w in a.values()))
    b_norm = math.sqrt(sum(w * w for w in b.values()))
    if a_norm == 0 or b_norm == 0:
        return 0.0
    return dot / (a_norm * b_norm)
