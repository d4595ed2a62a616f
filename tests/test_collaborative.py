import math

import pytest

from localrecs.collaborative import CollaborativeModel


@pytest.fixture
def strengths():
    return [
        ("alice", "film-a", 1.5),
        ("alice", "film-b", 0.25),
        ("bob", "film-a", 1.75),
        ("bob", "film-b", 0.1),
        ("bob", "film-c", 1.5),
        ("carol", "film-a", 1.5),
        ("carol", "film-c", 1.0),
    ]


def test_fit_and_score_items(strengths):
    model = CollaborativeModel(n_factors=2).fit(strengths)

    assert model.is_fitted
    assert set(model.user_index) == {"alice", "bob", "carol"}
    assert set(model.item_index) == {"film-a", "film-b", "film-c"}

    scores = model.score_items("alice", ["film-a", "film-b", "film-c", "unknown"])
    assert set(scores) == {"film-a", "film-b", "film-c"}
    assert all(math.isfinite(v) for v in scores.values())


def test_score_items_for_unknown_user_or_unfitted_model(strengths):
    assert CollaborativeModel().score_items("alice", ["film-a"]) == {}

    model = CollaborativeModel(n_factors=2).fit(strengths)
    assert model.score_items("dave", ["film-a"]) == {}


def test_fit_requires_positive_signal():
    with pytest.raises(ValueError):
        CollaborativeModel().fit([])
    with pytest.raises(ValueError):
        CollaborativeModel().fit([("alice", "film-a", 0.0), ("bob", "film-b", -1.0)])


def test_fit_requires_at_least_two_users_and_items():
    with pytest.raises(ValueError):
        CollaborativeModel().fit([("alice", "film-a", 1.0), ("alice", "film-b", 1.0)])


def test_duplicate_pairs_keep_strongest_signal():
    model = CollaborativeModel(n_factors=1).fit([
        ("alice", "film-a", 0.5),
        ("alice", "film-a", 1.5),
        ("bob", "film-b", 1.0),
        ("bob", "film-a", 1.0),
    ])
    assert model.is_fitted
    assert model.global_mean == pytest.approx((1.5 + 1.0 + 1.0) / 3)
