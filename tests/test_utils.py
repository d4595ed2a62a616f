import pytest

from localrecs import utils
from localrecs.models import ScoredItem, UserRef
from localrecs.naming import because_you_watched, top_picks_for


def test_retry_with_backoff_eventually_succeeds(monkeypatch):
    delays = []
    monkeypatch.setattr(utils.time, "sleep", lambda s: delays.append(s))
    attempts = {"n": 0}

    @utils.retry_with_backoff(max_retries=3, initial_delay=0.5, backoff_factor=2.0)
    def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("try again")
        return "ok"

    assert flaky() == "ok"
    assert attempts["n"] == 3
    assert delays == [0.5, 1.0]


def test_retry_with_backoff_reraises_last_error(monkeypatch):
    monkeypatch.setattr(utils.time, "sleep", lambda s: None)

    @utils.retry_with_backoff(max_retries=2, exceptions=(ConnectionError,))
    def always_fails():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        always_fails()


def test_retry_with_backoff_ignores_unlisted_exceptions(monkeypatch):
    monkeypatch.setattr(utils.time, "sleep", lambda s: pytest.fail("should not retry"))

    @utils.retry_with_backoff(max_retries=3, exceptions=(ConnectionError,))
    def broken():
        raise KeyError("nope")

    with pytest.raises(KeyError):
        broken()


def test_format_top():
    items = [ScoredItem(f"i{n}", 1.0 / (n + 1)) for n in range(12)]
    rendered = utils.format_top(items)

    assert rendered.startswith("i0:1.000, i1:0.500")
    assert rendered.count(":") == 10
    assert utils.format_top([], limit=3) == ""


def test_row_names():
    assert top_picks_for(UserRef("u1", "Alice")) == "Top picks for Alice"
    assert top_picks_for(UserRef("u1")) == "Top picks for u1"
    assert because_you_watched("Heat") == "Because you watched Heat"
    assert because_you_watched(None) == "Because you watched Title"
    assert because_you_watched("") == "Because you watched Title"
