import threading
from datetime import date

import pytest

import db
from engines import checkin_guard, xp_ledger
from engines.checkin_guard import ALREADY_CHECKED_IN, next_streak
from errors import NotFoundError, ValidationError


def test_second_checkin_same_day_is_rejected_without_xp(learner):
    learner("alice")

    first = checkin_guard.perform_checkin("alice", "data", "2024-01-01")
    second = checkin_guard.perform_checkin("alice", "data", "2024-01-01")

    assert first.success is True
    assert first.xp_awarded == 5
    assert second.success is False
    assert second.reason == ALREADY_CHECKED_IN
    assert xp_ledger.balance("alice") == 5

    row = db.get_checkin("alice", "2024-01-01")
    assert row["data_task"] is True
    assert row["lang_task"] is False
    assert row["xp_generated"] == 5


def test_tracks_are_independent_within_a_day(learner):
    learner("alice")

    results = [
        checkin_guard.perform_checkin("alice", track, "2024-01-01")
        for track in ("data", "lang", "soft")
    ]

    assert all(r.success for r in results)
    assert xp_ledger.balance("alice") == 15
    row = db.get_checkin("alice", "2024-01-01")
    assert row["xp_generated"] == 15
    assert len(db._query("SELECT id FROM daily_checkins WHERE learner_id = ?", ("alice",))) == 1


def test_english_is_an_alias_for_lang(learner):
    learner("alice")

    assert checkin_guard.perform_checkin("alice", "english", "2024-01-01").success is True
    repeat = checkin_guard.perform_checkin("alice", "lang", "2024-01-01")

    assert repeat.success is False
    assert repeat.track == "lang"


def test_new_day_allows_new_checkin(learner):
    learner("alice")

    checkin_guard.perform_checkin("alice", "data", "2024-01-01")
    result = checkin_guard.perform_checkin("alice", "data", "2024-01-02")

    assert result.success is True
    assert xp_ledger.balance("alice") == 10


def test_concurrent_checkins_award_exactly_once(learner):
    learner("alice")
    attempts = 8
    barrier = threading.Barrier(attempts)
    results = []
    errors = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            outcome = checkin_guard.perform_checkin("alice", "soft", "2024-03-10")
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            with lock:
                errors.append(exc)
            return
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(results) == attempts
    assert sum(1 for r in results if r.success) == 1
    assert sum(1 for r in results if r.reason == ALREADY_CHECKED_IN) == attempts - 1
    assert xp_ledger.balance("alice") == 5
    assert db.get_checkin("alice", "2024-03-10")["xp_generated"] == 5


def test_award_amount_comes_from_environment(learner, monkeypatch):
    learner("alice")
    monkeypatch.setenv("CHECKIN_XP", "7")

    result = checkin_guard.perform_checkin("alice", "data", "2024-01-01")

    assert result.xp_awarded == 7
    assert xp_ledger.balance("alice") == 7


def test_checkin_events_are_logged_with_source(learner):
    learner("alice")
    checkin_guard.perform_checkin("alice", "data", "2024-01-01")

    events = xp_ledger.history("alice")
    assert [e["source"] for e in events] == ["checkin"]
    assert events[0]["related_id"] == "2024-01-01:data"


@pytest.mark.parametrize("track", ["math", "", "custom"])
def test_unknown_track_is_validation_error(learner, track):
    learner("alice")
    with pytest.raises(ValidationError):
        checkin_guard.perform_checkin("alice", track, "2024-01-01")


@pytest.mark.parametrize("value", ["2024-13-01", "yesterday", "2024/01/01"])
def test_invalid_date_is_validation_error(learner, value):
    learner("alice")
    with pytest.raises(ValidationError):
        checkin_guard.perform_checkin("alice", "data", value)


def test_unknown_learner_is_not_found(temp_db):
    with pytest.raises(NotFoundError):
        checkin_guard.perform_checkin("ghost", "data", "2024-01-01")
    assert db.get_checkin("ghost", "2024-01-01") is None


def test_streak_extends_on_consecutive_days_and_resets_after_gap(learner):
    learner("alice")

    checkin_guard.perform_checkin("alice", "data", "2024-01-01")
    checkin_guard.perform_checkin("alice", "soft", "2024-01-01")
    assert db.get_learner("alice")["streak_days"] == 1

    checkin_guard.perform_checkin("alice", "data", "2024-01-02")
    assert db.get_learner("alice")["streak_days"] == 2

    result = checkin_guard.perform_checkin("alice", "data", "2024-01-05")
    assert result.streak_days == 1
    assert db.get_learner("alice")["last_checkin_date"] == "2024-01-05"


def test_next_streak_rules():
    today = date(2024, 5, 10)
    assert next_streak(0, None, today) == 1
    assert next_streak(4, "2024-05-09", today) == 5
    assert next_streak(4, "2024-05-10", today) == 4
    assert next_streak(4, "2024-05-01", today) == 1
    assert next_streak(3, "not-a-date", today) == 1


def test_get_checkin_placeholder_when_missing(learner):
    learner("alice")

    row = checkin_guard.get_checkin("alice", "2024-01-01")

    assert row["data_task"] is False
    assert row["xp_generated"] == 0
