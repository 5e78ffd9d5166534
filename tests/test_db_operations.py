import sqlite3

import pytest

import db
from db_pool import SQLiteConnectionPool, is_transient
from errors import TransientStoreError


def test_init_is_idempotent(temp_db):
    db.init()
    db.init()
    tables = {
        row["name"] for row in db._query("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {
        "learners",
        "lessons",
        "tasks",
        "lesson_completions",
        "task_submissions",
        "daily_checkins",
        "custom_lessons",
        "custom_tasks",
        "xp_events",
        "activity_statements",
    } <= tables


def test_transaction_rolls_back_on_error(learner):
    learner("alice")

    with pytest.raises(RuntimeError):
        with db.transaction() as con:
            con.execute("UPDATE learners SET xp_total = 50 WHERE id = ?", ("alice",))
            raise RuntimeError("boom")

    assert db.get_learner("alice")["xp_total"] == 0


def test_xp_total_cannot_go_negative_at_the_store(learner):
    learner("alice")

    with pytest.raises(sqlite3.IntegrityError):
        db._exec("UPDATE learners SET xp_total = -1 WHERE id = ?", ("alice",))


def test_checkin_flag_claim_is_compare_and_swap(learner):
    learner("alice")

    with db.transaction() as con:
        db.ensure_checkin_row(con, "alice", "2024-01-01")
        db.ensure_checkin_row(con, "alice", "2024-01-01")
        first = db.claim_checkin_flag(con, "alice", "2024-01-01", "soft_task", 5)
        second = db.claim_checkin_flag(con, "alice", "2024-01-01", "soft_task", 5)

    assert (first, second) == (1, 0)
    assert db.get_checkin("alice", "2024-01-01")["xp_generated"] == 5

    with pytest.raises(ValueError):
        with db.transaction() as con:
            db.claim_checkin_flag(con, "alice", "2024-01-01", "xp_generated", 5)


def test_adjust_xp_clamps_and_reports_missing_learner(learner):
    learner("alice")

    with db.transaction() as con:
        assert db.adjust_xp(con, "alice", 4) == (0, 4)
        assert db.adjust_xp(con, "alice", -10) == (4, 0)
        assert db.adjust_xp(con, "ghost", 1) is None


def test_is_transient_only_matches_lock_errors():
    assert is_transient(sqlite3.OperationalError("database is locked"))
    assert is_transient(sqlite3.OperationalError("database table is locked: learners"))
    assert not is_transient(sqlite3.OperationalError("no such table: learners"))
    assert not is_transient(ValueError("database is locked"))


def test_locked_store_surfaces_transient_error(tmp_path, monkeypatch):
    path = str(tmp_path / "locked.db")
    pool = SQLiteConnectionPool(path, max_connections=2, busy_timeout=0.05)
    monkeypatch.setattr(db, "DB_PATH", path)
    monkeypatch.setattr(db, "_pool", pool)
    db.init()

    blocker = sqlite3.connect(path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransientStoreError):
            with db.transaction():
                pass
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        pool.close_all()


def test_exhausted_pool_surfaces_transient_error(tmp_path, monkeypatch):
    from engines import checkin_guard

    path = str(tmp_path / "busy.db")
    pool = SQLiteConnectionPool(path, max_connections=1, busy_timeout=0.2)
    monkeypatch.setattr(db, "DB_PATH", path)
    monkeypatch.setattr(db, "_pool", pool)
    db.init()
    db.upsert_learner("alice", "Alice")

    try:
        with pool.get_connection():
            with pytest.raises(TransientStoreError):
                checkin_guard.perform_checkin("alice", "data", "2024-01-01")
        # The connection went back to the pool, so the same call now succeeds.
        assert checkin_guard.perform_checkin("alice", "data", "2024-01-01").success
    finally:
        pool.close_all()


def test_pool_reuses_connections(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=1)

    with pool.get_connection() as first:
        pass
    with pool.get_connection() as second:
        pass

    assert first is second
    pool.close_all()
