import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in ("LRS_URL", "LRS_AUTH", "ADMIN_TOKEN", "CHECKIN_XP"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    previous = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10, busy_timeout=10.0)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous


@pytest.fixture
def learner(temp_db):
    """Create approved learners; returns a factory."""
    import db

    def _make(learner_id="alice", level="Beginner", english_level=None, full_name=None):
        db.upsert_learner(
            learner_id,
            full_name or learner_id.title(),
            level=level,
            english_level=english_level,
        )
        db.set_learner_status(learner_id, "approved")
        return db.get_learner(learner_id)

    return _make


@pytest.fixture
def catalog(temp_db):
    """Helpers for publishing lessons and tasks."""
    import db

    class Catalog:
        def lessons(self, track, count, *, level=None, english_level=None, published=True, prefix=None):
            prefix = prefix or f"{track}-{level or 'all'}"
            ids = []
            for idx in range(count):
                lesson_id = f"{prefix}-{idx}"
                db.upsert_lesson(
                    lesson_id,
                    f"Lesson {idx}",
                    track,
                    level=level,
                    english_level=english_level,
                    published=published,
                )
                ids.append(lesson_id)
            return ids

        def task(self, task_id, *, track="data", xp=20, level=None, published=True):
            return db.upsert_task(task_id, f"Task {task_id}", track, xp=xp, level=level, published=published)

    return Catalog()
