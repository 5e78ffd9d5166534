import threading

import pytest

import db
import xapi


@pytest.mark.usefixtures("temp_db")
def test_emit_persists_and_forwards_to_lrs(monkeypatch):
    event = threading.Event()
    calls = []

    async def fake_forward(statement, *, lrs_url, headers, timeout=5.0, max_attempts=3):
        calls.append((lrs_url, statement, headers))
        event.set()

    monkeypatch.setattr(xapi, "_forward_statement_with_retry", fake_forward)
    monkeypatch.setenv("LRS_URL", "https://lrs.example.com/xapi")
    monkeypatch.setenv("LRS_AUTH", "Basic abc")

    statement_id = xapi.emit(
        "alice",
        xapi.VERB_ATTENDED,
        "checkin:2024-01-01:data",
        xp_earned=5,
        context={"track": "data", "date": "2024-01-01", "mood": "curious"},
    )

    feed = xapi.recent_activity("alice")
    assert [item["id"] for item in feed] == [statement_id]
    stored = feed[0]
    assert stored["verb"] == xapi.VERB_ATTENDED
    assert stored["xp_earned"] == 5
    assert stored["description"] == "سجّل الحضور اليومي"
    # Unknown extensions are dropped before storage.
    assert stored["context"] == {"track": "data", "date": "2024-01-01"}

    assert event.wait(1.0)
    url, payload, headers = calls[0]
    assert url == "https://lrs.example.com/xapi"
    assert headers["Authorization"] == "Basic abc"
    assert headers["X-Experience-API-Version"] == "1.0.3"
    assert payload["result"]["score"]["raw"] == 5
    assert payload["actor"]["account"]["name"] == "alice"
    assert payload["context"]["language"] == "ar"


@pytest.mark.usefixtures("temp_db")
def test_emit_without_lrs_only_stores(monkeypatch):
    def fail_forward(*args, **kwargs):  # pragma: no cover - must not run
        raise AssertionError("forwarding should be disabled")

    monkeypatch.setattr(xapi, "_schedule_forward", fail_forward)

    xapi.emit("bob", xapi.VERB_EXPERIENCED, "lesson:intro", description="Intro")

    rows = db._query("SELECT learner_id, object_id, description, context FROM activity_statements")
    assert [dict(r) for r in rows] == [
        {"learner_id": "bob", "object_id": "lesson:intro", "description": "Intro", "context": None}
    ]


@pytest.mark.usefixtures("temp_db")
def test_emit_rejects_unknown_verb():
    with pytest.raises(ValueError):
        xapi.emit("alice", "http://adlnet.gov/expapi/verbs/answered", "task:t1")
    assert xapi.recent_activity("alice") == []


def test_validate_statement_rejects_unknown_object_prefix():
    statement = {
        "actor": {"account": {"homePage": "https://local", "name": "bob"}},
        "verb": {"id": xapi.VERB_COMPLETED},
        "object": {"id": "activity:xyz"},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


def test_validate_statement_rejects_negative_score():
    statement = {
        "actor": {"account": {"name": "bob"}},
        "verb": {"id": xapi.VERB_COMPLETED},
        "object": {"id": "task:t1"},
        "result": {"score": {"raw": -3}},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


def test_validate_statement_requires_actor_name():
    statement = {
        "actor": {"account": {"name": "  "}},
        "verb": {"id": xapi.VERB_COMPLETED},
        "object": {"id": "task:t1"},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


@pytest.mark.usefixtures("temp_db")
def test_emit_stores_context_as_compact_json():
    xapi.emit("bob", xapi.VERB_ATTENDED, "checkin:2024-01-01:data", context={"track": "data", "date": "2024-01-01"})

    rows = db._query("SELECT context FROM activity_statements")
    assert rows[0]["context"] == '{"track":"data","date":"2024-01-01"}'
