import math

import pytest

import db
from engines import aggregator, event_recorder, task_review
from errors import NotFoundError


def _standard_catalog(catalog):
    data = catalog.lessons("data", 10)
    catalog.lessons("english", 5)
    catalog.lessons("soft", 5)
    for idx in range(4):
        catalog.task(f"task-{idx}", xp=10)
    return data


def _approve(learner_id, task_id):
    event_recorder.submit_task_proof(learner_id, task_id, "https://example.com/proof", "link")
    submission = db.get_submission_for(learner_id, task_id)
    task_review.review_task_submission(submission["id"], "approve")


def test_no_completions_yields_zero_everywhere(learner, catalog):
    learner("alice")
    _standard_catalog(catalog)

    report = aggregator.compute_progress("alice")

    assert report.per_track == {"data": 0.0, "english": 0.0, "soft": 0.0}
    assert report.task_pct == 0.0
    assert report.overall == 0.0
    assert report.counts["data"] == {"completed": 0, "total": 10}
    assert report.counts["tasks"] == {"completed": 0, "total": 4}


def test_half_of_data_track_gives_weighted_overall(learner, catalog):
    learner("alice")
    data = _standard_catalog(catalog)
    for lesson_id in data[:5]:
        event_recorder.record_lesson_watched("alice", lesson_id, True)

    report = aggregator.compute_progress("alice")

    assert report.per_track["data"] == 50.0
    assert report.per_track["english"] == 0.0
    assert report.per_track["soft"] == 0.0
    assert report.task_pct == 0.0
    assert math.isclose(report.overall, 8.33, abs_tol=0.01)


def test_task_share_counts_half_of_overall(learner, catalog):
    learner("alice")
    _standard_catalog(catalog)
    _approve("alice", "task-0")
    _approve("alice", "task-1")

    report = aggregator.compute_progress("alice")

    assert report.task_pct == 50.0
    assert report.overall == 25.0


def test_empty_catalog_returns_zero_not_nan(learner):
    learner("alice")

    report = aggregator.compute_progress("alice")

    for value in list(report.per_track.values()) + [report.task_pct, report.overall]:
        assert value == 0.0
        assert not math.isnan(value)


def test_values_stay_within_bounds_when_everything_is_done(learner, catalog):
    learner("alice")
    data = catalog.lessons("data", 2)
    english = catalog.lessons("english", 1)
    soft = catalog.lessons("soft", 3)
    catalog.task("only-task")
    for lesson_id in data + english + soft:
        event_recorder.record_lesson_watched("alice", lesson_id, True)
        # repeated upserts never double count
        event_recorder.record_lesson_watched("alice", lesson_id, True)
    _approve("alice", "only-task")

    report = aggregator.compute_progress("alice")

    assert report.per_track == {"data": 100.0, "english": 100.0, "soft": 100.0}
    assert report.overall == 100.0
    for value in report.per_track.values():
        assert 0.0 <= value <= 100.0


def test_level_restricted_lessons_are_hidden_from_other_levels(learner, catalog):
    learner("bea", level="Beginner")
    learner("ali", level="Advanced")
    catalog.lessons("data", 2)
    catalog.lessons("data", 2, level="Advanced")

    for lesson_id in ("data-all-0", "data-all-1"):
        event_recorder.record_lesson_watched("bea", lesson_id, True)
        event_recorder.record_lesson_watched("ali", lesson_id, True)

    beginner = aggregator.compute_progress("bea")
    advanced = aggregator.compute_progress("ali")

    assert beginner.counts["data"] == {"completed": 2, "total": 2}
    assert beginner.per_track["data"] == 100.0
    assert advanced.counts["data"] == {"completed": 2, "total": 4}
    assert advanced.per_track["data"] == 50.0


def test_completion_of_unpublished_lesson_is_ignored(learner, catalog):
    learner("alice")
    catalog.lessons("data", 2)
    event_recorder.record_lesson_watched("alice", "data-all-0", True)
    db.upsert_lesson("data-all-0", "Lesson 0", "data", published=False)

    report = aggregator.compute_progress("alice")

    assert report.counts["data"] == {"completed": 0, "total": 1}


def test_english_sublevel_filters_english_lessons(learner, catalog):
    learner("alice", english_level="B")
    catalog.lessons("english", 2, english_level="B", prefix="eng-b")
    catalog.lessons("english", 3, english_level="C", prefix="eng-c")
    catalog.lessons("english", 1, prefix="eng-any")

    report = aggregator.compute_progress("alice")

    assert report.counts["english"]["total"] == 3


def test_level_restricted_tasks_are_excluded(learner, catalog):
    learner("alice", level="Beginner")
    catalog.task("t-all")
    catalog.task("t-adv", level="Advanced")
    catalog.task("t-draft", published=False)

    report = aggregator.compute_progress("alice")

    assert report.counts["tasks"]["total"] == 1


def test_cached_progress_columns_are_not_trusted(learner, catalog):
    learner("alice")
    catalog.lessons("data", 4)
    db.update_cached_progress("alice", 99.0, 99.0, 99.0, 99.0)

    report = aggregator.compute_progress("alice")

    assert report.per_track["data"] == 0.0
    assert report.overall == 0.0


def test_compute_progress_does_not_write_cache(learner, catalog):
    learner("alice")
    data = catalog.lessons("data", 2)
    event_recorder.record_lesson_watched("alice", data[0], True)

    aggregator.compute_progress("alice")
    assert db.get_learner("alice")["data_progress"] is None

    aggregator.refresh_cached_progress("alice")
    assert db.get_learner("alice")["data_progress"] == 50.0


def test_unknown_learner_raises_not_found(temp_db):
    with pytest.raises(NotFoundError):
        aggregator.compute_progress("ghost")


def test_custom_progress_groups_by_track(learner):
    learner("alice")
    first = db.create_custom_lesson("alice", "Excel basics", track="data")
    db.create_custom_lesson("alice", "Pivot tables", track="data")
    db.create_custom_task("alice", "Interview prep", 10)
    event_recorder.record_custom_item_toggle(first["id"], True, "lesson")

    summary = aggregator.custom_progress("alice")

    assert summary["lessons"]["data"] == {"completed": 1, "total": 2, "pct": 50.0}
    assert summary["tasks"]["custom"] == {"completed": 0, "total": 1, "pct": 0.0}


def test_leaderboard_orders_by_progress_then_xp_then_streak(learner, catalog):
    learner("alice")
    for lesson_id in catalog.lessons("data", 2):
        event_recorder.record_lesson_watched("alice", lesson_id, True)
    learner("bob")
    learner("carol")
    db.upsert_learner("dave", "Dave")
    db.upsert_learner("root", "Root", role="admin")
    with db.transaction() as con:
        db.adjust_xp(con, "bob", 100)
        db.adjust_xp(con, "carol", 100)
        db.set_streak(con, "carol", 4, "2024-01-01")
        db.adjust_xp(con, "dave", 10)
        db.adjust_xp(con, "root", 1000)

    board = aggregator.leaderboard()

    # Pending learners are ranked too; only admins are left out.
    assert [row["id"] for row in board] == ["alice", "carol", "bob", "dave"]
    assert [row["rank"] for row in board] == [1, 2, 3, 4]
    assert math.isclose(board[0]["overall_progress"], 16.67, abs_tol=0.01)
    assert board[0]["xp_total"] == 0


def test_leaderboard_uses_live_progress_not_cache(learner, catalog):
    catalog.lessons("data", 2)
    learner("alice")
    learner("bob")
    db.update_cached_progress("bob", 100.0, 100.0, 100.0, 100.0)
    with db.transaction() as con:
        db.adjust_xp(con, "alice", 5)

    board = aggregator.leaderboard(limit=1)

    assert [row["id"] for row in board] == ["alice"]
    assert board[0]["overall_progress"] == 0.0


def test_learners_overview_lists_xp_streak_and_progress(learner, catalog):
    data = catalog.lessons("data", 2)
    learner("alice")
    learner("bob")
    db.upsert_learner("root", "Root", role="admin")
    event_recorder.record_lesson_watched("bob", data[0], True)
    with db.transaction() as con:
        db.adjust_xp(con, "alice", 30)
        db.set_streak(con, "alice", 2, "2024-01-02")

    rows = {row["id"]: row for row in aggregator.learners_overview()}

    assert set(rows) == {"alice", "bob"}
    assert rows["alice"]["xp_total"] == 30
    assert rows["alice"]["streak_days"] == 2
    assert rows["alice"]["overall_progress"] == 0.0
    assert rows["bob"]["per_track"]["data"] == 50.0
    assert math.isclose(rows["bob"]["overall_progress"], 8.33, abs_tol=0.01)


def test_team_summary_sums_xp_and_averages_progress(learner, catalog):
    data = catalog.lessons("data", 2)
    learner("alice")
    learner("bob")
    learner("carol")
    db.create_team("Analysts", "alice", team_id="t1", code="JOIN1")
    db.set_learner_team("alice", "t1")
    db.set_learner_team("bob", "t1")
    for lesson_id in data:
        event_recorder.record_lesson_watched("alice", lesson_id, True)
    with db.transaction() as con:
        db.adjust_xp(con, "alice", 40)
        db.adjust_xp(con, "bob", 60)
        db.adjust_xp(con, "carol", 500)

    summary = aggregator.team_summary("t1")

    assert summary["team"]["name"] == "Analysts"
    assert summary["team"]["leader_id"] == "alice"
    assert summary["member_count"] == 2
    assert summary["total_xp"] == 100
    assert [m["id"] for m in summary["members"]] == ["bob", "alice"]
    assert math.isclose(summary["average_progress"], 8.335, abs_tol=0.01)


def test_team_summary_for_empty_team_is_zero(learner):
    learner("alice")
    db.create_team("Solo", "alice", team_id="t2")

    summary = aggregator.team_summary("t2")

    assert summary["member_count"] == 0
    assert summary["total_xp"] == 0
    assert summary["average_progress"] == 0.0
    assert summary["members"] == []


def test_team_summary_for_unknown_team_raises(temp_db):
    with pytest.raises(NotFoundError) as excinfo:
        aggregator.team_summary("missing")
    assert excinfo.value.status_code == 404
