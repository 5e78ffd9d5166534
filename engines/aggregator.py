"""Read-side progress aggregation.

``compute_progress`` is the single definition of a learner's progress shared by
the dashboard, profile and admin views. It reads facts only; the cached
``*_progress`` columns on ``learners`` are never consulted.

    per-track % = distinct watched visible lessons / distinct published visible lessons
    task %      = approved visible tasks / published visible tasks
    overall %   = 0.5 * mean(per-track % over the fixed tracks) + 0.5 * task %
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

import db
from errors import NotFoundError
from tracks import TRACKS, is_visible

_LOGGER = logging.getLogger(__name__)

TRACK_WEIGHT = 0.5
TASK_WEIGHT = 0.5


@dataclass
class ProgressReport:
    learner_id: str
    level: Optional[str]
    per_track: Dict[str, float]
    task_pct: float
    overall: float
    counts: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "learner_id": self.learner_id,
            "level": self.level,
            "per_track": dict(self.per_track),
            "task_pct": self.task_pct,
            "overall": self.overall,
            "counts": {key: dict(value) for key, value in self.counts.items()},
        }


def percentage(completed: int, total: int) -> float:
    """Return ``completed / total`` as a percentage in [0, 100]; 0 for an empty total."""

    if total <= 0:
        return 0.0
    value = 100.0 * float(completed) / float(total)
    return round(max(0.0, min(100.0, value)), 2)


def _visible_ids(rows: Iterable[Mapping[str, Any]], learner: Mapping[str, Any]) -> Dict[str, set[str]]:
    by_track: Dict[str, set[str]] = defaultdict(set)
    for row in rows:
        keys = row.keys() if hasattr(row, "keys") else ()
        english_level = row["english_level"] if "english_level" in keys else None
        if is_visible(
            row["level"],
            learner.get("level"),
            item_english_level=english_level,
            learner_english_level=learner.get("english_level"),
        ):
            by_track[row["track"]].add(row["id"])
    return by_track


def compute_progress(learner_id: str) -> ProgressReport:
    """Compute per-track, task and overall progress for ``learner_id``."""

    with db.transaction(immediate=False) as con:
        learner = db.get_learner(learner_id, con=con)
        if learner is None:
            raise NotFoundError(f"learner '{learner_id}' not found", learner_id=learner_id)
        lessons = db.list_published_lessons(con=con)
        tasks = db.list_published_tasks(con=con)
        watched = db.list_watched_lesson_ids(learner_id, con=con)
        approved = db.list_approved_task_ids(learner_id, con=con)

    visible_lessons = _visible_ids(lessons, learner)
    per_track: Dict[str, float] = {}
    counts: Dict[str, Dict[str, int]] = {}
    for track_id in TRACKS.track_ids():
        available = visible_lessons.get(track_id, set())
        done = len(available & watched)
        per_track[track_id] = percentage(done, len(available))
        counts[track_id] = {"completed": done, "total": len(available)}

    visible_tasks: set[str] = set()
    for ids in _visible_ids(tasks, learner).values():
        visible_tasks |= ids
    approved_visible = len(visible_tasks & approved)
    task_pct = percentage(approved_visible, len(visible_tasks))
    counts["tasks"] = {"completed": approved_visible, "total": len(visible_tasks)}

    track_mean = sum(per_track.values()) / len(per_track) if per_track else 0.0
    overall = round(max(0.0, min(100.0, TRACK_WEIGHT * track_mean + TASK_WEIGHT * task_pct)), 2)

    return ProgressReport(
        learner_id=learner_id,
        level=learner.get("level"),
        per_track=per_track,
        task_pct=task_pct,
        overall=overall,
        counts=counts,
    )


def custom_progress(learner_id: str) -> Dict[str, Any]:
    """Completion of the learner's custom lessons and tasks, grouped by track."""

    if db.get_learner(learner_id) is None:
        raise NotFoundError(f"learner '{learner_id}' not found", learner_id=learner_id)

    summary: Dict[str, Any] = {}
    for kind in ("lesson", "task"):
        grouped: Dict[str, Dict[str, int]] = defaultdict(lambda: {"completed": 0, "total": 0})
        for item in db.list_custom_items(kind, learner_id):
            bucket = grouped[item["track"] or "custom"]
            bucket["total"] += 1
            if item["completed"]:
                bucket["completed"] += 1
        summary[f"{kind}s"] = {
            track: {**bucket, "pct": percentage(bucket["completed"], bucket["total"])}
            for track, bucket in grouped.items()
        }
    return summary


def refresh_cached_progress(learner_id: str) -> ProgressReport:
    """Recompute progress and store it in the display-only cache columns."""

    report = compute_progress(learner_id)
    db.update_cached_progress(
        learner_id,
        report.per_track.get("data", 0.0),
        report.per_track.get("english", 0.0),
        report.per_track.get("soft", 0.0),
        report.overall,
    )
    _LOGGER.debug("Cached progress refreshed for %s: %s", learner_id, report.overall)
    return report


def _with_progress(rows: Iterable[Dict[str, Any]]) -> list[Dict[str, Any]]:
    entries = []
    for row in rows:
        report = compute_progress(row["id"])
        entry = dict(row)
        entry["per_track"] = dict(report.per_track)
        entry["task_pct"] = report.task_pct
        entry["overall_progress"] = report.overall
        entries.append(entry)
    return entries


def leaderboard(limit: int = 50) -> list[Dict[str, Any]]:
    """Rank non-admin learners by overall progress, then XP, then streak."""

    entries = _with_progress(db.list_learners())
    entries.sort(
        key=lambda e: (-e["overall_progress"], -int(e["xp_total"]), -int(e["streak_days"]), e["full_name"])
    )
    ranked = entries[: max(0, int(limit))]
    for rank, entry in enumerate(ranked, start=1):
        entry["rank"] = rank
    return ranked


def learners_overview() -> list[Dict[str, Any]]:
    """Admin learner table: XP, streak and live progress for every non-admin learner."""

    return _with_progress(db.list_learners())


def team_summary(team_id: str) -> Dict[str, Any]:
    """Cohort view for a team leader.

    Members are listed by XP; the team totals are the XP sum and the mean
    overall progress (0 for a team without members).
    """

    team = db.get_team(team_id)
    if team is None:
        raise NotFoundError(
            f"team '{team_id}' not found", message_ar="الفريق غير موجود", team_id=team_id
        )
    members = _with_progress(db.list_learners(team_id=team_id))
    total_xp = sum(int(m["xp_total"]) for m in members)
    average = sum(m["overall_progress"] for m in members) / len(members) if members else 0.0
    return {
        "team": team,
        "member_count": len(members),
        "total_xp": total_xp,
        "average_progress": round(average, 2),
        "members": members,
    }
