# app.py — Masar progress ledger service
# - Progress, lesson/task facts, daily check-in and XP over one SQLite store
# - Learner-facing messages carry an Arabic message_ar next to the English detail

import hmac
import json
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

import db, xapi
from engines import aggregator, checkin_guard, event_recorder, task_review, xp_ledger
from env_validation import get_env_settings
from errors import LedgerError, TransientStoreError
from schemas import (
    ActivityResponse,
    CheckinBody,
    CheckinResponse,
    CustomLessonBody,
    CustomTaskBody,
    CustomToggleBody,
    LeaderboardEntry,
    LearnerBody,
    LearnerProgressEntry,
    LearnerStatusBody,
    LessonBody,
    LessonWatchedBody,
    PendingSubmissionList,
    ProgressResponse,
    ReviewBody,
    TaskBody,
    TaskProofBody,
    TeamBody,
    TeamMemberBody,
    TeamSummaryResponse,
    XpEventResponse,
)
from tracks import TRACKS

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Ledger ready: %s", get_env_settings())
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Masar Progress Ledger", version="1.0.0", lifespan=_lifespan)


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


@app.middleware("http")
async def _enforce_admin_token(request: Request, call_next):
    expected = os.getenv("ADMIN_TOKEN")
    normalized_path = _normalize_path(request.url.path)
    if expected and normalized_path.startswith("/admin"):
        supplied = request.headers.get("x-admin-token") or ""
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            return Response(
                status_code=401,
                content=json.dumps({"detail": "missing or invalid admin token"}),
                media_type="application/json",
            )
    return await call_next(request)


@app.exception_handler(LedgerError)
async def _ledger_error_handler(_: Request, exc: LedgerError):
    headers = {"Retry-After": "1"} if isinstance(exc, TransientStoreError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.get("/health")
def health():
    return {"status": "ok", "settings": get_env_settings()}

# ---------- Progress ----------
@app.get("/progress/{learner_id}", response_model=ProgressResponse)
def get_progress(learner_id: str):
    report = aggregator.compute_progress(learner_id)
    payload = report.to_dict()
    payload["labels"] = TRACKS.label_map(arabic=True)
    return payload


@app.post("/progress/{learner_id}/refresh", response_model=ProgressResponse)
def refresh_progress(learner_id: str):
    report = aggregator.refresh_cached_progress(learner_id)
    payload = report.to_dict()
    payload["labels"] = TRACKS.label_map(arabic=True)
    return payload


@app.get("/progress/{learner_id}/custom")
def get_custom_progress(learner_id: str):
    return aggregator.custom_progress(learner_id)


def _check_limit(limit: int) -> int:
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    return limit


@app.get("/leaderboard", response_model=list[LeaderboardEntry])
def get_leaderboard(limit: int = 50):
    return aggregator.leaderboard(limit=_check_limit(limit))


@app.get("/teams/{team_id}/summary", response_model=TeamSummaryResponse)
def get_team_summary(team_id: str):
    return aggregator.team_summary(team_id)

# ---------- Learner facts ----------
@app.post("/lessons/{lesson_id}/watched")
def toggle_lesson_watched(lesson_id: str, body: LessonWatchedBody):
    record = event_recorder.record_lesson_watched(body.learner_id, lesson_id, body.watched)
    return {"ok": True, "completion": record}


@app.post("/tasks/{task_id}/submissions")
def submit_task_proof(task_id: str, body: TaskProofBody):
    return event_recorder.submit_task_proof(body.learner_id, task_id, body.proof_text, body.proof_type)


@app.post("/custom-items/{item_id}/toggle")
def toggle_custom_item(item_id: str, body: CustomToggleBody):
    record = event_recorder.record_custom_item_toggle(
        item_id, body.completed, body.kind, learner_id=body.learner_id
    )
    return {"ok": True, "item": record}

# ---------- Daily check-in ----------
@app.post("/checkins", response_model=CheckinResponse)
def perform_daily_checkin(body: CheckinBody):
    result = checkin_guard.perform_checkin(body.learner_id, body.track, body.local_date)
    return result.to_dict()


@app.get("/checkins/{learner_id}/{local_date}")
def get_daily_checkin(learner_id: str, local_date: str):
    return checkin_guard.get_checkin(learner_id, local_date)

# ---------- XP / activity ----------
@app.get("/xp/{learner_id}/events", response_model=list[XpEventResponse])
def get_xp_events(learner_id: str, limit: int = 100):
    return xp_ledger.history(learner_id, limit=_check_limit(limit))


@app.get("/learners/{learner_id}/activities", response_model=list[ActivityResponse])
def get_activities(learner_id: str, limit: int = 20):
    _check_limit(limit)
    if db.get_learner(learner_id) is None:
        raise HTTPException(status_code=404, detail="learner not found")
    return xapi.recent_activity(learner_id, limit=limit)

# ---------- Admin ----------
@app.get("/admin/submissions/pending", response_model=PendingSubmissionList)
def admin_pending_submissions(limit: int = 100):
    items = task_review.list_pending_submissions(limit=_check_limit(limit))
    return {"count": len(items), "items": items}


@app.post("/admin/submissions/{submission_id}/review")
def admin_review_submission(submission_id: str, body: ReviewBody):
    return task_review.review_task_submission(
        submission_id,
        body.decision,
        reviewer_id=body.reviewer_id,
        xp_override=body.xp_override,
        note=body.note,
    )


@app.post("/admin/learners")
def admin_upsert_learner(body: LearnerBody):
    TRACKS.check_levels(body.level, body.english_level)
    return db.upsert_learner(
        body.learner_id,
        body.full_name,
        role=body.role,
        level=body.level,
        english_level=body.english_level,
    )


@app.post("/admin/learners/{learner_id}/status")
def admin_set_learner_status(learner_id: str, body: LearnerStatusBody):
    if not db.set_learner_status(learner_id, body.status):
        raise HTTPException(status_code=404, detail="learner not found")
    return db.get_learner(learner_id)


@app.post("/admin/lessons")
def admin_upsert_lesson(body: LessonBody):
    TRACKS.check_levels(body.level, body.english_level)
    return db.upsert_lesson(
        body.lesson_id or uuid4().hex,
        body.title,
        body.track,
        level=body.level,
        english_level=body.english_level,
        published=body.published,
        video_link=body.video_link,
        duration_minutes=body.duration_minutes,
        order_index=body.order_index,
    )


@app.post("/admin/tasks")
def admin_upsert_task(body: TaskBody):
    TRACKS.check_levels(body.level)
    return db.upsert_task(
        body.task_id or uuid4().hex,
        body.title,
        body.track,
        xp=body.xp,
        level=body.level,
        published=body.published,
        description=body.description,
        resource_link=body.resource_link,
        deadline=body.deadline,
    )


def _require_learner(learner_id: str) -> None:
    if db.get_learner(learner_id) is None:
        raise HTTPException(status_code=404, detail="learner not found")


@app.post("/admin/custom-lessons")
def admin_create_custom_lesson(body: CustomLessonBody):
    _require_learner(body.learner_id)
    return db.create_custom_lesson(
        body.learner_id,
        body.title,
        description=body.description,
        track=body.track,
        video_link=body.video_link,
    )


@app.post("/admin/custom-tasks")
def admin_create_custom_task(body: CustomTaskBody):
    _require_learner(body.learner_id)
    return db.create_custom_task(
        body.learner_id,
        body.title,
        body.xp_value,
        description=body.description,
        track=body.track,
    )


@app.get("/admin/learners", response_model=list[LearnerProgressEntry])
def admin_list_learners():
    return aggregator.learners_overview()


@app.post("/admin/teams")
def admin_create_team(body: TeamBody):
    _require_learner(body.leader_id)
    try:
        return db.create_team(body.name, body.leader_id, team_id=body.team_id, code=body.code)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="team id or code already exists")


@app.post("/admin/learners/{learner_id}/team")
def admin_set_learner_team(learner_id: str, body: TeamMemberBody):
    if body.team_id is not None and db.get_team(body.team_id) is None:
        raise HTTPException(status_code=404, detail="team not found")
    if not db.set_learner_team(learner_id, body.team_id):
        raise HTTPException(status_code=404, detail="learner not found")
    return db.get_learner(learner_id)
