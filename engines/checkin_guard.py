"""Daily check-in guard: at most one XP award per (learner, track, day).

The flag flip is a compare-and-swap (``SET flag = 1 WHERE flag = 0``) executed
inside a ``BEGIN IMMEDIATE`` transaction together with the XP credit, so two
concurrent calls for the same triple cannot both succeed. A retried call after
an unknown outcome simply observes the flag and reports
``ALREADY_CHECKED_IN``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from datetime import date as date_cls, timedelta
from typing import Any, Dict, Optional

import db
import xapi
from engines import xp_ledger
from errors import NotFoundError, ValidationError
from tracks import TRACKS, Track

_LOGGER = logging.getLogger(__name__)

ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
DEFAULT_CHECKIN_XP = 5


def checkin_award() -> int:
    return int(os.getenv("CHECKIN_XP", str(DEFAULT_CHECKIN_XP)))


@dataclass
class CheckinResult:
    success: bool
    track: str
    date: str
    reason: Optional[str] = None
    xp_awarded: int = 0
    xp_total: Optional[int] = None
    streak_days: Optional[int] = None
    message_ar: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _resolve_track(track: str) -> Track:
    resolved = TRACKS.for_checkin(track) if isinstance(track, str) else None
    if resolved is None:
        allowed = ", ".join(t.checkin_key for t in TRACKS)
        raise ValidationError(f"unknown check-in track '{track}'; expected one of {allowed}", field="track")
    return resolved


def _parse_local_date(value: str) -> date_cls:
    if not isinstance(value, str):
        raise ValidationError("date must be a YYYY-MM-DD string", field="date")
    try:
        return date_cls.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f"invalid calendar date '{value}'", field="date") from exc


def next_streak(current: int, last_checkin: Optional[str], today: date_cls) -> int:
    """Return the streak after a first check-in on ``today``.

    Consecutive days extend the streak, a gap restarts it at one, and a check-in
    on the same (or an earlier, back-dated) day leaves it unchanged.
    """

    if not last_checkin:
        return 1
    try:
        last = date_cls.fromisoformat(last_checkin)
    except ValueError:
        return 1
    if last >= today:
        return max(int(current), 1)
    if last == today - timedelta(days=1):
        return int(current) + 1
    return 1


def perform_checkin(learner_id: str, track: str, date: str) -> CheckinResult:
    """Check ``learner_id`` in on ``track`` for the caller's local calendar ``date``."""

    resolved = _resolve_track(track)
    day = _parse_local_date(date)
    day_text = day.isoformat()
    award = checkin_award()

    with db.transaction() as con:
        learner = db.get_learner(learner_id, con=con)
        if learner is None:
            raise NotFoundError(
                f"learner '{learner_id}' not found", message_ar="المتعلم غير موجود", learner_id=learner_id
            )
        db.ensure_checkin_row(con, learner_id, day_text)
        claimed = db.claim_checkin_flag(con, learner_id, day_text, resolved.checkin_column, award)
        if claimed != 1:
            _LOGGER.info("Check-in %s/%s on %s already recorded", learner_id, resolved.id, day_text)
            return CheckinResult(
                success=False,
                track=resolved.checkin_key,
                date=day_text,
                reason=ALREADY_CHECKED_IN,
                xp_total=int(learner["xp_total"]),
                streak_days=int(learner["streak_days"]),
                message_ar="لقد سجلت حضورك اليوم في هذا المسار",
            )

        change = xp_ledger.credit(learner_id, award, "checkin", f"{day_text}:{resolved.checkin_key}", con=con)
        streak = next_streak(learner["streak_days"], learner["last_checkin_date"], day)
        last_date = max(day_text, learner["last_checkin_date"] or day_text)
        db.set_streak(con, learner_id, streak, last_date)

    _LOGGER.info("Check-in %s/%s on %s awarded %s XP", learner_id, resolved.id, day_text, award)
    try:
        xapi.emit(
            learner_id,
            verb=xapi.VERB_ATTENDED,
            object_id=f"checkin:{day_text}:{resolved.checkin_key}",
            xp_earned=award,
            context={"track": resolved.id, "date": day_text},
        )
    except Exception as exc:
        _LOGGER.warning("Activity statement for check-in not recorded: %s", exc)

    return CheckinResult(
        success=True,
        track=resolved.checkin_key,
        date=day_text,
        xp_awarded=award,
        xp_total=change.balance_after,
        streak_days=streak,
        message_ar=f"رائع! حصلت على {award} XP من التسجيل اليومي",
    )


def get_checkin(learner_id: str, date: str) -> Dict[str, Any]:
    """Return the day's check-in row, or an all-false placeholder when none exists."""

    day_text = _parse_local_date(date).isoformat()
    if db.get_learner(learner_id) is None:
        raise NotFoundError(f"learner '{learner_id}' not found", learner_id=learner_id)
    row = db.get_checkin(learner_id, day_text)
    if row is None:
        return {
            "learner_id": learner_id,
            "date": day_text,
            "data_task": False,
            "lang_task": False,
            "soft_task": False,
            "xp_generated": 0,
        }
    return row
