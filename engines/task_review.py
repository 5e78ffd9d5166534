"""Admin review of task submissions.

Transitions::

    pending   -> submitted          (learner submits proof)
    submitted -> approved|rejected  (admin review)
    rejected  -> submitted          (learner resubmits)
    approved                        terminal

Approval and its XP credit commit together; the status guard on the update
means a repeated approval finds nothing to change and grants nothing.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

import db
import xapi
from engines import xp_ledger
from errors import ConflictError, NotFoundError, ValidationError

_LOGGER = logging.getLogger(__name__)


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.SUBMITTED}),
    SubmissionStatus.SUBMITTED: frozenset(
        {SubmissionStatus.SUBMITTED, SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}
    ),
    SubmissionStatus.REJECTED: frozenset({SubmissionStatus.SUBMITTED}),
    SubmissionStatus.APPROVED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return SubmissionStatus(target) in _TRANSITIONS[SubmissionStatus(current)]


def _parse_decision(decision: Any) -> ReviewDecision:
    try:
        return ReviewDecision(str(decision).strip().lower())
    except ValueError:
        raise ValidationError(
            "decision must be 'approve' or 'reject'", field="decision", value=repr(decision)
        ) from None


def review_task_submission(
    submission_id: str,
    decision: str,
    *,
    reviewer_id: Optional[str] = None,
    xp_override: Optional[int] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """Approve or reject a submitted proof.

    Approving an already approved submission returns it unchanged.
    """

    verdict = _parse_decision(decision)
    if xp_override is not None and (
        isinstance(xp_override, bool) or not isinstance(xp_override, int) or xp_override < 0
    ):
        raise ValidationError("xp_override must be a non-negative integer", field="xp_override")

    target = SubmissionStatus.APPROVED if verdict is ReviewDecision.APPROVE else SubmissionStatus.REJECTED
    xp_change = None
    with db.transaction() as con:
        submission = db.get_submission(submission_id, con=con)
        if submission is None:
            raise NotFoundError(
                f"submission '{submission_id}' not found",
                message_ar="الإثبات غير موجود",
                submission_id=submission_id,
            )
        current = SubmissionStatus(submission["status"])
        if current is SubmissionStatus.APPROVED and target is SubmissionStatus.APPROVED:
            _LOGGER.info("Submission %s already approved; nothing to do", submission_id)
            result = dict(submission)
            result["changed"] = False
            return result
        if not can_transition(current.value, target.value):
            raise ConflictError(
                f"cannot move submission from {current.value} to {target.value}",
                message_ar="لا يمكن تغيير حالة هذا الإثبات",
                submission_id=submission_id,
                status=current.value,
            )

        xp_granted = None
        if target is SubmissionStatus.APPROVED:
            task = db.get_task(submission["task_id"], con=con)
            task_xp = int(task["xp"] or 0) if task else 0
            xp_granted = xp_override if xp_override is not None else task_xp

        changed = db.resolve_submission(
            con,
            submission_id,
            target.value,
            reviewer_id=reviewer_id,
            note=note,
            xp_granted=xp_granted,
        )
        if changed != 1:
            raise ConflictError("submission was already reviewed", submission_id=submission_id)

        if xp_granted:
            xp_change = xp_ledger.credit(
                submission["learner_id"], xp_granted, "task_approval", submission_id, con=con
            )
        updated = db.get_submission(submission_id, con=con)

    _LOGGER.info("Submission %s %s by %s", submission_id, target.value, reviewer_id or "admin")
    if target is SubmissionStatus.APPROVED:
        try:
            xapi.emit(
                submission["learner_id"],
                verb=xapi.VERB_COMPLETED,
                object_id=f"task:{submission['task_id']}",
                xp_earned=xp_granted or 0,
            )
        except Exception as exc:
            _LOGGER.warning("Activity statement for approval not recorded: %s", exc)

    result = dict(updated)  # type: ignore[arg-type]
    result["changed"] = True
    result["xp_change"] = xp_change.to_dict() if xp_change else None
    return result


def list_pending_submissions(limit: int = 100) -> list[Dict[str, Any]]:
    return db.list_pending_submissions(limit=limit)
