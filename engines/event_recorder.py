"""Record learner facts: lesson watched, task proof submitted, custom item toggled.

Each call performs exactly one fact upsert and, for custom tasks only, one XP
ledger adjustment inside the same transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import db
import xapi
from engines import xp_ledger
from errors import ConflictError, NotFoundError, ValidationError
from tracks import is_visible

_LOGGER = logging.getLogger(__name__)

PROOF_MAX_LENGTH = 10000
CUSTOM_KINDS = ("task", "lesson")


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean", field=name, value=repr(value))
    return value


def _require_learner(learner_id: str) -> Dict[str, Any]:
    learner = db.get_learner(learner_id)
    if learner is None:
        raise NotFoundError(
            f"learner '{learner_id}' not found",
            message_ar="المتعلم غير موجود",
            learner_id=learner_id,
        )
    return learner


def _emit_activity(learner_id: str, **kwargs: Any) -> None:
    try:
        xapi.emit(learner_id, **kwargs)
    except Exception as exc:
        _LOGGER.warning("Activity statement for %s not recorded: %s", learner_id, exc)


def record_lesson_watched(learner_id: str, lesson_id: str, watched: bool) -> Dict[str, Any]:
    """Upsert the (learner, lesson) completion fact."""

    watched = _require_bool("watched", watched)
    learner = _require_learner(learner_id)
    lesson = db.get_lesson(lesson_id)
    if (
        lesson is None
        or not lesson["published"]
        or not is_visible(
            lesson["level"],
            learner["level"],
            item_english_level=lesson["english_level"],
            learner_english_level=learner["english_level"],
        )
    ):
        raise NotFoundError(
            f"lesson '{lesson_id}' not found",
            message_ar="الدرس غير متاح",
            lesson_id=lesson_id,
        )

    record = db.upsert_lesson_completion(learner_id, lesson_id, watched)
    _LOGGER.info("Lesson %s marked watched=%s for %s", lesson_id, watched, learner_id)
    if watched:
        _emit_activity(
            learner_id,
            verb=xapi.VERB_EXPERIENCED,
            object_id=f"lesson:{lesson_id}",
            description=lesson["title"],
            context={"track": lesson["track"]},
        )
    return record


def _validate_proof(proof_text: Any, proof_type: Any) -> tuple[str, str]:
    if not isinstance(proof_text, str):
        raise ValidationError("proof_text must be a string", field="proof_text")
    proof = proof_text.strip()
    if not proof:
        raise ValidationError(
            "proof_text is required",
            message_ar="يرجى إدخال إثبات إكمال المهمة",
            field="proof_text",
        )
    if len(proof) > PROOF_MAX_LENGTH:
        raise ValidationError(
            f"proof_text exceeds {PROOF_MAX_LENGTH} characters",
            message_ar="النص طويل جداً (الحد الأقصى 10000 حرف)",
            field="proof_text",
        )
    if proof_type not in db.PROOF_TYPES:
        raise ValidationError(
            f"proof_type must be one of {', '.join(db.PROOF_TYPES)}", field="proof_type"
        )
    if proof_type == "link" and not (proof.startswith("http://") or proof.startswith("https://")):
        raise ValidationError("link proofs must be an http(s) URL", field="proof_text")
    return proof, proof_type


def submit_task_proof(
    learner_id: str, task_id: str, proof_text: str, proof_type: str = "text"
) -> Dict[str, Any]:
    """Create or resubmit the learner's proof for ``task_id``.

    Allowed from no record, ``pending``, ``submitted`` and ``rejected``;
    an ``approved`` submission is terminal.
    """

    proof, kind = _validate_proof(proof_text, proof_type)
    learner = _require_learner(learner_id)
    task = db.get_task(task_id)
    if task is None or not task["published"] or not is_visible(task["level"], learner["level"]):
        raise NotFoundError(
            f"task '{task_id}' not found", message_ar="المهمة غير متاحة", task_id=task_id
        )

    with db.transaction() as con:
        changed = db.save_submission_proof(con, learner_id, task_id, proof, kind)
        if changed == 0:
            raise ConflictError(
                "task submission already approved",
                message_ar="تم اعتماد هذه المهمة مسبقاً",
                task_id=task_id,
            )
        record = db.get_submission_for(learner_id, task_id, con=con)

    _LOGGER.info("Proof submitted for task %s by %s", task_id, learner_id)
    return record  # type: ignore[return-value]


def record_custom_item_toggle(
    item_id: str, completed: bool, kind: str = "task", *, learner_id: Optional[str] = None
) -> Dict[str, Any]:
    """Set the completion flag of a learner-scoped custom lesson or task.

    Completing a custom task credits its ``xp_value``; un-completing debits the
    same amount. Setting the flag to its current value changes nothing.
    When ``learner_id`` is given the item must belong to that learner.
    """

    completed = _require_bool("completed", completed)
    if kind not in CUSTOM_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(CUSTOM_KINDS)}", field="kind")

    xp_change = None
    with db.transaction() as con:
        item = db.get_custom_item(kind, item_id, con=con)
        if item is None or (learner_id is not None and item["learner_id"] != learner_id):
            raise NotFoundError(
                f"custom {kind} '{item_id}' not found",
                message_ar="العنصر المخصص غير موجود",
                item_id=item_id,
            )
        changed = db.set_custom_completed(con, kind, item_id, completed)
        xp_value = int(item.get("xp_value") or 0)
        if changed and kind == "task" and xp_value > 0:
            adjust = xp_ledger.credit if completed else xp_ledger.debit
            xp_change = adjust(item["learner_id"], xp_value, "custom_task", item_id, con=con)
        record = db.get_custom_item(kind, item_id, con=con)

    if changed and completed and kind == "task":
        _emit_activity(
            item["learner_id"],
            verb=xapi.VERB_COMPLETED,
            object_id=f"custom-task:{item_id}",
            xp_earned=xp_value,
            description=item["title"],
        )

    result = dict(record)  # type: ignore[arg-type]
    result["changed"] = bool(changed)
    result["xp_change"] = xp_change.to_dict() if xp_change else None
    return result
