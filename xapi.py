"""Learner activity feed stored as local xAPI statements with optional LRS forwarding.

Statements back the "recent activity" list on the learner profile. They are
written after the ledger transaction commits and are not part of it; a failed
statement never undoes an XP change. When ``LRS_URL`` is configured the
statement is also forwarded asynchronously with retry/backoff.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import requests

import db

LOGGER = logging.getLogger("masar.xapi")

VERB_EXPERIENCED = "http://adlnet.gov/expapi/verbs/experienced"
VERB_COMPLETED = "http://adlnet.gov/expapi/verbs/completed"
VERB_ATTENDED = "http://adlnet.gov/expapi/verbs/attended"

XAPI_PROFILE_VERBS: dict[str, dict[str, str]] = {
    VERB_EXPERIENCED: {
        "display": "experienced",
        "description": "Learner watched a lesson.",
        "description_ar": "شاهد درساً",
    },
    VERB_COMPLETED: {
        "display": "completed",
        "description": "Learner completed a task or custom task.",
        "description_ar": "أكمل مهمة",
    },
    VERB_ATTENDED: {
        "display": "attended",
        "description": "Learner performed a daily check-in on a track.",
        "description_ar": "سجّل الحضور اليومي",
    },
}

_ALLOWED_OBJECT_PREFIXES: Sequence[str] = (
    "lesson:",
    "task:",
    "custom-task:",
    "checkin:",
)

_CONTEXT_EXTENSION_SCHEMA: dict[str, type] = {
    "track": str,
    "date": str,
    "level": str,
    "source": str,
}


def _coerce_extension(key: str, value: Any) -> Any:
    expected = _CONTEXT_EXTENSION_SCHEMA.get(key)
    if expected is None:
        raise ValueError(f"Unsupported context extension: {key}")
    if value is None:
        return None
    return expected(value)


def validate_statement(statement: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and normalise a statement according to the local profile."""

    if not isinstance(statement, dict):
        raise ValueError("statement must be a dict")

    actor = statement.get("actor")
    account = actor.get("account") if isinstance(actor, dict) else None
    if not isinstance(account, dict) or not str(account.get("name") or "").strip():
        raise ValueError("actor.account.name is required")

    verb = statement.get("verb")
    if not isinstance(verb, dict) or not isinstance(verb.get("id"), str):
        raise ValueError("verb.id must be provided")
    verb_id = verb["id"].strip()
    if verb_id not in XAPI_PROFILE_VERBS:
        allowed = ", ".join(sorted(XAPI_PROFILE_VERBS))
        raise ValueError(f"Unsupported verb '{verb_id}'. Allowed verbs: {allowed}")
    verb["id"] = verb_id
    verb.setdefault("display", {"en-US": XAPI_PROFILE_VERBS[verb_id]["display"]})

    obj = statement.get("object")
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), str) or not obj["id"].strip():
        raise ValueError("object.id must be provided")
    object_id = obj["id"].strip()
    if not any(object_id.startswith(prefix) for prefix in _ALLOWED_OBJECT_PREFIXES):
        raise ValueError(
            "object.id must start with one of the allowed prefixes: "
            + ", ".join(_ALLOWED_OBJECT_PREFIXES)
        )
    obj["id"] = object_id

    result = statement.get("result")
    if result is not None:
        if not isinstance(result, dict):
            raise ValueError("result must be a dict when provided")
        score = result.get("score")
        if score is not None:
            if not isinstance(score, dict) or "raw" not in score:
                raise ValueError("result.score.raw is required when score is provided")
            score["raw"] = int(score["raw"])
            if score["raw"] < 0:
                raise ValueError("result.score.raw must not be negative")

    context = statement.get("context") or {}
    if not isinstance(context, dict):
        raise ValueError("context must be a dict")
    extensions = context.get("extensions") or {}
    if not isinstance(extensions, dict):
        raise ValueError("context.extensions must be a dict")

    cleaned_extensions: dict[str, Any] = {}
    for key, value in extensions.items():
        if key not in _CONTEXT_EXTENSION_SCHEMA:
            LOGGER.debug("Dropping unsupported xAPI extension: %s", key)
            continue
        cleaned = _coerce_extension(key, value)
        if cleaned is not None:
            cleaned_extensions[key] = cleaned

    context["platform"] = context.get("platform") or os.getenv("XAPI_PLATFORM", "Masar")
    context["language"] = context.get("language") or os.getenv("XAPI_LANGUAGE", "ar")
    context["extensions"] = cleaned_extensions
    statement["context"] = context
    return statement


async def _forward_statement_with_retry(
    statement: Dict[str, Any],
    *,
    lrs_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> None:
    """Forward a statement to the configured LRS with exponential backoff."""

    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post,
                lrs_url,
                json=statement,
                headers=headers,
                timeout=timeout,
            )
            if response.status_code < 500:
                return
            LOGGER.warning(
                "LRS responded with status %s on attempt %s", response.status_code, attempt
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward xAPI statement (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            break
        await asyncio.sleep(delay)
        delay *= 2


def _schedule_forward(statement: Dict[str, Any], *, lrs_url: str, headers: Dict[str, str]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    coro = _forward_statement_with_retry(statement, lrs_url=lrs_url, headers=headers)

    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


def emit(
    learner_id: str,
    verb: str,
    object_id: str,
    *,
    xp_earned: int = 0,
    description: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> int:
    """Persist the statement in the activity feed and forward it to an LRS when configured."""

    payload: Dict[str, Any] = {
        "actor": {
            "account": {
                "homePage": os.getenv("APP_BASE_URL", "https://local.masar"),
                "name": learner_id,
            }
        },
        "verb": {"id": verb},
        "object": {"id": object_id},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "context": {"extensions": context or {}},
    }
    if xp_earned:
        payload["result"] = {"score": {"raw": int(xp_earned)}}

    validated = validate_statement(payload)
    extensions = validated["context"]["extensions"]
    if description is None:
        description = XAPI_PROFILE_VERBS[validated["verb"]["id"]]["description_ar"]

    statement_id = db.insert_activity_statement(
        learner_id,
        validated["verb"]["id"],
        validated["object"]["id"],
        int(xp_earned or 0),
        description,
        db.json_dumps(extensions) if extensions else None,
    )

    lrs_url = os.getenv("LRS_URL")
    if lrs_url:
        headers = {
            "Content-Type": "application/json",
            "X-Experience-API-Version": "1.0.3",
        }
        auth = os.getenv("LRS_AUTH")
        if auth:
            headers["Authorization"] = auth
        _schedule_forward(validated, lrs_url=lrs_url, headers=headers)

    return statement_id


def recent_activity(learner_id: str, limit: int = 20) -> list[Dict[str, Any]]:
    return db.list_activity_statements(learner_id, limit=limit)
