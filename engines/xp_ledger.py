"""Experience-point ledger.

Every change to ``learners.xp_total`` goes through :func:`credit` or
:func:`debit`. Each call is a single conditional update inside a write
transaction and appends one row to ``xp_events``, so the balance always equals
the signed sum of applied events.

Debits clamp at zero instead of driving the balance negative. This favours an
idempotent undo over exact reversal: once a debit has been clamped, toggling an
item complete -> incomplete -> complete does not necessarily restore the
previous balance. The ``requested``/``applied`` columns of the event log record
when that happened.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import db
from errors import NotFoundError, ValidationError

_LOGGER = logging.getLogger(__name__)

XP_SOURCES = db.XP_SOURCES


@dataclass
class XpChange:
    """Outcome of one ledger adjustment."""

    learner_id: str
    source: str
    direction: str
    requested: int
    applied: int
    balance_before: int
    balance_after: int
    event_id: int
    related_id: Optional[str] = None

    @property
    def clamped(self) -> bool:
        return self.applied != self.requested

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["clamped"] = self.clamped
        return payload


def _validate(amount: Any, source: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount must be an integer", amount=repr(amount))
    if amount <= 0:
        raise ValidationError("amount must be greater than zero", amount=amount)
    if source not in XP_SOURCES:
        raise ValidationError(f"unknown xp source '{source}'", allowed=list(XP_SOURCES))
    return amount


def _apply(
    con: sqlite3.Connection,
    learner_id: str,
    amount: int,
    source: str,
    direction: str,
    related_id: Optional[str],
) -> XpChange:
    delta = amount if direction == "credit" else -amount
    adjusted = db.adjust_xp(con, learner_id, delta)
    if adjusted is None:
        raise NotFoundError(f"learner '{learner_id}' not found", learner_id=learner_id)
    before, after = adjusted
    applied = abs(after - before)
    event_id = db.insert_xp_event(
        con, learner_id, source, direction, amount, applied, after, related_id
    )
    change = XpChange(
        learner_id=learner_id,
        source=source,
        direction=direction,
        requested=amount,
        applied=applied,
        balance_before=before,
        balance_after=after,
        event_id=event_id,
        related_id=related_id,
    )
    if change.clamped:
        _LOGGER.warning(
            "XP debit clamped at zero for %s: requested %s, applied %s (source=%s)",
            learner_id,
            amount,
            applied,
            source,
        )
    else:
        _LOGGER.info(
            "XP %s %s for %s (source=%s, balance=%s)", direction, amount, learner_id, source, after
        )
    return change


def _run(
    learner_id: str,
    amount: Any,
    source: str,
    direction: str,
    related_id: Optional[str],
    con: Optional[sqlite3.Connection],
) -> XpChange:
    value = _validate(amount, source)
    if con is not None:
        return _apply(con, learner_id, value, source, direction, related_id)
    with db.transaction() as own:
        return _apply(own, learner_id, value, source, direction, related_id)


def credit(
    learner_id: str,
    amount: int,
    source: str,
    related_id: Optional[str] = None,
    *,
    con: Optional[sqlite3.Connection] = None,
) -> XpChange:
    """Add ``amount`` XP. Pass ``con`` to join the caller's open transaction."""

    return _run(learner_id, amount, source, "credit", related_id, con)


def debit(
    learner_id: str,
    amount: int,
    source: str,
    related_id: Optional[str] = None,
    *,
    con: Optional[sqlite3.Connection] = None,
) -> XpChange:
    """Remove ``amount`` XP, clamping the balance at zero."""

    return _run(learner_id, amount, source, "debit", related_id, con)


def balance(learner_id: str) -> int:
    learner = db.get_learner(learner_id)
    if learner is None:
        raise NotFoundError(f"learner '{learner_id}' not found", learner_id=learner_id)
    return int(learner["xp_total"])


def history(learner_id: str, limit: int = 100) -> list[Dict[str, Any]]:
    if db.get_learner(learner_id) is None:
        raise NotFoundError(f"learner '{learner_id}' not found", learner_id=learner_id)
    return db.list_xp_events(learner_id, limit=limit)
