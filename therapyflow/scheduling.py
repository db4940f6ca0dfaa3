"""Session conflict detection and calendar export.

Sessions occupy ``[session_date, session_date + duration)``.  A proposed
slot conflicts with an existing session of the same therapist, or of the
same room when one is requested, whenever the two intervals overlap.
Cancelled and no-show sessions never block a slot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from therapyflow.db.models import SessionStatus, TherapySession
from therapyflow.time_utils import (
    add_minutes,
    ensure_utc,
    isoformat_utc,
    local_time_to_utc,
    utc_to_local_date_string,
)

logger = structlog.get_logger(__name__)

DEFAULT_DURATION_MINUTES = 60
SUGGESTION_STEP_MINUTES = 30
MAX_SUGGESTIONS = 3
WORKDAY_START_HOUR = 8
WORKDAY_END_HOUR = 20
DEFAULT_EVENT_SUMMARY = "Therapy session"

NON_BLOCKING_STATUSES = (SessionStatus.CANCELLED.value, SessionStatus.NO_SHOW.value)


@dataclass
class ConflictResult:
    has_conflict: bool = False
    therapist_conflicts: List[Dict[str, Any]] = field(default_factory=list)
    room_conflicts: List[Dict[str, Any]] = field(default_factory=list)
    suggested_times: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hasConflict": self.has_conflict,
            "therapistConflicts": self.therapist_conflicts,
            "roomConflicts": self.room_conflicts,
            "suggestedTimes": self.suggested_times,
        }


def _duration(value: Optional[int]) -> int:
    return value if value and value > 0 else DEFAULT_DURATION_MINUTES


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and other_start < end


def _candidate_sessions(
    session: Session,
    start: datetime,
    end: datetime,
    *,
    therapist_id: Optional[int] = None,
    room_id: Optional[int] = None,
    exclude_session_id: Optional[int] = None,
) -> List[TherapySession]:
    # Widen the window so long sessions that began earlier are still seen.
    stmt = (
        select(TherapySession)
        .options(joinedload(TherapySession.client), joinedload(TherapySession.therapist))
        .where(
            TherapySession.session_date >= start - timedelta(days=1),
            TherapySession.session_date < end,
            TherapySession.status.notin_(NON_BLOCKING_STATUSES),
        )
    )
    if therapist_id is not None:
        stmt = stmt.where(TherapySession.therapist_id == therapist_id)
    if room_id is not None:
        stmt = stmt.where(TherapySession.room_id == room_id)
    if exclude_session_id is not None:
        stmt = stmt.where(TherapySession.id != exclude_session_id)

    rows = session.execute(stmt).unique().scalars().all()
    return [
        row
        for row in rows
        if overlaps(
            start,
            end,
            ensure_utc(row.session_date),
            add_minutes(ensure_utc(row.session_date), _duration(row.duration)),
        )
    ]


def _conflict_payload(row: TherapySession, kind: str) -> Dict[str, Any]:
    payload = {
        "id": row.id,
        "clientName": row.client.full_name if row.client else None,
        "sessionDate": isoformat_utc(row.session_date),
        "sessionType": row.session_type,
        "type": kind,
    }
    if kind == "room":
        payload["therapistName"] = row.therapist.full_name if row.therapist else None
    return payload


def _find_conflicts(
    session: Session,
    therapist_id: int,
    start: datetime,
    duration: int,
    exclude_session_id: Optional[int],
    room_id: Optional[int],
) -> tuple:
    end = add_minutes(start, duration)
    therapist_rows = _candidate_sessions(
        session, start, end, therapist_id=therapist_id, exclude_session_id=exclude_session_id
    )
    room_rows: List[TherapySession] = []
    if room_id is not None:
        room_rows = _candidate_sessions(
            session, start, end, room_id=room_id, exclude_session_id=exclude_session_id
        )
    return therapist_rows, room_rows


def suggest_times(
    session: Session,
    therapist_id: int,
    session_date: datetime,
    duration: int = DEFAULT_DURATION_MINUTES,
    exclude_session_id: Optional[int] = None,
    room_id: Optional[int] = None,
) -> List[str]:
    """Return up to three free start times on the same practice-local day."""

    duration = _duration(duration)
    day = utc_to_local_date_string(session_date)
    slot = local_time_to_utc(day, WORKDAY_START_HOUR, 0)
    closing = local_time_to_utc(day, WORKDAY_END_HOUR, 0)
    requested = ensure_utc(session_date)

    suggestions: List[str] = []
    while add_minutes(slot, duration) <= closing and len(suggestions) < MAX_SUGGESTIONS:
        if slot != requested:
            therapist_rows, room_rows = _find_conflicts(
                session, therapist_id, slot, duration, exclude_session_id, room_id
            )
            if not therapist_rows and not room_rows:
                suggestions.append(isoformat_utc(slot))
        slot = add_minutes(slot, SUGGESTION_STEP_MINUTES)
    return suggestions


def check_conflicts(
    session: Session,
    therapist_id: int,
    session_date: datetime,
    duration: Optional[int] = DEFAULT_DURATION_MINUTES,
    exclude_session_id: Optional[int] = None,
    room_id: Optional[int] = None,
) -> ConflictResult:
    """Check a proposed session slot against the therapist's and room's calendar."""

    start = ensure_utc(session_date)
    minutes = _duration(duration)
    therapist_rows, room_rows = _find_conflicts(
        session, therapist_id, start, minutes, exclude_session_id, room_id
    )
    result = ConflictResult(
        has_conflict=bool(therapist_rows or room_rows),
        therapist_conflicts=[_conflict_payload(row, "therapist") for row in therapist_rows],
        room_conflicts=[_conflict_payload(row, "room") for row in room_rows],
    )
    if result.has_conflict:
        result.suggested_times = suggest_times(
            session, therapist_id, start, minutes, exclude_session_id, room_id
        )
        logger.info(
            "session_conflict_detected",
            therapist_id=therapist_id,
            room_id=room_id,
            therapist_conflicts=len(therapist_rows),
            room_conflicts=len(room_rows),
        )
    return result


def export_session_ics(row: TherapySession, summary: str = DEFAULT_EVENT_SUMMARY) -> str:
    """Return an ICS string for a stored session."""

    start = ensure_utc(row.session_date)
    end = add_minutes(start, _duration(row.duration))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//TherapyFlow//Scheduling//EN",
        "BEGIN:VEVENT",
        f"UID:session-{row.id}@therapyflow",
        f"SUMMARY:{summary}",
        f"DTSTART:{start.strftime('%Y%m%dT%H%M%SZ')}",
        f"DTEND:{end.strftime('%Y%m%dT%H%M%SZ')}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\n".join(lines)


__all__ = [
    "ConflictResult",
    "overlaps",
    "check_conflicts",
    "suggest_times",
    "export_session_ics",
]
