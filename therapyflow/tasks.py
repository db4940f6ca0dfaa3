"""Task display helpers and counters."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from therapyflow.db.models import Task, TaskStatus
from therapyflow.time_utils import ensure_utc, utc_now

NO_DUE_DATE = "No due date"


def format_due_date(value: Union[str, date, datetime, None]) -> str:
    """Return the ``YYYY-MM-DD`` part of *value* without timezone shifting."""

    if not value:
        return NO_DUE_DATE
    if isinstance(value, str):
        return value.split("T")[0]
    if isinstance(value, datetime):
        return ensure_utc(value).date().isoformat()
    return value.isoformat()


def format_time(value: Union[str, time]) -> str:
    """Convert ``HH:MM[:SS]`` to a 12-hour clock string such as ``2:05 PM``."""

    if isinstance(value, str):
        value = time.fromisoformat(value.strip())
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def derive_status(task: Any, now: Optional[datetime] = None) -> str:
    status = task.status
    if status == TaskStatus.COMPLETED.value or task.due_date is None:
        return status
    if ensure_utc(task.due_date) < (now or utc_now()):
        return TaskStatus.OVERDUE.value
    return status


def pending_task_count(session: Session, assigned_to_id: Optional[int] = None) -> int:
    """Count tasks that are not completed, optionally for one assignee."""

    stmt = select(func.count(Task.id)).where(Task.status != TaskStatus.COMPLETED.value)
    if assigned_to_id is not None:
        stmt = stmt.where(Task.assigned_to_id == assigned_to_id)
    return int(session.execute(stmt).scalar_one())


__all__ = ["format_due_date", "format_time", "derive_status", "pending_task_count"]
