"""Canonical notification trigger definitions.

The definitions below are the source of truth for every environment.
:func:`sync_notification_triggers` upserts them by name so it can run on
every start-up.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from therapyflow.db.models import NotificationTrigger

logger = structlog.get_logger(__name__)

_SESSION_RECIPIENTS = json.dumps({"roles": ["admin"], "assignedTherapist": True, "sessionClient": True})
_INTAKE_CONDITIONS = json.dumps({"sessionType": "intake"})

NOTIFICATION_TRIGGER_SEEDS: List[Dict[str, Any]] = [
    {
        "name": "Session Scheduled Notification",
        "description": "Notify client and therapist when a new session is scheduled",
        "event_type": "session_scheduled",
        "entity_type": "session",
        "condition_rules": "{}",
        "recipient_rules": _SESSION_RECIPIENTS,
        "priority": "medium",
        "delay_minutes": 0,
        "is_active": True,
    },
    {
        "name": "Session Rescheduled",
        "description": "Notify client when their therapy session date/time is changed",
        "event_type": "session_rescheduled",
        "entity_type": "session",
        "condition_rules": "{}",
        "recipient_rules": json.dumps({"sessionClient": True, "assignedTherapist": False, "roles": []}),
        "priority": "medium",
        "delay_minutes": 0,
        "is_active": True,
    },
    {
        # Needs a scheduled job before it can be enabled.
        "name": "Session 24hr Advance Reminder",
        "description": "Remind client 24 hours before their session",
        "event_type": "session_scheduled",
        "entity_type": "session",
        "condition_rules": "{}",
        "recipient_rules": _SESSION_RECIPIENTS,
        "priority": "medium",
        "delay_minutes": 0,
        "is_active": False,
    },
    {
        "name": "Intake Session Reminder",
        "description": "Special reminder for intake sessions",
        "event_type": "session_scheduled",
        "entity_type": "session",
        "condition_rules": _INTAKE_CONDITIONS,
        "recipient_rules": _SESSION_RECIPIENTS,
        "priority": "high",
        "delay_minutes": 0,
        "is_active": True,
    },
    {
        "name": "Intake Session 24hr Advance Reminder",
        "description": "24-hour reminder for intake sessions",
        "event_type": "session_scheduled",
        "entity_type": "session",
        "condition_rules": _INTAKE_CONDITIONS,
        "recipient_rules": _SESSION_RECIPIENTS,
        "priority": "high",
        "delay_minutes": 0,
        "is_active": False,
    },
]


def sync_notification_triggers(session: Session) -> Dict[str, int]:
    """Insert or update every canonical trigger; returns created/updated counts."""

    created = updated = 0
    for seed in NOTIFICATION_TRIGGER_SEEDS:
        existing = session.execute(
            select(NotificationTrigger).where(NotificationTrigger.name == seed["name"])
        ).scalar_one_or_none()
        if existing is None:
            session.add(NotificationTrigger(**seed))
            created += 1
        else:
            for key, value in seed.items():
                setattr(existing, key, value)
            updated += 1
    session.flush()
    logger.info("notification_triggers_synced", created=created, updated=updated)
    return {"created": created, "updated": updated}


__all__ = ["NOTIFICATION_TRIGGER_SEEDS", "sync_notification_triggers"]
