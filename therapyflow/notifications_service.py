from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from therapyflow.db.models import (
    Client,
    Notification,
    NotificationPreference,
    NotificationTemplate,
    NotificationTrigger,
    SupervisorAssignment,
    User,
)
from therapyflow.time_utils import isoformat_utc, utc_now


logger = structlog.get_logger(__name__)


NOTIFICATIONS_CREATED = Counter(
    "therapyflow_notifications_created_total",
    "Notifications created by trigger processing",
    ("event_type",),
)

OPERATORS = ("equals", "not_equals", "contains", "greater_than", "less_than", "in_array")

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

# Entity keys naming the therapist responsible for the entity, in priority order.
_THERAPIST_KEYS = ("assignedToId", "assignedTherapistId", "therapistId")


class NotificationNotFoundError(Exception):
    """Raised when a notification, trigger or template does not exist."""


class InvalidConditionError(ValueError):
    """Raised when trigger condition rules cannot be parsed."""


@dataclass
class TriggerCondition:
    field: str
    operator: str
    value: Any


# ---------------------------------------------------------------------------
# Condition evaluation and rendering
# ---------------------------------------------------------------------------


def get_field_value(data: Any, path: str) -> Any:
    """Follow a dot separated *path* through nested mappings."""

    current = data
    for key in (path or "").split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            return None
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _same_value(left: Any, right: Any) -> bool:
    # Numbers compare across int and float; booleans only equal booleans.
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def evaluate_condition(field_value: Any, condition: TriggerCondition) -> bool:
    operator = condition.operator
    expected = condition.value
    if operator == "equals":
        return _same_value(field_value, expected)
    if operator == "not_equals":
        return not _same_value(field_value, expected)
    if operator == "contains":
        return str(expected) in str(field_value)
    if operator in ("greater_than", "less_than"):
        left, right = _as_number(field_value), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "in_array":
        return isinstance(expected, list) and any(_same_value(field_value, item) for item in expected)
    return False


def parse_conditions(raw: Optional[str]) -> List[TriggerCondition]:
    """Parse stored condition rules; an empty result means "always true"."""

    if raw is None or not str(raw).strip() or str(raw).strip() == "{}":
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidConditionError(f"Condition rules are not valid JSON: {raw!r}") from exc

    if isinstance(parsed, dict):
        return [TriggerCondition(field, "equals", value) for field, value in parsed.items()]
    if isinstance(parsed, list):
        conditions = []
        for item in parsed:
            if not isinstance(item, dict) or "field" not in item:
                raise InvalidConditionError(f"Malformed condition: {item!r}")
            conditions.append(
                TriggerCondition(item["field"], item.get("operator", "equals"), item.get("value"))
            )
        return conditions
    raise InvalidConditionError(f"Unsupported condition rules: {raw!r}")


def conditions_met(raw: Optional[str], data: Mapping[str, Any]) -> bool:
    return all(
        evaluate_condition(get_field_value(data, condition.field), condition)
        for condition in parse_conditions(raw)
    )


def render_template(template: Optional[str], data: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` placeholders, keeping unknown or empty ones verbatim."""

    if not template:
        return ""

    def _substitute(match: "re.Match[str]") -> str:
        value = get_field_value(data, match.group(1))
        return str(value) if value else match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def _parse_rules(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("notification_recipient_rules_invalid", rules=raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def serialise_notification(row: Notification) -> Dict[str, Any]:
    data: Any = None
    if row.data:
        try:
            data = json.loads(row.data)
        except ValueError:
            data = row.data
    return {
        "id": row.id,
        "userId": row.user_id,
        "type": row.type,
        "title": row.title,
        "message": row.message,
        "data": data,
        "priority": row.priority,
        "isRead": bool(row.is_read),
        "readAt": isoformat_utc(row.read_at),
        "actionUrl": row.action_url,
        "actionLabel": row.action_label,
        "groupingKey": row.grouping_key,
        "relatedEntityType": row.related_entity_type,
        "relatedEntityId": row.related_entity_id,
        "expiresAt": isoformat_utc(row.expires_at),
        "createdAt": isoformat_utc(row.created_at),
    }


def serialise_trigger(row: NotificationTrigger) -> Dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "eventType": row.event_type,
        "entityType": row.entity_type,
        "conditionRules": row.condition_rules,
        "recipientRules": row.recipient_rules,
        "templateId": row.template_id,
        "priority": row.priority,
        "delayMinutes": row.delay_minutes,
        "expiryDays": row.expiry_days,
        "isActive": bool(row.is_active),
    }


def serialise_template(row: NotificationTemplate) -> Dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "type": row.type,
        "subject": row.subject,
        "bodyTemplate": row.body_template,
        "actionUrlTemplate": row.action_url_template,
        "actionLabel": row.action_label,
        "isActive": bool(row.is_active),
    }


def serialise_preference(row: NotificationPreference) -> Dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "triggerType": row.trigger_type,
        "inAppEnabled": bool(row.in_app_enabled),
        "emailEnabled": bool(row.email_enabled),
    }


_TRIGGER_FIELDS = {
    "name": "name",
    "description": "description",
    "eventType": "event_type",
    "entityType": "entity_type",
    "conditionRules": "condition_rules",
    "recipientRules": "recipient_rules",
    "templateId": "template_id",
    "priority": "priority",
    "delayMinutes": "delay_minutes",
    "expiryDays": "expiry_days",
    "isActive": "is_active",
}

_TEMPLATE_FIELDS = {
    "name": "name",
    "type": "type",
    "subject": "subject",
    "bodyTemplate": "body_template",
    "actionUrlTemplate": "action_url_template",
    "actionLabel": "action_label",
    "isActive": "is_active",
}


def _apply_fields(row: Any, values: Mapping[str, Any], mapping: Mapping[str, str]) -> None:
    for key, value in values.items():
        attribute = mapping.get(key)
        if attribute is not None:
            setattr(row, attribute, value)


class NotificationService:
    """Evaluate notification triggers and manage per-user notifications."""

    def __init__(self, session: Session, *, history_limit: int = 50) -> None:
        self._session = session
        self._history_limit = max(1, history_limit)

    # ------------------------------------------------------------------
    # Trigger processing
    # ------------------------------------------------------------------
    def process_event(self, event_type: str, entity_data: Mapping[str, Any]) -> List[Notification]:
        """Run every active trigger for *event_type* and return created rows."""

        triggers = (
            self._session.execute(
                select(NotificationTrigger)
                .where(
                    NotificationTrigger.event_type == event_type,
                    NotificationTrigger.is_active.is_(True),
                )
                .order_by(NotificationTrigger.id)
            )
            .scalars()
            .all()
        )
        logger.info("notification_event_received", event_type=event_type, triggers=len(triggers))

        created: List[Notification] = []
        for trigger in triggers:
            trigger_id = trigger.id
            try:
                # A savepoint per trigger keeps a failed flush from poisoning the others.
                with self._session.begin_nested():
                    if not conditions_met(trigger.condition_rules, entity_data):
                        logger.debug("notification_trigger_skipped", trigger_id=trigger_id)
                        continue
                    recipients = self.calculate_recipients(trigger, entity_data)
                    rows = self._create_from_trigger(trigger, entity_data, recipients)
                created.extend(rows)
            except Exception:
                logger.exception(
                    "notification_trigger_failed", trigger_id=trigger_id, event_type=event_type
                )
        if created:
            NOTIFICATIONS_CREATED.labels(event_type=event_type).inc(len(created))
        return created

    def _active_users(self, *conditions: Any) -> List[User]:
        return (
            self._session.execute(select(User).where(User.is_active.is_(True), *conditions))
            .scalars()
            .all()
        )

    def calculate_recipients(
        self, trigger: NotificationTrigger, entity_data: Mapping[str, Any]
    ) -> List[User]:
        rules = _parse_rules(trigger.recipient_rules)
        recipients: List[User] = []

        roles = rules.get("roles") or []
        if roles:
            recipients.extend(self._active_users(User.role.in_(roles)))

        specific = rules.get("specificUsers") or []
        if specific:
            recipients.extend(self._active_users(User.id.in_(specific)))

        therapist_id = next(
            (entity_data.get(key) for key in _THERAPIST_KEYS if entity_data.get(key)), None
        )
        if rules.get("assignedTherapist") and therapist_id:
            recipients.extend(self._active_users(User.id == therapist_id))

        supervised_id = entity_data.get("assignedTherapistId") or therapist_id
        if rules.get("supervisorOfTherapist") and supervised_id:
            supervisor = self._session.execute(
                select(User)
                .join(SupervisorAssignment, SupervisorAssignment.supervisor_id == User.id)
                .where(
                    SupervisorAssignment.therapist_id == supervised_id,
                    SupervisorAssignment.is_active.is_(True),
                    User.is_active.is_(True),
                )
                .order_by(SupervisorAssignment.id)
                .limit(1)
            ).scalar_one_or_none()
            if supervisor is not None:
                recipients.append(supervisor)

        client_id = entity_data.get("clientId")
        if rules.get("clientTherapist") and client_id:
            client = self._session.get(Client, client_id)
            if client is not None and client.assigned_therapist_id:
                recipients.extend(self._active_users(User.id == client.assigned_therapist_id))

        unique: Dict[int, User] = {}
        for user in recipients:
            unique.setdefault(user.id, user)
        return list(unique.values())

    def _in_app_enabled(self, user_ids: Iterable[int], event_type: str) -> Dict[int, bool]:
        rows = self._session.execute(
            select(NotificationPreference.user_id, NotificationPreference.in_app_enabled).where(
                NotificationPreference.user_id.in_(list(user_ids)),
                NotificationPreference.trigger_type == event_type,
            )
        ).all()
        return {user_id: bool(enabled) for user_id, enabled in rows}

    def _create_from_trigger(
        self,
        trigger: NotificationTrigger,
        entity_data: Mapping[str, Any],
        recipients: List[User],
    ) -> List[Notification]:
        if not recipients:
            return []

        template: Optional[NotificationTemplate] = None
        if trigger.template_id:
            template = self._session.get(NotificationTemplate, trigger.template_id)

        if template is not None:
            title = render_template(template.subject, entity_data)
            message = render_template(template.body_template, entity_data)
            action_url = (
                render_template(template.action_url_template, entity_data)
                if template.action_url_template
                else None
            )
            action_label = template.action_label
        else:
            title = trigger.name
            message = f"{trigger.name} triggered"
            action_url = None
            action_label = None

        entity_id = entity_data.get("id")
        expires_at = None
        if trigger.expiry_days:
            expires_at = utc_now() + timedelta(days=trigger.expiry_days)

        preferences = self._in_app_enabled((user.id for user in recipients), trigger.event_type)
        payload = json.dumps(entity_data, default=str)
        rows = []
        for user in recipients:
            if not preferences.get(user.id, True):
                logger.debug("notification_recipient_opted_out", user_id=user.id, trigger_id=trigger.id)
                continue
            rows.append(
                Notification(
                    user_id=user.id,
                    type=trigger.event_type,
                    title=title,
                    message=message,
                    data=payload,
                    priority=trigger.priority,
                    action_url=action_url,
                    action_label=action_label,
                    grouping_key=f"{trigger.event_type}_{entity_id}",
                    related_entity_type=trigger.entity_type,
                    related_entity_id=entity_id if isinstance(entity_id, int) else None,
                    expires_at=expires_at,
                )
            )
        self._session.add_all(rows)
        self._session.flush()
        logger.info(
            "notification_trigger_fired",
            trigger_id=trigger.id,
            event_type=trigger.event_type,
            recipients=len(rows),
        )
        return rows

    # ------------------------------------------------------------------
    # Per-user notifications
    # ------------------------------------------------------------------
    def create_notification(self, user_id: int, **fields: Any) -> Notification:
        if "data" in fields and not isinstance(fields["data"], (str, type(None))):
            fields["data"] = json.dumps(fields["data"], default=str)
        row = Notification(user_id=user_id, **fields)
        self._session.add(row)
        self._session.flush()
        return row

    def list_for_user(self, user_id: int, limit: Optional[int] = None) -> List[Notification]:
        """Return notifications for *user_id*, newest first."""

        return (
            self._session.execute(
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit or self._history_limit)
            )
            .scalars()
            .all()
        )

    def unread_count(self, user_id: int) -> int:
        return int(
            self._session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id, Notification.is_read.is_(False)
                )
            ).scalar_one()
        )

    def _owned(self, notification_id: int, user_id: int) -> Notification:
        row = self._session.get(Notification, notification_id)
        if row is None or row.user_id != user_id:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return row

    def mark_as_read(self, notification_id: int, user_id: int) -> Notification:
        row = self._owned(notification_id, user_id)
        if not row.is_read:
            row.is_read = True
            row.read_at = utc_now()
            self._session.flush()
        return row

    def mark_all_as_read(self, user_id: int) -> int:
        result = self._session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utc_now())
        )
        return int(result.rowcount or 0)

    def delete(self, notification_id: int, user_id: int) -> None:
        row = self._owned(notification_id, user_id)
        self._session.delete(row)
        self._session.flush()

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    def get_preferences(self, user_id: int) -> List[NotificationPreference]:
        return (
            self._session.execute(
                select(NotificationPreference)
                .where(NotificationPreference.user_id == user_id)
                .order_by(NotificationPreference.trigger_type)
            )
            .scalars()
            .all()
        )

    def set_preference(
        self,
        user_id: int,
        trigger_type: str,
        *,
        in_app_enabled: Optional[bool] = None,
        email_enabled: Optional[bool] = None,
    ) -> NotificationPreference:
        row = self._session.execute(
            select(NotificationPreference).where(
                NotificationPreference.user_id == user_id,
                NotificationPreference.trigger_type == trigger_type,
            )
        ).scalar_one_or_none()
        if row is None:
            row = NotificationPreference(user_id=user_id, trigger_type=trigger_type)
            self._session.add(row)
        if in_app_enabled is not None:
            row.in_app_enabled = in_app_enabled
        if email_enabled is not None:
            row.email_enabled = email_enabled
        self._session.flush()
        return row

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utc_now()
        result = self._session.execute(
            delete(Notification)
            .where(Notification.expires_at.is_not(None), Notification.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        removed = int(result.rowcount or 0)
        logger.info("notifications_expired_removed", removed=removed)
        return removed

    def stats(self) -> Dict[str, int]:
        total = self._session.execute(select(func.count(Notification.id))).scalar_one()
        unread = self._session.execute(
            select(func.count(Notification.id)).where(Notification.is_read.is_(False))
        ).scalar_one()
        return {"total": int(total), "unread": int(unread)}

    # ------------------------------------------------------------------
    # Trigger and template administration
    # ------------------------------------------------------------------
    def list_triggers(self, event_type: Optional[str] = None) -> List[NotificationTrigger]:
        stmt = select(NotificationTrigger).order_by(NotificationTrigger.id)
        if event_type:
            stmt = stmt.where(NotificationTrigger.event_type == event_type)
        return self._session.execute(stmt).scalars().all()

    def create_trigger(self, values: Mapping[str, Any]) -> NotificationTrigger:
        parse_conditions(values.get("conditionRules"))
        row = NotificationTrigger()
        _apply_fields(row, values, _TRIGGER_FIELDS)
        self._session.add(row)
        self._session.flush()
        logger.info("notification_trigger_created", trigger_id=row.id, event_type=row.event_type)
        return row

    def update_trigger(self, trigger_id: int, values: Mapping[str, Any]) -> NotificationTrigger:
        row = self._session.get(NotificationTrigger, trigger_id)
        if row is None:
            raise NotificationNotFoundError(f"Trigger {trigger_id} not found")
        if "conditionRules" in values:
            parse_conditions(values.get("conditionRules"))
        _apply_fields(row, values, _TRIGGER_FIELDS)
        self._session.flush()
        return row

    def delete_trigger(self, trigger_id: int) -> None:
        row = self._session.get(NotificationTrigger, trigger_id)
        if row is None:
            raise NotificationNotFoundError(f"Trigger {trigger_id} not found")
        self._session.delete(row)
        self._session.flush()

    def list_templates(self, template_type: Optional[str] = None) -> List[NotificationTemplate]:
        stmt = select(NotificationTemplate).order_by(NotificationTemplate.id)
        if template_type:
            stmt = stmt.where(NotificationTemplate.type == template_type)
        return self._session.execute(stmt).scalars().all()

    def create_template(self, values: Mapping[str, Any]) -> NotificationTemplate:
        row = NotificationTemplate()
        _apply_fields(row, values, _TEMPLATE_FIELDS)
        self._session.add(row)
        self._session.flush()
        return row

    def update_template(self, template_id: int, values: Mapping[str, Any]) -> NotificationTemplate:
        row = self._session.get(NotificationTemplate, template_id)
        if row is None:
            raise NotificationNotFoundError(f"Template {template_id} not found")
        _apply_fields(row, values, _TEMPLATE_FIELDS)
        self._session.flush()
        return row

    def delete_template(self, template_id: int) -> None:
        row = self._session.get(NotificationTemplate, template_id)
        if row is None:
            raise NotificationNotFoundError(f"Template {template_id} not found")
        self._session.execute(
            update(NotificationTrigger)
            .where(NotificationTrigger.template_id == template_id)
            .values(template_id=None)
        )
        self._session.delete(row)
        self._session.flush()


__all__ = [
    "NotificationNotFoundError",
    "InvalidConditionError",
    "TriggerCondition",
    "NotificationService",
    "OPERATORS",
    "get_field_value",
    "evaluate_condition",
    "parse_conditions",
    "conditions_met",
    "render_template",
    "serialise_notification",
    "serialise_trigger",
    "serialise_template",
    "serialise_preference",
]
