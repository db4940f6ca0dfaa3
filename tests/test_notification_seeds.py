import json

from therapyflow.db.models import NotificationTrigger
from therapyflow.notification_seeds import NOTIFICATION_TRIGGER_SEEDS, sync_notification_triggers
from therapyflow.notifications_service import parse_conditions


def test_seed_definitions_are_valid():
    names = [seed['name'] for seed in NOTIFICATION_TRIGGER_SEEDS]
    assert len(names) == len(set(names))
    for seed in NOTIFICATION_TRIGGER_SEEDS:
        parse_conditions(seed['condition_rules'])
        assert isinstance(json.loads(seed['recipient_rules']), dict)


def test_sync_is_idempotent(db_session):
    first = sync_notification_triggers(db_session)
    db_session.commit()
    assert first == {'created': len(NOTIFICATION_TRIGGER_SEEDS), 'updated': 0}

    second = sync_notification_triggers(db_session)
    db_session.commit()
    assert second == {'created': 0, 'updated': len(NOTIFICATION_TRIGGER_SEEDS)}
    assert db_session.query(NotificationTrigger).count() == len(NOTIFICATION_TRIGGER_SEEDS)


def test_sync_restores_edited_definitions(db_session):
    sync_notification_triggers(db_session)
    row = db_session.query(NotificationTrigger).filter_by(name='Intake Session Reminder').one()
    row.priority = 'low'
    row.condition_rules = '{}'
    db_session.commit()

    sync_notification_triggers(db_session)
    db_session.commit()
    db_session.refresh(row)
    assert row.priority == 'high'
    assert json.loads(row.condition_rules) == {'sessionType': 'intake'}


def test_reminder_triggers_ship_disabled(db_session):
    sync_notification_triggers(db_session)
    inactive = {
        row.name
        for row in db_session.query(NotificationTrigger).filter(NotificationTrigger.is_active.is_(False))
    }
    assert inactive == {'Session 24hr Advance Reminder', 'Intake Session 24hr Advance Reminder'}
