from datetime import date

import pytest

from therapyflow import duplicates
from therapyflow.clients import ClientNotFoundError, create_client
from therapyflow.duplicates import (
    EXACT_NAME_DOB,
    MATCHING_EMAIL,
    MATCHING_PHONE,
    SIMILAR_NAME,
    detect_duplicates,
    find_duplicate_groups,
    mark_duplicate,
    normalise_email,
    normalise_name,
    normalise_phone,
    unmark_duplicate,
)


@pytest.mark.parametrize(
    'raw,expected',
    [
        ("  Mary-Ann  O'Neil ", 'maryann oneil'),
        ('JOHN   SMITH', 'john smith'),
        (None, ''),
    ],
)
def test_normalise_name(raw, expected):
    assert normalise_name(raw) == expected


def test_normalise_email_and_phone():
    assert normalise_email('  Pat@Example.COM ') == 'pat@example.com'
    assert normalise_phone('+1 (555) 123-4567') == '5551234567'
    assert normalise_phone('555-1234') == '5551234'
    assert normalise_phone('12-34') == ''
    assert normalise_phone(None) == ''


def _add(db_session, name, **fields):
    return create_client(db_session, name, year=2024, **fields)


def test_groups_by_strongest_rule_first(db_session):
    a = _add(db_session, 'Alex Rivera', date_of_birth=date(1990, 5, 1), email='alex@example.com')
    b = _add(db_session, 'alex rivera', date_of_birth=date(1990, 5, 1), email='arivera@example.com')
    c = _add(db_session, 'A. Rivera', email='ALEX@example.com ')
    d = _add(db_session, 'Jamie Chen', phone='(555) 222-3333')
    e = _add(db_session, 'J. Chen', phone='555.222.3333')
    f = _add(db_session, 'Christopher Jones', date_of_birth=date(1985, 1, 1))
    g = _add(db_session, 'Christopher Jone', date_of_birth=None)
    _add(db_session, 'Taylor Unique', email='taylor@example.com')
    db_session.commit()

    groups = detect_duplicates(db_session)
    summary = [(group.match_type, group.confidence, [c.id for c in group.clients]) for group in groups]
    assert summary == [
        (EXACT_NAME_DOB, 'high', [a.id, b.id]),
        (MATCHING_PHONE, 'medium', [d.id, e.id]),
        (SIMILAR_NAME, 'low', [f.id, g.id]),
    ]
    # The shared email of a and c does not form a group because a is already grouped.
    assert c.id not in {client.id for group in groups for client in group.clients}


def test_email_group_when_names_differ(db_session):
    a = _add(db_session, 'Robin Park', email='robin@example.com')
    b = _add(db_session, 'Robyn Parker', email=' Robin@Example.com')
    db_session.commit()

    groups = find_duplicate_groups([a, b])
    assert len(groups) == 1
    assert groups[0].match_type == MATCHING_EMAIL
    assert groups[0].confidence == 'high'
    payload = groups[0].as_dict()
    assert payload['matchType'] == MATCHING_EMAIL
    assert [client['fullName'] for client in payload['clients']] == ['Robin Park', 'Robyn Parker']


def test_similar_names_with_different_birth_dates_are_not_grouped(db_session):
    a = _add(db_session, 'Morgan Blake', date_of_birth=date(1970, 1, 1))
    b = _add(db_session, 'Morgan Blak', date_of_birth=date(2001, 1, 1))
    db_session.commit()
    assert find_duplicate_groups([a, b]) == []


def test_short_phone_numbers_are_ignored(db_session):
    a = _add(db_session, 'Casey One', phone='123')
    b = _add(db_session, 'Drew Two', phone='123')
    db_session.commit()
    assert find_duplicate_groups([a, b]) == []


def test_marked_duplicates_are_excluded_and_can_be_restored(db_session):
    a = _add(db_session, 'Sam Lee', email='sam@example.com')
    b = _add(db_session, 'Samuel Lee', email='sam@example.com')
    db_session.commit()
    assert len(detect_duplicates(db_session)) == 1

    marked = mark_duplicate(db_session, b.id, a.id)
    assert marked.is_duplicate is True
    assert marked.duplicate_of_id == a.id
    assert detect_duplicates(db_session) == []

    restored = unmark_duplicate(db_session, b.id)
    assert restored.is_duplicate is False
    assert restored.duplicate_of_id is None
    assert len(detect_duplicates(db_session)) == 1


def test_mark_duplicate_errors(db_session):
    a = _add(db_session, 'Lone Client')
    db_session.commit()
    with pytest.raises(ClientNotFoundError):
        mark_duplicate(db_session, 999)
    with pytest.raises(ClientNotFoundError):
        mark_duplicate(db_session, a.id, 999)
    with pytest.raises(ValueError):
        mark_duplicate(db_session, a.id, a.id)
    with pytest.raises(ClientNotFoundError):
        duplicates.unmark_duplicate(db_session, 999)
