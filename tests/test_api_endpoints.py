from datetime import date, datetime, timezone

import pytest

from therapyflow.clients import create_client
from therapyflow.db.models import (
    AssessmentAssignment,
    AssessmentResponse,
    LibraryCategory,
    LibraryEntry,
    LibraryEntryConnection,
    Task,
    TherapySession,
)


def test_health_reports_database(api_client):
    resp = api_client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['db'] is True


def test_metrics_exposes_request_counters(api_client):
    api_client.get('/health')
    resp = api_client.get('/metrics')
    assert resp.status_code == 200
    assert 'therapyflow_http_requests_total' in resp.text


def test_trace_id_is_echoed(api_client):
    resp = api_client.get('/health', headers={'X-Trace-Id': 'abc123'})
    assert resp.headers['X-Trace-Id'] == 'abc123'
    assert api_client.get('/health').headers['X-Trace-Id']


def test_missing_identity_returns_error_envelope(api_client, users):
    resp = api_client.get('/api/clients')
    assert resp.status_code == 401
    assert resp.json() == {
        'success': False,
        'error': {'code': 401, 'message': 'Authentication required'},
    }
    resp = api_client.get('/api/clients', headers={'X-User-Id': '999'})
    assert resp.status_code == 401


def test_role_check_rejects_therapist(api_client, users, auth_headers):
    resp = api_client.get('/api/clients/duplicates', headers=auth_headers(users.therapist))
    assert resp.status_code == 403
    assert resp.json()['error']['message'] == 'Admin access required'


def test_validation_errors_use_envelope(api_client, users, auth_headers):
    resp = api_client.get('/api/clients?page=0', headers=auth_headers(users.admin))
    assert resp.status_code == 422
    body = resp.json()
    assert body['success'] is False
    assert body['error']['message'] == 'Request validation failed'
    assert body['error']['details'][0]['loc'] == ['query', 'page']


@pytest.fixture
def clients_seeded(db_session, users):
    jordan = create_client(
        db_session,
        'Jordan Client',
        year=2024,
        status='active',
        email='jordan@example.com',
        date_of_birth=date(1990, 1, 1),
        assigned_therapist_id=users.therapist.id,
    )
    twin = create_client(
        db_session, 'Jordan Client', year=2024, date_of_birth=date(1990, 1, 1)
    )
    other = create_client(db_session, 'Avery Client', year=2024)
    db_session.add(Task(client_id=jordan.id, title='Call back', assigned_to_id=users.therapist.id))
    db_session.commit()
    return {'jordan': jordan, 'twin': twin, 'other': other}


def test_list_clients_endpoint(api_client, users, auth_headers, clients_seeded):
    resp = api_client.get(
        '/api/clients',
        params={'status': 'active', 'sortBy': 'name', 'sortOrder': 'asc'},
        headers=auth_headers(users.therapist),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body['total'] == 1
    assert body['clients'][0]['clientId'] == 'CL-2024-0001'
    assert body['clients'][0]['taskCount'] == 1


def test_list_clients_rejects_unknown_sort(api_client, users, auth_headers):
    resp = api_client.get('/api/clients', params={'sortBy': 'age'}, headers=auth_headers(users.admin))
    assert resp.status_code == 400
    assert resp.json()['error']['message'] == 'Unsupported sort field: age'


def test_client_stats_endpoint(api_client, users, auth_headers, clients_seeded):
    resp = api_client.get('/api/clients/stats', headers=auth_headers(users.therapist))
    assert resp.json()['totalClients'] == 3
    assert resp.json()['activeClients'] == 1


def test_duplicate_workflow(api_client, users, auth_headers, clients_seeded):
    headers = auth_headers(users.supervisor)
    resp = api_client.get('/api/clients/duplicates', headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body['totalDuplicates'] == 2
    group = body['duplicateGroups'][0]
    assert group['matchType'] == 'Exact name and date of birth'
    assert group['confidence'] == 'high'
    first = group['clients'][0]
    assert first['assignedTherapistId'] == users.therapist.id
    assert first['createdAt'].endswith('Z')

    twin_id = clients_seeded['twin'].id
    jordan_id = clients_seeded['jordan'].id
    resp = api_client.post(
        f'/api/clients/{twin_id}/mark-duplicate', json={'duplicateOfClientId': jordan_id}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()['isDuplicate'] is True
    assert clients_seeded['twin'].duplicate_of_id == jordan_id
    assert api_client.get('/api/clients/duplicates', headers=headers).json() == {
        'duplicateGroups': [],
        'totalDuplicates': 0,
    }

    resp = api_client.post(f'/api/clients/{twin_id}/unmark-duplicate', headers=headers)
    assert resp.json()['isDuplicate'] is False
    assert clients_seeded['twin'].duplicate_of_id is None

    resp = api_client.post(f'/api/clients/{twin_id}/mark-duplicate', json={'duplicateOf': jordan_id}, headers=headers)
    assert clients_seeded['twin'].duplicate_of_id == jordan_id

    resp = api_client.post(f'/api/clients/{twin_id}/mark-duplicate', json={'duplicateOf': twin_id}, headers=headers)
    assert resp.status_code == 400
    resp = api_client.post('/api/clients/9999/mark-duplicate', json={}, headers=headers)
    assert resp.status_code == 404


def test_conflict_check_endpoint(api_client, db_session, users, auth_headers, clients_seeded):
    db_session.add(
        TherapySession(
            client_id=clients_seeded['jordan'].id,
            therapist_id=users.therapist.id,
            session_date=datetime(2024, 1, 15, 15, 0, tzinfo=timezone.utc),
            session_type='individual',
            duration=60,
        )
    )
    db_session.commit()
    headers = auth_headers(users.therapist)

    resp = api_client.get(
        '/api/sessions/conflicts/check',
        params={'therapistId': users.therapist.id, 'sessionDate': '2024-01-15T15:30:00Z'},
        headers=headers,
    )
    body = resp.json()
    assert body['hasConflict'] is True
    assert body['therapistConflicts'][0]['clientName'] == 'Jordan Client'
    assert len(body['suggestedTimes']) == 3

    resp = api_client.get(
        '/api/sessions/conflicts/check',
        params={'therapistId': users.therapist.id, 'sessionDate': 'next tuesday'},
        headers=headers,
    )
    assert resp.status_code == 400


def test_calendar_export_endpoint(api_client, db_session, users, auth_headers, clients_seeded):
    row = TherapySession(
        client_id=clients_seeded['jordan'].id,
        therapist_id=users.therapist.id,
        session_date=datetime(2024, 1, 15, 15, 0, tzinfo=timezone.utc),
        session_type='individual',
    )
    db_session.add(row)
    db_session.commit()

    resp = api_client.get(f'/api/sessions/{row.id}/calendar.ics', headers=auth_headers(users.therapist))
    assert resp.status_code == 200
    assert resp.headers['content-type'].startswith('text/calendar')
    assert 'SUMMARY:Therapy session: Jordan Client' in resp.text
    assert api_client.get('/api/sessions/999/calendar.ics', headers=auth_headers(users.therapist)).status_code == 404


def test_pending_task_count_endpoint(api_client, users, auth_headers, clients_seeded):
    resp = api_client.get(
        '/api/tasks/pending/count',
        params={'assignedToId': users.therapist.id},
        headers=auth_headers(users.therapist),
    )
    assert resp.json() == {'count': 1}


@pytest.fixture
def library_seeded(db_session, users):
    symptoms = LibraryCategory(name='Symptoms', sort_order=1)
    interventions = LibraryCategory(name='Interventions', sort_order=2)
    db_session.add_all([symptoms, interventions])
    db_session.flush()
    worry = LibraryEntry(category_id=symptoms.id, title='ANXS1', content='Persistent worry', tags=['anxiety'])
    breathing = LibraryEntry(category_id=interventions.id, title='ANXI1', content='Box breathing', usage_count=4)
    journal = LibraryEntry(category_id=interventions.id, title='Worry journal', content='Evening writing')
    db_session.add_all([worry, breathing, journal])
    db_session.flush()
    db_session.add(LibraryEntryConnection(from_entry_id=worry.id, to_entry_id=breathing.id, strength=2))
    db_session.commit()
    return {'worry': worry, 'breathing': breathing, 'journal': journal, 'symptoms': symptoms}


def test_library_search_endpoint(api_client, users, auth_headers, library_seeded):
    resp = api_client.get('/api/library/search', params={'q': 'worry'}, headers=auth_headers(users.therapist))
    assert [entry['title'] for entry in resp.json()] == ['ANXS1', 'Worry journal']


def test_library_connections_endpoints(api_client, users, auth_headers, library_seeded):
    headers = auth_headers(users.therapist)
    worry_id = library_seeded['worry'].id
    breathing_id = library_seeded['breathing'].id

    resp = api_client.get(f'/api/library/entries/{worry_id}/connected', headers=headers)
    assert [entry['id'] for entry in resp.json()] == [breathing_id]
    assert resp.json()[0]['connectionStrength'] == 2

    assert api_client.get('/api/library/entries/999/connected', headers=headers).status_code == 404

    resp = api_client.post(
        '/api/library/entries/connected-bulk',
        json={'entryIds': [worry_id, breathing_id, 999]},
        headers=headers,
    )
    body = resp.json()
    assert body['connections']['999'] == []
    assert body['connections'][str(worry_id)][0]['id'] == breathing_id
    assert sorted(entry['id'] for entry in body['entries']) == sorted([worry_id, breathing_id])


def test_increment_usage_endpoint(api_client, users, auth_headers, library_seeded):
    entry_id = library_seeded['breathing'].id
    resp = api_client.post(f'/api/library/entries/{entry_id}/increment-usage', headers=auth_headers(users.therapist))
    assert resp.json() == {'id': entry_id, 'usageCount': 5}
    resp = api_client.post('/api/library/entries/999/increment-usage', headers=auth_headers(users.therapist))
    assert resp.status_code == 404


def test_smart_connect_endpoint(api_client, users, auth_headers, library_seeded):
    resp = api_client.post(
        '/api/library/smart-connect',
        json={
            'currentTitle': 'ANXS1',
            'currentCategoryId': library_seeded['symptoms'].id,
            'currentEntryId': library_seeded['worry'].id,
            'selectedIds': [library_seeded['journal'].id],
        },
        headers=auth_headers(users.therapist),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert [entry['title'] for entry in body['patterns']] == ['ANXI1']
    assert body['patterns'][0]['confidence'] == 100
    assert [entry['title'] for entry in body['manual']] == ['Worry journal']
    assert body['totalCount'] == 2
    assert body['hasMore'] is False
    assert body['selectedIds'] == [library_seeded['journal'].id]
    assert body['availableCategories'] == ['Interventions', 'Symptoms']


def test_format_response_endpoint(api_client, users, auth_headers):
    resp = api_client.post(
        '/api/assessments/format-response',
        json={
            'question': {'ratingMin': 0, 'ratingLabels': ['None', 'Mild', 'Severe']},
            'response': {'ratingValue': 2},
        },
        headers=auth_headers(users.therapist),
    )
    assert resp.json() == {'primaryText': '2', 'secondaryText': 'Severe'}


@pytest.mark.parametrize(
    'payload,expected',
    [
        ({'question': {'ratingLabels': ['a', 'b']}, 'response': {'ratingValue': '4.5'}}, {'primaryText': '4.5'}),
        ({'question': {'options': ['A', 'B']}, 'response': {'selectedOptions': 1}}, {'primaryText': 'No selection made'}),
        (
            {'question': {'allOptions': ['A', 'B']}, 'response': {'selectedOptions': [0]}},
            {'primaryText': 'No selection made', 'missingOptionIds': [0]},
        ),
    ],
)
def test_format_response_tolerates_loose_payloads(api_client, users, auth_headers, payload, expected):
    resp = api_client.post('/api/assessments/format-response', json=payload, headers=auth_headers(users.therapist))
    assert resp.status_code == 200
    assert resp.json() == expected


def test_assessment_template_and_recalculate(api_client, db_session, users, auth_headers, clients_seeded):
    template_payload = {
        'name': 'GAD Screen',
        'sections': [
            {
                'title': 'Anxiety',
                'isScoring': True,
                'questions': [
                    {
                        'questionText': 'Feeling nervous',
                        'questionType': 'radio',
                        'allOptions': [
                            {'optionText': 'Not at all', 'optionValue': 0},
                            {'optionText': 'Nearly every day', 'optionValue': 3},
                        ],
                    }
                ],
            }
        ],
    }
    resp = api_client.post('/api/assessments/templates', json=template_payload, headers=auth_headers(users.therapist))
    assert resp.status_code == 403

    resp = api_client.post('/api/assessments/templates', json=template_payload, headers=auth_headers(users.supervisor))
    assert resp.status_code == 201
    template = resp.json()
    assert template['sections'][0]['questions'] == 1

    from therapyflow.db.models import AssessmentTemplate

    row = db_session.get(AssessmentTemplate, template['id'])
    question = row.sections[0].questions[0]
    assignment = AssessmentAssignment(template_id=row.id, client_id=clients_seeded['jordan'].id)
    db_session.add(assignment)
    db_session.flush()
    db_session.add(
        AssessmentResponse(
            assignment_id=assignment.id,
            question_id=question.id,
            selected_options=[question.option_rows[1].id],
        )
    )
    db_session.commit()

    resp = api_client.post(
        f'/api/assessments/assignments/{assignment.id}/recalculate', headers=auth_headers(users.therapist)
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body['totalScore'] == 3.0
    assert body['sections'][0]['answered'] == 1
    assert body['sections'][0]['responses'][0]['display'] == {'primaryText': 'Nearly every day'}

    resp = api_client.post('/api/assessments/assignments/999/recalculate', headers=auth_headers(users.therapist))
    assert resp.status_code == 404


def test_autofill_endpoints(api_client, users, auth_headers):
    headers = auth_headers(users.therapist)
    variables = api_client.get('/api/forms/autofill/variables', headers=headers).json()
    assert {'variable': '{{CLIENT_NAME}}', 'description': 'Client full name', 'category': 'Client Information'} in variables

    resp = api_client.post(
        '/api/forms/autofill',
        json={
            'template': '<p>{{CLIENT_NAME}} with {{THERAPIST_NAME}} at {{PRACTICE_NAME}}</p>',
            'client': {'fullName': '<Jordan>'},
            'therapist': {'fullName': 'Dana Therapist'},
        },
        headers=headers,
    )
    body = resp.json()
    assert body['content'] == '<p>&lt;Jordan&gt; with Dana Therapist at {{PRACTICE_NAME}}</p>'
    assert body['variables']['CLIENT_NAME'] == '<Jordan>'

    resp = api_client.post(
        '/api/forms/autofill',
        json={'template': '{{CLIENT_NAME}}', 'client': {'fullName': '<Jordan>'}, 'escapeHtml': False},
        headers=headers,
    )
    assert resp.json()['content'] == '<Jordan>'


def test_smart_connect_visible_count(api_client, users, auth_headers, library_seeded):
    headers = auth_headers(users.therapist)
    resp = api_client.post('/api/library/smart-connect', json={'visibleCount': 2}, headers=headers)
    body = resp.json()
    assert len(body['manual']) == 2
    assert body['totalCount'] == 3
    assert body['hasMore'] is True

    resp = api_client.post('/api/library/smart-connect', json={'visibleCount': 10**12}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()['error']['details'][0]['loc'] == ['body', 'visibleCount']
