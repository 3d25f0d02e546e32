from datetime import datetime, timedelta, timezone

import pytest

from models.errors import ValidationError
from routes.helpers import parse_time


def post(client, url, json=None, actor='librarian-1'):
    return client.post(url, json=json or {}, headers={'X-Actor-Id': actor})


@pytest.fixture
def seeded(client):
    """One title with one copy and one patron, created through the API."""
    title = post(client, '/api/titles', {'title': 'Piranesi', 'isbn': '9781635575637'}).get_json()['title']
    copy = post(client, f'/api/titles/{title["id"]}/copies', {'barcode': 'PIR-1'}).get_json()['copy']
    patron = post(client, '/api/patrons', {
        'name': 'Grace Hopper', 'email': 'grace@uni.example',
        'roles': {'professor': {'loan_period_days': 30}},
    }).get_json()['patron']
    return {'title': title, 'copy': copy, 'patron': patron}


def checkout(client, seeded, **extra):
    payload = {'patron_id': seeded['patron']['id'], 'copy_id': seeded['copy']['id']}
    payload.update(extra)
    return post(client, '/api/loans', payload)


def test_catalog_setup(client, seeded):
    response = client.get(f'/api/titles/{seeded["title"]["id"]}')
    data = response.get_json()

    assert response.status_code == 200
    assert data['title']['total_copies'] == 1
    assert data['title']['available_copies'] == 1
    assert [c['barcode'] for c in data['copies']] == ['PIR-1']
    assert data['queue'] == []
    assert seeded['patron']['roles'] == {'professor': {'loan_period_days': 30}}


def test_checkout_return_and_pay(client, seeded):
    response = checkout(client, seeded, loan_period_days=14)
    assert response.status_code == 201
    loan = response.get_json()['loan']
    assert loan['state'] == 'active'

    late = datetime.now() + timedelta(days=17)
    response = post(client, f'/api/loans/{loan["id"]}/return',
                    {'return_time': late.isoformat(timespec='seconds')})
    data = response.get_json()
    assert response.status_code == 200
    assert data['loan']['state'] == 'finalized'
    assert data['fine']['amount'] == 150.0
    assert data['fine']['state'] == 'pending'

    fine_id = data['fine']['id']
    response = post(client, f'/api/fines/{fine_id}/payments', {'amount': 150, 'method': 'cash'})
    assert response.status_code == 201
    assert response.get_json()['fine']['state'] == 'paid'

    fine = client.get(f'/api/fines/{fine_id}').get_json()
    assert len(fine['payments']) == 1


def test_role_loan_period_applies(client, seeded):
    loan = checkout(client, seeded).get_json()['loan']
    start = datetime.fromisoformat(loan['start_time'])
    due = datetime.fromisoformat(loan['due_time'])
    assert due - start == timedelta(days=30)


def test_errors_map_to_status_codes(client, seeded):
    checkout(client, seeded)

    response = checkout(client, seeded)
    data = response.get_json()
    assert response.status_code == 409
    assert data['success'] is False
    assert data['error'] == 'copy_unavailable'
    assert data['message']

    response = client.get('/api/loans/missing')
    assert response.status_code == 404
    assert response.get_json()['error'] == 'loan_not_found'

    response = post(client, '/api/loans', {'patron_id': seeded['patron']['id']})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'validation_error'


def test_double_return_is_conflict(client, seeded):
    loan = checkout(client, seeded).get_json()['loan']
    assert post(client, f'/api/loans/{loan["id"]}/return').status_code == 200

    response = post(client, f'/api/loans/{loan["id"]}/return')
    assert response.status_code == 409
    assert response.get_json()['error'] == 'already_finalized'


def test_bad_return_time(client, seeded):
    loan = checkout(client, seeded).get_json()['loan']
    response = post(client, f'/api/loans/{loan["id"]}/return', {'return_time': 'yesterday'})
    assert response.status_code == 400


def test_oversized_loan_period_is_rejected(client, seeded):
    for days in (1000000000, 999999999, 366):
        response = checkout(client, seeded, loan_period_days=days)
        assert response.status_code == 400
        assert response.get_json()['error'] == 'validation_error'

    copy = client.get(f'/api/copies/{seeded["copy"]["id"]}').get_json()['copy']
    assert copy['state'] == 'available'


def test_padded_duplicate_barcode_is_rejected(client, seeded):
    response = post(client, f'/api/titles/{seeded["title"]["id"]}/copies', {'barcode': ' PIR-1 '})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'validation_error'


def test_malformed_role_attributes_are_rejected(client):
    response = post(client, '/api/patrons', {
        'name': 'Alan Turing', 'email': 'alan@uni.example',
        'roles': {'student': {'max_active_loans': 'many'}},
    })
    assert response.status_code == 400
    assert response.get_json()['error'] == 'validation_error'


def test_parse_time_converts_offsets_to_local_time():
    parsed = parse_time('2024-03-01T12:00:00+05:00', 'return_time')

    expected = datetime(2024, 3, 1, 12, tzinfo=timezone(timedelta(hours=5)))
    assert parsed == expected.astimezone().replace(tzinfo=None)
    assert parsed.tzinfo is None


def test_parse_time_keeps_naive_values():
    assert parse_time('2024-03-01T12:00:00.250', 'return_time') == datetime(2024, 3, 1, 12)
    assert parse_time(None, 'return_time') is None
    with pytest.raises(ValidationError):
        parse_time('yesterday', 'return_time')



def test_reservation_flow(client, seeded):
    other = post(client, '/api/patrons', {'name': 'Alan', 'email': 'alan@uni.example'}).get_json()['patron']

    response = post(client, '/api/reservations',
                    {'patron_id': other['id'], 'title_id': seeded['title']['id']})
    assert response.status_code == 403
    assert response.get_json()['error'] == 'title_available'

    loan = checkout(client, seeded).get_json()['loan']
    response = post(client, '/api/reservations',
                    {'patron_id': other['id'], 'title_id': seeded['title']['id'], 'priority': 2})
    assert response.status_code == 201
    reservation = response.get_json()['reservation']
    assert reservation['priority'] == 2

    response = post(client, f'/api/loans/{loan["id"]}/renew')
    assert response.status_code == 403
    assert response.get_json()['error'] == 'renewal_denied'

    post(client, f'/api/loans/{loan["id"]}/return')
    held = client.get(f'/api/reservations/{reservation["id"]}').get_json()['reservation']
    assert held['state'] == 'fulfilled'
    assert held['copy_id'] == seeded['copy']['id']

    response = post(client, f'/api/reservations/{reservation["id"]}/cancel',
                    {'patron_id': other['id']})
    assert response.status_code == 200
    copy = client.get(f'/api/copies/{seeded["copy"]["id"]}').get_json()['copy']
    assert copy['state'] == 'available'


def test_patron_overview(client, seeded):
    checkout(client, seeded)
    data = client.get(f'/api/patrons/{seeded["patron"]["id"]}').get_json()

    assert len(data['loans']) == 1
    assert data['outstanding_balance'] == 0
    assert data['is_blocked'] is False


def test_maintenance_endpoints(client, seeded):
    copy_id = seeded['copy']['id']
    response = post(client, f'/api/copies/{copy_id}/maintenance')
    assert response.get_json()['copy']['state'] == 'maintenance'
    assert checkout(client, seeded).status_code == 409

    response = post(client, f'/api/copies/{copy_id}/restore')
    assert response.get_json()['copy']['state'] == 'available'
    assert response.get_json()['fulfilled_reservation'] is None


def test_deactivated_patron_cannot_borrow(client, seeded):
    patron_id = seeded['patron']['id']
    response = post(client, f'/admin/patrons/{patron_id}/status', {'active': False})
    assert response.get_json()['patron']['status'] == 'inactive'

    response = checkout(client, seeded)
    assert response.status_code == 403
    assert response.get_json()['error'] == 'patron_inactive'


def test_sanction_endpoints(client, seeded):
    patron_id = seeded['patron']['id']
    start = datetime.now() - timedelta(days=1)
    response = post(client, '/admin/sanctions', {
        'patron_id': patron_id, 'sanction_type': 'suspension',
        'start': start.isoformat(), 'end': (start + timedelta(days=7)).isoformat(),
    })
    assert response.status_code == 201
    sanction_id = response.get_json()['sanction']['id']

    assert checkout(client, seeded).get_json()['error'] == 'patron_blocked'

    post(client, f'/admin/sanctions/{sanction_id}/lift')
    assert checkout(client, seeded).status_code == 201


def test_config_endpoints(client):
    response = post(client, '/admin/config', {'daily_fine_rate': 25, 'max_renewals': 1})
    assert response.status_code == 200

    config = client.get('/admin/config').get_json()['config']
    assert config['daily_fine_rate'] == 25.0
    assert config['max_renewals'] == 1
    assert config['loan_period_default'] == 14

    assert post(client, '/admin/config', {'color': 'blue'}).status_code == 400
    assert post(client, '/admin/config', {'max_renewals': -1}).status_code == 400


def test_audit_trail_records_actor(client, seeded, audit_events):
    loan = checkout(client, seeded).get_json()['loan']

    events = client.get(f'/admin/audit?entity_type=loan&entity_id={loan["id"]}').get_json()['events']
    assert len(events) == 1
    assert events[0]['actorId'] == 'librarian-1'
    assert events[0]['delivered_at'] is None

    delivered = post(client, '/admin/audit/dispatch').get_json()['delivered']
    assert delivered == len(audit_events)
    assert any(e['entityId'] == loan['id'] for e in audit_events)

    assert client.get('/admin/audit').status_code == 400


def test_run_sweeps_endpoint(client, seeded, audit_events):
    response = post(client, '/admin/sweeps/run')
    results = response.get_json()['results']

    assert results['reservations_expired'] == 0
    assert results['loans_marked_overdue'] == 0
    assert results['audit_events_dispatched'] == len(audit_events) > 0


def test_unknown_route_returns_json(client):
    response = client.get('/api/nowhere')
    assert response.status_code == 404
    assert response.get_json()['success'] is False
