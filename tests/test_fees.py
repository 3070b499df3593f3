from unittest.mock import MagicMock, patch

import pytest

from educafric.models import FeeAssignment, FeePayment


@pytest.fixture
def students(make_student):
    return [make_student(first_name=name) for name in ('Emma', 'Kevin', 'Grace')]


@pytest.fixture
def structure(client, director, classroom, auth_headers):
    response = client.post('/api/fees/structures', headers=auth_headers(director), json={
        'name': 'Frais de scolarité', 'fee_type': 'tuition', 'amount': 75000, 'class_id': classroom.id,
        'academic_year': '2024-2025', 'max_installments': 2,
    })
    assert response.status_code == 201
    return response.get_json()['structure']


def assign(client, director, structure, auth_headers, **payload):
    payload.setdefault('structure_id', structure['id'])
    return client.post('/api/fees/assign', headers=auth_headers(director), json=payload)


def pay(client, director, assignment, amount, auth_headers, method='cash'):
    return client.post('/api/fees/payments', headers=auth_headers(director),
                       json={'assignment_id': assignment.id, 'amount': amount, 'method': method})


def test_create_structure_validation(client, director, auth_headers):
    headers = auth_headers(director)
    assert client.post('/api/fees/structures', headers=headers, json={'name': 'X', 'amount': 0}).status_code == 400
    assert client.post('/api/fees/structures', headers=headers,
                       json={'name': 'X', 'amount': 100, 'fee_type': 'sport'}).status_code == 400
    response = client.post('/api/fees/structures', headers=headers,
                           json={'name': 'X', 'amount': 100, 'max_installments': 'trois'})
    assert response.status_code == 400
    assert response.get_json()['code'] == 'VALIDATION_ERROR'
    assert client.get('/api/fees/payments', headers=headers, query_string={'student_id': 'x'}).status_code == 400
    listing = client.get('/api/fees/structures', headers=headers).get_json()
    assert listing['structures'] == []


def test_assign_by_class_is_idempotent(client, director, structure, students, auth_headers):
    body = assign(client, director, structure, auth_headers).get_json()
    assert body == {'success': True, 'created': 3, 'skipped': 0}
    body = assign(client, director, structure, auth_headers).get_json()
    assert body['created'] == 0
    assert body['skipped'] == 3


def test_installment_payments_and_receipts(client, director, structure, students, auth_headers):
    assign(client, director, structure, auth_headers, student_ids=[students[0].id])
    assignment = FeeAssignment.query.filter_by(student_id=students[0].id).one()

    response = pay(client, director, assignment, 50000, auth_headers)
    assert response.status_code == 201
    body = response.get_json()
    assert body['payment']['receipt_no'] == '0001'
    assert body['payment']['installment_number'] == 1
    assert body['balance'] == 25000

    response = pay(client, director, assignment, 30000, auth_headers)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'AMOUNT_EXCEEDS_BALANCE'

    response = pay(client, director, assignment, 25000, auth_headers, method='mtn_momo')
    assert response.get_json()['payment']['receipt_no'] == '0002'
    assert response.get_json()['balance'] == 0
    assert assignment.is_paid_in_full()


def test_installment_limit(client, director, structure, students, auth_headers):
    assign(client, director, structure, auth_headers, student_ids=[students[0].id])
    assignment = FeeAssignment.query.filter_by(student_id=students[0].id).one()
    pay(client, director, assignment, 10000, auth_headers)
    pay(client, director, assignment, 10000, auth_headers)
    response = pay(client, director, assignment, 10000, auth_headers)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INSTALLMENT_LIMIT'


def test_receipt_numbers_are_per_school(client, db, make_school, make_user, director, structure, students,
                                        auth_headers):
    assign(client, director, structure, auth_headers, student_ids=[students[0].id])
    pay(client, director, FeeAssignment.query.one(), 1000, auth_headers)
    assert FeePayment.generate_receipt_number(director.school_id) == '0002'
    assert FeePayment.generate_receipt_number(make_school(name='Collège Vogt').id) == '0001'


def test_stats(client, director, structure, students, auth_headers):
    assign(client, director, structure, auth_headers)
    assignments = {a.student_id: a for a in FeeAssignment.query.all()}
    pay(client, director, assignments[students[0].id], 75000, auth_headers)
    pay(client, director, assignments[students[1].id], 30000, auth_headers)

    stats = client.get('/api/fees/stats', headers=auth_headers(director)).get_json()
    assert stats['total_due'] == 225000
    assert stats['collected'] == 105000
    assert stats['outstanding'] == 120000
    assert stats['collection_rate'] == 46.67
    assert stats['students'] == {'paid': 1, 'partial': 1, 'unpaid': 1}


def test_cannot_delete_structure_with_payments(client, director, structure, students, auth_headers):
    assign(client, director, structure, auth_headers, student_ids=[students[0].id])
    pay(client, director, FeeAssignment.query.one(), 1000, auth_headers)
    response = client.delete(f"/api/fees/structures/{structure['id']}", headers=auth_headers(director))
    assert response.status_code == 409
    assert response.get_json()['code'] == 'HAS_PAYMENTS'


def test_delete_structure_without_payments(client, director, structure, students, auth_headers):
    assign(client, director, structure, auth_headers)
    response = client.delete(f"/api/fees/structures/{structure['id']}", headers=auth_headers(director))
    assert response.status_code == 200
    assert FeeAssignment.query.count() == 0


def test_reminders_reach_parents_with_a_balance(client, director, structure, students, make_parent,
                                                auth_headers):
    assign(client, director, structure, auth_headers)
    assignments = {a.student_id: a for a in FeeAssignment.query.all()}
    pay(client, director, assignments[students[0].id], 75000, auth_headers)
    make_parent(students[0])
    make_parent(students[1], preferred_language='en')
    make_parent(students[2], phone=None)

    ok = MagicMock(content=b'{}')
    ok.json.return_value = {'message_uuid': 'uuid-1'}
    with patch('educafric.messaging.requests.post', return_value=ok) as post:
        response = client.post('/api/fees/reminders', headers=auth_headers(director), json={})

    body = response.get_json()
    assert body['success'] is True
    assert body['sent_count'] == 1
    assert post.call_count == 1
    text = post.call_args.kwargs['json']['text']
    assert text.startswith('Dear Parent, Kevin')
    assert '75 000 FCFA' in text


def test_reminders_with_nothing_to_send(client, director, structure, auth_headers):
    body = client.post('/api/fees/reminders', headers=auth_headers(director), json={}).get_json()
    assert body['success'] is False


def test_reminder_failures_are_reported_per_recipient(client, director, structure, students, make_parent,
                                                      auth_headers):
    import requests

    assign(client, director, structure, auth_headers, student_ids=[students[0].id])
    make_parent(students[0])
    with patch('educafric.messaging.requests.post', side_effect=requests.ConnectionError('down')):
        body = client.post('/api/fees/reminders', headers=auth_headers(director), json={}).get_json()
    assert body['success'] is True
    assert body['failed_count'] == 1
    assert body['results'][0]['success'] is False


def test_parent_views_children_fees_and_receipts(client, director, structure, students, make_parent,
                                                 auth_headers):
    assign(client, director, structure, auth_headers)
    assignments = {a.student_id: a for a in FeeAssignment.query.all()}
    payment_id = pay(client, director, assignments[students[0].id], 20000, auth_headers).get_json()['payment']['id']
    other_payment_id = pay(client, director, assignments[students[1].id], 5000,
                           auth_headers).get_json()['payment']['id']
    parent = make_parent(students[0])

    body = client.get('/api/fees/my', headers=auth_headers(parent)).get_json()
    assert len(body['students']) == 1
    assert body['students'][0]['balance'] == 55000

    receipt = client.get(f'/api/fees/receipts/{payment_id}', headers=auth_headers(parent))
    assert receipt.status_code == 200
    assert receipt.get_json()['class_name'] == '6ème A'
    assert client.get(f'/api/fees/receipts/{other_payment_id}', headers=auth_headers(parent)).status_code == 403


def test_fees_are_school_scoped(client, make_school, make_user, structure, students, auth_headers):
    from educafric.models import ROLE_DIRECTOR
    other_director = make_user(ROLE_DIRECTOR, make_school(name='Collège Vogt'))
    response = client.post('/api/fees/assign', headers=auth_headers(other_director),
                           json={'structure_id': structure['id']})
    assert response.status_code == 403
    assert client.get('/api/fees/structures', headers=auth_headers(other_director)).get_json()['structures'] == []
