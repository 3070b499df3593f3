import pytest

from educafric.models import ROLE_DIRECTOR, School, User
from educafric.sandbox import SANDBOX_SCHOOL_NAME, is_sandbox_user, seed_sandbox


@pytest.fixture
def sandbox(app):
    return seed_sandbox()


def demo(email):
    return User.query.filter_by(email=email).one()


def test_status_before_and_after_seeding(client):
    body = client.get('/api/sandbox/status').get_json()
    assert body['sandboxActive'] is False
    assert body['schoolName'] == SANDBOX_SCHOOL_NAME
    assert len(body['accounts']) == 9

    seed_sandbox()
    assert client.get('/api/sandbox/status').get_json()['sandboxActive'] is True


def test_seeding_is_idempotent(sandbox):
    assert seed_sandbox().id == sandbox.id
    assert School.query.filter_by(is_sandbox=True).count() == 1
    assert User.query.filter_by(school_id=sandbox.id).count() == 9


def test_cli_seeds_sandbox(app):
    result = app.test_cli_runner().invoke(args=['seed-sandbox'])
    assert 'Sandbox school ready' in result.output
    assert School.query.filter_by(name=SANDBOX_SCHOOL_NAME).count() == 1


@pytest.mark.parametrize('email, expected', [
    ('sandbox.parent@test.educafric.com', True),
    ('demo@lycee-yaounde.cm', True),
    ('jean.test@gmail.com', True),
    ('qa@educafric.test', True),
    ('directeur@lycee-yaounde.cm', False),
    (None, False),
])
def test_is_sandbox_user(email, expected):
    assert is_sandbox_user(User(email=email)) is expected


def test_demo_listings(client, sandbox, auth_headers):
    headers = auth_headers(demo('sandbox.teacher@test.educafric.com'))

    students = client.get('/api/sandbox/students', headers=headers).get_json()['students']
    assert [s['matricule'] for s in students] == ['SBX-001', 'SBX-002', 'SBX-003', 'SBX-004']

    parents = client.get('/api/sandbox/parents', headers=headers).get_json()['parents']
    assert {p['last_name']: len(p['children']) for p in parents} == {'Kamga': 1, 'Nkomo': 2}

    classes = client.get('/api/sandbox/classes', headers=headers).get_json()['classes']
    assert {c['name']: c['studentCount'] for c in classes} == {'5ème B': 2, '6ème A': 2}

    teachers = client.get('/api/sandbox/teachers', headers=headers).get_json()['teachers']
    assert len(teachers) == 2

    grades = client.get('/api/sandbox/grades', headers=headers, query_string={'term': 'T1'}).get_json()['grades']
    assert len(grades) == 16
    assert client.get('/api/sandbox/grades', headers=headers,
                      query_string={'term': 'T3'}).get_json()['grades'] == []


def test_regular_accounts_are_refused(client, sandbox, director, auth_headers):
    response = client.get('/api/sandbox/students', headers=auth_headers(director))
    assert response.status_code == 403
    assert response.get_json()['code'] == 'SANDBOX_ONLY'


def test_unseeded_sandbox(client, make_user, school, auth_headers):
    user = make_user(ROLE_DIRECTOR, school, email='demo.directeur@lycee-yaounde.cm')
    response = client.get('/api/sandbox/students', headers=auth_headers(user))
    assert response.status_code == 400
    assert response.get_json()['code'] == 'SANDBOX_NOT_SEEDED'


def test_simulated_notification(client, sandbox, auth_headers):
    headers = auth_headers(demo('sandbox.director@test.educafric.com'))
    body = client.post('/api/sandbox/test-notification', headers=headers, json={'channel': 'whatsapp'}).get_json()
    assert body['simulated'] is True
    assert body['channel'] == 'whatsapp'
    assert body['to'] == '***0001'
    assert body['messageId'].startswith('sandbox-')

    response = client.post('/api/sandbox/test-notification', headers=headers, json={'channel': 'pigeon'})
    assert response.status_code == 400


def test_sandbox_unlocks_premium_features(client, sandbox, auth_headers):
    director = demo('sandbox.director@test.educafric.com')
    buses = client.get('/api/transport/buses', headers=auth_headers(director)).get_json()['buses']
    assert [bus['plate_number'] for bus in buses] == ['CE-123-AB']

    parent = demo('sandbox.parent@test.educafric.com')
    children = client.get('/api/transport/my-children', headers=auth_headers(parent)).get_json()['children']
    assert children[0]['enrolled'] is True
    assert children[0]['stop']['name'] == 'Bastos'
