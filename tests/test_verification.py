from datetime import datetime, timedelta

import pytest

from educafric.models import BULLETIN_APPROVED, Bulletin, BulletinVerification, BulletinVerificationLog, Signature
from educafric.verification import RateLimiter


@pytest.fixture
def signed(client, db, school, classroom, director, make_student, auth_headers):
    student = make_student(first_name='Emma', last_name='Talla', matricule='LBY-042')
    bulletin = Bulletin(school_id=school.id, student_id=student.id, class_id=classroom.id, term='T2',
                        academic_year='2024-2025', status=BULLETIN_APPROVED, term_average=13.75, class_rank=4,
                        class_size=38, subject_details={'MATH': {'average': 14.2}})
    db.session.add(bulletin)
    db.session.add(Signature(user_id=director.id, user_role='director', signature_data='data:image/png;base64,AA'))
    db.session.commit()
    body = client.post(f'/api/bulletins/{bulletin.id}/sign', headers=auth_headers(director)).get_json()
    return body


def test_verify_by_short_code(client, signed):
    response = client.get('/api/bulletins/verify', query_string={'code': signed['shortCode'].lower()})
    assert response.status_code == 200
    body = response.get_json()
    assert body['verificationMethod'] == 'manual_entry'
    assert body['bulletin']['studentName'] == 'Emma Talla'
    assert body['bulletin']['generalAverage'] == 13.75
    assert body['bulletin']['totalStudents'] == 38
    assert body['bulletin']['verificationCount'] == 1
    assert 'subjectDetails' not in body['bulletin']
    assert body['messageFr'].startswith('Bulletin authentique')


def test_verify_by_full_code_with_post(client, signed):
    response = client.post('/api/bulletins/verify', json={'code': signed['verificationCode'], 'language': 'en'})
    assert response.status_code == 200
    assert response.get_json()['verificationMethod'] == 'qr_code'
    log = BulletinVerificationLog.query.one()
    assert log.access_result == 'success'
    assert log.language == 'en'


def test_unknown_code(client):
    response = client.get('/api/bulletins/verify?code=ZZZZ9999')
    assert response.status_code == 404
    assert response.get_json()['code'] == 'INVALID_CODE'
    assert BulletinVerificationLog.query.one().access_result == 'invalid_code'


def test_code_is_required(client):
    assert client.get('/api/bulletins/verify').status_code == 400


def test_expired_code(client, db, signed):
    verification = BulletinVerification.query.one()
    verification.expires_at = datetime.utcnow() - timedelta(days=1)
    db.session.commit()
    response = client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']})
    assert response.status_code == 410
    assert response.get_json()['code'] == 'EXPIRED'


def test_public_verification_can_be_disabled(client, school, director, signed, auth_headers):
    response = client.put(f'/api/bulletins/verification-settings/{school.id}', headers=auth_headers(director),
                          json={'enablePublicVerification': False, 'showDetailedGrades': True})
    assert response.status_code == 200
    assert response.get_json()['settings']['enablePublicVerification'] is False

    response = client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']})
    assert response.status_code == 403
    assert response.get_json()['code'] == 'ACCESS_DENIED'


def test_detailed_grades_are_optional(client, school, director, signed, auth_headers):
    client.put(f'/api/bulletins/verification-settings/{school.id}', headers=auth_headers(director),
               json={'showDetailedGrades': True})
    body = client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']}).get_json()
    assert body['bulletin']['subjectDetails'] == {'MATH': {'average': 14.2}}


def test_default_settings(client, school, director, auth_headers):
    body = client.get(f'/api/bulletins/verification-settings/{school.id}', headers=auth_headers(director)).get_json()
    assert body['settings'] == {'enablePublicVerification': True, 'showStudentPhoto': True, 'showSchoolLogo': True,
                                'showDetailedGrades': False}


def test_settings_of_another_school_are_denied(client, make_school, director, auth_headers):
    other = make_school(name='Collège de la Retraite')
    response = client.get(f'/api/bulletins/verification-settings/{other.id}', headers=auth_headers(director))
    assert response.status_code == 403


def test_rate_limit_per_ip(client, app, signed):
    app.extensions['verification_limiter'] = RateLimiter(limit=2, window_seconds=3600)
    for _ in range(2):
        assert client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']}).status_code == 200
    response = client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']})
    assert response.status_code == 429
    assert int(response.headers['Retry-After']) > 0

    other_ip = client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']},
                          environ_base={'REMOTE_ADDR': '10.0.0.9'})
    assert other_ip.status_code == 200


def test_rate_limiter_window_resets():
    limiter = RateLimiter(limit=1, window_seconds=60)
    assert limiter.hit('1.2.3.4', now=1000)
    assert not limiter.hit('1.2.3.4', now=1030)
    assert limiter.retry_after('1.2.3.4', now=1030) == 30
    assert limiter.hit('1.2.3.4', now=1060)


def test_rate_limit_ignores_forwarded_for_header(client, app, signed):
    app.extensions['verification_limiter'] = RateLimiter(limit=2, window_seconds=3600)
    statuses = [client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']},
                           headers={'X-Forwarded-For': f'198.51.100.{n}'}).status_code for n in range(5)]
    assert statuses == [200, 200, 429, 429, 429]


def test_rate_limiter_forgets_expired_windows():
    limiter = RateLimiter(limit=5, window_seconds=60)
    limiter.hit('10.0.0.1', now=1000)
    limiter.hit('10.0.0.2', now=1010)
    assert len(limiter) == 2
    limiter.hit('10.0.0.3', now=1070)
    assert len(limiter) == 1


def test_verification_stats(client, school, director, signed, auth_headers):
    client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']})
    client.get('/api/bulletins/verify', query_string={'code': signed['shortCode']})
    client.get('/api/bulletins/verify', query_string={'code': 'NOPE1234'})

    stats = client.get(f'/api/bulletins/verification-stats/{school.id}',
                       headers=auth_headers(director)).get_json()['stats']
    assert stats['issuedVerifications'] == 1
    assert stats['byResult']['success'] == 2
    # Unknown codes cannot be attributed to a school
    assert stats['byResult']['invalid_code'] == 0
    assert stats['totalAttempts'] == 2
