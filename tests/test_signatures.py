import re

import pytest

from educafric.models import (BULLETIN_APPROVED, BULLETIN_SIGNED, ROLE_DIRECTOR, Bulletin, BulletinVerification,
                              DigitalSignature)

SIGNATURE_IMAGE = 'data:image/png;base64,iVBORw0KGgo='


@pytest.fixture
def approved_bulletins(db, school, classroom, make_student):
    bulletins = []
    for average, rank in ((15.25, 1), (11.5, 2)):
        student = make_student(matricule=f'LBY-{rank:03d}')
        bulletin = Bulletin(school_id=school.id, student_id=student.id, class_id=classroom.id, term='T1',
                            academic_year='2024-2025', status=BULLETIN_APPROVED, term_average=average,
                            class_rank=rank, class_size=2)
        db.session.add(bulletin)
        bulletins.append(bulletin)
    db.session.commit()
    return bulletins


@pytest.fixture
def director_signature(client, director, auth_headers):
    response = client.post('/api/signatures', headers=auth_headers(director),
                           json={'signatureData': SIGNATURE_IMAGE, 'signatureFor': 'director'})
    assert response.status_code == 200
    return response.get_json()['signatureId']


def test_save_and_fetch_principal_signature(client, director, director_signature, auth_headers):
    body = client.get('/api/signatures/principal', headers=auth_headers(director)).get_json()
    assert body['hasSignature'] is True
    assert body['signature']['signatureData'] == SIGNATURE_IMAGE

    # Saving again updates the active signature in place
    response = client.post('/api/signatures', headers=auth_headers(director),
                           json={'signatureData': 'data:image/png;base64,AAAA'})
    assert response.get_json()['signatureId'] == director_signature


def test_signature_must_be_an_image(client, director, auth_headers):
    response = client.post('/api/signatures', headers=auth_headers(director), json={'signatureData': 'hello'})
    assert response.status_code == 400


def test_teacher_cannot_register_director_signature(client, teacher, auth_headers):
    response = client.post('/api/signatures', headers=auth_headers(teacher),
                           json={'signatureData': SIGNATURE_IMAGE, 'signatureFor': 'director'})
    assert response.status_code == 403


def test_public_school_signature(client, school, director, director_signature):
    body = client.get(f'/api/signatures/school/{school.id}').get_json()
    assert body['hasSignature'] is True
    assert body['signatoryName'] == director.full_name


def test_delete_principal_signature(client, director, director_signature, auth_headers):
    assert client.delete('/api/signatures/principal', headers=auth_headers(director)).status_code == 200
    assert client.get('/api/signatures/principal', headers=auth_headers(director)).get_json()['hasSignature'] is False
    assert client.delete('/api/signatures/principal', headers=auth_headers(director)).status_code == 404


def test_sign_bulletin(client, director, director_signature, approved_bulletins, auth_headers):
    bulletin = approved_bulletins[0]
    response = client.post(f'/api/bulletins/{bulletin.id}/sign', headers=auth_headers(director))
    assert response.status_code == 200
    body = response.get_json()
    assert len(body['verificationCode']) == 32
    assert re.fullmatch(r'[A-Z0-9]{8}', body['shortCode'])
    assert bulletin.status == BULLETIN_SIGNED
    assert bulletin.document_hash == body['documentHash']

    signature = DigitalSignature.query.filter_by(document_id=bulletin.id).one()
    assert signature.signatory_role == ROLE_DIRECTOR
    assert len(signature.signature_hash) == 64

    verification = BulletinVerification.query.filter_by(bulletin_id=bulletin.id).one()
    assert verification.verification_code == body['verificationCode']
    assert verification.general_average == 15.25
    assert verification.student_matricule == 'LBY-001'
    assert verification.expires_at is not None

    status = client.get(f'/api/bulletins/{bulletin.id}/signature-status', headers=auth_headers(director)).get_json()
    assert status['status'] == 'signed'
    assert status['requiredSignatures'] == [ROLE_DIRECTOR]
    assert status['completedSignatures'][0]['verificationCode'] == body['verificationCode']


def test_signing_twice_is_a_conflict(client, director, director_signature, approved_bulletins, auth_headers):
    bulletin = approved_bulletins[0]
    client.post(f'/api/bulletins/{bulletin.id}/sign', headers=auth_headers(director))
    response = client.post(f'/api/bulletins/{bulletin.id}/sign', headers=auth_headers(director))
    assert response.status_code == 409
    assert response.get_json()['code'] == 'ALREADY_SIGNED'


def test_sign_requires_approval_and_drawn_signature(client, db, director, approved_bulletins, auth_headers):
    bulletin = approved_bulletins[0]
    response = client.post(f'/api/bulletins/{bulletin.id}/sign', headers=auth_headers(director))
    assert response.status_code == 400
    assert response.get_json()['code'] == 'SIGNATURE_REQUIRED'

    bulletin.status = 'submitted'
    db.session.commit()
    response = client.post(f'/api/bulletins/{bulletin.id}/sign', headers=auth_headers(director))
    assert response.status_code == 409
    assert response.get_json()['code'] == 'NOT_APPROVED'


def test_teacher_cannot_sign(client, teacher, approved_bulletins, auth_headers):
    response = client.post(f'/api/bulletins/{approved_bulletins[0].id}/sign', headers=auth_headers(teacher))
    assert response.status_code == 403


def test_bulk_sign_reports_per_bulletin(client, director, director_signature, approved_bulletins, auth_headers):
    ids = [b.id for b in approved_bulletins] + [9999]
    client.post(f'/api/bulletins/{ids[0]}/sign', headers=auth_headers(director))

    response = client.post('/api/bulletins/bulk-sign', headers=auth_headers(director), json={'bulletin_ids': ids})
    body = response.get_json()
    assert response.status_code == 200
    assert body['signed'] == 1
    assert body['failed'] == 2
    results = {r['bulletinId']: r for r in body['results']}
    assert results[ids[0]]['code'] == 'ALREADY_SIGNED'
    assert results[ids[1]]['success'] is True
    assert results[9999]['code'] == 'NOT_FOUND'


def test_signature_status_for_unsigned_bulletin(client, director, approved_bulletins, auth_headers):
    body = client.get(f'/api/bulletins/{approved_bulletins[0].id}/signature-status',
                      headers=auth_headers(director)).get_json()
    assert body == {'status': 'draft', 'signed': False, 'signedAt': None, 'requiredSignatures': [ROLE_DIRECTOR],
                    'completedSignatures': []}


def test_public_signature_verification(client, director, director_signature, approved_bulletins, auth_headers):
    code = client.post(f'/api/bulletins/{approved_bulletins[0].id}/sign',
                       headers=auth_headers(director)).get_json()['verificationCode']
    body = client.get(f'/api/signatures/verify/{code}').get_json()
    assert body['valid'] is True
    assert body['signatoryName'] == director.full_name
    assert body['schoolName'] == 'Lycée Bilingue de Yaoundé'
    assert client.get('/api/signatures/verify/unknown').status_code == 404
