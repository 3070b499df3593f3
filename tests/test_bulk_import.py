import io
from datetime import datetime

import pytest
from openpyxl import Workbook, load_workbook

from educafric.bulk_import import normalize_rows, read_spreadsheet
from educafric.errors import ValidationError
from educafric.models import ROLE_STUDENT, ROLE_TEACHER, Classroom, User

TEACHER_HEADERS = ['Nom complet', 'Email', 'Téléphone', 'Matières', 'Classes', 'Expérience', 'Diplôme',
                   'Département']
STUDENT_HEADERS = ['Nom complet', 'Email', 'Téléphone', 'Classe', 'Date de naissance', 'Adresse',
                   'Contact parent 1', 'Contact parent 2', 'Contact urgence']


def xlsx_bytes(headers, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(headers)
    for row in rows:
        ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def upload(client, headers, content, filename, user_type):
    return client.post('/api/bulk/validate', headers=headers, content_type='multipart/form-data',
                       data={'file': (io.BytesIO(content), filename), 'userType': user_type})


def test_template_download(client, director, auth_headers):
    response = client.get('/api/bulk/template/teachers', headers=auth_headers(director))
    assert response.status_code == 200
    ws = load_workbook(io.BytesIO(response.data)).active
    assert [cell.value for cell in ws[1]] == TEACHER_HEADERS
    assert ws.max_row == 3


def test_template_unknown_type(client, director, auth_headers):
    assert client.get('/api/bulk/template/parents', headers=auth_headers(director)).status_code == 400


def test_validate_teachers_xlsx(client, director, make_user, school, auth_headers):
    make_user(ROLE_TEACHER, school, email='deja.inscrit@lycee-yaounde.cm', phone='+237699111222')
    content = xlsx_bytes(TEACHER_HEADERS, [
        ['Jean Paul Mbarga', 'jean.mbarga@exemple.com', '+237650123456', 'Mathématiques, Physique',
         '6ème A, 5ème B', 5, 'Licence en Mathématiques', 'Sciences'],
        ['J', 'pas-un-email', '123', '', '6ème A', 2, 'Licence', ''],
        ['Marie Fotso', 'DEJA.INSCRIT@lycee-yaounde.cm', '+237651234567', 'Français', '4ème C', 8, 'Master', ''],
        ['Alain Biya', 'alain.biya@exemple.com', '+237699111222', 'Anglais', '3ème A', None, 'Licence', ''],
        ['Jean Mbarga Bis', 'JEAN.MBARGA@exemple.com', '+237652000000', 'SVT', '2nde C', 1, 'BTS', ''],
    ])
    response = upload(client, auth_headers(director), content, 'enseignants.xlsx', 'teachers')
    assert response.status_code == 200
    body = response.get_json()

    assert body['totalCount'] == 5
    assert body['validCount'] == 1
    assert body['errorCount'] == 4
    assert body['duplicateCount'] == 3

    valid = body['validData'][0]
    assert valid['subjects'] == ['Mathématiques', 'Physique']
    assert valid['classes'] == ['6ème A', '5ème B']
    assert valid['experience'] == 5
    assert valid['rowNumber'] == 2

    assert body['errors'][0].startswith('Ligne 3: ')
    assert 'name: Le nom doit contenir au moins 2 caractères' in body['errors'][0]
    assert 'subjects: Au moins une matière est requise' in body['errors'][0]
    assert body['errors'][1] == 'Ligne 4: Email "DEJA.INSCRIT@lycee-yaounde.cm" existe déjà'
    assert body['errors'][2] == 'Ligne 5: Téléphone "+237699111222" existe déjà'
    assert body['errors'][3].startswith('Ligne 6: Email')


def test_validate_students_csv(client, director, auth_headers):
    content = '\n'.join([
        'name,email,phone,class,birthDate,address,parentContact1,parentContact2,emergencyContact',
        'Emma Talla,emma.talla@exemple.com,+237652123456,6ème A,15/03/2012,Bastos,Pierre Talla,,Grand-mère',
        'Kevin Nkomo,kevin.nkomo@exemple.com,+237653234567,5ème B,2011-08-22,,Jo,,Oncle Paul',
        'Grace Fouda,grace.fouda@exemple.com,+237654345678,,22/08/2011,,Papa Fouda,,Tante',
    ]).encode('utf-8')
    body = upload(client, auth_headers(director), content, 'eleves.csv', 'students').get_json()
    assert body['validCount'] == 1
    assert body['validData'][0]['class'] == '6ème A'
    errors = ' | '.join(body['errors'])
    assert 'Ligne 3: parentContact1: Contact parent 1 requis' in errors
    assert 'Ligne 4: class: La classe est requise' in errors


def test_validate_rejects_unsupported_format(client, director, auth_headers):
    response = upload(client, auth_headers(director), b'hello', 'eleves.pdf', 'students')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'UNSUPPORTED_FORMAT'


def test_validate_rejects_empty_file(client, director, auth_headers):
    response = upload(client, auth_headers(director), xlsx_bytes(STUDENT_HEADERS, []), 'eleves.xlsx', 'students')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'EMPTY_FILE'


def test_read_spreadsheet_unreadable_file():
    with pytest.raises(ValidationError) as exc:
        read_spreadsheet('eleves.xlsx', b'not a zip')
    assert exc.value.code == 'UNREADABLE_FILE'


def test_normalize_rows_converts_excel_dates(app):
    content = xlsx_bytes(STUDENT_HEADERS, [['Emma Talla', 'e@exemple.com', '+237652123456', '6ème A',
                                            datetime(2012, 3, 15), '', 'Pierre', '', 'Mamie']])
    rows = normalize_rows(read_spreadsheet('eleves.xlsx', content), 'students')
    assert rows[0][0] == 2
    assert rows[0][1]['birthDate'] == '15/03/2012'


def test_import_creates_users_and_classrooms(client, app, school, director, auth_headers):
    data = [
        {'name': 'Emma Talla', 'email': 'Emma.Talla@exemple.com', 'phone': '+237652123456', 'class': '6ème A',
         'birthDate': '15/03/2012', 'parentContact1': 'Pierre Talla', 'emergencyContact': 'Grand-mère'},
        {'name': 'Kevin Nkomo', 'email': 'kevin.nkomo@exemple.com', 'phone': '+237653234567', 'class': '6ème A',
         'birthDate': '22/08/2011', 'parentContact1': 'Joseph Nkomo', 'emergencyContact': 'Oncle Paul'},
        {'name': 'Sans Email', 'phone': '+237654345678', 'class': '5ème B'},
    ]
    response = client.post('/api/bulk/import', headers=auth_headers(director),
                           json={'userType': 'students', 'data': data})
    body = response.get_json()
    assert response.status_code == 200
    assert body['successCount'] == 2
    assert body['errorCount'] == 1
    assert 'Sans Email' in body['errors'][0]

    emma = User.query.filter_by(email='emma.talla@exemple.com').one()
    assert emma.role == ROLE_STUDENT
    assert emma.school_id == school.id
    assert emma.password_change_required is True
    assert emma.check_password(app.config['DEFAULT_IMPORT_PASSWORD'])
    assert emma.classroom.name == '6ème A'
    assert emma.extra['emergencyContact'] == 'Grand-mère'
    assert Classroom.query.filter_by(school_id=school.id).count() == 1


def test_import_teachers_skips_existing_emails(client, school, director, auth_headers):
    item = {'name': 'Jean Paul Mbarga', 'email': 'jean.mbarga@exemple.com', 'phone': '+237650123456',
            'subjects': ['Mathématiques'], 'classes': ['6ème A', '5ème B'], 'experience': 5,
            'qualification': 'Licence', 'department': 'Sciences'}
    response = client.post('/api/bulk/import', headers=auth_headers(director),
                           json={'userType': 'teachers', 'data': [item, dict(item, phone='+237650999999')]})
    body = response.get_json()
    assert body['successCount'] == 1
    assert body['errorCount'] == 1

    teacher = User.query.filter_by(email='jean.mbarga@exemple.com').one()
    assert teacher.role == ROLE_TEACHER
    assert teacher.subjects == ['Mathématiques']
    assert teacher.extra['experience'] == "5 ans d'expérience"
    assert {c.name for c in Classroom.query.filter_by(school_id=school.id)} == {'6ème A', '5ème B'}


def test_import_isolates_rows_with_blank_names(client, school, director, auth_headers):
    valid = {'name': 'Grace Fouda', 'email': 'grace.fouda@exemple.com', 'phone': '+237655112233', 'class': '5ème B',
             'birthDate': '02/02/2011', 'parentContact1': 'Mme Fouda', 'emergencyContact': 'Tante Rose'}
    data = [dict(valid, name='', email='vide@exemple.com'), dict(valid, name='   ', email='blanc@exemple.com'),
            'pas un objet', valid]
    response = client.post('/api/bulk/import', headers=auth_headers(director),
                           json={'userType': 'students', 'data': data})
    assert response.status_code == 200
    body = response.get_json()
    assert body['successCount'] == 1
    assert body['errorCount'] == 3
    assert 'Le nom est requis' in body['errors'][0]
    assert User.query.filter_by(email='grace.fouda@exemple.com').one().first_name == 'Grace'
    assert User.query.filter_by(email='vide@exemple.com').first() is None


def test_site_admin_must_name_target_school(client, site_admin, auth_headers):
    response = client.post('/api/bulk/import', headers=auth_headers(site_admin),
                           json={'userType': 'students', 'data': [{'name': 'X'}]})
    assert response.status_code == 400


def test_teachers_cannot_import(client, teacher, auth_headers):
    response = client.post('/api/bulk/import', headers=auth_headers(teacher), json={'userType': 'students'})
    assert response.status_code == 403
