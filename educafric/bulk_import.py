"""
Bulk import of teachers and students from Excel or CSV spreadsheets.

The flow is two-step: /validate parses and checks an uploaded file and
returns the rows that can be imported, then /import creates those users.
"""
import io
import logging
import os
import re
from datetime import datetime

import pandas as pd
from flask import Blueprint, current_app, jsonify, request, send_file
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from sqlalchemy.exc import IntegrityError
from werkzeug.datastructures import MultiDict
from wtforms import Form, IntegerField, StringField
from wtforms.validators import (DataRequired, InputRequired, Length, NumberRange, Optional, Regexp,
                                ValidationError as FieldError)

from .auth import current_user, roles_required
from .errors import ValidationError
from .extensions import db
from .models import ROLE_COMMERCIAL, ROLE_DIRECTOR, ROLE_SITE_ADMIN, ROLE_STUDENT, ROLE_TEACHER, Classroom, User
from .subscriptions import feature_required

logger = logging.getLogger(__name__)

bulk_bp = Blueprint('bulk_import', __name__, url_prefix='/api/bulk')

USER_TYPES = ('teachers', 'students')
ALLOWED_EXTENSIONS = {'.xlsx': 'openpyxl', '.xls': 'xlrd', '.csv': None}
XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

EMAIL_PATTERN = r'^[^@\s]+@[^@\s]+\.[^@\s]+$'
BIRTH_DATE_PATTERN = r'^\d{2}/\d{2}/\d{4}$'

COLUMN_ALIASES = {
    'teachers': {
        'name': ['Nom complet', 'nom', 'Name'],
        'email': ['Email', 'email'],
        'phone': ['Téléphone', 'telephone', 'Phone'],
        'subjects': ['Matières', 'matieres', 'Subjects'],
        'classes': ['Classes', 'classes'],
        'experience': ['Expérience', 'experience', 'Experience'],
        'qualification': ['Diplôme', 'qualification', 'Qualification'],
        'department': ['Département', 'department', 'Department'],
    },
    'students': {
        'name': ['Nom complet', 'nom', 'Name'],
        'email': ['Email', 'email'],
        'phone': ['Téléphone', 'telephone', 'Phone'],
        'class': ['Classe', 'class', 'Class'],
        'birthDate': ['Date de naissance', 'birthDate', 'Birth Date'],
        'address': ['Adresse', 'address', 'Address'],
        'parentContact1': ['Contact parent 1', 'parentContact1'],
        'parentContact2': ['Contact parent 2', 'parentContact2'],
        'emergencyContact': ['Contact urgence', 'emergencyContact'],
    },
}

TEMPLATES = {
    'teachers': (
        ['Nom complet', 'Email', 'Téléphone', 'Matières', 'Classes', 'Expérience', 'Diplôme', 'Département'],
        [
            ['Jean Paul Mbarga', 'jean.mbarga@exemple.com', '+237650123456', 'Mathématiques, Physique',
             '6ème A, 5ème B', '5', 'Licence en Mathématiques', 'Sciences'],
            ['Marie Claire Fotso', 'marie.fotso@exemple.com', '+237651234567', 'Français, Littérature',
             '4ème C, 3ème A', '8', 'Master en Lettres Modernes', 'Lettres'],
        ],
    ),
    'students': (
        ['Nom complet', 'Email', 'Téléphone', 'Classe', 'Date de naissance', 'Adresse', 'Contact parent 1',
         'Contact parent 2', 'Contact urgence'],
        [
            ['Emma Talla', 'emma.talla@exemple.com', '+237652123456', '6ème A', '15/03/2012',
             'Quartier Bastos, Yaoundé', 'Pierre Talla - +237653234567', 'Marie Talla - +237654345678',
             'Grand-mère - +237655456789'],
            ['Kevin Nkomo', 'kevin.nkomo@exemple.com', '+237653234567', '5ème B', '22/08/2011',
             'Bonapriso, Douala', 'Joseph Nkomo - +237654345678', '', 'Oncle Paul - +237655456789'],
        ],
    ),
}


def split_list(value):
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value or '').split(',') if item.strip()]


def at_least_one(message):
    def _check(form, field):
        if not split_list(field.data):
            raise FieldError(message)
    return _check


class UserRowForm(Form):
    name = StringField('name', [DataRequired('Le nom est requis'),
                                Length(min=2, message='Le nom doit contenir au moins 2 caractères')])
    email = StringField('email', [InputRequired('Email requis'), Regexp(EMAIL_PATTERN, message='Format email invalide')])
    phone = StringField('phone', [InputRequired('Téléphone requis'),
                                  Length(min=8, message='Le numéro de téléphone doit contenir au moins 8 chiffres')])


class TeacherRowForm(UserRowForm):
    subjects = StringField('subjects', [at_least_one('Au moins une matière est requise')])
    classes = StringField('classes', [at_least_one('Au moins une classe est requise')])
    experience = IntegerField('experience', [NumberRange(min=0, message="L'expérience ne peut pas être négative")],
                              default=0)
    qualification = StringField('qualification', [InputRequired('La qualification est requise'),
                                                  Length(min=2, message='La qualification est requise')])
    department = StringField('department', [Optional()])


class StudentRowForm(UserRowForm):
    class_ = StringField('class', [InputRequired('La classe est requise')])
    birthDate = StringField('birthDate', [InputRequired('Date de naissance requise'),
                                          Regexp(BIRTH_DATE_PATTERN, message='Format de date invalide (JJ/MM/AAAA)')])
    address = StringField('address', [Optional()])
    parentContact1 = StringField('parentContact1', [InputRequired('Contact parent 1 requis'),
                                                    Length(min=5, message='Contact parent 1 requis')])
    parentContact2 = StringField('parentContact2', [Optional()])
    emergencyContact = StringField('emergencyContact', [InputRequired("Contact d'urgence requis"),
                                                        Length(min=5, message="Contact d'urgence requis")])


ROW_FORMS = {'teachers': TeacherRowForm, 'students': StudentRowForm}


def read_spreadsheet(filename, content):
    """Parse the first sheet of an uploaded file into a DataFrame of strings"""
    extension = os.path.splitext(filename or '')[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ValidationError('Format de fichier non supporté. Utilisez Excel (.xlsx, .xls) ou CSV (.csv)',
                              code='UNSUPPORTED_FORMAT')
    try:
        if extension == '.csv':
            df = pd.read_csv(io.BytesIO(content), dtype=str, skipinitialspace=True)
        else:
            df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=str, engine=ALLOWED_EXTENSIONS[extension])
    except Exception as e:
        logger.warning("[BULK_IMPORT] Could not parse %s: %s", filename, e)
        raise ValidationError('Impossible de lire le fichier. Vérifiez le format et réessayez.',
                              code='UNREADABLE_FILE')

    df = df.dropna(how='all')
    df.columns = [str(column).strip() for column in df.columns]
    return df.fillna('')


def _normalize_birth_date(value):
    # Date cells come back from Excel as ISO timestamps
    match = re.match(r'^(\d{4})-(\d{2})-(\d{2})', value)
    if match:
        year, month, day = match.groups()
        return f'{day}/{month}/{year}'
    return value


def normalize_rows(df, user_type):
    """Map French/English column aliases onto canonical field names.

    Returns (row_number, row) pairs where row_number is the spreadsheet row.
    """
    lookup = {column.lower(): column for column in df.columns}
    aliases = COLUMN_ALIASES[user_type]
    rows = []
    for index, record in df.iterrows():
        row = {}
        for field_name, candidates in aliases.items():
            value = ''
            for candidate in candidates:
                column = lookup.get(candidate.lower())
                if column is not None and str(record[column]).strip():
                    value = str(record[column]).strip()
                    break
            row[field_name] = value
        if user_type == 'teachers':
            row['experience'] = row['experience'] or '0'
            row['department'] = row['department'] or 'Général'
        else:
            row['birthDate'] = _normalize_birth_date(row['birthDate'])
        rows.append((int(index) + 2, row))
    return rows


def _form_data(row, user_type):
    data = dict(row)
    if user_type == 'students':
        data['class_'] = data.pop('class', '')
    return MultiDict({key: value for key, value in data.items() if value != ''})


def validate_rows(rows, user_type, school_id):
    form_class = ROW_FORMS[user_type]
    existing_emails = {email.lower() for (email,) in db.session.query(User.email).filter(User.email.isnot(None))}
    existing_phones = {phone for (phone,) in db.session.query(User.phone)
                       .filter(User.school_id == school_id, User.phone.isnot(None))}

    valid_data = []
    errors = []
    duplicate_count = 0
    for row_number, row in rows:
        form = form_class(formdata=_form_data(row, user_type))
        if not form.validate():
            field_errors = ', '.join(f"{'class' if name == 'class_' else name}: {messages[0]}"
                                     for name, messages in form.errors.items())
            errors.append(f'Ligne {row_number}: {field_errors}')
            continue

        email_lower = row['email'].lower()
        if email_lower in existing_emails:
            errors.append(f'Ligne {row_number}: Email "{row["email"]}" existe déjà')
            duplicate_count += 1
            continue
        if row['phone'] in existing_phones:
            errors.append(f'Ligne {row_number}: Téléphone "{row["phone"]}" existe déjà')
            duplicate_count += 1
            continue

        existing_emails.add(email_lower)
        existing_phones.add(row['phone'])

        item = dict(row, schoolId=school_id, rowNumber=row_number)
        if user_type == 'teachers':
            item['subjects'] = split_list(row['subjects'])
            item['classes'] = split_list(row['classes'])
            item['experience'] = form.experience.data
        valid_data.append(item)

    return {
        'validData': valid_data,
        'errors': errors,
        'validCount': len(valid_data),
        'errorCount': len(errors),
        'duplicateCount': duplicate_count,
        'totalCount': len(rows),
    }


def _target_school_id(data):
    user = current_user()
    if user.role == ROLE_SITE_ADMIN:
        school_id = data.get('schoolId') or data.get('school_id')
        if not school_id:
            raise ValidationError('ID école requis')
        return int(school_id)
    return user.school_id


def _user_type(value):
    if value not in USER_TYPES:
        raise ValidationError("Type d'utilisateur invalide")
    return value


def get_or_create_classroom(school_id, name):
    classroom = Classroom.query.filter_by(school_id=school_id, name=name).first()
    if classroom is None:
        classroom = Classroom(school_id=school_id, name=name)
        db.session.add(classroom)
        db.session.flush()
    return classroom


def create_imported_user(item, user_type, school_id, password, created_by=None):
    name_parts = str(item['name']).split()
    user = User(
        school_id=school_id,
        username=item['email'].lower(),
        email=item['email'].lower(),
        phone=item['phone'],
        first_name=name_parts[0],
        last_name=' '.join(name_parts[1:]),
        password_change_required=True,
        created_by=created_by,
    )
    user.set_password(password)

    if user_type == 'teachers':
        user.role = ROLE_TEACHER
        user.subjects = split_list(item.get('subjects'))
        classes = split_list(item.get('classes'))
        for class_name in classes:
            get_or_create_classroom(school_id, class_name)
        user.extra = {
            'classes': classes,
            'experience': f"{item.get('experience', 0)} ans d'expérience",
            'qualification': item.get('qualification'),
            'department': item.get('department') or 'Général',
        }
    else:
        user.role = ROLE_STUDENT
        user.classroom = get_or_create_classroom(school_id, item['class'])
        user.date_of_birth = item.get('birthDate')
        user.address = item.get('address')
        user.extra = {
            'parentContact1': item.get('parentContact1'),
            'parentContact2': item.get('parentContact2'),
            'emergencyContact': item.get('emergencyContact'),
        }

    db.session.add(user)
    return user


@bulk_bp.route('/template/<user_type>', methods=['GET'])
@roles_required(ROLE_DIRECTOR, ROLE_COMMERCIAL)
def download_template(user_type):
    headers, samples = TEMPLATES[_user_type(user_type)]

    wb = Workbook()
    ws = wb.active
    ws.title = f'Template {user_type}'
    header_font = Font(bold=True, color='FFFFFF')
    header_fill = PatternFill(start_color='366092', end_color='366092', fill_type='solid')

    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal='center')
        ws.column_dimensions[get_column_letter(col)].width = 20
    for row in samples:
        ws.append(row)

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    filename = f"template_{user_type}_{datetime.utcnow().strftime('%Y%m%d%H%M%S')}.xlsx"
    return send_file(buffer, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=filename)


@bulk_bp.route('/validate', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('bulk_import')
def validate():
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        raise ValidationError('Aucun fichier fourni')
    user_type = _user_type(request.form.get('userType'))
    school_id = _target_school_id(request.form)

    df = read_spreadsheet(upload.filename, upload.read())
    if df.empty:
        raise ValidationError('Le fichier est vide ou ne contient pas de données valides', code='EMPTY_FILE')

    result = validate_rows(normalize_rows(df, user_type), user_type, school_id)
    logger.info("[BULK_IMPORT] Validated %s: %s valid, %s errors (school %s)", upload.filename,
                result['validCount'], result['errorCount'], school_id)
    return jsonify(result)


@bulk_bp.route('/import', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('bulk_import')
def import_users():
    data = request.get_json(silent=True) or {}
    user_type = _user_type(data.get('userType'))
    school_id = _target_school_id(data)
    items = data.get('data')
    if not isinstance(items, list) or not items:
        raise ValidationError("Données d'import invalides")

    password = current_app.config['DEFAULT_IMPORT_PASSWORD']
    creator = current_user()
    results = {'successCount': 0, 'errorCount': 0, 'errors': [], 'createdUsers': []}

    for position, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            results['errorCount'] += 1
            results['errors'].append(f'Ligne {position}: données invalides')
            continue
        name = str(item.get('name') or '').strip()
        try:
            if len(name) < 2:
                raise ValueError('Le nom est requis')
            if not item.get('email') or not isinstance(item['email'], str):
                raise ValueError('Email manquant')
            if User.query.filter_by(email=item['email'].lower()).first():
                raise ValueError(f"Email {item['email']} existe déjà")
            user = create_imported_user(item, user_type, school_id, password, created_by=creator.id)
            db.session.commit()
        except (ValueError, KeyError, IntegrityError) as e:
            db.session.rollback()
            results['errorCount'] += 1
            results['errors'].append(f"Erreur lors de la création de {name or '?'}: {e}")
            continue

        results['successCount'] += 1
        results['createdUsers'].append(user.to_dict())

    logger.info("[BULK_IMPORT] Successfully imported %s %s for school %s", results['successCount'], user_type,
                school_id)
    return jsonify({
        'success': True,
        'message': f"Import terminé: {results['successCount']} {user_type} créés avec succès",
        **results,
    })
