"""
Sandbox demo environment: a seeded demo school and read-only endpoints
serving its data to demo accounts.
"""
import logging
import uuid
from datetime import datetime
from functools import wraps

from flask import Blueprint, jsonify, request

from .auth import current_user, login_required
from .errors import PermissionDenied, ValidationError
from .extensions import db
from .messaging import mask_phone
from .models import (ROLE_DIRECTOR, ROLE_PARENT, ROLE_STUDENT, ROLE_TEACHER, Bus, BusEnrollment, BusRoute,
                     Classroom, FeeAssignment, FeeStructure, Grade, ParentStudentLink, RouteStop, School, Subject,
                     User, children_of)

logger = logging.getLogger(__name__)

sandbox_bp = Blueprint('sandbox', __name__, url_prefix='/api/sandbox')

SANDBOX_SCHOOL_NAME = 'École Sandbox EDUCAFRIC'
SANDBOX_PASSWORD = 'sandbox123'
SANDBOX_ACADEMIC_YEAR = '2024-2025'

# Emails matching any of these belong to demo or QA accounts
EXEMPT_EMAIL_PATTERNS = (
    '@test.educafric.com',
    '@educafric.demo',
    '@educafric.test',
    'sandbox@',
    'sandbox.',
    'demo@',
    'demo.',
    'test@',
    'test.',
    '.sandbox@',
    '.demo@',
    '.test@',
)

CLASSES = ['6ème A', '5ème B']

SUBJECTS = [
    ('Mathématiques', 'MATH', 4),
    ('Français', 'FR', 3),
    ('Anglais', 'ANG', 2),
    ('Histoire-Géographie', 'HG', 2),
]

DEMO_USERS = [
    {'key': 'director', 'role': ROLE_DIRECTOR, 'first_name': 'Paul', 'last_name': 'Mvondo',
     'email': 'sandbox.director@test.educafric.com', 'phone': '+237650000001'},
    {'key': 'teacher1', 'role': ROLE_TEACHER, 'first_name': 'Alice', 'last_name': 'Ngono',
     'email': 'sandbox.teacher@test.educafric.com', 'phone': '+237650000002', 'subjects': ['MATH', 'HG']},
    {'key': 'teacher2', 'role': ROLE_TEACHER, 'first_name': 'Bernard', 'last_name': 'Essomba',
     'email': 'sandbox.teacher2@test.educafric.com', 'phone': '+237650000003', 'subjects': ['FR', 'ANG']},
    {'key': 'student1', 'role': ROLE_STUDENT, 'first_name': 'Junior', 'last_name': 'Kamga',
     'email': 'sandbox.student@test.educafric.com', 'phone': '+237650000004', 'class': '6ème A',
     'matricule': 'SBX-001'},
    {'key': 'student2', 'role': ROLE_STUDENT, 'first_name': 'Emma', 'last_name': 'Talla',
     'email': 'sandbox.student2@test.educafric.com', 'phone': '+237650000005', 'class': '6ème A',
     'matricule': 'SBX-002'},
    {'key': 'student3', 'role': ROLE_STUDENT, 'first_name': 'Kevin', 'last_name': 'Nkomo',
     'email': 'sandbox.student3@test.educafric.com', 'phone': '+237650000006', 'class': '5ème B',
     'matricule': 'SBX-003'},
    {'key': 'student4', 'role': ROLE_STUDENT, 'first_name': 'Grace', 'last_name': 'Fouda',
     'email': 'sandbox.student4@test.educafric.com', 'phone': '+237650000007', 'class': '5ème B',
     'matricule': 'SBX-004'},
    {'key': 'parent1', 'role': ROLE_PARENT, 'first_name': 'Marie', 'last_name': 'Kamga',
     'email': 'sandbox.parent@test.educafric.com', 'phone': '+237650000008', 'children': ['student1']},
    {'key': 'parent2', 'role': ROLE_PARENT, 'first_name': 'Joseph', 'last_name': 'Nkomo',
     'email': 'sandbox.parent2@test.educafric.com', 'phone': '+237650000009',
     'children': ['student3', 'student4']},
]

# (CC, EXAM) per student and subject for T1
DEMO_GRADES = {
    'student1': {'MATH': (15, 16.5), 'FR': (12, 13), 'ANG': (14, 15), 'HG': (11, 12.5)},
    'student2': {'MATH': (9, 10.5), 'FR': (14, 13.5), 'ANG': (16, 17), 'HG': (13, 12)},
    'student3': {'MATH': (17, 18), 'FR': (15, 14), 'ANG': (12, 11), 'HG': (14, 15.5)},
    'student4': {'MATH': (8, 7.5), 'FR': (10, 11), 'ANG': (9, 10), 'HG': (12, None)},
}

# Yaoundé, from the school to Bastos
DEMO_STOPS = [
    ('École Sandbox', 3.8667, 11.5167, '07:30'),
    ('Carrefour Warda', 3.8720, 11.5130, '07:10'),
    ('Bastos', 3.8890, 11.5090, '06:55'),
]


def is_sandbox_user(user):
    if user is None or not user.email:
        return False
    email = user.email.lower()
    return any(pattern in email for pattern in EXEMPT_EMAIL_PATTERNS)


def sandbox_school():
    return School.query.filter_by(name=SANDBOX_SCHOOL_NAME, is_sandbox=True).first()


def seed_sandbox():
    """Create the demo school and its data. Safe to run repeatedly."""
    school = sandbox_school()
    if school is not None:
        return school

    school = School(name=SANDBOX_SCHOOL_NAME, address='Quartier Bastos, Yaoundé', is_sandbox=True,
                    subscription_status='active', subscription_type='absolute', email='sandbox@test.educafric.com')
    db.session.add(school)
    db.session.flush()

    classrooms = {}
    for name in CLASSES:
        classrooms[name] = Classroom(school_id=school.id, name=name, academic_year=SANDBOX_ACADEMIC_YEAR)
        db.session.add(classrooms[name])
    subjects = {}
    for name, code, coefficient in SUBJECTS:
        subjects[code] = Subject(school_id=school.id, name=name, code=code, coefficient=coefficient)
        db.session.add(subjects[code])
    db.session.flush()

    users = {}
    for account in DEMO_USERS:
        user = User(school_id=school.id, username=account['email'], email=account['email'],
                    phone=account['phone'], role=account['role'], first_name=account['first_name'],
                    last_name=account['last_name'], matricule=account.get('matricule'),
                    subjects=account.get('subjects', []))
        if 'class' in account:
            user.classroom = classrooms[account['class']]
        user.set_password(SANDBOX_PASSWORD)
        db.session.add(user)
        users[account['key']] = user
    db.session.flush()

    for account in DEMO_USERS:
        for child in account.get('children', []):
            db.session.add(ParentStudentLink(parent_id=users[account['key']].id, student_id=users[child].id))

    for key, marks in DEMO_GRADES.items():
        student = users[key]
        for code, (cc, exam) in marks.items():
            db.session.add(Grade(school_id=school.id, student_id=student.id, subject_id=subjects[code].id,
                                 class_id=student.class_id, term='T1', academic_year=SANDBOX_ACADEMIC_YEAR,
                                 cc=cc, exam=exam))

    bus = Bus(school_id=school.id, plate_number='CE-123-AB', driver_name='Samuel Atangana',
              driver_phone='+237650000010', capacity=30)
    db.session.add(bus)
    db.session.flush()
    route = BusRoute(school_id=school.id, bus_id=bus.id, name='Ligne Bastos')
    db.session.add(route)
    for sequence, (name, lat, lng, scheduled) in enumerate(reversed(DEMO_STOPS), start=1):
        route.stops.append(RouteStop(name=name, latitude=lat, longitude=lng, sequence=sequence,
                                     scheduled_time=scheduled))
    db.session.flush()
    db.session.add(BusEnrollment(school_id=school.id, student_id=users['student1'].id, route_id=route.id,
                                 stop_id=route.stops[0].id))

    tuition = FeeStructure(school_id=school.id, name='Frais de scolarité', fee_type='tuition', amount=75000,
                           academic_year=SANDBOX_ACADEMIC_YEAR)
    db.session.add(tuition)
    db.session.flush()
    for key in ('student1', 'student2', 'student3', 'student4'):
        db.session.add(FeeAssignment(school_id=school.id, student_id=users[key].id, structure_id=tuition.id,
                                     amount_due=tuition.amount, amount_paid=0.0))

    db.session.commit()
    logger.info("[SANDBOX] Seeded demo school %s", school.name)
    return school


def sandbox_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        user = current_user()
        if not is_sandbox_user(user) and not (user.school and user.school.is_sandbox):
            raise PermissionDenied('Sandbox access only', code='SANDBOX_ONLY')
        return f(*args, **kwargs)
    return decorated_function


def _require_school():
    school = sandbox_school()
    if school is None:
        raise ValidationError('Sandbox not initialised. Run "flask seed-sandbox".', code='SANDBOX_NOT_SEEDED')
    return school


def _users(school, role):
    return User.query.filter_by(school_id=school.id, role=role).order_by(User.id).all()


@sandbox_bp.route('/status', methods=['GET'])
def status():
    school = sandbox_school()
    return jsonify({
        'sandboxActive': school is not None,
        'schoolName': SANDBOX_SCHOOL_NAME,
        'academicYear': SANDBOX_ACADEMIC_YEAR,
        'accounts': [{'role': account['role'], 'email': account['email'],
                      'name': f"{account['first_name']} {account['last_name']}"} for account in DEMO_USERS],
        'password': SANDBOX_PASSWORD,
        'timestamp': datetime.utcnow().isoformat() + 'Z',
    })


@sandbox_bp.route('/students', methods=['GET'])
@sandbox_required
def students():
    school = _require_school()
    return jsonify({'students': [user.to_dict() for user in _users(school, ROLE_STUDENT)]})


@sandbox_bp.route('/teachers', methods=['GET'])
@sandbox_required
def teachers():
    school = _require_school()
    return jsonify({'teachers': [dict(user.to_dict(), **(user.extra or {})) for user in _users(school, ROLE_TEACHER)]})


@sandbox_bp.route('/parents', methods=['GET'])
@sandbox_required
def parents():
    school = _require_school()
    result = []
    for parent in _users(school, ROLE_PARENT):
        body = parent.to_dict()
        body['children'] = [{'id': child.id, 'name': child.full_name} for child in children_of(parent.id)]
        result.append(body)
    return jsonify({'parents': result})


@sandbox_bp.route('/classes', methods=['GET'])
@sandbox_required
def classes():
    school = _require_school()
    result = []
    for classroom in Classroom.query.filter_by(school_id=school.id).order_by(Classroom.name).all():
        body = classroom.to_dict()
        body['studentCount'] = User.query.filter_by(class_id=classroom.id, role=ROLE_STUDENT).count()
        result.append(body)
    return jsonify({'classes': result})


@sandbox_bp.route('/grades', methods=['GET'])
@sandbox_required
def grades():
    school = _require_school()
    query = Grade.query.filter_by(school_id=school.id)
    if request.args.get('term'):
        query = query.filter_by(term=request.args['term'])
    return jsonify({'grades': [{
        'studentId': grade.student_id,
        'subject': grade.subject.code,
        'subjectName': grade.subject.name,
        'term': grade.term,
        'academicYear': grade.academic_year,
        'cc': grade.cc,
        'exam': grade.exam,
    } for grade in query.order_by(Grade.student_id, Grade.subject_id).all()]})


@sandbox_bp.route('/test-notification', methods=['POST'])
@sandbox_required
def test_notification():
    data = request.get_json(silent=True) or {}
    channel = data.get('channel', 'sms')
    if channel not in ('sms', 'whatsapp', 'push', 'email'):
        raise ValidationError(f'Unknown channel: {channel}')
    to = data.get('to') or current_user().phone
    logger.info("[SANDBOX] Simulated %s notification to %s", channel, mask_phone(to))
    return jsonify({
        'success': True,
        'simulated': True,
        'channel': channel,
        'to': mask_phone(to),
        'message': data.get('message', 'Notification de test EDUCAFRIC'),
        'messageId': f'sandbox-{uuid.uuid4()}',
    })
