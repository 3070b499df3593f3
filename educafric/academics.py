"""
School set-up and day-to-day academics: classes, subjects with their
coefficients, grade entry per term and parent-student links.
"""
import logging

from flask import Blueprint, jsonify, request

from . import grading
from .auth import current_user, ensure_same_school, login_required, roles_required, school_query
from .bulletins import EDITABLE_STATUSES
from .errors import Conflict, NotFound, PermissionDenied, ValidationError, parse_int
from .extensions import db
from .models import (ROLE_DIRECTOR, ROLE_PARENT, ROLE_SITE_ADMIN, ROLE_STUDENT, ROLE_TEACHER, TERMS, Bulletin,
                     Classroom, Grade, ParentStudentLink, Subject, User, children_of)

logger = logging.getLogger(__name__)

academics_bp = Blueprint('academics', __name__, url_prefix='/api')


def _school_id(data):
    user = current_user()
    if user.role == ROLE_SITE_ADMIN:
        school_id = parse_int(data.get('school_id'), 'school_id')
        if not school_id:
            raise ValidationError('ID école requis')
        return school_id
    return user.school_id


def _get_in_school(model, object_id, label):
    obj = db.session.get(model, object_id) if object_id else None
    if obj is None:
        raise NotFound(f'{label} introuvable')
    return ensure_same_school(obj)


def _get_user(user_id, role, label):
    user = _get_in_school(User, parse_int(user_id, f'{role.lower()}_id'), label)
    if user.role != role:
        raise ValidationError(f"L'utilisateur {user.id} n'est pas un {label.lower()}")
    return user


def _coefficient(value):
    try:
        coefficient = float(value)
    except (TypeError, ValueError):
        raise ValidationError('coefficient must be a number')
    if coefficient <= 0:
        raise ValidationError('coefficient must be greater than zero')
    return coefficient


# Classes

@academics_bp.route('/classes', methods=['GET'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def list_classes():
    result = []
    for classroom in school_query(Classroom).order_by(Classroom.name).all():
        body = classroom.to_dict()
        body['studentCount'] = User.query.filter_by(class_id=classroom.id, role=ROLE_STUDENT, is_active=True).count()
        result.append(body)
    return jsonify({'classes': result})


@academics_bp.route('/classes', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def create_class():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError('Class name is required')
    school_id = _school_id(data)
    if Classroom.query.filter_by(school_id=school_id, name=name).first():
        raise Conflict(f'La classe {name} existe déjà', code='DUPLICATE_CLASS')

    classroom = Classroom(school_id=school_id, name=name, level=data.get('level'),
                          academic_year=data.get('academic_year'))
    db.session.add(classroom)
    db.session.commit()
    logger.info("[ACADEMICS] Class %s created for school %s", name, school_id)
    return jsonify({'success': True, 'class': classroom.to_dict()}), 201


@academics_bp.route('/classes/<int:class_id>', methods=['DELETE'])
@roles_required(ROLE_DIRECTOR)
def delete_class(class_id):
    classroom = _get_in_school(Classroom, class_id, 'Classe')
    if User.query.filter_by(class_id=classroom.id).count():
        raise Conflict('Cannot delete a class that still has students', code='HAS_STUDENTS')
    if Grade.query.filter_by(class_id=classroom.id).count() or Bulletin.query.filter_by(class_id=classroom.id).count():
        raise Conflict('Cannot delete a class with recorded grades', code='HAS_GRADES')

    db.session.delete(classroom)
    db.session.commit()
    return jsonify({'success': True})


@academics_bp.route('/classes/<int:class_id>/students', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def assign_students(class_id):
    classroom = _get_in_school(Classroom, class_id, 'Classe')
    student_ids = (request.get_json(silent=True) or {}).get('student_ids')
    if not student_ids or not isinstance(student_ids, list):
        raise ValidationError('student_ids is required')

    students = User.query.filter(User.id.in_(student_ids), User.school_id == classroom.school_id,
                                 User.role == ROLE_STUDENT).all()
    for student in students:
        student.classroom = classroom
    db.session.commit()
    return jsonify({'success': True, 'assigned': len(students),
                    'skipped': len(set(student_ids)) - len(students)})


# Subjects

@academics_bp.route('/subjects', methods=['GET'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def list_subjects():
    subjects = school_query(Subject).order_by(Subject.name).all()
    return jsonify({'subjects': [subject.to_dict() for subject in subjects]})


@academics_bp.route('/subjects', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def create_subject():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    code = (data.get('code') or '').strip().upper()
    if not name or not code:
        raise ValidationError('Subject name and code are required')
    school_id = _school_id(data)
    if Subject.query.filter_by(school_id=school_id, code=code).first():
        raise Conflict(f'Le code matière {code} existe déjà', code='DUPLICATE_SUBJECT')

    subject = Subject(school_id=school_id, name=name, code=code,
                      coefficient=_coefficient(data.get('coefficient', 1)))
    db.session.add(subject)
    db.session.commit()
    return jsonify({'success': True, 'subject': subject.to_dict()}), 201


@academics_bp.route('/subjects/<int:subject_id>', methods=['PUT'])
@roles_required(ROLE_DIRECTOR)
def update_subject(subject_id):
    subject = _get_in_school(Subject, subject_id, 'Matière')
    data = request.get_json(silent=True) or {}
    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('Subject name cannot be empty')
        subject.name = name
    if 'code' in data:
        code = (data.get('code') or '').strip().upper()
        if not code:
            raise ValidationError('Subject code cannot be empty')
        clash = Subject.query.filter(Subject.school_id == subject.school_id, Subject.code == code,
                                     Subject.id != subject.id).first()
        if clash:
            raise Conflict(f'Le code matière {code} existe déjà', code='DUPLICATE_SUBJECT')
        subject.code = code
    if 'coefficient' in data:
        subject.coefficient = _coefficient(data['coefficient'])
    db.session.commit()
    return jsonify({'success': True, 'subject': subject.to_dict()})


@academics_bp.route('/subjects/<int:subject_id>', methods=['DELETE'])
@roles_required(ROLE_DIRECTOR)
def delete_subject(subject_id):
    subject = _get_in_school(Subject, subject_id, 'Matière')
    if Grade.query.filter_by(subject_id=subject.id).count():
        raise Conflict('Cannot delete a subject with recorded grades', code='HAS_GRADES')
    db.session.delete(subject)
    db.session.commit()
    return jsonify({'success': True})


# Grades

def _teaches(user, subject):
    taught = {str(entry).strip().lower() for entry in (user.subjects or [])}
    return subject.code.lower() in taught or subject.name.lower() in taught


def _mark(data, field):
    value = data.get(field)
    grading.assert_in_range_or_null(value)
    return value


@academics_bp.route('/grades', methods=['POST'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def record_grade():
    """Create or update one student's CC and exam marks for a subject and term"""
    data = request.get_json(silent=True) or {}
    user = current_user()
    term = data.get('term')
    academic_year = data.get('academic_year')
    if term not in TERMS:
        raise ValidationError(f'Trimestre invalide: {term}')
    if not academic_year:
        raise ValidationError('Année scolaire requise')

    student = _get_user(data.get('student_id'), ROLE_STUDENT, 'Élève')
    if student.class_id is None:
        raise ValidationError("L'élève n'est inscrit dans aucune classe")
    subject = _get_in_school(Subject, parse_int(data.get('subject_id'), 'subject_id'), 'Matière')
    if user.role == ROLE_TEACHER and not _teaches(user, subject):
        raise PermissionDenied(f"Vous n'enseignez pas {subject.name}")

    marks = {field: _mark(data, field) for field in ('cc', 'exam') if field in data}

    bulletin = Bulletin.query.filter_by(student_id=student.id, term=term, academic_year=academic_year).first()
    if bulletin is not None and bulletin.status not in EDITABLE_STATUSES:
        raise Conflict(f"Le bulletin du trimestre {term} est déjà '{bulletin.status}'", code='BULLETIN_LOCKED')

    grade = Grade.query.filter_by(student_id=student.id, subject_id=subject.id, term=term,
                                  academic_year=academic_year).first()
    created = grade is None
    if created:
        grade = Grade(school_id=student.school_id, student_id=student.id, subject_id=subject.id, term=term,
                      academic_year=academic_year)
        db.session.add(grade)
    for field, value in marks.items():
        setattr(grade, field, value)
    grade.class_id = student.class_id
    grade.teacher_id = user.id
    db.session.commit()

    logger.info("[ACADEMICS] Grade %s %s %s for student %s by user %s", subject.code, term, academic_year,
                student.id, user.id)
    return jsonify({'success': True, 'grade': _grade_dict(grade)}), 201 if created else 200


def _grade_dict(grade):
    body = grade.to_dict()
    body['average'] = grading.subject_average(grade.cc, grade.exam)
    return body


def _filtered_grades(query):
    if request.args.get('term'):
        query = query.filter_by(term=request.args['term'])
    if request.args.get('academic_year'):
        query = query.filter_by(academic_year=request.args['academic_year'])
    if request.args.get('subject_id'):
        query = query.filter_by(subject_id=parse_int(request.args['subject_id'], 'subject_id'))
    return [_grade_dict(grade) for grade in query.order_by(Grade.student_id, Grade.subject_id).all()]


@academics_bp.route('/grades/class/<int:class_id>', methods=['GET'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def class_grades(class_id):
    classroom = _get_in_school(Classroom, class_id, 'Classe')
    grades = _filtered_grades(Grade.query.filter_by(class_id=classroom.id))
    return jsonify({'class': classroom.to_dict(), 'grades': grades, 'count': len(grades)})


@academics_bp.route('/grades/student/<int:student_id>', methods=['GET'])
@login_required
def student_grades(student_id):
    user = current_user()
    if user.role == ROLE_PARENT:
        if student_id not in {child.id for child in children_of(user.id)}:
            raise PermissionDenied('Cet élève ne fait pas partie de vos enfants')
    elif user.role == ROLE_STUDENT:
        if student_id != user.id:
            raise PermissionDenied('Vous ne pouvez consulter que vos propres notes')
    else:
        _get_user(student_id, ROLE_STUDENT, 'Élève')

    grades = _filtered_grades(Grade.query.filter_by(student_id=student_id))
    return jsonify({'student_id': student_id, 'grades': grades, 'count': len(grades)})


# Parent-student links

def _link_dict(link):
    return {
        'id': link.id,
        'parent_id': link.parent_id,
        'parent_name': link.parent.full_name if link.parent else None,
        'student_id': link.student_id,
        'student_name': link.student.full_name if link.student else None,
        'relation': link.relation,
    }


@academics_bp.route('/parent-links', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
def list_parent_links():
    query = ParentStudentLink.query.join(User, ParentStudentLink.student_id == User.id)
    if current_user().role != ROLE_SITE_ADMIN:
        query = query.filter(User.school_id == current_user().school_id)
    if request.args.get('student_id'):
        query = query.filter(ParentStudentLink.student_id == parse_int(request.args['student_id'], 'student_id'))
    links = query.order_by(ParentStudentLink.id).all()
    return jsonify({'links': [_link_dict(link) for link in links], 'count': len(links)})


@academics_bp.route('/parent-links', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def create_parent_link():
    data = request.get_json(silent=True) or {}
    parent = _get_user(data.get('parent_id'), ROLE_PARENT, 'Parent')
    student = _get_user(data.get('student_id'), ROLE_STUDENT, 'Élève')
    if parent.school_id != student.school_id:
        raise ValidationError("Le parent et l'élève doivent appartenir à la même école")
    if ParentStudentLink.query.filter_by(parent_id=parent.id, student_id=student.id).first():
        raise Conflict('Ce parent est déjà lié à cet élève', code='DUPLICATE_LINK')

    link = ParentStudentLink(parent_id=parent.id, student_id=student.id, relation=data.get('relation') or 'parent')
    db.session.add(link)
    db.session.commit()
    logger.info("[ACADEMICS] Parent %s linked to student %s", parent.id, student.id)
    return jsonify({'success': True, 'link': _link_dict(link)}), 201


@academics_bp.route('/parent-links/<int:link_id>', methods=['DELETE'])
@roles_required(ROLE_DIRECTOR)
def delete_parent_link(link_id):
    link = db.session.get(ParentStudentLink, link_id)
    if link is None:
        raise NotFound('Lien parent-élève introuvable')
    ensure_same_school(link.student)
    db.session.delete(link)
    db.session.commit()
    return jsonify({'success': True})
