"""
Bulletin (report card) generation and approval workflow.

draft -> submitted -> approved -> signed -> sent. Averages are recomputed only
while a bulletin is a draft or submitted; once approved its content is frozen.
"""
import hashlib
import io
import json
import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request, send_file

from . import grading
from .auth import current_user, ensure_same_school, login_required, roles_required, school_query
from .bulletin_pdf import render_bulletin_pdf
from .errors import Conflict, EducafricError, NotFound, PermissionDenied, ValidationError, parse_int
from .extensions import db
from .messaging import notify_user, push_service
from .models import (BULLETIN_APPROVED, BULLETIN_DRAFT, BULLETIN_SENT, BULLETIN_SIGNED, BULLETIN_SUBMITTED,
                     ROLE_DIRECTOR, ROLE_PARENT, ROLE_STUDENT, ROLE_TEACHER, TERMS, Bulletin,
                     BulletinVerification, Classroom, Grade, Subject, User, children_of, parents_of)
from .subscriptions import check_feature, feature_required

logger = logging.getLogger(__name__)

bulletins_bp = Blueprint('bulletins', __name__, url_prefix='/api/bulletins')

EDITABLE_STATUSES = (BULLETIN_DRAFT, BULLETIN_SUBMITTED)
PUBLISHED_STATUSES = (BULLETIN_SIGNED, BULLETIN_SENT)


def document_hash(bulletin):
    """SHA-256 of the canonical JSON of the graded content"""
    content = {
        'bulletinId': bulletin.id,
        'studentId': bulletin.student_id,
        'classId': bulletin.class_id,
        'term': bulletin.term,
        'academicYear': bulletin.academic_year,
        'termAverage': bulletin.term_average,
        'classRank': bulletin.class_rank,
        'classSize': bulletin.class_size,
        'subjectDetails': bulletin.subject_details or {},
    }
    canonical = json.dumps(content, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def get_bulletin_or_404(bulletin_id):
    bulletin = db.session.get(Bulletin, bulletin_id)
    if bulletin is None:
        raise NotFound('Bulletin introuvable')
    return bulletin


def _check_visibility(bulletin):
    user = current_user()
    if user.role == ROLE_PARENT:
        if bulletin.student_id not in {child.id for child in children_of(user.id)}:
            raise PermissionDenied('Ce bulletin ne concerne pas vos enfants')
        if bulletin.status not in PUBLISHED_STATUSES:
            raise NotFound('Bulletin introuvable')
    elif user.role == ROLE_STUDENT:
        if bulletin.student_id != user.id or bulletin.status not in PUBLISHED_STATUSES:
            raise NotFound('Bulletin introuvable')
    else:
        ensure_same_school(bulletin)
    return bulletin


def _collect_term_grades(class_id, term, academic_year):
    grades_by_student = {}
    for grade in Grade.query.filter_by(class_id=class_id, term=term, academic_year=academic_year).all():
        grades_by_student.setdefault(grade.student_id, {})[grade.subject.code] = {
            'CC': grade.cc, 'EXAM': grade.exam,
        }
    return grades_by_student


def generate_class_bulletins(classroom, term, academic_year, language='fr'):
    students = User.query.filter_by(class_id=classroom.id, role=ROLE_STUDENT, is_active=True).all()
    subjects = Subject.query.filter_by(school_id=classroom.school_id).all()
    coefficients = {subject.code: subject.coefficient for subject in subjects}
    names = {subject.code: subject.name for subject in subjects}
    grades_by_student = _collect_term_grades(classroom.id, term, academic_year)

    averages = {}
    details = {}
    for student in students:
        term_grades = grades_by_student.get(student.id, {})
        averages[student.id] = grading.term_average(term_grades, coefficients)
        details[student.id] = {}
        for code, marks in term_grades.items():
            subject_avg = grading.subject_average(marks.get('CC'), marks.get('EXAM'))
            details[student.id][code] = {
                'name': names.get(code, code),
                'coefficient': coefficients.get(code, 1),
                'cc': marks.get('CC'),
                'exam': marks.get('EXAM'),
                'average': subject_avg,
                'appreciation': grading.appreciation(subject_avg, language),
            }

    ranks = grading.rank(averages)
    class_size = len([avg for avg in averages.values() if avg is not None])

    generated = 0
    skipped = 0
    for student in students:
        bulletin = Bulletin.query.filter_by(student_id=student.id, class_id=classroom.id, term=term,
                                            academic_year=academic_year).first()
        if bulletin is None:
            bulletin = Bulletin(school_id=classroom.school_id, student_id=student.id, class_id=classroom.id,
                                term=term, academic_year=academic_year, status=BULLETIN_DRAFT)
            db.session.add(bulletin)
        elif bulletin.status not in EDITABLE_STATUSES:
            skipped += 1
            continue

        bulletin.term_average = averages[student.id]
        bulletin.class_rank = ranks[student.id]
        bulletin.class_size = class_size
        bulletin.appreciation = grading.appreciation(averages[student.id], language)
        bulletin.subject_details = details[student.id]
        generated += 1

    db.session.commit()
    logger.info("[BULLETINS] Generated %s bulletins for class %s %s %s (%s skipped)",
                generated, classroom.name, term, academic_year, skipped)
    return {
        'generated': generated,
        'skipped': skipped,
        'stats': grading.class_stats(averages.values()),
    }


@bulletins_bp.route('/generate', methods=['POST'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
@feature_required('bulletins')
def generate():
    data = request.get_json(silent=True) or {}
    term = data.get('term')
    academic_year = data.get('academic_year')
    if term not in TERMS:
        raise ValidationError(f"Trimestre invalide: {term}")
    if not academic_year:
        raise ValidationError('Année scolaire requise')

    classroom = db.session.get(Classroom, data.get('class_id') or 0)
    if classroom is None:
        raise NotFound('Classe introuvable')
    ensure_same_school(classroom)

    result = generate_class_bulletins(classroom, term, academic_year, data.get('language', 'fr'))
    return jsonify({'success': True, **result})


@bulletins_bp.route('', methods=['GET'])
@login_required
def list_bulletins():
    user = current_user()
    if user.role == ROLE_PARENT:
        child_ids = [child.id for child in children_of(user.id)]
        query = Bulletin.query.filter(Bulletin.student_id.in_(child_ids), Bulletin.status.in_(PUBLISHED_STATUSES))
    elif user.role == ROLE_STUDENT:
        query = Bulletin.query.filter(Bulletin.student_id == user.id, Bulletin.status.in_(PUBLISHED_STATUSES))
    else:
        query = school_query(Bulletin)
        if request.args.get('status'):
            query = query.filter_by(status=request.args['status'])

    for arg in ('class_id', 'term', 'academic_year'):
        value = request.args.get(arg)
        if value:
            query = query.filter(getattr(Bulletin, arg) == (parse_int(value, arg) if arg == 'class_id' else value))

    bulletins = query.order_by(Bulletin.class_rank.asc()).all()
    return jsonify({'bulletins': [b.to_dict() for b in bulletins], 'count': len(bulletins)})


@bulletins_bp.route('/<int:bulletin_id>', methods=['GET'])
@login_required
def get_bulletin(bulletin_id):
    from .signatures import signature_status

    bulletin = _check_visibility(get_bulletin_or_404(bulletin_id))
    body = bulletin.to_dict()
    body['signature'] = signature_status(bulletin)
    return jsonify(body)


@bulletins_bp.route('/<int:bulletin_id>/pdf', methods=['GET'])
@login_required
def download_pdf(bulletin_id):
    from .signatures import bulletin_signature

    bulletin = _check_visibility(get_bulletin_or_404(bulletin_id))
    verification = BulletinVerification.query.filter_by(bulletin_id=bulletin.id).first()
    content = render_bulletin_pdf(bulletin, bulletin_signature(bulletin), verification,
                                  current_app.config['BASE_URL'])
    student = bulletin.student
    filename = f"bulletin_{(student.matricule if student else None) or bulletin.id}_{bulletin.term}.pdf"
    return send_file(io.BytesIO(content), mimetype='application/pdf', as_attachment=True, download_name=filename)


def _transition(bulletin, expected, target):
    if bulletin.status != expected:
        raise Conflict(f"Transition impossible: le bulletin est '{bulletin.status}', attendu '{expected}'",
                       code='INVALID_TRANSITION')
    bulletin.status = target


@bulletins_bp.route('/<int:bulletin_id>/submit', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_DIRECTOR)
def submit(bulletin_id):
    bulletin = ensure_same_school(get_bulletin_or_404(bulletin_id))
    if bulletin.term_average is None:
        raise ValidationError('Impossible de soumettre un bulletin sans notes')
    _transition(bulletin, BULLETIN_DRAFT, BULLETIN_SUBMITTED)
    bulletin.submitted_at = datetime.utcnow()
    bulletin.rejection_reason = None
    db.session.commit()
    return jsonify({'success': True, 'bulletin': bulletin.to_dict()})


@bulletins_bp.route('/<int:bulletin_id>/approve', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def approve(bulletin_id):
    bulletin = ensure_same_school(get_bulletin_or_404(bulletin_id))
    _transition(bulletin, BULLETIN_SUBMITTED, BULLETIN_APPROVED)
    bulletin.approved_at = datetime.utcnow()
    db.session.commit()
    logger.info("[BULLETINS] Bulletin %s approved", bulletin.id)
    return jsonify({'success': True, 'bulletin': bulletin.to_dict()})


@bulletins_bp.route('/<int:bulletin_id>/reject', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def reject(bulletin_id):
    bulletin = ensure_same_school(get_bulletin_or_404(bulletin_id))
    reason = (request.get_json(silent=True) or {}).get('reason')
    if not reason:
        raise ValidationError('Motif de rejet requis')
    _transition(bulletin, BULLETIN_SUBMITTED, BULLETIN_DRAFT)
    bulletin.rejection_reason = reason
    db.session.commit()
    return jsonify({'success': True, 'bulletin': bulletin.to_dict()})


@bulletins_bp.route('/<int:bulletin_id>/send', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def send(bulletin_id):
    bulletin = ensure_same_school(get_bulletin_or_404(bulletin_id))
    if bulletin.status != BULLETIN_SIGNED:
        raise Conflict('Seuls les bulletins signés peuvent être envoyés', code='INVALID_TRANSITION')

    channel = (request.get_json(silent=True) or {}).get('channel', 'sms')
    if channel == 'whatsapp':
        check_feature(current_user(), 'whatsapp')
    verification = BulletinVerification.query.filter_by(bulletin_id=bulletin.id).first()
    context = {
        'school_name': bulletin.school.name,
        'student_name': bulletin.student.full_name,
        'term': bulletin.term,
        'academic_year': bulletin.academic_year,
        'average': bulletin.term_average,
        'rank': bulletin.class_rank,
        'class_size': bulletin.class_size,
        'short_code': verification.short_code if verification else '-',
    }

    parents = parents_of(bulletin.student_id)
    results = [notify_user(parent, 'bulletin_available', channel=channel, **context) for parent in parents]

    push_sent = False
    try:
        push = push_service.send_push([bulletin.student_id] + [p.id for p in parents],
                                      'Bulletin disponible', f"{context['student_name']} - {bulletin.term}",
                                      {'bulletinId': str(bulletin.id)})
        push_sent = push['sent']
    except EducafricError as e:
        logger.warning("[BULLETINS] Push for bulletin %s not sent: %s", bulletin.id, e.message)

    bulletin.status = BULLETIN_SENT
    bulletin.sent_at = datetime.utcnow()
    bulletin.sent_to_parents = any(r['success'] for r in results)
    bulletin.sent_to_students = push_sent
    db.session.commit()

    return jsonify({
        'success': True,
        'status': bulletin.status,
        'notified_parents': sum(1 for r in results if r['success']),
        'results': results,
    })
