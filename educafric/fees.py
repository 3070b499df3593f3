"""
School fees: fee structures, per-student assignments, installment payments
with sequential receipts, collection statistics and SMS balance reminders.
"""
import logging
from collections import defaultdict

from flask import Blueprint, jsonify, request

from .auth import current_user, ensure_same_school, login_required, roles_required, school_query
from .errors import Conflict, NotFound, PermissionDenied, ValidationError, parse_int
from .extensions import db
from .grading import round2
from .messaging import messaging_service
from .models import (ROLE_DIRECTOR, ROLE_PARENT, ROLE_STUDENT, FeeAssignment, FeePayment, FeeStructure, User,
                     children_of, parents_of)
from .subscriptions import feature_required

logger = logging.getLogger(__name__)

fees_bp = Blueprint('fees', __name__, url_prefix='/api/fees')

FEE_TYPES = ('tuition', 'registration', 'transport', 'canteen', 'exam')
PAYMENT_METHODS = ('cash', 'mtn_momo', 'orange_money', 'bank', 'stripe')


def _positive_amount(value, field='amount'):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number')
    if amount <= 0:
        raise ValidationError(f'{field} must be greater than zero')
    return amount


def _get_in_school(model, object_id, label):
    obj = db.session.get(model, object_id) if object_id else None
    if obj is None:
        raise NotFound(f'{label} introuvable')
    return ensure_same_school(obj)


@fees_bp.route('/structures', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def list_structures():
    query = school_query(FeeStructure).filter_by(is_active=True)
    if request.args.get('academic_year'):
        query = query.filter_by(academic_year=request.args['academic_year'])
    return jsonify({'structures': [s.to_dict() for s in query.order_by(FeeStructure.name).all()]})


@fees_bp.route('/structures', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def create_structure():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError('Fee name is required')
    fee_type = data.get('fee_type', 'tuition')
    if fee_type not in FEE_TYPES:
        raise ValidationError(f'Unknown fee type: {fee_type}')
    max_installments = parse_int(data.get('max_installments'), 'max_installments', default=3)
    if max_installments < 1:
        raise ValidationError('max_installments must be at least 1')

    structure = FeeStructure(
        school_id=current_user().school_id,
        name=name,
        fee_type=fee_type,
        amount=_positive_amount(data.get('amount')),
        class_id=data.get('class_id'),
        academic_year=data.get('academic_year'),
        max_installments=max_installments,
    )
    db.session.add(structure)
    db.session.commit()
    return jsonify({'success': True, 'structure': structure.to_dict()}), 201


@fees_bp.route('/structures/<int:structure_id>', methods=['DELETE'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def delete_structure(structure_id):
    structure = _get_in_school(FeeStructure, structure_id, 'Structure de frais')
    assignment_ids = [a.id for a in structure.assignments]
    if assignment_ids and FeePayment.query.filter(FeePayment.assignment_id.in_(assignment_ids)).count():
        raise Conflict('Cannot delete a fee structure with recorded payments', code='HAS_PAYMENTS')

    for assignment in structure.assignments:
        db.session.delete(assignment)
    db.session.delete(structure)
    db.session.commit()
    return jsonify({'success': True})


@fees_bp.route('/assign', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def assign():
    data = request.get_json(silent=True) or {}
    structure = _get_in_school(FeeStructure, data.get('structure_id'), 'Structure de frais')

    query = User.query.filter_by(school_id=structure.school_id, role=ROLE_STUDENT, is_active=True)
    if data.get('student_ids'):
        query = query.filter(User.id.in_(data['student_ids']))
    elif data.get('class_id') or structure.class_id:
        query = query.filter_by(class_id=data.get('class_id') or structure.class_id)
    else:
        raise ValidationError('student_ids or class_id is required')

    created = 0
    skipped = 0
    for student in query.all():
        if FeeAssignment.query.filter_by(student_id=student.id, structure_id=structure.id).first():
            skipped += 1
            continue
        db.session.add(FeeAssignment(school_id=structure.school_id, student_id=student.id,
                                     structure_id=structure.id, amount_due=structure.amount, amount_paid=0.0))
        created += 1
    db.session.commit()
    return jsonify({'success': True, 'created': created, 'skipped': skipped})


@fees_bp.route('/payments', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def record_payment():
    data = request.get_json(silent=True) or {}
    assignment = _get_in_school(FeeAssignment, data.get('assignment_id'), 'Affectation de frais')
    amount = _positive_amount(data.get('amount'))
    method = data.get('method', 'cash')
    if method not in PAYMENT_METHODS:
        raise ValidationError(f'Unknown payment method: {method}')

    current_balance = assignment.balance()
    if amount > current_balance:
        raise ValidationError(f'Amount paid ({amount:,.0f} FCFA) cannot exceed the remaining balance '
                              f'({current_balance:,.0f} FCFA)', code='AMOUNT_EXCEEDS_BALANCE')
    if not assignment.can_pay_installment():
        raise ValidationError(f'Maximum number of installments ({assignment.structure.max_installments}) reached',
                              code='INSTALLMENT_LIMIT')

    assignment.amount_paid = (assignment.amount_paid or 0) + amount
    assignment.installments = (assignment.installments or 0) + 1
    payment = FeePayment(
        school_id=assignment.school_id,
        assignment_id=assignment.id,
        amount=amount,
        method=method,
        reference=data.get('reference'),
        receipt_no=FeePayment.generate_receipt_number(assignment.school_id),
        installment_number=assignment.installments,
        balance_after=assignment.balance(),
        recorded_by=current_user().id,
    )
    db.session.add(payment)
    db.session.commit()

    logger.info("[FEES] Receipt %s: %s FCFA for student %s", payment.receipt_no, amount, assignment.student_id)
    return jsonify({'success': True, 'payment': payment.to_dict(), 'balance': assignment.balance()}), 201


@fees_bp.route('/payments', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def list_payments():
    query = school_query(FeePayment)
    if request.args.get('student_id'):
        student_id = parse_int(request.args['student_id'], 'student_id')
        query = query.join(FeeAssignment).filter(FeeAssignment.student_id == student_id)
    payments = query.order_by(FeePayment.id.desc()).all()
    return jsonify({'payments': [p.to_dict() for p in payments], 'count': len(payments)})


def _student_balances(assignments):
    balances = defaultdict(lambda: {'due': 0.0, 'paid': 0.0})
    for assignment in assignments:
        balances[assignment.student_id]['due'] += assignment.amount_due or 0
        balances[assignment.student_id]['paid'] += assignment.amount_paid or 0
    return balances


@fees_bp.route('/stats', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def stats():
    assignments = school_query(FeeAssignment).all()
    total_due = sum(a.amount_due or 0 for a in assignments)
    collected = sum(a.amount_paid or 0 for a in assignments)

    paid = partial = unpaid = 0
    for totals in _student_balances(assignments).values():
        if totals['paid'] >= totals['due']:
            paid += 1
        elif totals['paid'] > 0:
            partial += 1
        else:
            unpaid += 1

    return jsonify({
        'total_due': total_due,
        'collected': collected,
        'outstanding': max(0, total_due - collected),
        'collection_rate': round2(collected / total_due * 100) if total_due else 0,
        'students': {'paid': paid, 'partial': partial, 'unpaid': unpaid},
    })


@fees_bp.route('/reminders', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
@feature_required('fees')
def send_reminders():
    student_ids = (request.get_json(silent=True) or {}).get('student_ids')
    assignments = school_query(FeeAssignment).all()

    students_to_notify = []
    for student_id, totals in _student_balances(assignments).items():
        if student_ids and student_id not in student_ids:
            continue
        balance = totals['due'] - totals['paid']
        if balance <= 0:
            continue
        student = db.session.get(User, student_id)
        for parent in parents_of(student_id):
            if parent.phone:
                students_to_notify.append({'student': student, 'parent_phone': parent.phone, 'balance': balance,
                                           'language': parent.preferred_language or 'fr'})

    if not students_to_notify:
        return jsonify({'success': False, 'error': 'No students with balances and phone numbers found'})

    results = messaging_service.send_bulk_reminders(students_to_notify)
    sent_count = sum(1 for r in results if r['success'])
    logger.info("[FEES] Balance reminders: %s sent, %s failed", sent_count, len(results) - sent_count)
    return jsonify({
        'success': True,
        'sent_count': sent_count,
        'failed_count': len(results) - sent_count,
        'results': results,
    })


def _can_view_student(user, student_id):
    if user.role == ROLE_PARENT:
        return student_id in {child.id for child in children_of(user.id)}
    if user.role == ROLE_STUDENT:
        return student_id == user.id
    return True


@fees_bp.route('/receipts/<int:payment_id>', methods=['GET'])
@login_required
def receipt(payment_id):
    payment = db.session.get(FeePayment, payment_id)
    if payment is None:
        raise NotFound('Reçu introuvable')
    user = current_user()
    assignment = payment.assignment
    if user.role in (ROLE_PARENT, ROLE_STUDENT):
        if not _can_view_student(user, assignment.student_id):
            raise PermissionDenied('Ce reçu ne vous concerne pas')
    else:
        ensure_same_school(payment)

    student = assignment.student
    cashier = db.session.get(User, payment.recorded_by) if payment.recorded_by else None
    body = payment.to_dict()
    body.update({
        'school_name': student.school.name if student and student.school else None,
        'class_name': student.classroom.name if student and student.classroom else None,
        'matricule': student.matricule if student else None,
        'amount_due': assignment.amount_due,
        'total_paid': assignment.amount_paid,
        'max_installments': assignment.structure.max_installments,
        'recorded_by': cashier.full_name if cashier else None,
    })
    return jsonify(body)


@fees_bp.route('/my', methods=['GET'])
@login_required
def my_fees():
    user = current_user()
    if user.role == ROLE_PARENT:
        students = children_of(user.id)
    elif user.role == ROLE_STUDENT:
        students = [user]
    else:
        raise PermissionDenied('Réservé aux parents et aux élèves')

    result = []
    for student in students:
        assignments = FeeAssignment.query.filter_by(student_id=student.id).all()
        result.append({
            'student_id': student.id,
            'student_name': student.full_name,
            'fees': [a.to_dict() for a in assignments],
            'total_due': sum(a.amount_due or 0 for a in assignments),
            'total_paid': sum(a.amount_paid or 0 for a in assignments),
            'balance': sum(a.balance() for a in assignments),
        })
    return jsonify({'students': result})
