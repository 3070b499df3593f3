"""
School accounts and subscriptions, managed by the site admin, and the
feature gate applied to premium endpoints.
"""
import logging
from datetime import datetime, timedelta
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from . import notification_templates as templates
from .auth import current_user, roles_required
from .errors import AuthenticationError, Conflict, NotFound, SubscriptionRequired, ValidationError
from .extensions import db
from .messaging import notify_user
from .models import (ROLE_DIRECTOR, ROLE_SITE_ADMIN, Bulletin, BulletinVerification, BulletinVerificationLog,
                     BulletinVerificationSettings, Bus, BusEnrollment, BusRoute, Classroom, DeviceToken,
                     DigitalSignature, FeeAssignment, FeePayment, FeeStructure, Grade, NotificationLog,
                     OnlineClassActivation, ParentStudentLink, PaymentTransaction, RouteStop, School, Signature,
                     Subject, Subscription, User)
from .sandbox import is_sandbox_user

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

SUBSCRIPTION_DAYS = {
    '90days': 90,
    '12months': 365,
    '24months': 730,
    'absolute': None,
}

BASIC_FEATURES = {'bulletins', 'signatures', 'fees', 'bulk_import'}
PREMIUM_FEATURES = {'transport', 'whatsapp'}


def can_access_feature(school, feature):
    if school is None or not school.is_active or school.is_blocked or school.is_subscription_expired():
        return False
    if feature in PREMIUM_FEATURES:
        return school.subscription_status == 'active'
    return True


def check_feature(user, feature):
    """Raise SubscriptionRequired unless user may use feature"""
    if user is None:
        raise AuthenticationError('Authentication required')
    if is_sandbox_user(user) or (user.school and user.school.is_sandbox):
        logger.debug("[PREMIUM_EXEMPT] %s is exempt for feature %s", user.email, feature)
        return
    if user.role == ROLE_SITE_ADMIN:
        return

    school = user.school
    if not can_access_feature(school, feature):
        raise SubscriptionRequired('Cette fonctionnalité nécessite un abonnement premium',
                                   upgrade_url=f'/subscription/upgrade?school={user.school_id}',
                                   current_plan=school.subscription_type if school else None)


def feature_required(feature):
    """Refuse access unless the user's school plan includes feature"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            check_feature(current_user(), feature)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def get_school_or_404(school_id):
    school = db.session.get(School, school_id)
    if school is None:
        raise NotFound('École introuvable')
    return school


def _current_subscription(school_id):
    return Subscription.query.filter_by(school_id=school_id, is_active=True) \
        .order_by(Subscription.created_at.desc()).first()


@admin_bp.route('/schools', methods=['GET'])
@roles_required(ROLE_SITE_ADMIN)
def list_schools():
    schools_data = []
    for school in School.query.order_by(School.created_at.desc()).all():
        admin_user = User.query.filter_by(school_id=school.id, role=ROLE_DIRECTOR).first()
        subscription = _current_subscription(school.id)
        recent_notifications = NotificationLog.query.filter_by(school_id=school.id) \
            .order_by(NotificationLog.sent_at.desc()).limit(3).all()

        schools_data.append({
            'school': school.to_dict(),
            'admin_user': admin_user.to_dict() if admin_user else None,
            'subscription': subscription.to_dict() if subscription else None,
            'notifications': [n.to_dict() for n in recent_notifications],
            'days_remaining': school.days_remaining(),
            'needs_notification': school.needs_notification(),
        })
    return jsonify({'schools': schools_data, 'count': len(schools_data)})


@admin_bp.route('/schools', methods=['POST'])
@roles_required(ROLE_SITE_ADMIN)
def create_school():
    data = request.get_json(silent=True) or {}
    school_name = (data.get('school_name') or '').strip()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if not school_name or not username or not password:
        raise ValidationError('school_name, username and password are required')
    if User.query.filter_by(username=username).first():
        raise Conflict(f'Username "{username}" already exists! Please choose a different username.')

    now = datetime.utcnow()
    school = School(name=school_name, email=data.get('email'), phone=data.get('phone'),
                    address=data.get('address'), is_active=True, subscription_status='trial',
                    subscription_type='trial', trial_start_date=now)
    db.session.add(school)
    db.session.flush()

    director = User(username=username, email=(data.get('email') or None), phone=data.get('phone'),
                    role=ROLE_DIRECTOR, school_id=school.id, first_name=data.get('first_name'),
                    last_name=data.get('last_name'), password_change_required=True)
    director.set_password(password)
    db.session.add(director)

    trial_days = current_app.config['TRIAL_DAYS']
    db.session.add(Subscription(
        school_id=school.id,
        subscription_type='trial',
        start_date=now,
        end_date=now + timedelta(days=trial_days),
        amount_paid=0.0,
        created_by=current_user().username,
        notes=f'Initial {trial_days}-day trial subscription',
    ))
    db.session.commit()

    logger.info("[ADMIN] School %s created with director %s", school.name, username)
    return jsonify({'success': True, 'school': school.to_dict(), 'admin_user': director.to_dict()}), 201


@admin_bp.route('/schools/<int:school_id>/block', methods=['POST'])
@roles_required(ROLE_SITE_ADMIN)
def block_school(school_id):
    school = get_school_or_404(school_id)
    school.is_blocked = True
    school.subscription_status = 'blocked'
    db.session.commit()
    logger.info("[ADMIN] School %s blocked", school.name)
    return jsonify({'success': True, 'message': f'School "{school.name}" has been blocked!'})


@admin_bp.route('/schools/<int:school_id>/unblock', methods=['POST'])
@roles_required(ROLE_SITE_ADMIN)
def unblock_school(school_id):
    school = get_school_or_404(school_id)
    school.is_blocked = False
    school.subscription_status = 'active'
    db.session.commit()
    logger.info("[ADMIN] School %s unblocked", school.name)
    return jsonify({'success': True, 'message': f'School "{school.name}" has been unblocked!'})


def _delete_school_data(school_id):
    user_ids = [uid for (uid,) in db.session.query(User.id).filter_by(school_id=school_id)]
    route_ids = [rid for (rid,) in db.session.query(BusRoute.id).filter_by(school_id=school_id)]
    verification_ids = [vid for (vid,) in db.session.query(BulletinVerification.id).filter_by(school_id=school_id)]
    assignment_ids = [aid for (aid,) in db.session.query(FeeAssignment.id).filter_by(school_id=school_id)]

    # Children before parents so foreign keys hold on PostgreSQL
    deletions = [
        BulletinVerificationLog.query.filter(BulletinVerificationLog.verification_id.in_(verification_ids)),
        BulletinVerificationLog.query.filter_by(school_id=school_id),
        BulletinVerification.query.filter_by(school_id=school_id),
        BulletinVerificationSettings.query.filter_by(school_id=school_id),
        DigitalSignature.query.filter_by(school_id=school_id),
        Signature.query.filter(Signature.user_id.in_(user_ids)),
        Bulletin.query.filter_by(school_id=school_id),
        Grade.query.filter_by(school_id=school_id),
        Subject.query.filter_by(school_id=school_id),
        FeePayment.query.filter(FeePayment.assignment_id.in_(assignment_ids)),
        FeeAssignment.query.filter_by(school_id=school_id),
        FeeStructure.query.filter_by(school_id=school_id),
        BusEnrollment.query.filter_by(school_id=school_id),
        RouteStop.query.filter(RouteStop.route_id.in_(route_ids)),
        BusRoute.query.filter_by(school_id=school_id),
        Bus.query.filter_by(school_id=school_id),
        DeviceToken.query.filter(DeviceToken.user_id.in_(user_ids)),
        ParentStudentLink.query.filter(ParentStudentLink.parent_id.in_(user_ids)
                                       | ParentStudentLink.student_id.in_(user_ids)),
        OnlineClassActivation.query.filter(OnlineClassActivation.teacher_id.in_(user_ids)),
        PaymentTransaction.query.filter(PaymentTransaction.user_id.in_(user_ids)),
        NotificationLog.query.filter_by(school_id=school_id),
        Subscription.query.filter_by(school_id=school_id),
        User.query.filter_by(school_id=school_id),
        Classroom.query.filter_by(school_id=school_id),
    ]
    for query in deletions:
        query.delete(synchronize_session=False)


@admin_bp.route('/schools/<int:school_id>', methods=['DELETE'])
@roles_required(ROLE_SITE_ADMIN)
def delete_school(school_id):
    school = get_school_or_404(school_id)
    school_name = school.name
    _delete_school_data(school_id)
    db.session.delete(school)
    db.session.commit()
    logger.info("[ADMIN] School %s and all associated data deleted", school_name)
    return jsonify({'success': True,
                    'message': f'School "{school_name}" and all associated data deleted successfully!'})


@admin_bp.route('/schools/<int:school_id>/subscription', methods=['POST'])
@roles_required(ROLE_SITE_ADMIN)
def update_subscription(school_id):
    school = get_school_or_404(school_id)
    data = request.get_json(silent=True) or {}
    subscription_type = data.get('subscription_type')
    if subscription_type not in SUBSCRIPTION_DAYS:
        raise ValidationError(f'Unknown subscription type: {subscription_type}')
    try:
        amount_paid = float(data.get('amount_paid') or 0)
    except (TypeError, ValueError):
        raise ValidationError('amount_paid must be a number')

    # Deactivate current subscriptions
    Subscription.query.filter_by(school_id=school_id, is_active=True).update({'is_active': False})

    start_date = datetime.utcnow()
    days = SUBSCRIPTION_DAYS[subscription_type]
    end_date = start_date + timedelta(days=days) if days else None

    subscription = Subscription(
        school_id=school_id,
        subscription_type=subscription_type,
        start_date=start_date,
        end_date=end_date,
        amount_paid=amount_paid,
        payment_reference=data.get('payment_reference', ''),
        created_by=current_user().username,
        notes=data.get('notes', ''),
    )
    db.session.add(subscription)

    school.subscription_status = 'active'
    school.subscription_type = subscription_type
    school.subscription_end_date = end_date
    school.is_blocked = False
    db.session.commit()

    logger.info("[ADMIN] Subscription %s set for %s", subscription_type, school.name)
    return jsonify({'success': True, 'subscription': subscription.to_dict(), 'school': school.to_dict()})


@admin_bp.route('/schools/<int:school_id>/notify', methods=['POST'])
@roles_required(ROLE_SITE_ADMIN)
def send_notification(school_id):
    school = get_school_or_404(school_id)
    days_remaining = school.days_remaining()
    if days_remaining is None:
        raise ValidationError('School has an unlimited subscription')

    if days_remaining <= 0:
        notification_type = 'subscription_expired'
    else:
        notification_type = 'subscription_reminder'
    message = templates.render(notification_type, 'en', days=days_remaining)

    db.session.add(NotificationLog(school_id=school_id, notification_type=notification_type, message=message,
                                   days_remaining=days_remaining))
    school.last_notification_sent = datetime.utcnow()
    db.session.commit()

    directors = User.query.filter_by(school_id=school_id, role=ROLE_DIRECTOR, is_active=True).all()
    deliveries = [notify_user(director, notification_type, days=days_remaining) for director in directors]

    return jsonify({
        'success': True,
        'notification_type': notification_type,
        'message': message,
        'deliveries': deliveries,
    })