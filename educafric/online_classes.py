"""
Purchase of the online classes module by teachers, paid by card (Stripe)
or MTN Mobile Money.
"""
import logging
import time
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request

from .auth import current_user, login_required
from .errors import NotFound, PermissionDenied, ValidationError
from .extensions import db
from .messaging import mask_phone
from .models import ROLE_TEACHER, OnlineClassActivation, PaymentTransaction
from .mtn import mtn_client, validate_phone
from .stripe_client import stripe_client, verify_webhook

logger = logging.getLogger(__name__)

online_classes_bp = Blueprint('online_classes', __name__, url_prefix='/api/online-class-payments')

PRICES_XAF = {
    'daily': 2500,
    'weekly': 10000,
    'monthly': 25000,
    'quarterly': 73000,
    'semestral': 105000,
    'yearly': 150000,
}

DURATION_DAYS = {
    'daily': 1,
    'weekly': 7,
    'monthly': 30,
    'quarterly': 90,
    'semestral': 180,
    'yearly': 365,
}


def calculate_price(duration_type):
    if duration_type not in PRICES_XAF:
        raise ValidationError(f'Durée invalide: {duration_type}', code='INVALID_DURATION')
    return PRICES_XAF[duration_type]


def current_activation(teacher_id, now=None):
    now = now or datetime.utcnow()
    return OnlineClassActivation.query.filter(
        OnlineClassActivation.teacher_id == teacher_id,
        OnlineClassActivation.is_active.is_(True),
        OnlineClassActivation.end_date > now,
    ).order_by(OnlineClassActivation.end_date.desc()).first()


def activate_for_teacher(teacher_id, payment_reference, payment_method, duration_type, amount):
    """Grant or extend access. A payment reference only ever activates once."""
    existing = OnlineClassActivation.query.filter_by(payment_reference=payment_reference).first()
    if existing:
        return existing, False

    now = datetime.utcnow()
    active = current_activation(teacher_id, now)
    start_date = active.end_date if active else now
    activation = OnlineClassActivation(
        teacher_id=teacher_id,
        payment_reference=payment_reference,
        payment_method=payment_method,
        duration_type=duration_type,
        amount=int(amount),
        start_date=start_date,
        end_date=start_date + timedelta(days=DURATION_DAYS[duration_type]),
    )
    db.session.add(activation)
    logger.info("[ONLINE_CLASS_PAYMENT] Teacher %s activated via %s until %s", teacher_id, payment_method,
                activation.end_date.isoformat())
    return activation, True


def _record_transaction(provider, reference, user_id, amount, status, **details):
    transaction = PaymentTransaction.query.filter_by(reference=reference).first()
    if transaction is None:
        transaction = PaymentTransaction(provider=provider, reference=reference, purpose='online_classes',
                                         user_id=user_id, amount=amount, currency='XAF', details={})
        db.session.add(transaction)
    transaction.status = status
    transaction.details = dict(transaction.details or {}, **details)
    return transaction


def _require_teacher():
    user = current_user()
    if user.role != ROLE_TEACHER:
        raise PermissionDenied('Seuls les enseignants peuvent acheter ce module')
    return user


@online_classes_bp.route('/create-stripe-intent', methods=['POST'])
@login_required
def create_stripe_intent():
    user = _require_teacher()
    duration_type = (request.get_json(silent=True) or {}).get('durationType')
    amount = calculate_price(duration_type)

    # XAF is a zero-decimal currency
    intent = stripe_client.create_payment_intent(
        amount=amount,
        currency='xaf',
        metadata={
            'teacherId': str(user.id),
            'durationType': duration_type,
            'module': 'online_classes',
            'teacherEmail': user.email or '',
            'teacherName': user.full_name,
        },
        description=f'Educafric - Module Cours en Ligne ({duration_type})',
    )
    _record_transaction('stripe', intent['id'], user.id, amount, 'pending', durationType=duration_type)
    db.session.commit()

    logger.info("[ONLINE_CLASS_PAYMENT] Stripe PaymentIntent %s created for teacher %s", intent['id'], user.id)
    return jsonify({
        'success': True,
        'clientSecret': intent.get('client_secret'),
        'paymentIntentId': intent['id'],
        'amount': amount,
        'currency': 'XAF',
        'durationType': duration_type,
    })


@online_classes_bp.route('/confirm-stripe-payment', methods=['POST'])
@login_required
def confirm_stripe_payment():
    user = _require_teacher()
    data = request.get_json(silent=True) or {}
    payment_intent_id = data.get('paymentIntentId')
    if not payment_intent_id:
        raise ValidationError('paymentIntentId requis')
    calculate_price(data.get('durationType'))

    intent = stripe_client.retrieve_payment_intent(payment_intent_id)
    if intent.get('status') != 'succeeded':
        raise ValidationError(f"Paiement non confirmé. Statut: {intent.get('status')}", code='PAYMENT_NOT_CONFIRMED')

    metadata = intent.get('metadata') or {}
    if metadata.get('teacherId') != str(user.id):
        logger.warning("[ONLINE_CLASS_PAYMENT] Teacher mismatch on %s: expected %s, got %s", payment_intent_id,
                       user.id, metadata.get('teacherId'))
        raise PermissionDenied('Ce paiement ne correspond pas à votre compte')

    duration_type = metadata.get('durationType') or data['durationType']
    if intent.get('amount') != calculate_price(duration_type):
        raise ValidationError('Payment amount mismatch', code='AMOUNT_MISMATCH')

    activation, created = activate_for_teacher(user.id, payment_intent_id, 'stripe', duration_type, intent['amount'])
    _record_transaction('stripe', payment_intent_id, user.id, intent['amount'], 'successful')
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Module cours en ligne activé avec succès!' if created else 'Module déjà activé',
        'activation': activation.to_dict(),
    })


@online_classes_bp.route('/create-mtn-payment', methods=['POST'])
@login_required
def create_mtn_payment():
    user = _require_teacher()
    data = request.get_json(silent=True) or {}
    duration_type = data.get('durationType')
    amount = calculate_price(duration_type)
    phone_number = validate_phone(data.get('phoneNumber'))

    reference = f'ONLINECLASS_{user.id}_{duration_type}_{int(time.time() * 1000)}'
    callback_url = f"{current_app.config['BASE_URL']}/api/online-class-payments/mtn-webhook"
    result = mtn_client.request_to_pay(
        amount=amount,
        phone_number=phone_number,
        external_id=reference,
        payer_message=f'Cours en Ligne ({duration_type})',
        callback_url=callback_url,
    )
    _record_transaction('mtn', reference, user.id, amount, 'pending', durationType=duration_type,
                        phone=mask_phone(phone_number))
    db.session.commit()

    logger.info("[ONLINE_CLASS_PAYMENT] MTN payment %s requested from %s", reference, mask_phone(phone_number))
    return jsonify({
        'success': True,
        'reference': reference,
        'status': result.get('status', 'PENDING'),
        'instructions': 'Confirmez le paiement sur votre téléphone MTN Mobile Money.',
        'amount': amount,
        'currency': 'XAF',
        'durationType': duration_type,
    })


@online_classes_bp.route('/stripe-webhook', methods=['POST'])
def stripe_webhook():
    event = verify_webhook(request.get_data(), request.headers.get('Stripe-Signature'),
                           current_app.config.get('STRIPE_WEBHOOK_SECRET'))
    logger.info("[ONLINE_CLASS_PAYMENT] Stripe webhook received: %s", event.get('type'))

    if event.get('type') == 'payment_intent.succeeded':
        intent = event['data']['object']
        metadata = intent.get('metadata') or {}
        if metadata.get('module') not in (None, 'online_classes') or not metadata.get('teacherId'):
            return jsonify({'received': True, 'ignored': True})

        duration_type = metadata.get('durationType')
        expected = calculate_price(duration_type)
        if intent.get('amount') != expected:
            logger.error("[ONLINE_CLASS_PAYMENT] Amount mismatch on %s: expected %s, received %s",
                         intent.get('id'), expected, intent.get('amount'))
            raise ValidationError('Payment amount mismatch', code='AMOUNT_MISMATCH')

        teacher_id = int(metadata['teacherId'])
        activate_for_teacher(teacher_id, intent['id'], 'stripe', duration_type, intent['amount'])
        _record_transaction('stripe', intent['id'], teacher_id, intent['amount'], 'successful')
        db.session.commit()

    return jsonify({'received': True})


@online_classes_bp.route('/mtn-webhook', methods=['POST'])
def mtn_webhook():
    data = request.get_json(silent=True) or {}
    parameters = data.get('parameters') or {}
    reference = data.get('externalId') or data.get('referenceId') or parameters.get('order_id')
    status = (data.get('status') or data.get('Status') or '').upper()
    logger.info("[ONLINE_CLASS_PAYMENT] MTN webhook received for %s: %s", reference, status)

    transaction = PaymentTransaction.query.filter_by(provider='mtn', reference=reference).first() \
        if reference else None
    if transaction is None:
        raise NotFound('Unknown payment reference', code='UNKNOWN_REFERENCE')

    if transaction.status == 'successful':
        return jsonify({'success': True, 'message': 'Already processed'})

    if status == 'SUCCESSFUL':
        received = data.get('amount') or parameters.get('amount') or transaction.amount
        if abs(float(received) - transaction.amount) > 1:
            logger.error("[ONLINE_CLASS_PAYMENT] MTN amount mismatch on %s: expected %s, received %s",
                         reference, transaction.amount, received)
            raise ValidationError('Payment amount mismatch', code='AMOUNT_MISMATCH')

        activate_for_teacher(transaction.user_id, reference, 'mtn', transaction.details['durationType'],
                             transaction.amount)
        transaction.status = 'successful'
        transaction.details = dict(transaction.details, financialTransactionId=data.get('financialTransactionId'))
        db.session.commit()
        return jsonify({'success': True, 'message': 'Webhook processed successfully'})

    if status == 'FAILED':
        transaction.status = 'failed'
        transaction.details = dict(transaction.details, reason=data.get('reason') or data.get('Reason'))
        db.session.commit()
        return jsonify({'success': True, 'message': 'Failed payment processed'})

    return jsonify({'success': True, 'message': 'Webhook received'})


@online_classes_bp.route('/status', methods=['GET'])
@login_required
def status():
    user = current_user()
    activation = current_activation(user.id)
    if activation is None:
        return jsonify({'isActive': False, 'activation': None})
    return jsonify({
        'isActive': True,
        'activation': activation.to_dict(),
        'daysRemaining': max(0, (activation.end_date - datetime.utcnow()).days),
    })
