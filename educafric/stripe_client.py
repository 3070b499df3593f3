"""
Stripe PaymentIntents and webhook signature checks through the Stripe SDK
"""
import json
import logging

import stripe
from flask import current_app

from .errors import PaymentError, ProviderNotConfigured, ValidationError

logger = logging.getLogger(__name__)


def _intent_dict(intent):
    return {
        'id': intent.id,
        'status': intent.status,
        'amount': intent.amount,
        'client_secret': getattr(intent, 'client_secret', None),
        'metadata': dict(intent.metadata or {}),
    }


class StripeClient:
    def __init__(self, secret_key=None):
        self._secret_key = secret_key

    @property
    def secret_key(self):
        return self._secret_key if self._secret_key is not None else current_app.config.get('STRIPE_SECRET_KEY')

    def _api_key(self):
        if not self.secret_key:
            raise ProviderNotConfigured('Stripe non configuré')
        return self.secret_key

    def create_payment_intent(self, amount, currency, metadata=None, description=None):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._api_key(),
                amount=amount,
                currency=currency,
                description=description,
                metadata=metadata or {},
                automatic_payment_methods={'enabled': True},
            )
        except stripe.StripeError as e:
            logger.error("[STRIPE] PaymentIntent creation failed: %s", e)
            raise PaymentError(f'Stripe error: {e.user_message or e}')
        return _intent_dict(intent)

    def retrieve_payment_intent(self, payment_intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._api_key())
        except stripe.StripeError as e:
            logger.error("[STRIPE] PaymentIntent %s lookup failed: %s", payment_intent_id, e)
            raise PaymentError(f'Stripe error: {e.user_message or e}')
        return _intent_dict(intent)


def verify_webhook(payload, signature_header, secret, tolerance=300):
    """Check a Stripe-Signature header and return the decoded event"""
    if not secret:
        raise ProviderNotConfigured('Stripe webhook secret not configured')
    if not signature_header:
        raise ValidationError('Missing Stripe-Signature header', code='INVALID_SIGNATURE')

    if isinstance(payload, bytes):
        payload = payload.decode('utf-8')
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("[STRIPE] Webhook signature rejected: %s", e)
        raise ValidationError('Invalid Stripe signature', code='INVALID_SIGNATURE')

    try:
        return json.loads(payload)
    except ValueError:
        raise ValidationError('Invalid webhook payload', code='INVALID_PAYLOAD')


stripe_client = StripeClient()
