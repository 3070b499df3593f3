"""
MTN Mobile Money collection client (OAuth2 client credentials, request-to-pay)
"""
import logging
import re
import time

import requests
from flask import current_app

from .errors import PaymentError, ProviderNotConfigured, ValidationError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER = 300  # refresh 5 minutes before expiry

# Cameroon MTN ranges: 67x, 650-654 and 680-684
MTN_NUMBER_RE = re.compile(r'^6(7\d|5[0-4]|8[0-4])\d{6}$')


def validate_phone(phone_number):
    """Normalise a Cameroon MTN number to 237XXXXXXXXX or raise ValidationError"""
    digits = re.sub(r'\D', '', phone_number or '')
    if digits.startswith('237') and len(digits) == 12:
        digits = digits[3:]
    if not MTN_NUMBER_RE.match(digits):
        raise ValidationError(
            'Numéro MTN invalide. Utilisez un numéro MTN Cameroun (67X, 650-654, 680-684).',
            code='INVALID_MTN_NUMBER',
        )
    return '237' + digits


class MTNMobileMoneyClient:
    def __init__(self, client_id=None, client_secret=None, base_url=None, timeout=30):
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url
        self.timeout = timeout
        self._token = None
        self._token_expires_at = 0.0

    @property
    def client_id(self):
        return self._client_id if self._client_id is not None else current_app.config.get('MTN_CLIENT_ID')

    @property
    def client_secret(self):
        return self._client_secret if self._client_secret is not None else current_app.config.get('MTN_CLIENT_SECRET')

    @property
    def base_url(self):
        return (self._base_url or current_app.config.get('MTN_BASE_URL')).rstrip('/')

    def is_configured(self):
        return bool(self.client_id and self.client_secret)

    def _get_access_token(self):
        logger.info("[MTN] Requesting access token...")
        try:
            response = requests.post(
                f'{self.base_url}/oauth2/token',
                data={'grant_type': 'client_credentials'},
                auth=(self.client_id, self.client_secret),
                headers={'Accept': 'application/json'},
                timeout=10,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("[MTN] Failed to get access token: %s", e)
            raise PaymentError(f'MTN authentication failed: {e}')

        token_data = response.json()
        self._token = token_data['access_token']
        self._token_expires_at = time.time() + int(token_data.get('expires_in', 3600))
        return self._token

    def ensure_valid_token(self):
        if not self.is_configured():
            raise ProviderNotConfigured('MTN credentials not configured')
        if not self._token or time.time() > self._token_expires_at - TOKEN_EXPIRY_BUFFER:
            return self._get_access_token()
        return self._token

    def _headers(self, reference_id=None):
        headers = {
            'Authorization': f'Bearer {self.ensure_valid_token()}',
            'Accept': 'application/json',
            'X-Target-Environment': current_app.config.get('MTN_TARGET_ENVIRONMENT', 'sandbox'),
        }
        if reference_id:
            headers['X-Reference-Id'] = reference_id
        return headers

    def request_to_pay(self, amount, phone_number, external_id, payer_message=None, payee_note=None,
                       callback_url=None):
        payload = {
            'amount': amount,
            'currency': 'XAF',
            'externalId': external_id,
            'payer': {'phoneNumber': phone_number},
            'payerMessage': payer_message or f'Paiement EDUCAFRIC - {external_id}',
            'payeeNote': payee_note or 'EDUCAFRIC',
        }
        if callback_url:
            payload['callbackUrl'] = callback_url
        headers = self._headers(reference_id=external_id)
        logger.info("[MTN] Requesting payment collection of %s XAF (ref %s)", amount, external_id)
        try:
            response = requests.post(f'{self.base_url}/v1/requesttopay', json=payload, headers=headers,
                                     timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("[MTN] Payment request failed: %s", e)
            raise PaymentError(f'MTN payment request failed: {e}')
        return response.json() if response.content else {'status': 'PENDING', 'externalId': external_id}

    def payment_status(self, reference_id):
        headers = self._headers()
        try:
            response = requests.get(f'{self.base_url}/v1/requesttopay/{reference_id}', headers=headers,
                                    timeout=10)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("[MTN] Failed to check payment status for %s: %s", reference_id, e)
            raise PaymentError(f'MTN status check failed: {e}')
        return response.json()


mtn_client = MTNMobileMoneyClient()
