"""
Outbound messaging: SMS and WhatsApp through the Vonage Messages API, and
push notifications through Firebase Cloud Messaging.
"""
import logging
import re

import requests
from flask import current_app

from . import notification_templates as templates
from .errors import MessagingError, ProviderNotConfigured

logger = logging.getLogger(__name__)

VONAGE_MESSAGES_URL = 'https://api.nexmo.com/v1/messages'
FCM_SEND_URL = 'https://fcm.googleapis.com/fcm/send'


def clean_phone(phone):
    """Digits only, with the Cameroon country code added to local 9-digit numbers"""
    digits = re.sub(r'\D', '', phone or '')
    if len(digits) == 9 and digits.startswith('6'):
        digits = '237' + digits
    return digits


def mask_phone(phone):
    digits = clean_phone(phone)
    return f"***{digits[-4:]}" if len(digits) >= 4 else '***'


class MessagingService:
    """Vonage Messages API client used for SMS and WhatsApp delivery"""

    def __init__(self, api_key=None, api_secret=None, sms_from=None, whatsapp_from=None, timeout=15):
        self._api_key = api_key
        self._api_secret = api_secret
        self._sms_from = sms_from
        self._whatsapp_from = whatsapp_from
        self.timeout = timeout

    @property
    def api_key(self):
        return self._api_key if self._api_key is not None else current_app.config.get('VONAGE_API_KEY')

    @property
    def api_secret(self):
        return self._api_secret if self._api_secret is not None else current_app.config.get('VONAGE_API_SECRET')

    @property
    def sms_from(self):
        return self._sms_from or current_app.config.get('VONAGE_SMS_FROM', 'EDUCAFRIC')

    @property
    def whatsapp_from(self):
        return self._whatsapp_from or current_app.config.get('VONAGE_WHATSAPP_FROM')

    def is_configured(self):
        return bool(self.api_key and self.api_secret)

    def health(self):
        if self.is_configured():
            return {'configured': True, 'message': 'Vonage Messages API configured'}
        return {
            'configured': False,
            'message': 'Vonage Messages API not configured. Please add VONAGE_API_KEY and VONAGE_API_SECRET.',
            'missingVars': [name for name, value in (('VONAGE_API_KEY', self.api_key),
                                                     ('VONAGE_API_SECRET', self.api_secret)) if not value],
        }

    def _send(self, channel, sender, to, text):
        if not self.is_configured():
            raise ProviderNotConfigured('Vonage service not configured. Please check API credentials.')

        payload = {
            'from': sender,
            'to': clean_phone(to),
            'message_type': 'text',
            'text': text,
            'channel': channel,
        }
        logger.info("[VONAGE] Sending %s message to %s", channel, mask_phone(to))
        try:
            response = requests.post(
                VONAGE_MESSAGES_URL,
                json=payload,
                auth=(self.api_key, self.api_secret),
                headers={'Accept': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("[VONAGE] %s message to %s failed: %s", channel, mask_phone(to), e)
            raise MessagingError(f'{channel} message failed: {e}')

        body = response.json() if response.content else {}
        return {'success': True, 'messageId': body.get('message_uuid'), 'channel': channel, 'to': payload['to']}

    def send_sms(self, to, text):
        return self._send('sms', self.sms_from, to, text)

    def send_whatsapp(self, to, text):
        return self._send('whatsapp', self.whatsapp_from, to, text)

    def send(self, to, text, channel='sms'):
        if channel == 'whatsapp':
            return self.send_whatsapp(to, text)
        return self.send_sms(to, text)

    def send_balance_reminder(self, student, parent_phone, balance, language='fr'):
        """Send an outstanding-fees reminder for one student to one parent"""
        school_name = student.school.name if student.school else 'EDUCAFRIC'
        text = templates.render('fee_reminder', language, student_name=student.full_name,
                                balance=templates.format_xaf(balance), school_name=school_name)
        try:
            result = self.send_sms(parent_phone, text)
        except MessagingError as e:
            return {'success': False, 'student': student.full_name, 'phone': mask_phone(parent_phone),
                    'error': e.message}
        result.update({'student': student.full_name, 'phone': mask_phone(parent_phone)})
        return result

    def send_bulk_reminders(self, students_to_notify):
        """students_to_notify holds dicts with student, parent_phone, balance and optional language"""
        if not self.is_configured():
            raise ProviderNotConfigured('Vonage service not configured. Please check API credentials.')
        results = []
        for item in students_to_notify:
            results.append(self.send_balance_reminder(item['student'], item['parent_phone'],
                                                      item['balance'], item.get('language', 'fr')))
        return results


class PushService:
    """Firebase Cloud Messaging (legacy HTTP API) client"""

    def __init__(self, server_key=None, timeout=10):
        self._server_key = server_key
        self.timeout = timeout

    @property
    def server_key(self):
        return self._server_key if self._server_key is not None else current_app.config.get('FCM_SERVER_KEY')

    def send_push(self, user_ids, title, body, data=None):
        from .models import DeviceToken

        if not self.server_key:
            raise ProviderNotConfigured('FCM server key not configured')

        tokens = [device.token for device in DeviceToken.query.filter(DeviceToken.user_id.in_(user_ids)).all()]
        if not tokens:
            return {'success': 0, 'failure': 0, 'sent': False}

        payload = {
            'notification': {'title': title, 'body': body},
            'data': data or {},
            'registration_ids': tokens,
        }
        try:
            response = requests.post(
                FCM_SEND_URL,
                json=payload,
                headers={'Authorization': f'key={self.server_key}', 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("[FCM] Push notification failed: %s", e)
            raise MessagingError(f'Push notification failed: {e}')

        result = response.json()
        return {'success': result.get('success', 0), 'failure': result.get('failure', 0), 'sent': True}


def notify_user(user, template_name, channel='sms', **context):
    """Render a template in the user's language and deliver it by SMS/WhatsApp.

    Returns a result dict; delivery failures are reported, not raised.
    """
    if not user.phone:
        return {'success': False, 'user_id': user.id, 'error': 'No phone number'}
    language = user.preferred_language or 'fr'
    text = templates.render(template_name, language, **context)
    try:
        result = messaging_service.send(user.phone, text, channel=channel)
    except (MessagingError, ProviderNotConfigured) as e:
        logger.warning("[NOTIFY] %s to user %s not delivered: %s", template_name, user.id, e.message)
        return {'success': False, 'user_id': user.id, 'error': e.message}
    result['user_id'] = user.id
    return result


messaging_service = MessagingService()
push_service = PushService()
