"""
Error types shared by the API blueprints and provider clients
"""
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class EducafricError(Exception):
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message, status_code=None, code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self):
        body = {'success': False, 'error': self.message, 'code': self.code}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(EducafricError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class AuthenticationError(EducafricError):
    status_code = 401
    code = 'AUTHENTICATION_REQUIRED'


class PermissionDenied(EducafricError):
    status_code = 403
    code = 'ACCESS_DENIED'


class SubscriptionRequired(PermissionDenied):
    code = 'PREMIUM_REQUIRED'

    def __init__(self, message, upgrade_url, current_plan=None, **kwargs):
        super().__init__(message, **kwargs)
        self.upgrade_url = upgrade_url
        self.current_plan = current_plan

    def to_dict(self):
        body = super().to_dict()
        body['upgradeUrl'] = self.upgrade_url
        body['currentPlan'] = self.current_plan
        return body


class NotFound(EducafricError):
    status_code = 404
    code = 'NOT_FOUND'


class Conflict(EducafricError):
    status_code = 409
    code = 'CONFLICT'


class PaymentError(EducafricError):
    status_code = 502
    code = 'PAYMENT_PROVIDER_ERROR'


class MessagingError(EducafricError):
    status_code = 502
    code = 'MESSAGING_PROVIDER_ERROR'


class ProviderNotConfigured(EducafricError):
    status_code = 503
    code = 'PROVIDER_NOT_CONFIGURED'


def parse_int(value, field, default=None):
    """Coerce a request value to int or raise ValidationError"""
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a whole number')


def register_error_handlers(app, db):
    @app.errorhandler(EducafricError)
    def handle_educafric_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return jsonify({
            'success': False,
            'error': error.description,
            'code': error.name.upper().replace(' ', '_'),
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.exception("[APP] Unhandled error: %s", error)
        db.session.rollback()
        return jsonify({'success': False, 'error': 'Internal server error', 'code': 'INTERNAL_ERROR'}), 500
