"""
Authentication, role checks and tenant isolation helpers.

Two credentials are accepted: the Flask session cookie set by /api/auth/login,
and a bearer JWT issued by /api/auth/token for the mobile app and API
clients. Cookie-authenticated writes must carry a CSRF token.
"""
import logging
from datetime import datetime, timedelta
from functools import wraps

from flask import Blueprint, current_app, g, jsonify, request, session
from flask_wtf.csrf import generate_csrf
from jose import JWTError, jwt

from .errors import AuthenticationError, PermissionDenied, ValidationError
from .extensions import csrf, db
from .models import ROLE_SITE_ADMIN, DeviceToken, School, User

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')
devices_bp = Blueprint('devices', __name__, url_prefix='/api/notifications')


def issue_token(user):
    now = datetime.utcnow()
    claims = {
        'sub': str(user.id),
        'role': user.role,
        'school_id': user.school_id,
        'iat': now,
        'exp': now + timedelta(hours=current_app.config['JWT_EXPIRES_HOURS']),
    }
    return jwt.encode(claims, current_app.config['JWT_SECRET_KEY'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def _user_from_bearer(header):
    token = header.split(' ', 1)[1].strip()
    try:
        claims = jwt.decode(token, current_app.config['JWT_SECRET_KEY'],
                            algorithms=[current_app.config['JWT_ALGORITHM']])
    except JWTError as e:
        raise AuthenticationError(f'Invalid token: {e}', code='INVALID_TOKEN')
    return db.session.get(User, int(claims['sub']))


@auth_bp.before_app_request
def _reset_current_user():
    # g outlives the request when an app context is already pushed
    g.pop('current_user', None)
    g.pop('auth_method', None)


def current_user():
    """Resolve the authenticated user for this request, or None"""
    if 'current_user' in g:
        return g.current_user
    user = None
    g.auth_method = None
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        user = _user_from_bearer(header)
        g.auth_method = 'bearer'
    elif session.get('user_id'):
        user = db.session.get(User, session['user_id'])
        g.auth_method = 'session'
    if user is not None and not user.is_active:
        user = None
    g.current_user = user
    return user


def get_current_school_id():
    user = current_user()
    return user.school_id if user else None


def school_query(model):
    """Query for model restricted to the current user's school"""
    query = model.query
    user = current_user()
    if user and user.role != ROLE_SITE_ADMIN:
        query = query.filter_by(school_id=user.school_id)
    return query


def ensure_same_school(obj):
    user = current_user()
    if user.role != ROLE_SITE_ADMIN and getattr(obj, 'school_id', None) != user.school_id:
        raise PermissionDenied('Accès refusé à une ressource d\'une autre école')
    return obj


def validate_tenant_access(user):
    """Validate current user's tenant access"""
    if user.role == ROLE_SITE_ADMIN:
        return True
    if not user.school_id:
        return False
    school = db.session.get(School, user.school_id)
    if not school or not school.is_active or school.is_blocked:
        return False
    # Check subscription status
    if school.is_subscription_expired():
        return False
    return True


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if user is None:
            raise AuthenticationError('Authentication required')

        if not validate_tenant_access(user):
            if g.auth_method == 'session':
                session.clear()
            raise PermissionDenied('Access denied or subscription expired. Please contact support.',
                                   code='TENANT_ACCESS_DENIED')

        if g.auth_method == 'session' and current_app.config.get('WTF_CSRF_ENABLED', True):
            csrf.protect()

        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            user = current_user()
            if user.role not in roles and user.role != ROLE_SITE_ADMIN:
                raise PermissionDenied(f"Rôle requis: {', '.join(roles)}")
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _authenticate(data):
    identifier = (data.get('username') or data.get('email') or '').strip()
    password = data.get('password') or ''
    if not identifier or not password:
        raise ValidationError('Username and password are required')

    user = User.query.filter(
        (User.username == identifier) | (User.email == identifier.lower())
    ).filter_by(is_active=True).first()
    if not user or not user.check_password(password):
        logger.info("[AUTH] Failed login for %s", identifier)
        raise AuthenticationError('Invalid username or password!', code='INVALID_CREDENTIALS')

    # Validate school access
    if user.school_id:
        school = db.session.get(School, user.school_id)
        if not school or not school.is_active:
            raise PermissionDenied('School account is inactive. Please contact support.')
        if school.is_blocked:
            raise PermissionDenied('School account is suspended. Please contact support.')
    return user


@auth_bp.route('/login', methods=['POST'])
def login():
    user = _authenticate(request.get_json(silent=True) or request.form)
    session.clear()
    session['user_id'] = user.id
    session['user_role'] = user.role
    session['school_id'] = user.school_id
    logger.info("[AUTH] %s logged in (%s)", user.username, user.role)
    return jsonify({
        'success': True,
        'user': user.to_dict(),
        'password_change_required': user.password_change_required,
        'csrf_token': generate_csrf(),
    })


@auth_bp.route('/token', methods=['POST'])
def token():
    user = _authenticate(request.get_json(silent=True) or {})
    return jsonify({
        'access_token': issue_token(user),
        'token_type': 'bearer',
        'expires_in': current_app.config['JWT_EXPIRES_HOURS'] * 3600,
        'user': user.to_dict(),
    })


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True, 'message': 'You have been logged out successfully!'})


@auth_bp.route('/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@auth_bp.route('/me')
@login_required
def me():
    user = current_user()
    body = user.to_dict()
    if user.school:
        body['school'] = user.school.to_dict()
    return jsonify(body)


@auth_bp.route('/change-password', methods=['POST'])
@login_required
def change_password():
    user = current_user()
    data = request.get_json(silent=True) or {}
    if not user.check_password(data.get('current_password')):
        raise ValidationError('Current password is incorrect')
    new_password = data.get('new_password') or ''
    if len(new_password) < 8:
        raise ValidationError('Password must be at least 8 characters long')
    if new_password != data.get('confirm_password', new_password):
        raise ValidationError('Passwords do not match')
    user.set_password(new_password)
    user.password_change_required = False
    db.session.commit()
    return jsonify({'success': True})


@devices_bp.route('/devices', methods=['POST'])
@login_required
def register_device():
    user = current_user()
    data = request.get_json(silent=True) or {}
    device_token = (data.get('token') or '').strip()
    if not device_token:
        raise ValidationError('Device token is required')
    device = DeviceToken.query.filter_by(token=device_token).first()
    if device:
        device.user_id = user.id
        device.platform = data.get('platform', device.platform)
    else:
        device = DeviceToken(user_id=user.id, token=device_token, platform=data.get('platform', 'web'))
        db.session.add(device)
    db.session.commit()
    return jsonify({'success': True, 'device_id': device.id})
