"""
Public verification of signed bulletins.

Anyone holding a bulletin (or its QR code) can check it is genuine with the
full verification code or the 8 character short code printed on it.
"""
import logging
import secrets
import string
import threading
import time
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from .auth import current_user, roles_required
from .errors import PermissionDenied, ValidationError
from .extensions import db
from .models import (ROLE_DIRECTOR, ROLE_SITE_ADMIN, BulletinVerification, BulletinVerificationLog,
                     BulletinVerificationSettings, Bulletin)

logger = logging.getLogger(__name__)

verification_bp = Blueprint('verification', __name__, url_prefix='/api/bulletins')

SHORT_CODE_ALPHABET = string.ascii_uppercase + string.digits
ACCESS_RESULTS = ('success', 'invalid_code', 'expired', 'access_denied')

MESSAGES = {
    'rate_limited': ('Too many verification attempts. Please try again later.',
                     'Trop de tentatives de vérification. Veuillez réessayer plus tard.'),
    'invalid_code': ('Invalid verification code. This bulletin could not be found.',
                     'Code de vérification invalide. Ce bulletin est introuvable.'),
    'expired': ('This verification code has expired.',
                'Ce code de vérification a expiré.'),
    'access_denied': ('Public verification is disabled for this school.',
                      'La vérification publique est désactivée pour cette école.'),
    'success': ('Authentic bulletin verified successfully.',
                'Bulletin authentique vérifié avec succès.'),
}


class RateLimiter:
    """Fixed-window request counter keyed by client address"""

    def __init__(self, limit, window_seconds):
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits = {}
        self._last_prune = 0.0
        self._lock = threading.Lock()

    def _prune(self, now):
        # Expired windows are dropped at most once per window
        if now - self._last_prune < self.window_seconds:
            return
        self._last_prune = now
        for key in [k for k, (start, _) in self._hits.items() if now - start >= self.window_seconds]:
            del self._hits[key]

    def hit(self, key, now=None):
        """Count one request for key. Returns False once the window is exhausted."""
        now = time.time() if now is None else now
        with self._lock:
            self._prune(now)
            window_start, count = self._hits.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            count += 1
            self._hits[key] = (window_start, count)
            return count <= self.limit

    def retry_after(self, key, now=None):
        now = time.time() if now is None else now
        window_start, _ = self._hits.get(key, (now, 0))
        return max(0, int(self.window_seconds - (now - window_start)))

    def __len__(self):
        return len(self._hits)

    def reset(self):
        with self._lock:
            self._hits.clear()


def init_verification(app):
    app.extensions['verification_limiter'] = RateLimiter(app.config['VERIFICATION_RATE_LIMIT'],
                                                         app.config['VERIFICATION_RATE_WINDOW'])


def _new_short_code():
    while True:
        code = ''.join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(8))
        if not BulletinVerification.query.filter_by(short_code=code).first():
            return code


def issue_verification(bulletin, signature):
    """Create the public verification record for a freshly signed bulletin"""
    now = datetime.utcnow()
    student = bulletin.student
    verification = BulletinVerification(
        bulletin_id=bulletin.id,
        school_id=bulletin.school_id,
        verification_code=signature.verification_code,
        short_code=_new_short_code(),
        student_name=student.full_name if student else None,
        student_matricule=student.matricule if student else None,
        class_name=bulletin.classroom.name if bulletin.classroom else None,
        school_name=bulletin.school.name if bulletin.school else None,
        term=bulletin.term,
        academic_year=bulletin.academic_year,
        general_average=bulletin.term_average,
        class_rank=bulletin.class_rank,
        total_students=bulletin.class_size,
        issued_at=now,
        approved_at=bulletin.approved_at,
        expires_at=now + timedelta(days=current_app.config['BULLETIN_VERIFICATION_VALID_DAYS']),
    )
    db.session.add(verification)
    return verification


def get_settings(school_id):
    settings = BulletinVerificationSettings.query.filter_by(school_id=school_id).first()
    if settings is None:
        settings = BulletinVerificationSettings(school_id=school_id, enable_public_verification=True,
                                                show_student_photo=True, show_school_logo=True,
                                                show_detailed_grades=False)
    return settings


def _client_ip():
    # ProxyFix rewrites remote_addr from trusted proxies in production
    return request.remote_addr or 'unknown'


def _log_attempt(verification, result, method, ip_address, language):
    db.session.add(BulletinVerificationLog(
        verification_id=verification.id if verification else None,
        school_id=verification.school_id if verification else None,
        access_result=result,
        verification_method=method,
        ip_address=ip_address,
        user_agent=(request.headers.get('User-Agent') or '')[:300],
        referrer=(request.referrer or '')[:300],
        language=language,
    ))


def _message_response(key, status, code=None, **extra):
    message, message_fr = MESSAGES[key]
    body = {'success': status == 200, 'message': message, 'messageFr': message_fr}
    if code:
        body['code'] = code
    body.update(extra)
    return jsonify(body), status


@verification_bp.route('/verify', methods=['GET', 'POST'])
def verify():
    params = (request.get_json(silent=True) or {}) if request.method == 'POST' else request.args
    code = (params.get('code') or '').strip()
    language = params.get('language') if params.get('language') in ('fr', 'en') else 'fr'
    if not code:
        raise ValidationError('Verification code is required / Code de vérification requis',
                              code='CODE_REQUIRED')

    ip_address = _client_ip()
    limiter = current_app.extensions['verification_limiter']
    if not limiter.hit(ip_address):
        logger.warning("[VERIFICATION] Rate limit reached for %s", ip_address)
        response, status = _message_response('rate_limited', 429, code='RATE_LIMITED')
        response.headers['Retry-After'] = str(limiter.retry_after(ip_address))
        return response, status

    method = 'qr_code' if len(code) > 10 else 'manual_entry'
    if method == 'qr_code':
        verification = BulletinVerification.query.filter_by(verification_code=code).first()
    else:
        verification = BulletinVerification.query.filter_by(short_code=code.upper()).first()

    if verification is None:
        _log_attempt(None, 'invalid_code', method, ip_address, language)
        db.session.commit()
        return _message_response('invalid_code', 404, code='INVALID_CODE')

    now = datetime.utcnow()
    if not verification.is_active or (verification.expires_at and verification.expires_at < now):
        _log_attempt(verification, 'expired', method, ip_address, language)
        db.session.commit()
        return _message_response('expired', 410, code='EXPIRED')

    settings = get_settings(verification.school_id)
    if not settings.enable_public_verification:
        _log_attempt(verification, 'access_denied', method, ip_address, language)
        db.session.commit()
        return _message_response('access_denied', 403, code='ACCESS_DENIED')

    verification.verification_count = (verification.verification_count or 0) + 1
    verification.last_verified_at = now
    verification.last_verified_ip = ip_address
    _log_attempt(verification, 'success', method, ip_address, language)
    db.session.commit()
    logger.info("[VERIFICATION] Bulletin %s verified (%s, count=%s)", verification.bulletin_id, method,
                verification.verification_count)

    bulletin_data = {
        'studentName': verification.student_name,
        'studentMatricule': verification.student_matricule,
        'className': verification.class_name,
        'schoolName': verification.school_name,
        'term': verification.term,
        'academicYear': verification.academic_year,
        'generalAverage': verification.general_average,
        'classRank': verification.class_rank,
        'totalStudents': verification.total_students,
        'issuedAt': verification.issued_at.isoformat() if verification.issued_at else None,
        'verificationCount': verification.verification_count,
    }
    if settings.show_detailed_grades:
        bulletin = db.session.get(Bulletin, verification.bulletin_id)
        bulletin_data['subjectDetails'] = bulletin.subject_details if bulletin else {}

    return _message_response('success', 200, bulletin=bulletin_data, verificationMethod=method)


def _ensure_school_director(school_id):
    user = current_user()
    if user.role != ROLE_SITE_ADMIN and user.school_id != school_id:
        raise PermissionDenied('Accès refusé aux paramètres d\'une autre école')


@verification_bp.route('/verification-settings/<int:school_id>', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
def get_verification_settings(school_id):
    _ensure_school_director(school_id)
    return jsonify({'success': True, 'settings': get_settings(school_id).to_dict()})


@verification_bp.route('/verification-settings/<int:school_id>', methods=['PUT'])
@roles_required(ROLE_DIRECTOR)
def update_verification_settings(school_id):
    _ensure_school_director(school_id)
    data = request.get_json(silent=True) or {}
    settings = get_settings(school_id)
    fields = {
        'enablePublicVerification': 'enable_public_verification',
        'showStudentPhoto': 'show_student_photo',
        'showSchoolLogo': 'show_school_logo',
        'showDetailedGrades': 'show_detailed_grades',
    }
    for key, attr in fields.items():
        if key in data:
            setattr(settings, attr, bool(data[key]))
    db.session.add(settings)
    db.session.commit()
    return jsonify({'success': True, 'settings': settings.to_dict()})


@verification_bp.route('/verification-stats/<int:school_id>', methods=['GET'])
@roles_required(ROLE_DIRECTOR)
def verification_stats(school_id):
    _ensure_school_director(school_id)
    counts = dict(
        db.session.query(BulletinVerificationLog.access_result, func.count(BulletinVerificationLog.id))
        .filter(BulletinVerificationLog.school_id == school_id)
        .group_by(BulletinVerificationLog.access_result)
        .all()
    )
    by_result = {result: counts.get(result, 0) for result in ACCESS_RESULTS}
    return jsonify({
        'success': True,
        'stats': {
            'issuedVerifications': BulletinVerification.query.filter_by(school_id=school_id).count(),
            'totalAttempts': sum(by_result.values()),
            'byResult': by_result,
        },
    })
