"""
Electronic signature of bulletins by the school director.

A director first registers a drawn signature image, then signs approved
bulletins one by one or in bulk. Each signature produces a DigitalSignature
record and a public verification entry.
"""
import hashlib
import json
import logging
import secrets
from datetime import datetime

from flask import Blueprint, jsonify, request

from .auth import current_user, ensure_same_school, login_required, roles_required
from .bulletins import document_hash, get_bulletin_or_404
from .errors import Conflict, EducafricError, NotFound, PermissionDenied, ValidationError
from .extensions import db
from .models import (BULLETIN_APPROVED, BULLETIN_SENT, BULLETIN_SIGNED, ROLE_DIRECTOR, ROLE_SITE_ADMIN,
                     ROLE_TEACHER, DigitalSignature, School, Signature, User)

logger = logging.getLogger(__name__)

signatures_bp = Blueprint('signatures', __name__, url_prefix='/api/signatures')
bulletin_signatures_bp = Blueprint('bulletin_signatures', __name__, url_prefix='/api/bulletins')

# Which account role may register a signature for which official position
SIGNATURE_ROLES = {
    'director': ROLE_DIRECTOR,
    'principal_teacher': ROLE_TEACHER,
}

SIGNATORY_TITLES = {
    ROLE_DIRECTOR: 'Directeur',
    ROLE_SITE_ADMIN: 'Administrateur',
}


def active_signature(user_id, user_role='director'):
    return Signature.query.filter_by(user_id=user_id, user_role=user_role, is_active=True).first()


def signature_hash(bulletin_id, signatory_id, timestamp, doc_hash):
    payload = json.dumps({
        'bulletinId': bulletin_id,
        'signatoryId': signatory_id,
        'timestamp': timestamp,
        'documentHash': doc_hash,
    }, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def bulletin_signature(bulletin):
    return DigitalSignature.query.filter_by(document_type='bulletin', document_id=bulletin.id,
                                            is_valid=True).first()


def signature_status(bulletin):
    signature = bulletin_signature(bulletin)
    if signature is None:
        return {
            'status': 'draft',
            'signed': False,
            'signedAt': None,
            'requiredSignatures': [ROLE_DIRECTOR],
            'completedSignatures': [],
        }
    return {
        'status': 'signed',
        'signed': True,
        'signedAt': signature.signed_at.isoformat(),
        'requiredSignatures': [ROLE_DIRECTOR],
        'completedSignatures': [{
            'role': signature.signatory_role,
            'name': signature.signatory_name,
            'title': signature.signatory_title,
            'signedAt': signature.signed_at.isoformat(),
            'verificationCode': signature.verification_code,
        }],
    }


def sign_bulletin(bulletin, signatory):
    """Sign an approved bulletin and issue its public verification record"""
    from .verification import issue_verification

    ensure_same_school(bulletin)
    if bulletin.status in (BULLETIN_SIGNED, BULLETIN_SENT) or bulletin_signature(bulletin):
        raise Conflict('Ce bulletin est déjà signé', code='ALREADY_SIGNED')
    if bulletin.status != BULLETIN_APPROVED:
        raise Conflict('Seuls les bulletins approuvés peuvent être signés', code='NOT_APPROVED')
    if active_signature(signatory.id) is None:
        raise ValidationError('Aucune signature enregistrée. Veuillez d\'abord dessiner votre signature.',
                              code='SIGNATURE_REQUIRED')

    now = datetime.utcnow()
    doc_hash = document_hash(bulletin)
    signature = DigitalSignature(
        document_type='bulletin',
        document_id=bulletin.id,
        school_id=bulletin.school_id,
        signatory_id=signatory.id,
        signatory_name=signatory.full_name,
        signatory_title=SIGNATORY_TITLES.get(signatory.role, signatory.role),
        signatory_role=signatory.role,
        signature_hash=signature_hash(bulletin.id, signatory.id, now.isoformat(), doc_hash),
        document_hash=doc_hash,
        verification_code=secrets.token_hex(16),
        signature_device=(request.headers.get('User-Agent') or '')[:200],
        signature_ip=request.remote_addr,
        signed_at=now,
    )
    db.session.add(signature)

    bulletin.status = BULLETIN_SIGNED
    bulletin.signed_at = now
    bulletin.document_hash = doc_hash
    db.session.flush()

    verification = issue_verification(bulletin, signature)
    db.session.commit()

    logger.info("[SIGNATURE] Bulletin %s signed by %s (%s)", bulletin.id, signatory.username,
                signature.verification_code)
    return signature, verification


@signatures_bp.route('/principal', methods=['GET'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def get_principal_signature():
    user = current_user()
    signature_for = request.args.get('signatureFor', 'director')
    signature = active_signature(user.id, signature_for)
    if signature is None:
        return jsonify({'hasSignature': False, 'signature': None})
    return jsonify({
        'hasSignature': True,
        'signature': {
            'id': signature.id,
            'signatureData': signature.signature_data,
            'signatureType': signature.signature_type,
            'signatureFor': signature.user_role,
            'updatedAt': signature.updated_at.isoformat() if signature.updated_at else None,
        },
    })


@signatures_bp.route('', methods=['POST'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def save_signature():
    user = current_user()
    data = request.get_json(silent=True) or {}
    signature_data = data.get('signatureData') or ''
    signature_for = data.get('signatureFor', 'director')

    if not signature_data.startswith('data:image/'):
        raise ValidationError('Signature invalide: une image est requise')
    if signature_for not in SIGNATURE_ROLES:
        raise ValidationError(f'Type de signataire inconnu: {signature_for}')
    if user.role != ROLE_SITE_ADMIN and SIGNATURE_ROLES[signature_for] != user.role:
        raise PermissionDenied('Vous ne pouvez pas enregistrer cette signature')

    signature = active_signature(user.id, signature_for)
    if signature:
        signature.signature_data = signature_data
        signature.signature_type = data.get('signatureType', signature.signature_type)
    else:
        signature = Signature(user_id=user.id, user_role=signature_for, signature_data=signature_data,
                              signature_type=data.get('signatureType', 'drawn'))
        db.session.add(signature)
    db.session.commit()

    logger.info("[SIGNATURE] %s signature saved for user %s", signature_for, user.id)
    return jsonify({'success': True, 'signatureId': signature.id})


@signatures_bp.route('/principal', methods=['DELETE'])
@roles_required(ROLE_DIRECTOR, ROLE_TEACHER)
def delete_principal_signature():
    user = current_user()
    signature = active_signature(user.id, request.args.get('signatureFor', 'director'))
    if signature is None:
        raise NotFound('Aucune signature active')
    signature.is_active = False
    db.session.commit()
    return jsonify({'success': True})


@signatures_bp.route('/school/<int:school_id>', methods=['GET'])
def school_signature(school_id):
    school = db.session.get(School, school_id)
    if school is None:
        raise NotFound('École introuvable')

    signature = (Signature.query.join(User, Signature.user_id == User.id)
                 .filter(User.school_id == school_id, User.role == ROLE_DIRECTOR,
                         Signature.user_role == 'director', Signature.is_active.is_(True))
                 .order_by(Signature.updated_at.desc())
                 .first())
    if signature is None:
        return jsonify({'hasSignature': False})
    return jsonify({
        'hasSignature': True,
        'signatureData': signature.signature_data,
        'signatoryName': signature.user.full_name,
        'schoolName': school.name,
    })


@signatures_bp.route('/verify/<code>', methods=['GET'])
def verify_signature(code):
    signature = DigitalSignature.query.filter_by(verification_code=code).first()
    if signature is None:
        raise NotFound('Code de vérification inconnu', code='INVALID_CODE')
    school = db.session.get(School, signature.school_id)
    return jsonify({
        'valid': bool(signature.is_valid),
        'documentType': signature.document_type,
        'documentId': signature.document_id,
        'signatoryName': signature.signatory_name,
        'signatoryTitle': signature.signatory_title,
        'signedAt': signature.signed_at.isoformat(),
        'schoolName': school.name if school else None,
    })


@bulletin_signatures_bp.route('/<int:bulletin_id>/sign', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def sign(bulletin_id):
    signature, verification = sign_bulletin(get_bulletin_or_404(bulletin_id), current_user())
    return jsonify({
        'success': True,
        'status': BULLETIN_SIGNED,
        'signedAt': signature.signed_at.isoformat(),
        'verificationCode': signature.verification_code,
        'shortCode': verification.short_code,
        'documentHash': signature.document_hash,
    })


@bulletin_signatures_bp.route('/bulk-sign', methods=['POST'])
@roles_required(ROLE_DIRECTOR)
def bulk_sign():
    bulletin_ids = (request.get_json(silent=True) or {}).get('bulletin_ids') or []
    if not isinstance(bulletin_ids, list) or not bulletin_ids:
        raise ValidationError('bulletin_ids doit être une liste non vide')

    signatory = current_user()
    results = []
    for bulletin_id in bulletin_ids:
        try:
            signature, verification = sign_bulletin(get_bulletin_or_404(bulletin_id), signatory)
            results.append({'bulletinId': bulletin_id, 'success': True,
                            'verificationCode': signature.verification_code,
                            'shortCode': verification.short_code})
        except EducafricError as e:
            db.session.rollback()
            results.append({'bulletinId': bulletin_id, 'success': False, 'error': e.message, 'code': e.code})

    signed = sum(1 for r in results if r['success'])
    logger.info("[SIGNATURE] Bulk sign: %s/%s bulletins signed", signed, len(results))
    return jsonify({'success': True, 'signed': signed, 'failed': len(results) - signed, 'results': results})


@bulletin_signatures_bp.route('/<int:bulletin_id>/signature-status', methods=['GET'])
@login_required
def get_signature_status(bulletin_id):
    bulletin = ensure_same_school(get_bulletin_or_404(bulletin_id))
    return jsonify(signature_status(bulletin))
