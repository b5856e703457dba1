from flask import Blueprint, request, jsonify, current_app
from flask_login import (
    login_user,
    logout_user,
    login_required,
    current_user,
)
from perfume_store.extensions import db
from perfume_store.models import User, UserRole
from perfume_store.services import otp_service
from perfume_store.services.audit_service import log_audit
from datetime import datetime
import logging
import re

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


@bp.route('/api/auth/login', methods=['POST'])
def login():
    data = request.get_json() or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'error': 'Email and password cannot be empty'}), 400

    user = User.query.filter(db.func.lower(User.email) == email).first()

    if user and user.check_password(password) and user.is_active:
        login_user(user, remember=True)
        user.last_login_at = datetime.utcnow()
        db.session.commit()

        log_audit(
            actor_id=user.id,
            actor_role=user.role.value,
            action='LOGIN_SUCCESS',
            target_type='USER',
            target_id=user.id,
            payload={'event': 'login_success'}
        )
        return jsonify(
            {'ok': True, 'role': user.role.value, 'user_id': user.id})

    log_audit(
        actor_id=None,
        actor_role='ANONYMOUS',
        action='LOGIN_FAILED',
        target_type='USER',
        target_id=None,
        payload={
            'reason': 'invalid_credentials' if user else 'user_not_found'})
    return jsonify({'error': 'Invalid email or password'}), 401


@bp.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    user_id = current_user.id
    role = current_user.role.value
    logout_user()
    log_audit(
        actor_id=user_id,
        actor_role=role,
        action='LOGOUT',
        target_type='USER',
        target_id=user_id)
    return jsonify({'ok': True})


@bp.route('/api/auth/register', methods=['POST'])
def register():
    data = request.get_json() or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    name = (data.get('name') or '').strip() or None
    phone = (data.get('phone') or '').strip() or None

    if not email or not password:
        return jsonify({'error': 'Email and password cannot be empty'}), 400
    if not EMAIL_PATTERN.match(email):
        return jsonify({'error': 'Invalid email address'}), 400
    if len(password) < otp_service.MIN_PASSWORD_LENGTH:
        return jsonify({
            'error': 'Password must be at least '
                     f'{otp_service.MIN_PASSWORD_LENGTH} characters'
        }), 400

    user = User.query.filter(db.func.lower(User.email) == email).first()
    if user is not None and user.password_hash:
        return jsonify({'error': 'Email already registered'}), 409

    # Customers first seen at checkout claim their account here.
    if user is None:
        user = User(
            email=email,
            role=UserRole.CUSTOMER,
            spin_number=current_app.config['DAILY_SPINS'],
        )
        db.session.add(user)
    user.name = name or user.name
    user.phone = phone or user.phone
    user.set_password(password)
    db.session.commit()

    log_audit(
        actor_id=user.id,
        actor_role=user.role.value,
        action='REGISTER',
        target_type='USER',
        target_id=user.id,
        payload={'email': email})

    login_user(user)
    return jsonify({'ok': True, 'user_id': user.id}), 201


@bp.route('/api/auth/forgot-password', methods=['POST'])
@bp.route('/api/auth/resend-otp', methods=['POST'])
def forgot_password():
    data = request.get_json() or {}
    entry = otp_service.request_reset(data.get('email'))
    log_audit(
        action='PASSWORD_RESET_REQUESTED',
        target_type='USER',
        payload={'email': entry.email, 'resend_count': entry.resend_count})
    return jsonify({
        'ok': True,
        'expires_in_minutes': current_app.config['OTP_TTL_MINUTES'],
    })


@bp.route('/api/auth/verify-otp', methods=['POST'])
def verify_otp():
    data = request.get_json() or {}
    otp_service.verify_otp(data.get('email'), data.get('otp'))
    return jsonify({'ok': True})


@bp.route('/api/auth/reset-password', methods=['POST'])
def reset_password():
    data = request.get_json() or {}
    user = otp_service.reset_password(
        data.get('email'), data.get('new_password'))
    log_audit(
        actor_id=user.id,
        actor_role=user.role.value,
        action='PASSWORD_RESET',
        target_type='USER',
        target_id=user.id)
    return jsonify({'ok': True})
