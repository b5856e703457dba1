from perfume_store.extensions import db
from perfume_store.models import AuditLog
from flask import has_request_context, request
from flask_login import current_user
import logging
import json

logger = logging.getLogger(__name__)
major_logger = logging.getLogger('major_events')
if not major_logger.handlers:
    handler = logging.FileHandler('major_events.log')
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'))
    major_logger.addHandler(handler)
    major_logger.setLevel(logging.INFO)
    major_logger.propagate = False

# Order, payment, coupon and warranty events also go to major_events.log
MAJOR_ACTION_PREFIXES = (
    'LOGIN',
    'LOGOUT',
    'REGISTER',
    'PASSWORD_',
    'ORDER_',
    'PAYMENT_',
    'COUPON_',
    'WARRANTY_',
)
PAYLOAD_BRIEF_LIMIT = 600


def current_actor():
    """(actor_id, actor_role) of the logged-in user, or an anonymous
    actor outside a request."""
    if has_request_context() and current_user.is_authenticated:
        return current_user.id, current_user.role.value
    return None, 'ANONYMOUS'


def _brief(payload):
    if payload is None:
        return None
    text = json.dumps(
        payload, ensure_ascii=False, separators=(',', ':'), default=str)
    if len(text) > PAYLOAD_BRIEF_LIMIT:
        text = text[:PAYLOAD_BRIEF_LIMIT] + '...'
    return text


def log_audit(
        actor_id=None,
        actor_role='ANONYMOUS',
        action='',
        target_type=None,
        target_id=None,
        payload=None,
        ip=None,
        user_agent=None):
    method = path = None
    if has_request_context():
        ip = ip or request.remote_addr
        user_agent = user_agent or request.headers.get('User-Agent')
        method, path = request.method, request.path

    try:
        audit = AuditLog(
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip=ip,
            user_agent=(user_agent or '')[:255] or None,
        )
        if payload:
            audit.set_payload(payload)
        db.session.add(audit)
        db.session.commit()
    except Exception as e:
        logger.error(f"Failed to log audit: {e}", exc_info=True)
        db.session.rollback()
        return

    line = (
        "action=%s actor_role=%s actor_id=%s target_type=%s "
        "target_id=%s method=%s path=%s payload=%s"
    )
    args = (
        action,
        actor_role,
        actor_id,
        target_type,
        target_id,
        method,
        path,
        _brief(payload),
    )
    logger.info("AUDIT " + line, *args)
    if action and action.startswith(MAJOR_ACTION_PREFIXES):
        major_logger.info(line, *args)
