from flask import request, jsonify
from flask_login import current_user
from functools import wraps
import logging

logger = logging.getLogger(__name__)

# Permission names checked by the admin endpoints
VIEW_ORDERS = 'View Orders'
EDIT_ORDER = 'Edit Order'
CANCEL_ORDER = 'Cancel Order'
MANAGE_COUPONS = 'Manage Coupons'
MANAGE_FEES = 'Manage Fees'
VIEW_WARRANTIES = 'View Warranties'
EDIT_WARRANTY = 'Edit Warranty'
VIEW_CUSTOMERS = 'View Customers'

ALL_PERMISSIONS = (
    VIEW_ORDERS,
    EDIT_ORDER,
    CANCEL_ORDER,
    MANAGE_COUPONS,
    MANAGE_FEES,
    VIEW_WARRANTIES,
    EDIT_WARRANTY,
    VIEW_CUSTOMERS,
)


def setup_admin_gate(app):
    """Everything under /admin requires a logged-in admin account."""

    @app.before_request
    def require_admin():
        if not request.path.startswith('/admin'):
            return None
        if not current_user.is_authenticated:
            return jsonify({'error': 'Not logged in',
                            'login_required': True}), 401
        if current_user.role.value != 'ADMIN':
            logger.warning(
                "User %s attempted to access admin path %s",
                current_user.id,
                request.path,
            )
            return jsonify({'error': 'Insufficient permissions'}), 403
        return None


def role_required(*allowed_roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({'error': 'Not logged in'}), 401

            # allowed_roles is a list of role names.
            if current_user.role.value not in allowed_roles:
                logger.warning(
                    "User %s attempted to access roles %s, current role: %s",
                    current_user.id,
                    allowed_roles,
                    current_user.role.value,
                )
                return jsonify({'error': 'Insufficient permissions'}), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator


def permission_required(name):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({'error': 'Not logged in'}), 401
            if not current_user.has_permission(name):
                logger.warning(
                    "Admin %s lacks permission %r for %s",
                    current_user.id,
                    name,
                    request.path,
                )
                return jsonify({
                    'error': 'Insufficient permissions',
                    'permission': name,
                }), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
