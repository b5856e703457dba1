from flask import Blueprint, jsonify, session
from flask_login import current_user
from perfume_store.cart_session import GUEST_SPINS_KEY, load_voucher
from perfume_store.models import UserRole
from perfume_store.services import voucher_service
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('spin', __name__)


def _spinning_customer():
    if (
        current_user.is_authenticated
        and current_user.role == UserRole.CUSTOMER
    ):
        return current_user._get_current_object()
    return None


@bp.route('/api/spin', methods=['POST'])
def spin_wheel():
    customer = _spinning_customer()
    result = voucher_service.spin(
        customer=customer,
        guest_spins=session.get(GUEST_SPINS_KEY),
    )
    if customer is None:
        session[GUEST_SPINS_KEY] = result.spins_left
    return jsonify(result.to_dict())


@bp.route('/api/spin/remaining', methods=['GET'])
def remaining_spins():
    left = voucher_service.remaining_spins(
        _spinning_customer(), session.get(GUEST_SPINS_KEY))
    return jsonify({'spins_left': left})


@bp.route('/api/spin/voucher', methods=['GET'])
def applied_voucher():
    voucher = load_voucher()
    return jsonify({'voucher': voucher.to_dict() if voucher else None})
