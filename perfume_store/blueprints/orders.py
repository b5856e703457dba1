from flask import Blueprint, request, jsonify, url_for, current_app
from flask_login import login_required, current_user
from perfume_store.cart_session import (
    load_cart,
    load_voucher,
    clear_checkout_state,
)
from perfume_store.middleware import role_required
from perfume_store.models import PaymentMethod, UserRole
from perfume_store.serializers import serialize_order
from perfume_store.services import order_service, payment_gateway
from perfume_store.services.audit_service import log_audit, current_actor
from perfume_store.services.errors import ConflictError
from perfume_store.utils import paginate_query
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('orders', __name__)


def _payment_urls():
    return (
        url_for('orders.payment_success', _external=True),
        url_for('orders.cancel_payment', _external=True),
    )


@bp.route('/api/checkout', methods=['POST'])
def checkout():
    data = request.get_json() or {}
    form = order_service.CheckoutForm.from_dict(data)
    customer = None
    if current_user.is_authenticated:
        if current_user.role != UserRole.CUSTOMER:
            return jsonify({'error': 'Only customers can place orders'}), 403
        customer = current_user._get_current_object()

    order = order_service.create_order(
        form,
        load_cart(),
        voucher=load_voucher(),
        customer=customer,
    )

    actor_id, actor_role = current_actor()
    log_audit(
        actor_id=actor_id or order.customer_id,
        actor_role=actor_role,
        action='ORDER_CREATE',
        target_type='ORDER',
        target_id=order.id,
        payload={
            'total_amount': str(order.total_amount),
            'payment_method': order.payment_method.value,
            'voucher_code': order.voucher_code,
        })

    response = {'order': serialize_order(order)}
    if order.payment_method == PaymentMethod.BANK_TRANSFER:
        # The cart stays until the gateway confirms payment.
        return_url, cancel_url = _payment_urls()
        response['payment'] = payment_gateway.create_payment_link(
            order, return_url, cancel_url)
    else:
        clear_checkout_state()
    return jsonify(response), 201


@bp.route('/api/orders', methods=['GET'])
@login_required
@role_required('CUSTOMER')
def order_list():
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get(
        'per_page', current_app.config['ITEMS_PER_PAGE'], type=int)
    result = paginate_query(
        order_service.orders_for_customer(current_user.id), page, per_page)
    return jsonify({
        'items': [
            serialize_order(o, include_details=False)
            for o in result['items']
        ],
        'page': result['page'],
        'pages': result['pages'],
        'total': result['total'],
    })


@bp.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
@role_required('CUSTOMER')
def order_detail(order_id):
    order = order_service.get_customer_order(order_id, current_user.id)
    return jsonify(serialize_order(order))


@bp.route('/api/orders/<int:order_id>/cancel', methods=['POST'])
@login_required
@role_required('CUSTOMER')
def cancel_order(order_id):
    data = request.get_json(silent=True) or {}
    reason = (data.get('reason') or '').strip() or None
    change = order_service.cancel_order_by_customer(
        order_id, current_user.id, reason)

    log_audit(
        actor_id=current_user.id,
        actor_role=current_user.role.value,
        action='ORDER_CANCEL_BY_CUSTOMER',
        target_type='ORDER',
        target_id=order_id,
        payload={'from': change.old_status.value, 'reason': reason})
    return jsonify(change.to_dict())


@bp.route('/create-payment/<int:order_id>', methods=['GET'])
@login_required
@role_required('CUSTOMER')
def create_payment(order_id):
    return_url, cancel_url = _payment_urls()
    link = order_service.start_payment(
        order_id, current_user.id, return_url, cancel_url)
    return jsonify(link)


@bp.route('/payment-success', methods=['GET'])
def payment_success():
    order_code = request.args.get('orderCode')
    order_id = order_service.parse_order_code(order_code)

    gateway_status = payment_gateway.fetch_payment_status(order_id)
    if gateway_status is not None and gateway_status != 'PAID':
        logger.warning(
            "Success callback for order %s but gateway says %s",
            order_id,
            gateway_status,
        )
        raise ConflictError('Payment has not been completed')

    confirmation = order_service.confirm_payment(order_id)
    # Only cleared once the paid state has been read back.
    clear_checkout_state()

    if not confirmation.already_paid:
        log_audit(
            actor_id=confirmation.order.customer_id,
            actor_role='SYSTEM',
            action='PAYMENT_SUCCESS',
            target_type='ORDER',
            target_id=order_id,
            payload={
                'total_amount': str(confirmation.order.total_amount),
                'coupon_consumed': confirmation.coupon_consumed,
            })
    return jsonify(confirmation.to_dict())


@bp.route('/cancel-payment', methods=['GET'])
def cancel_payment():
    order = order_service.cancel_payment(request.args.get('orderCode'))
    log_audit(
        actor_id=order.customer_id,
        actor_role='SYSTEM',
        action='PAYMENT_CANCELLED',
        target_type='ORDER',
        target_id=order.id,
        payload={'payment_note': order.payment_note})
    return jsonify({
        'order_id': order.id,
        'status': order.status.value,
        'status_label': order.status.label,
        'payment_note': order.payment_note,
    })
