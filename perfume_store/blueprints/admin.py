from flask import Blueprint, request, jsonify, current_app
from flask_login import current_user
from perfume_store.extensions import db
from perfume_store.models import (
    User,
    UserRole,
    Order,
    OrderStatus,
    PaymentMethod,
    Coupon,
    Fee,
    WarrantyStatus,
    WarrantyClaim,
    ClaimStatus,
)
from perfume_store.middleware import (
    permission_required,
    VIEW_ORDERS,
    EDIT_ORDER,
    CANCEL_ORDER,
    MANAGE_COUPONS,
    MANAGE_FEES,
    VIEW_WARRANTIES,
    EDIT_WARRANTY,
    VIEW_CUSTOMERS,
)
from perfume_store.serializers import (
    serialize_order,
    serialize_coupon,
    serialize_fee,
    serialize_warranty,
    serialize_claim,
    serialize_customer,
    serialize_address,
)
from perfume_store.services import (
    order_service,
    voucher_service,
    fee_service,
    warranty_service,
)
from perfume_store.services.audit_service import log_audit
from perfume_store.services.errors import ValidationError, NotFoundError
from perfume_store.utils import paginate_query, parse_datetime
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__)


def _page_args():
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get(
        'per_page', current_app.config['ITEMS_PER_PAGE'], type=int)
    return page, per_page


def _paged(query, serializer):
    result = paginate_query(query, *_page_args())
    return jsonify({
        'items': [serializer(item) for item in result['items']],
        'page': result['page'],
        'pages': result['pages'],
        'total': result['total'],
    })


def _date_arg(data, key):
    try:
        return parse_datetime(data.get(key))
    except ValueError:
        raise ValidationError(f'{key} must be an ISO date')


def _enum_arg(enum_class, raw, label):
    raw = (raw or '').strip().upper()
    if not raw:
        return None
    try:
        return enum_class[raw]
    except KeyError:
        raise ValidationError(f'Invalid {label}')


def _audit(action, target_type, target_id, payload=None):
    log_audit(
        actor_id=current_user.id,
        actor_role=current_user.role.value,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload=payload)


# Orders

@bp.route('/admin/orders', methods=['GET'])
@permission_required(VIEW_ORDERS)
def admin_orders():
    status = None
    if request.args.get('status'):
        status = OrderStatus.parse(request.args.get('status'))
        if status is None:
            raise ValidationError('Invalid order status')
    filters = order_service.OrderFilters(
        status=status,
        customer_id=request.args.get('customer_id', type=int),
        payment_method=_enum_arg(
            PaymentMethod, request.args.get('payment_method'),
            'payment method'),
        search=request.args.get('q') or None,
        date_from=_date_arg(request.args, 'date_from'),
        date_to=_date_arg(request.args, 'date_to'),
    )
    return _paged(
        order_service.list_orders(filters),
        lambda o: serialize_order(o, include_details=False))


@bp.route('/admin/orders/<int:order_id>', methods=['GET'])
@permission_required(VIEW_ORDERS)
def admin_order_detail(order_id):
    return jsonify(serialize_order(order_service.get_order(order_id)))


@bp.route('/admin/orders/<int:order_id>/status', methods=['PATCH'])
@permission_required(EDIT_ORDER)
def update_order_status(order_id):
    data = request.get_json() or {}
    status = OrderStatus.parse(data.get('status'))
    if status is None:
        return jsonify({'error': 'Invalid status'}), 400
    if status == OrderStatus.CANCELLED and not current_user.has_permission(
            CANCEL_ORDER):
        return jsonify({
            'error': 'Insufficient permissions',
            'permission': CANCEL_ORDER,
        }), 403
    note = (data.get('note') or '').strip() or None

    change = order_service.change_status(order_id, status, notes=note)
    if change.changed or change.warranty_report is not None:
        _audit('ORDER_STATUS_UPDATE', 'ORDER', order_id, {
            'from': change.old_status.value,
            'to': change.new_status.value,
            'note': note,
            'warranties_deleted': change.warranties_deleted,
            'warranties_created': (
                change.warranty_report.created_count
                if change.warranty_report else 0
            ),
        })
    return jsonify(change.to_dict())


@bp.route('/admin/orders/<int:order_id>/cancel', methods=['POST'])
@permission_required(CANCEL_ORDER)
def cancel_order(order_id):
    data = request.get_json() or {}
    change = order_service.cancel_order_by_admin(
        order_id, data.get('reason'))
    _audit('ORDER_CANCEL_BY_ADMIN', 'ORDER', order_id, {
        'from': change.old_status.value,
        'reason': data.get('reason'),
        'warranties_deleted': change.warranties_deleted,
    })
    return jsonify(change.to_dict())


# Coupons

@bp.route('/admin/coupons', methods=['GET'])
@permission_required(MANAGE_COUPONS)
def list_coupons():
    query = Coupon.query
    search = (request.args.get('q') or '').strip().upper()
    if search:
        query = query.filter(Coupon.code.contains(search))
    used = request.args.get('used')
    if used in ('true', 'false'):
        query = query.filter(Coupon.is_used.is_(used == 'true'))
    return _paged(query.order_by(Coupon.created_at.desc()), serialize_coupon)


@bp.route('/admin/coupons/generate-code', methods=['GET'])
@permission_required(MANAGE_COUPONS)
def generate_coupon_code():
    return jsonify({'code': voucher_service.generate_unique_code()})


@bp.route('/admin/coupons', methods=['POST'])
@permission_required(MANAGE_COUPONS)
def create_coupon():
    data = request.get_json() or {}
    code = data.get('code') or voucher_service.generate_unique_code()
    coupon = voucher_service.create_coupon(
        code=code,
        discount_amount=data.get('discount_amount'),
        expiry_date=_date_arg(data, 'expiry_date'),
        customer_id=data.get('customer_id'),
    )
    _audit('COUPON_CREATE', 'COUPON', coupon.id, {
        'code': coupon.code,
        'discount_amount': str(coupon.discount_amount),
    })
    return jsonify(serialize_coupon(coupon)), 201


@bp.route('/admin/coupons/<int:coupon_id>', methods=['GET'])
@permission_required(MANAGE_COUPONS)
def coupon_detail(coupon_id):
    coupon = voucher_service.get_coupon(coupon_id)
    data = serialize_coupon(coupon)
    data['order_ids'] = [o.id for o in coupon.orders]
    return jsonify(data)


@bp.route('/admin/coupons/<int:coupon_id>', methods=['PUT', 'PATCH'])
@permission_required(MANAGE_COUPONS)
def update_coupon(coupon_id):
    data = request.get_json() or {}
    fields = {}
    for key in ('code', 'discount_amount', 'customer_id', 'is_used'):
        if key in data:
            fields[key] = data[key]
    if 'expiry_date' in data:
        fields['expiry_date'] = _date_arg(data, 'expiry_date')
    coupon = voucher_service.update_coupon(coupon_id, **fields)
    _audit('COUPON_UPDATE', 'COUPON', coupon.id, {'fields': sorted(fields)})
    return jsonify(serialize_coupon(coupon))


@bp.route('/admin/coupons/<int:coupon_id>', methods=['DELETE'])
@permission_required(MANAGE_COUPONS)
def delete_coupon(coupon_id):
    code = voucher_service.delete_coupon(coupon_id)
    _audit('COUPON_DELETE', 'COUPON', coupon_id, {'code': code})
    return jsonify({'ok': True})


@bp.route('/admin/coupons/<int:coupon_id>/assign', methods=['POST'])
@permission_required(MANAGE_COUPONS)
def assign_coupon(coupon_id):
    data = request.get_json() or {}
    customer_id = data.get('customer_id')
    if not customer_id:
        return jsonify({'error': 'customer_id is required'}), 400
    coupon = voucher_service.assign_coupon(coupon_id, customer_id)
    _audit('COUPON_ASSIGN', 'COUPON', coupon.id, {
        'customer_id': customer_id})
    return jsonify(serialize_coupon(coupon))


# Fees

@bp.route('/admin/fees', methods=['GET'])
@permission_required(MANAGE_FEES)
def list_fees():
    fees = Fee.query.order_by(Fee.name.asc()).all()
    return jsonify({'items': [serialize_fee(f) for f in fees]})


@bp.route('/admin/fees', methods=['POST'])
@permission_required(MANAGE_FEES)
def create_fee():
    data = request.get_json() or {}
    fee = fee_service.create_fee(
        data.get('name'),
        data.get('value'),
        description=data.get('description'),
        threshold=data.get('threshold'),
    )
    _audit('FEE_CREATE', 'FEE', fee.id, {'name': fee.name})
    return jsonify(serialize_fee(fee)), 201


@bp.route('/admin/fees/<int:fee_id>', methods=['PUT', 'PATCH'])
@permission_required(MANAGE_FEES)
def update_fee(fee_id):
    data = request.get_json() or {}
    fee = fee_service.update_fee(
        fee_id,
        name=data.get('name'),
        value=data.get('value'),
        description=data.get('description'),
    )
    _audit('FEE_UPDATE', 'FEE', fee.id, {
        'name': fee.name, 'value': str(fee.value)})
    return jsonify(serialize_fee(fee))


@bp.route('/admin/fees/<int:fee_id>/threshold', methods=['PATCH'])
@permission_required(MANAGE_FEES)
def update_fee_threshold(fee_id):
    data = request.get_json() or {}
    fee = fee_service.update_threshold(fee_id, data.get('threshold'))
    _audit('FEE_THRESHOLD_UPDATE', 'FEE', fee.id, {
        'threshold': str(fee.threshold)})
    return jsonify(serialize_fee(fee))


@bp.route('/admin/fees/<int:fee_id>', methods=['DELETE'])
@permission_required(MANAGE_FEES)
def delete_fee(fee_id):
    name = fee_service.delete_fee(fee_id)
    _audit('FEE_DELETE', 'FEE', fee_id, {'name': name})
    return jsonify({'ok': True})


# Warranties

@bp.route('/admin/warranties', methods=['GET'])
@permission_required(VIEW_WARRANTIES)
def list_warranties():
    filters = warranty_service.WarrantyFilters(
        status=_enum_arg(
            WarrantyStatus, request.args.get('status'), 'warranty status'),
        customer_id=request.args.get('customer_id', type=int),
        search=request.args.get('q') or None,
        expiring_within_days=request.args.get('expiring_within', type=int),
    )
    return _paged(
        warranty_service.list_warranties(filters), serialize_warranty)


@bp.route('/admin/warranties/stats', methods=['GET'])
@permission_required(VIEW_WARRANTIES)
def warranty_stats():
    return jsonify(warranty_service.warranty_stats())


@bp.route('/admin/warranties/<int:warranty_id>', methods=['GET'])
@permission_required(VIEW_WARRANTIES)
def warranty_detail(warranty_id):
    warranty = warranty_service.get_warranty(warranty_id)
    return jsonify(serialize_warranty(warranty, include_claims=True))


@bp.route('/admin/warranties/<int:warranty_id>/status', methods=['PATCH'])
@permission_required(EDIT_WARRANTY)
def update_warranty_status(warranty_id):
    data = request.get_json() or {}
    status = _enum_arg(WarrantyStatus, data.get('status'), 'warranty status')
    if status is None:
        return jsonify({'error': 'Invalid warranty status'}), 400
    warranty = warranty_service.update_warranty_status(
        warranty_id, status, notes=data.get('notes'))
    _audit('WARRANTY_STATUS_UPDATE', 'WARRANTY', warranty.id, {
        'status': status.value})
    return jsonify(serialize_warranty(warranty))


@bp.route('/admin/warranty-claims', methods=['GET'])
@permission_required(VIEW_WARRANTIES)
def list_claims():
    query = WarrantyClaim.query
    status = _enum_arg(ClaimStatus, request.args.get('status'), 'status')
    if status is not None:
        query = query.filter(WarrantyClaim.status == status)
    return _paged(
        query.order_by(WarrantyClaim.submitted_at.desc()), serialize_claim)


@bp.route('/admin/warranty-claims/<int:claim_id>', methods=['PATCH'])
@permission_required(EDIT_WARRANTY)
def process_claim(claim_id):
    data = request.get_json() or {}
    status = _enum_arg(ClaimStatus, data.get('status'), 'claim status')
    if status is None:
        return jsonify({'error': 'Invalid claim status'}), 400
    claim = warranty_service.process_claim(
        claim_id,
        status,
        resolution=data.get('resolution'),
        resolution_type=data.get('resolution_type'),
        admin_notes=data.get('admin_notes'),
        processed_by=current_user.name or current_user.email,
    )
    _audit('WARRANTY_CLAIM_PROCESS', 'WARRANTY_CLAIM', claim.id, {
        'status': status.value})
    return jsonify(serialize_claim(claim))


# Customers

@bp.route('/admin/customers', methods=['GET'])
@permission_required(VIEW_CUSTOMERS)
def list_customers():
    query = User.query.filter(User.role == UserRole.CUSTOMER)
    search = (request.args.get('q') or '').strip()
    if search:
        term = f'%{search}%'
        query = query.filter(db.or_(
            User.email.ilike(term),
            User.name.ilike(term),
            User.phone.ilike(term),
        ))
    return _paged(query.order_by(User.created_at.desc()), serialize_customer)


@bp.route('/admin/customers/<int:customer_id>', methods=['GET'])
@permission_required(VIEW_CUSTOMERS)
def customer_detail(customer_id):
    customer = db.session.get(User, customer_id)
    if customer is None or customer.role != UserRole.CUSTOMER:
        raise NotFoundError('Customer not found')
    data = serialize_customer(customer)
    data['addresses'] = [serialize_address(a) for a in customer.addresses]
    orders = Order.query.filter_by(customer_id=customer.id).order_by(
        Order.created_at.desc()).all()
    data['orders'] = [
        serialize_order(o, include_details=False) for o in orders]
    return jsonify(data)
