from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional
from flask import current_app
from sqlalchemy import update, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from perfume_store.extensions import db
from perfume_store.models import (
    User,
    UserRole,
    Product,
    ShippingAddress,
    Order,
    OrderDetail,
    OrderStatus,
    PaymentMethod,
)
from perfume_store.services import (
    payment_gateway,
    voucher_service,
    warranty_service,
)
from perfume_store.services.errors import (
    ValidationError,
    ConflictError,
    NotFoundError,
    ExternalServiceError,
)
from perfume_store.services.pricing_service import price_cart
from perfume_store.utils import money_json
import logging
import re

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.AWAITING_PAYMENT: {
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PENDING: {
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PAID: {
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.SHIPPING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SHIPPING: {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    },
    # Admins may revert a delivery that was recorded by mistake
    OrderStatus.DELIVERED: {
        OrderStatus.SHIPPING,
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CANCELLED: set(),
}

CUSTOMER_CANCELLABLE = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.AWAITING_PAYMENT,
})

CHECKOUT_PAYMENT_METHODS = (PaymentMethod.COD, PaymentMethod.BANK_TRANSFER)
PHONE_PATTERN = re.compile(r'^\+?[0-9]{9,15}$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def can_transition(old: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, set())


@dataclass
class CheckoutForm:
    full_name: str
    email: str
    phone: str
    address_line: str
    province: Optional[str] = None
    district: Optional[str] = None
    ward: Optional[str] = None
    payment_method: str = 'COD'
    notes: Optional[str] = None
    save_as_default: bool = False

    @classmethod
    def from_dict(cls, data):
        def text(key):
            return (data.get(key) or '').strip()

        return cls(
            full_name=text('full_name'),
            email=text('email').lower(),
            phone=text('phone'),
            address_line=text('address_line'),
            province=text('province') or None,
            district=text('district') or None,
            ward=text('ward') or None,
            payment_method=text('payment_method').upper() or 'COD',
            notes=text('notes') or None,
            save_as_default=bool(data.get('save_as_default')),
        )

    def validate(self) -> PaymentMethod:
        for field_name in ('full_name', 'email', 'phone', 'address_line'):
            if not getattr(self, field_name):
                raise ValidationError(f'{field_name} cannot be empty')
        if not EMAIL_PATTERN.match(self.email):
            raise ValidationError('Invalid email address')
        if not PHONE_PATTERN.match(self.phone.replace(' ', '')):
            raise ValidationError('Invalid phone number')
        try:
            method = PaymentMethod[self.payment_method]
        except KeyError:
            raise ValidationError('Invalid payment method')
        if method not in CHECKOUT_PAYMENT_METHODS:
            raise ValidationError('Payment method is not available')
        return method


@dataclass
class OrderFilters:
    status: Optional[OrderStatus] = None
    customer_id: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    search: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


@dataclass
class StatusChange:
    order: Order
    old_status: OrderStatus
    new_status: OrderStatus
    warranty_report: Optional[warranty_service.IssuanceReport] = None
    warranties_deleted: int = 0

    @property
    def changed(self):
        return self.old_status != self.new_status

    @property
    def message(self):
        parts = [
            f'Order #{self.order.id}: {self.old_status.label} -> '
            f'{self.new_status.label}'
        ]
        if self.warranty_report is not None:
            parts.append(
                f'{self.warranty_report.created_count} warranties issued')
        if self.warranties_deleted:
            parts.append(f'{self.warranties_deleted} warranties deleted')
        return '. '.join(parts)

    def to_dict(self):
        return {
            'order_id': self.order.id,
            'old_status': self.old_status.value,
            'new_status': self.new_status.value,
            'status_label': self.new_status.label,
            'changed': self.changed,
            'warranties_deleted': self.warranties_deleted,
            'warranty_report': (
                self.warranty_report.to_dict()
                if self.warranty_report else None
            ),
            'message': self.message,
        }


@dataclass
class PaymentConfirmation:
    order: Order
    already_paid: bool
    coupon_consumed: Optional[bool] = None

    def to_dict(self):
        return {
            'order_id': self.order.id,
            'status': self.order.status.value,
            'status_label': self.order.status.label,
            'already_paid': self.already_paid,
            'total_amount': money_json(self.order.total_amount),
        }


def _check_quantities(lines):
    max_quantity = current_app.config['CART_MAX_QUANTITY']
    for line in lines:
        if line.quantity < 1 or line.quantity > max_quantity:
            raise ValidationError(
                f'Quantity for {line.name} must be between 1 and '
                f'{max_quantity}')


def _resolve_customer(form: CheckoutForm, customer: Optional[User]):
    if customer is None:
        customer = User.query.filter(
            db.func.lower(User.email) == form.email).first()
    if customer is None:
        customer = User(
            email=form.email,
            role=UserRole.CUSTOMER,
            spin_number=current_app.config['DAILY_SPINS'],
        )
        db.session.add(customer)
        logger.info("Created customer %s at checkout", form.email)
    customer.name = form.full_name
    customer.phone = form.phone
    db.session.flush()
    return customer


def _save_address(customer: User, form: CheckoutForm):
    if form.save_as_default:
        ShippingAddress.query.filter_by(
            user_id=customer.id, is_default=True
        ).update({'is_default': False}, synchronize_session='fetch')
    address = ShippingAddress(
        user_id=customer.id,
        recipient_name=form.full_name,
        phone=form.phone,
        province=form.province,
        district=form.district,
        ward=form.ward,
        address_line=form.address_line,
        is_default=form.save_as_default,
    )
    db.session.add(address)
    db.session.flush()
    return address


def _resolve_product(line):
    product = None
    if line.product_id is not None:
        product = db.session.get(Product, line.product_id)
    if product is None and line.name:
        product = Product.query.filter(
            db.func.lower(Product.name) == line.name.strip().lower()
        ).first()
    if product is None:
        product = Product(
            name=line.name or 'Sản phẩm',
            price=line.unit_price,
            stock=0,
            warranty_period_months=0,
            is_published=False,
            is_placeholder=True,
        )
        db.session.add(product)
        db.session.flush()
        logger.warning(
            "Cart line %r has no catalog product, created placeholder %s",
            line.name,
            product.id,
        )
    return product


def create_order(
        form: CheckoutForm,
        lines,
        voucher=None,
        customer: Optional[User] = None,
        now=None) -> Order:
    """Turn a checkout submission and cart into an order.

    COD orders use up their coupon immediately. Bank transfer orders wait
    for the payment callback.
    """
    now = now or datetime.utcnow()
    method = form.validate()
    lines = list(lines)
    if not lines:
        raise ValidationError('Cart is empty')
    _check_quantities(lines)

    try:
        customer = _resolve_customer(form, customer)
        address = _save_address(customer, form)
        coupon = voucher_service.resolve_coupon_for_voucher(voucher, now)
        if (coupon is not None
                and coupon.code not in voucher_service.CATALOG_CODES):
            voucher_service.check_coupon_usable(coupon, customer.id, now)
        totals = price_cart(lines, voucher)

        if method == PaymentMethod.BANK_TRANSFER:
            status = OrderStatus.AWAITING_PAYMENT
        else:
            status = OrderStatus.PROCESSING

        order = Order(
            customer_id=customer.id,
            address_id=address.id,
            coupon_id=coupon.id if coupon else None,
            voucher_code=voucher.code if coupon else None,
            status=status,
            subtotal=totals.subtotal,
            discount_amount=totals.discount,
            vat_amount=totals.vat,
            shipping_fee=totals.shipping_fee,
            total_amount=totals.total,
            payment_method=method,
            payment_note=method.label,
            notes=form.notes,
            created_at=now,
            updated_at=now,
        )
        for line in lines:
            product = _resolve_product(line)
            order.details.append(OrderDetail(
                product_id=product.id,
                product_name=line.name or product.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            ))
        db.session.add(order)
        db.session.flush()

        if method == PaymentMethod.COD and coupon is not None:
            if not voucher_service.consume_coupon(coupon.id, now):
                if coupon.code in voucher_service.CATALOG_CODES:
                    logger.info(
                        "Shared code %s reused on order %s",
                        coupon.code,
                        order.id,
                    )
                else:
                    raise ConflictError('Coupon has already been used')

        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Checkout conflict for %s", form.email, exc_info=True)
        raise ConflictError('Order conflicts with a concurrent update')
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Order %s created for %s: total=%s method=%s status=%s",
        order.id,
        customer.email,
        order.total_amount,
        method.value,
        status.value,
    )
    return order


def get_order(order_id) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError('Order not found')
    return order


def get_customer_order(order_id, customer_id) -> Order:
    order = Order.query.filter_by(
        id=order_id, customer_id=customer_id).first()
    if order is None:
        raise NotFoundError('Order not found')
    return order


def orders_for_customer(customer_id):
    return Order.query.filter_by(customer_id=customer_id).order_by(
        Order.created_at.desc())


def list_orders(filters: OrderFilters):
    query = Order.query
    if filters.status is not None:
        query = query.filter(Order.status == filters.status)
    if filters.customer_id is not None:
        query = query.filter(Order.customer_id == filters.customer_id)
    if filters.payment_method is not None:
        query = query.filter(Order.payment_method == filters.payment_method)
    if filters.search:
        term = f'%{filters.search.strip()}%'
        query = query.join(User, Order.customer_id == User.id).filter(
            db.or_(
                User.email.ilike(term),
                User.name.ilike(term),
                User.phone.ilike(term),
            ))
    if filters.date_from is not None:
        query = query.filter(Order.created_at >= filters.date_from)
    if filters.date_to is not None:
        date_to = filters.date_to
        if date_to.time() == time.min:
            date_to = datetime.combine(date_to.date(), time.max)
        query = query.filter(Order.created_at <= date_to)
    return query.order_by(Order.created_at.desc())


def _commit_order(order_id):
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        if db.session.get(Order, order_id) is None:
            raise NotFoundError('Order not found')
        raise


def change_status(order_id, new_status, notes=None, now=None):
    """Move an order to a new status and keep its warranties in step.

    Entering DELIVERED reissues warranties from scratch. Saving DELIVERED
    again only fills in missing ones. Leaving DELIVERED deletes them along
    with their claims.
    """
    now = now or datetime.utcnow()
    target = OrderStatus.parse(new_status)
    if target is None:
        raise ValidationError('Invalid order status')

    order = get_order(order_id)
    old = order.status
    if old == target and target != OrderStatus.DELIVERED:
        return StatusChange(order, old, target)
    if old != target and not can_transition(old, target):
        raise ConflictError(
            f'Cannot change order status from {old.label} to '
            f'{target.label}')

    change = StatusChange(order, old, target)
    try:
        if target == OrderStatus.DELIVERED:
            if old == OrderStatus.DELIVERED:
                change.warranty_report = (
                    warranty_service.create_warranties_for_order(
                        order.id, now))
            else:
                change.warranty_report = (
                    warranty_service.reissue_warranties_for_order(
                        order.id, now))
        elif old == OrderStatus.DELIVERED:
            change.warranties_deleted = (
                warranty_service.delete_warranties_for_order(order.id))

        order.status = target
        order.updated_at = now
        if target == OrderStatus.PAID and order.paid_at is None:
            order.paid_at = now
        if notes:
            if target == OrderStatus.CANCELLED:
                order.cancel_reason = notes
            order.notes = (
                f'{order.notes}\n{notes}' if order.notes else notes)
        _commit_order(order.id)
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Order was changed by another request')
    except Exception:
        db.session.rollback()
        raise

    logger.info(change.message)
    return change


def cancel_order_by_customer(order_id, customer_id, reason=None, now=None):
    order = get_customer_order(order_id, customer_id)
    if order.status not in CUSTOMER_CANCELLABLE:
        raise ConflictError(
            f'Orders in status {order.status.label} can no longer be '
            'cancelled')
    return change_status(
        order.id,
        OrderStatus.CANCELLED,
        notes=reason or 'Khách hàng hủy đơn',
        now=now)


def cancel_order_by_admin(order_id, reason, now=None):
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('Cancellation reason is required')
    order = get_order(order_id)
    if order.status == OrderStatus.CANCELLED:
        raise ConflictError('Order is already cancelled')
    return change_status(
        order.id, OrderStatus.CANCELLED, notes=reason, now=now)


def parse_order_code(order_code) -> int:
    try:
        order_id = int(str(order_code).strip())
    except (TypeError, ValueError):
        raise ValidationError('Invalid order code')
    if order_id <= 0:
        raise ValidationError('Invalid order code')
    return order_id


def confirm_payment(order_code, now=None) -> PaymentConfirmation:
    """Record a successful gateway payment.

    Safe to replay: only the first callback moves the order to PAID and
    uses up its coupon. The result is re-read from the database before the
    caller is told the payment went through.
    """
    now = now or datetime.utcnow()
    order_id = parse_order_code(order_code)
    order = get_order(order_id)

    if order.status == OrderStatus.PAID or order.paid_at is not None:
        logger.info("Payment for order %s already recorded", order.id)
        return PaymentConfirmation(order, already_paid=True)
    if order.status != OrderStatus.AWAITING_PAYMENT:
        raise ConflictError(
            f'Order is not awaiting payment ({order.status.label})')

    coupon_consumed = None
    try:
        result = db.session.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == OrderStatus.AWAITING_PAYMENT,
            )
            .values(
                status=OrderStatus.PAID,
                payment_method=PaymentMethod.BANK_TRANSFER,
                payment_note=PaymentMethod.BANK_TRANSFER.label,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1
        if won and order.coupon_id:
            coupon_consumed = voucher_service.consume_coupon(
                order.coupon_id, now)
            if not coupon_consumed:
                logger.warning(
                    "Coupon %s of order %s was already used",
                    order.coupon_id,
                    order.id,
                )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.expire(order)
    stored_status = db.session.execute(
        select(Order.status).where(Order.id == order_id)
    ).scalar()
    if stored_status != OrderStatus.PAID:
        logger.error(
            "Payment for order %s did not persist (status=%s)",
            order_id,
            stored_status,
        )
        raise ExternalServiceError('Payment could not be recorded')

    if not won:
        return PaymentConfirmation(order, already_paid=True)
    logger.info("Payment recorded for order %s", order_id)
    return PaymentConfirmation(
        order, already_paid=False, coupon_consumed=coupon_consumed)


def cancel_payment(order_code, now=None) -> Order:
    now = now or datetime.utcnow()
    order = get_order(parse_order_code(order_code))
    if order.status == OrderStatus.CANCELLED:
        return order
    if order.status != OrderStatus.AWAITING_PAYMENT:
        raise ConflictError(
            f'Order is not awaiting payment ({order.status.label})')

    order.status = OrderStatus.CANCELLED
    order.payment_note = f'{PaymentMethod.BANK_TRANSFER.label} (Đã hủy)'
    order.cancel_reason = 'Payment cancelled at gateway'
    order.updated_at = now
    _commit_order(order.id)
    logger.info("Payment cancelled for order %s", order.id)
    return order


def start_payment(order_id, customer_id, return_url, cancel_url):
    order = get_customer_order(order_id, customer_id)
    if order.status != OrderStatus.AWAITING_PAYMENT:
        raise ConflictError(
            f'Order is not awaiting payment ({order.status.label})')
    return payment_gateway.create_payment_link(order, return_url, cancel_url)
