from dataclasses import dataclass, replace, asdict
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional
from flask import current_app
from sqlalchemy import update, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from perfume_store.extensions import db
from perfume_store.models import Coupon, User, UserRole
from perfume_store.services.errors import (
    ValidationError,
    ConflictError,
    NotFoundError,
)
from perfume_store.utils import D, money_json
import logging
import random
import secrets
import string

logger = logging.getLogger(__name__)

VOUCHER_TYPES = ('percent', 'amount', 'freeship', 'none')
CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_LENGTH = 30

_system_random = random.SystemRandom()


@dataclass
class Voucher:
    code: str
    name: str
    type: str
    value: Decimal
    probability: int = 0
    id: Optional[int] = None
    coupon_id: Optional[int] = None
    expiry: Optional[datetime] = None
    times_applied: int = 1
    accumulated_value: Decimal = Decimal('0')

    @property
    def effective_value(self) -> Decimal:
        accumulated = D(self.accumulated_value)
        if accumulated > 0:
            return accumulated
        return D(self.value)

    def to_session(self):
        data = asdict(self)
        data['value'] = str(self.value)
        data['accumulated_value'] = str(self.accumulated_value)
        data['expiry'] = self.expiry.isoformat() if self.expiry else None
        return data

    @classmethod
    def from_session(cls, data):
        if not data:
            return None
        data = dict(data)
        data['value'] = D(data.get('value'))
        data['accumulated_value'] = D(data.get('accumulated_value'))
        if data.get('expiry'):
            data['expiry'] = datetime.fromisoformat(data['expiry'])
        return cls(**data)

    def to_dict(self):
        return {
            'code': self.code,
            'name': self.name,
            'type': self.type,
            'value': money_json(self.value),
            'coupon_id': self.coupon_id,
            'expiry': self.expiry.isoformat() if self.expiry else None,
            'times_applied': self.times_applied,
            'accumulated_value': money_json(self.accumulated_value),
            'effective_value': money_json(self.effective_value),
        }


# Default prize wheel. These codes are shared promotional codes and can be
# applied by anyone; their coupon rows only link orders to the code.
WHEEL_VOUCHERS = (
    Voucher(code='FREESHIP', name='Miễn phí vận chuyển', type='freeship',
            value=Decimal('0'), probability=12, id=1),
    Voucher(code='NONE', name='Chúc bạn may mắn lần sau', type='none',
            value=Decimal('0'), probability=10, id=2),
    Voucher(code='LUCKY15', name='Giảm 15%', type='percent',
            value=Decimal('15'), probability=15, id=3),
    Voucher(code='LUCKY10', name='Giảm 10%', type='percent',
            value=Decimal('10'), probability=20, id=4),
    Voucher(code='LUCKY20', name='Giảm 20%', type='percent',
            value=Decimal('20'), probability=18, id=5),
    Voucher(code='LUCKY30', name='Giảm 30%', type='percent',
            value=Decimal('30'), probability=12, id=6),
    Voucher(code='CASH50K', name='Giảm 50.000đ', type='amount',
            value=Decimal('50000'), probability=8, id=7),
    Voucher(code='CASH100K', name='Giảm 100.000đ', type='amount',
            value=Decimal('100000'), probability=5, id=8),
)
WHEEL_BY_CODE = {v.code: v for v in WHEEL_VOUCHERS}
CATALOG_CODES = frozenset(
    v.code for v in WHEEL_VOUCHERS if v.type != 'none')


@dataclass
class SpinResult:
    voucher: Voucher
    segment: int
    spins_left: int
    source: str

    @property
    def is_prize(self):
        return self.voucher.type != 'none'

    @property
    def message(self):
        if not self.is_prize:
            return 'Better luck next time!'
        return f'Congratulations! You won {self.voucher.name}'

    def to_dict(self):
        return {
            'voucher': self.voucher.to_dict(),
            'segment': self.segment,
            'spins_left': self.spins_left,
            'source': self.source,
            'message': self.message,
        }


class NoSpinsLeftError(ValidationError):
    pass


def normalize_code(code):
    normalized = (code or '').strip().upper()
    if not normalized:
        raise ValidationError('Coupon code cannot be empty')
    if len(normalized) > MAX_CODE_LENGTH:
        raise ValidationError(
            f'Coupon code cannot exceed {MAX_CODE_LENGTH} characters')
    if not all(ch in CODE_ALPHABET for ch in normalized):
        raise ValidationError(
            'Coupon code may only contain letters and digits')
    return normalized


def generate_unique_code(length=MAX_CODE_LENGTH):
    while True:
        code = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        exists = db.session.execute(
            select(Coupon.id).where(Coupon.code == code)
        ).first()
        if not exists:
            return code


def voucher_from_coupon(coupon: Coupon) -> Voucher:
    amount = D(coupon.discount_amount)
    return Voucher(
        code=coupon.code,
        name=f'Giảm {int(amount):,}đ'.replace(',', '.'),
        type='amount',
        value=amount,
        coupon_id=coupon.id,
        expiry=coupon.expiry_date,
        accumulated_value=amount,
    )


def _validate_coupon_fields(discount_amount, created_at, expiry_date):
    try:
        amount = D(discount_amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError('Discount amount must be a number')
    if amount <= 0:
        raise ValidationError('Discount amount must be greater than 0')
    if expiry_date and created_at and expiry_date < created_at:
        raise ValidationError('Expiry date cannot be before creation date')
    return amount


def _check_code_free(code):
    if code in CATALOG_CODES:
        raise ConflictError('This code is reserved for the prize wheel')
    return code


def _check_customer(customer_id):
    if customer_id is None:
        return None
    customer = db.session.get(User, customer_id)
    if customer is None or customer.role != UserRole.CUSTOMER:
        raise NotFoundError('Customer not found')
    return customer


def create_coupon(
        code,
        discount_amount,
        expiry_date=None,
        customer_id=None,
        created_at=None):
    created_at = created_at or datetime.utcnow()
    amount = _validate_coupon_fields(discount_amount, created_at, expiry_date)
    code = _check_code_free(normalize_code(code))
    _check_customer(customer_id)

    coupon = Coupon(
        code=code,
        discount_amount=amount,
        created_at=created_at,
        expiry_date=expiry_date,
        customer_id=customer_id,
        is_used=False,
    )
    db.session.add(coupon)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Coupon code already exists')

    logger.info("Coupon %s created (amount=%s)", coupon.code, amount)
    return coupon


def get_coupon(coupon_id) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError('Coupon not found')
    return coupon


def update_coupon(coupon_id, **fields):
    coupon = get_coupon(coupon_id)
    # Customer lookup runs before any change is pending
    if 'customer_id' in fields:
        _check_customer(fields['customer_id'])
    if 'code' in fields and fields['code'] is not None:
        coupon.code = _check_code_free(normalize_code(fields['code']))
    if fields.get('discount_amount') is not None:
        coupon.discount_amount = fields['discount_amount']
    if 'expiry_date' in fields:
        coupon.expiry_date = fields['expiry_date']
    if 'customer_id' in fields:
        coupon.customer_id = fields['customer_id']
    if 'is_used' in fields and fields['is_used'] is not None:
        coupon.is_used = bool(fields['is_used'])
        coupon.used_at = datetime.utcnow() if coupon.is_used else None

    try:
        _validate_coupon_fields(
            coupon.discount_amount, coupon.created_at, coupon.expiry_date)
    except ValidationError:
        db.session.rollback()
        raise

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Coupon code already exists')
    except StaleDataError:
        db.session.rollback()
        if db.session.get(Coupon, coupon_id) is None:
            raise NotFoundError('Coupon not found')
        raise
    return coupon


def delete_coupon(coupon_id):
    coupon = get_coupon(coupon_id)
    if coupon.is_used:
        raise ConflictError('Cannot delete a coupon that has been used')
    if coupon.orders.count() > 0:
        raise ConflictError(
            'Cannot delete a coupon that is linked to orders')

    code = coupon.code
    db.session.delete(coupon)
    db.session.commit()
    logger.info("Coupon %s deleted", code)
    return code


def assign_coupon(coupon_id, customer_id):
    coupon = get_coupon(coupon_id)
    _check_customer(customer_id)
    if coupon.is_used:
        raise ConflictError('Coupon has already been used')
    coupon.customer_id = customer_id
    db.session.commit()
    logger.info("Coupon %s assigned to customer %s", coupon.code, customer_id)
    return coupon


def spin_candidates(customer_id=None, now=None):
    now = now or datetime.utcnow()
    query = Coupon.query.filter(
        Coupon.is_used.is_(False),
        Coupon.discount_amount > 0,
        db.or_(Coupon.expiry_date.is_(None), Coupon.expiry_date > now),
        Coupon.code.notin_(sorted(CATALOG_CODES)),
    )
    if customer_id is None:
        query = query.filter(Coupon.customer_id.is_(None))
    else:
        query = query.filter(db.or_(
            Coupon.customer_id.is_(None),
            Coupon.customer_id == customer_id,
        ))
    return query.order_by(Coupon.id.asc()).all()


def spin_weights(n):
    if n <= 0:
        return []
    base = 100 // n
    weights = [base] * n
    weights[0] += 100 - base * n
    return weights


def draw_index(weights, rng=None):
    rng = rng or _system_random
    total = sum(weights)
    if total <= 0:
        raise ValidationError('No prizes available')
    roll = rng.randint(1, total)
    cumulative = 0
    for index, weight in enumerate(weights):
        cumulative += weight
        if roll <= cumulative:
            return index
    return len(weights) - 1


def claim_coupon(coupon_id, customer_id) -> bool:
    """Assign an unowned coupon to a customer.

    Only one concurrent caller can win: the update matches only while the
    coupon is still unowned.
    """
    result = db.session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.customer_id.is_(None),
            Coupon.is_used.is_(False),
        )
        .values(customer_id=customer_id)
        .execution_options(synchronize_session='fetch')
    )
    if result.rowcount == 1:
        return True
    owner = db.session.execute(
        select(Coupon.customer_id).where(Coupon.id == coupon_id)
    ).scalar()
    return owner == customer_id


def draw_from_wheel(rng=None):
    weights = [v.probability for v in WHEEL_VOUCHERS]
    index = draw_index(weights, rng)
    return index, replace(WHEEL_VOUCHERS[index])


def remaining_spins(customer=None, guest_spins=None):
    if customer is not None:
        if customer.spin_number is None:
            return current_app.config['DAILY_SPINS']
        return customer.spin_number
    if guest_spins is None:
        return current_app.config['DAILY_SPINS']
    return guest_spins


def _take_spin(customer_id):
    """Use up one spin. Only a counter still above zero is decremented."""
    result = db.session.execute(
        update(User)
        .where(User.id == customer_id, User.spin_number > 0)
        .values(spin_number=User.spin_number - 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise NoSpinsLeftError('You have no spins left today')
    return db.session.execute(
        select(User.spin_number).where(User.id == customer_id)
    ).scalar()


def spin(customer=None, guest_spins=None, rng=None, now=None):
    """Spin the wheel once.

    Logged-in customers draw from unowned coupons and keep what they win.
    Guests draw the same pool without a claim. With nothing in the pool the
    default prize wheel is used.
    """
    left = remaining_spins(customer, guest_spins)
    if left <= 0:
        raise NoSpinsLeftError('You have no spins left today')

    customer_id = customer.id if customer is not None else None
    if customer_id is not None:
        left = _take_spin(customer_id)
    else:
        left -= 1

    pool = spin_candidates(customer_id, now)
    result_voucher = None
    segment = 0
    source = 'wheel'

    while pool:
        index = draw_index(spin_weights(len(pool)), rng)
        coupon = pool[index]
        if customer_id is None or claim_coupon(coupon.id, customer_id):
            result_voucher = voucher_from_coupon(coupon)
            segment = index
            source = 'coupon'
            break
        logger.info(
            "Coupon %s was claimed by someone else, redrawing", coupon.code)
        pool.pop(index)

    if result_voucher is None:
        segment, result_voucher = draw_from_wheel(rng)

    db.session.commit()

    logger.info(
        "Spin by %s won %s (%s), %s spins left",
        customer_id or 'guest',
        result_voucher.code,
        source,
        left,
    )
    return SpinResult(
        voucher=result_voucher,
        segment=segment,
        spins_left=left,
        source=source,
    )


def reset_spins(spins=None):
    spins = spins if spins is not None else current_app.config['DAILY_SPINS']
    result = db.session.execute(
        update(User)
        .where(User.role == UserRole.CUSTOMER)
        .values(spin_number=spins)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount


def stack_voucher(current: Optional[Voucher], incoming: Voucher) -> Voucher:
    if current is not None and current.code == incoming.code:
        stacked = replace(current, times_applied=current.times_applied + 1)
        if current.type == 'freeship':
            stacked.accumulated_value = Decimal('1')
        elif current.type in ('percent', 'amount'):
            stacked.accumulated_value = (
                D(current.effective_value) + D(incoming.value)
            )
        return stacked
    return replace(
        incoming,
        times_applied=1,
        accumulated_value=D(incoming.value),
    )


def find_voucher(code, customer_id=None, now=None) -> Voucher:
    now = now or datetime.utcnow()
    normalized = normalize_code(code)

    if normalized in CATALOG_CODES:
        return replace(WHEEL_BY_CODE[normalized])

    coupon = Coupon.query.filter_by(code=normalized).first()
    if coupon is None:
        raise NotFoundError('Coupon code not found')
    check_coupon_usable(coupon, customer_id, now)
    return voucher_from_coupon(coupon)


def check_coupon_usable(coupon: Coupon, customer_id=None, now=None):
    now = now or datetime.utcnow()
    if coupon.is_used:
        raise ConflictError('Coupon has already been used')
    if coupon.is_expired(now):
        raise ValidationError('Coupon has expired')
    if coupon.customer_id is not None and coupon.customer_id != customer_id:
        raise ConflictError('Coupon belongs to another customer')
    if D(coupon.discount_amount) <= 0:
        raise ValidationError('Coupon has no discount value')


def consume_coupon(coupon_id, now=None) -> bool:
    """Mark a coupon used. False when it was already used."""
    result = db.session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.is_used.is_(False))
        .values(is_used=True, used_at=now or datetime.utcnow())
        .execution_options(synchronize_session='fetch')
    )
    return result.rowcount == 1


def resolve_coupon_for_voucher(voucher: Optional[Voucher], now=None):
    """Find the coupon row for an applied voucher, creating one for
    wheel codes seen for the first time. Flushes, never commits."""
    if voucher is None or voucher.type == 'none':
        return None
    now = now or datetime.utcnow()

    if voucher.coupon_id:
        coupon = db.session.get(Coupon, voucher.coupon_id)
        if coupon is not None:
            return coupon

    code = normalize_code(voucher.code)
    coupon = Coupon.query.filter_by(code=code).first()
    if coupon is not None:
        return coupon

    valid_days = current_app.config['COUPON_DEFAULT_VALID_DAYS']
    coupon = Coupon(
        code=code,
        discount_amount=(
            D(voucher.value) if voucher.type == 'amount' else Decimal('0')
        ),
        created_at=now,
        expiry_date=now + timedelta(days=valid_days),
        is_used=False,
    )
    db.session.add(coupon)
    db.session.flush()
    logger.info("Created coupon row for voucher %s", code)
    return coupon
