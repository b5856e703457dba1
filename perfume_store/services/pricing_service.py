"""Cart pricing.

`compute_totals` is the only place order money is computed. The cart
summary and checkout both go through it, so the total a customer sees is
the total the order is stored with.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple
from sqlalchemy import func
from perfume_store.models import Fee
from perfume_store.utils import D, round_money, money_json
import logging

logger = logging.getLogger(__name__)

FREESHIP_MIN_SUBTOTAL = Decimal('200000')
DEFAULT_SHIPPING_FEE = Decimal('30000')
DEFAULT_SHIPPING_THRESHOLD = Decimal('5000000')
HUNDRED = Decimal('100')

VAT_FEE_NAME = 'VAT'
SHIPPING_FEE_NAME = 'Shipping'


@dataclass(frozen=True)
class CartLine:
    product_id: Optional[int]
    name: str
    unit_price: Decimal
    quantity: int
    image_url: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return D(self.unit_price) * self.quantity

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'name': self.name,
            'unit_price': money_json(self.unit_price),
            'quantity': self.quantity,
            'image_url': self.image_url,
            'line_total': money_json(self.line_total),
        }


@dataclass(frozen=True)
class FeeSnapshot:
    vat_percent: Optional[Decimal] = None
    shipping_fee: Optional[Decimal] = None
    shipping_threshold: Optional[Decimal] = None
    has_shipping_row: bool = False


@dataclass(frozen=True)
class PricingContext:
    lines: Tuple[CartLine, ...]
    voucher: Optional[object] = None


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount: Decimal
    shipping_fee: Decimal
    vat: Decimal
    total: Decimal

    def to_dict(self):
        return {
            'subtotal': money_json(self.subtotal),
            'discount': money_json(self.discount),
            'shipping_fee': money_json(self.shipping_fee),
            'vat': money_json(self.vat),
            'total': money_json(self.total),
        }


def compute_subtotal(lines) -> Decimal:
    return sum((line.line_total for line in lines), Decimal('0'))


def compute_discount(subtotal: Decimal, voucher) -> Decimal:
    if voucher is None:
        return Decimal('0')
    value = D(voucher.effective_value)
    if voucher.type == 'percent':
        return subtotal * min(value, HUNDRED) / HUNDRED
    if voucher.type == 'amount':
        return min(value, subtotal)
    # freeship acts on shipping, never on the discount
    return Decimal('0')


def compute_shipping(subtotal: Decimal, voucher, fees: FeeSnapshot):
    if (
        voucher is not None
        and voucher.type == 'freeship'
        and subtotal >= FREESHIP_MIN_SUBTOTAL
    ):
        return Decimal('0')

    if fees.has_shipping_row:
        threshold = fees.shipping_threshold
        if threshold is None:
            threshold = DEFAULT_SHIPPING_THRESHOLD
        fee = D(fees.shipping_fee)
    else:
        threshold = DEFAULT_SHIPPING_THRESHOLD
        fee = DEFAULT_SHIPPING_FEE

    if subtotal >= threshold:
        return Decimal('0')
    return fee


def compute_vat(subtotal: Decimal, fees: FeeSnapshot) -> Decimal:
    # VAT is charged on the pre-discount subtotal.
    if fees.vat_percent is None:
        return Decimal('0')
    return subtotal * min(D(fees.vat_percent), HUNDRED) / HUNDRED


def compute_totals(context: PricingContext, fees: FeeSnapshot):
    subtotal = compute_subtotal(context.lines)
    discount = max(compute_discount(subtotal, context.voucher), Decimal('0'))
    shipping = compute_shipping(subtotal, context.voucher, fees)
    vat = compute_vat(subtotal, fees)

    subtotal = round_money(subtotal)
    discount = round_money(discount)
    shipping = round_money(shipping)
    vat = round_money(vat)
    return PriceBreakdown(
        subtotal=subtotal,
        discount=discount,
        shipping_fee=shipping,
        vat=vat,
        total=subtotal - discount + shipping + vat,
    )


def _find_fee(name):
    return Fee.query.filter(
        func.lower(Fee.name) == name.lower()
    ).order_by(Fee.id.asc()).first()


def load_fee_snapshot() -> FeeSnapshot:
    vat = _find_fee(VAT_FEE_NAME)
    shipping = _find_fee(SHIPPING_FEE_NAME)
    return FeeSnapshot(
        vat_percent=D(vat.value) if vat else None,
        shipping_fee=D(shipping.value) if shipping else None,
        shipping_threshold=(
            D(shipping.threshold)
            if shipping and shipping.threshold is not None
            else None
        ),
        has_shipping_row=shipping is not None,
    )


def price_cart(lines, voucher=None, fees=None) -> PriceBreakdown:
    if fees is None:
        fees = load_fee_snapshot()
    return compute_totals(PricingContext(tuple(lines), voucher), fees)
