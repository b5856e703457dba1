from decimal import Decimal
import pytest
from perfume_store.models import Fee
from perfume_store.services.pricing_service import (
    CartLine,
    FeeSnapshot,
    PricingContext,
    compute_totals,
    load_fee_snapshot,
    price_cart,
)
from perfume_store.services.voucher_service import (
    Voucher,
    WHEEL_BY_CODE,
    stack_voucher,
)

STANDARD_FEES = FeeSnapshot(
    vat_percent=Decimal('10'),
    shipping_fee=Decimal('30000'),
    shipping_threshold=Decimal('5000000'),
    has_shipping_row=True,
)


def cart(*amounts):
    return tuple(
        CartLine(product_id=i + 1, name=f'P{i}', unit_price=Decimal(a),
                 quantity=1)
        for i, a in enumerate(amounts)
    )


def applied(code):
    return stack_voucher(None, WHEEL_BY_CODE[code])


def amount_voucher(value):
    return Voucher(code='GIFT', name='Gift', type='amount',
                   value=Decimal(value), accumulated_value=Decimal(value))


def test_happy_path_order_totals():
    context = PricingContext(cart('2000000'), applied('LUCKY10'))

    totals = compute_totals(context, STANDARD_FEES)

    assert totals.subtotal == Decimal('2000000')
    assert totals.discount == Decimal('200000')
    assert totals.vat == Decimal('200000')
    assert totals.shipping_fee == Decimal('30000')
    assert totals.total == Decimal('2030000')


def test_same_inputs_give_same_totals():
    voucher = applied('CASH50K')
    context = PricingContext(cart('450000', '120000'), voucher)

    first = compute_totals(context, STANDARD_FEES)
    second = compute_totals(context, STANDARD_FEES)

    assert first == second
    assert voucher.times_applied == 1
    assert voucher.accumulated_value == Decimal('50000')


def test_vat_uses_subtotal_before_discount():
    voucher = applied('LUCKY20')
    totals = compute_totals(
        PricingContext(cart('1000000'), voucher), STANDARD_FEES)

    assert totals.discount == Decimal('200000')
    assert totals.vat == Decimal('100000')


@pytest.mark.parametrize('voucher, subtotal', [
    (amount_voucher('900000'), '500000'),
    (Voucher(code='X', name='X', type='percent', value=Decimal('150')),
     '500000'),
    (amount_voucher('100000'), '0'),
])
def test_discount_never_exceeds_subtotal(voucher, subtotal):
    lines = cart(subtotal) if subtotal != '0' else ()
    totals = compute_totals(PricingContext(lines, voucher), STANDARD_FEES)

    assert Decimal('0') <= totals.discount <= totals.subtotal
    assert totals.total >= 0


def test_stacked_cash_voucher_discount():
    voucher = stack_voucher(applied('CASH50K'), WHEEL_BY_CODE['CASH50K'])

    totals = compute_totals(
        PricingContext(cart('500000'), voucher), STANDARD_FEES)

    assert voucher.times_applied == 2
    assert voucher.accumulated_value == Decimal('100000')
    assert totals.discount == Decimal('100000')


def test_shipping_waived_at_threshold():
    totals = compute_totals(
        PricingContext(cart('5000000')), STANDARD_FEES)
    assert totals.shipping_fee == Decimal('0')

    totals = compute_totals(
        PricingContext(cart('4999999')), STANDARD_FEES)
    assert totals.shipping_fee == Decimal('30000')


def test_freeship_needs_minimum_subtotal():
    freeship = applied('FREESHIP')

    above = compute_totals(
        PricingContext(cart('200000'), freeship), STANDARD_FEES)
    below = compute_totals(
        PricingContext(cart('199000'), freeship), STANDARD_FEES)

    assert above.shipping_fee == Decimal('0')
    assert above.discount == Decimal('0')
    assert below.shipping_fee == Decimal('30000')


def test_defaults_without_fee_rows():
    totals = compute_totals(PricingContext(cart('1000000')), FeeSnapshot())

    assert totals.vat == Decimal('0')
    assert totals.shipping_fee == Decimal('30000')
    assert totals.total == Decimal('1030000')


def test_shipping_row_without_threshold_uses_default_threshold():
    fees = FeeSnapshot(shipping_fee=Decimal('25000'), has_shipping_row=True)

    low = compute_totals(PricingContext(cart('100000')), fees)
    high = compute_totals(PricingContext(cart('6000000')), fees)

    assert low.shipping_fee == Decimal('25000')
    assert high.shipping_fee == Decimal('0')


def test_none_voucher_gives_no_discount():
    totals = compute_totals(
        PricingContext(cart('300000'), WHEEL_BY_CODE['NONE']), STANDARD_FEES)
    assert totals.discount == Decimal('0')


def test_fee_snapshot_loaded_from_database(db, fees):
    snapshot = load_fee_snapshot()

    assert snapshot.vat_percent == Decimal('10')
    assert snapshot.shipping_fee == Decimal('30000')
    assert snapshot.shipping_threshold == Decimal('5000000')

    totals = price_cart(cart('2000000'), applied('LUCKY10'))
    assert totals.total == Decimal('2030000')


def test_fee_lookup_ignores_name_case(db):
    db.session.add(Fee(name='vat', value=Decimal('8')))
    db.session.commit()

    assert load_fee_snapshot().vat_percent == Decimal('8')
