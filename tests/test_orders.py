from datetime import datetime
from decimal import Decimal
import pytest
from perfume_store.models import (
    Coupon,
    Fee,
    Order,
    OrderStatus,
    PaymentMethod,
    Product,
    User,
    Warranty,
    WarrantyClaim,
)
from perfume_store.services import order_service, voucher_service
from perfume_store.services import warranty_service
from perfume_store.services.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from perfume_store.services.pricing_service import CartLine


def checkout_form(**overrides):
    data = {
        'full_name': 'Nguyễn Văn A',
        'email': 'khach@example.com',
        'phone': '0901234567',
        'address_line': '12 Lê Lợi',
        'province': 'Hồ Chí Minh',
        'district': 'Quận 1',
        'ward': 'Bến Nghé',
        'payment_method': 'COD',
    }
    data.update(overrides)
    return order_service.CheckoutForm.from_dict(data)


@pytest.fixture
def perfume(make_product):
    return make_product('Chanel No.5', price='2000000', warranty_months=12)


def test_cod_order_uses_coupon_immediately(
        db, fees, perfume, make_coupon, line_for):
    coupon = make_coupon('GIFT50K', amount='50000')
    voucher = voucher_service.find_voucher('GIFT50K')

    order = order_service.create_order(
        checkout_form(), [line_for(perfume)], voucher)

    assert order.status == OrderStatus.PROCESSING
    assert order.payment_method == PaymentMethod.COD
    assert order.coupon_id == coupon.id
    assert order.voucher_code == 'GIFT50K'
    assert order.subtotal == Decimal('2000000')
    assert order.discount_amount == Decimal('50000')
    assert order.vat_amount == Decimal('200000')
    assert order.shipping_fee == Decimal('30000')
    assert order.total_amount == Decimal('2180000')
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).is_used is True


def test_bank_transfer_order_waits_for_payment(
        db, fees, perfume, make_coupon, line_for):
    coupon = make_coupon('GIFT50K', amount='50000')
    voucher = voucher_service.find_voucher('GIFT50K')

    order = order_service.create_order(
        checkout_form(payment_method='bank_transfer'),
        [line_for(perfume)],
        voucher)

    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.paid_at is None
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).is_used is False


def test_checkout_creates_passwordless_customer(db, fees, perfume, line_for):
    order = order_service.create_order(
        checkout_form(email='Moi@Example.com'), [line_for(perfume, 2)])

    customer = db.session.get(User, order.customer_id)
    assert customer.email == 'moi@example.com'
    assert customer.password_hash is None
    assert customer.check_password('anything') is False
    assert order.address.address_line == '12 Lê Lợi'
    assert order.details[0].quantity == 2
    assert order.details[0].line_total == Decimal('4000000')


def test_checkout_reuses_existing_customer(
        db, fees, perfume, make_customer, line_for):
    customer = make_customer('khach@example.com')

    order = order_service.create_order(
        checkout_form(), [line_for(perfume)], customer=customer)

    assert order.customer_id == customer.id
    assert User.query.count() == 1


def test_unknown_cart_line_gets_placeholder_product(db, fees):
    line = CartLine(product_id=None, name='Mystery Oud',
                    unit_price=Decimal('750000'), quantity=1)

    order = order_service.create_order(checkout_form(), [line])

    product = db.session.get(Product, order.details[0].product_id)
    assert product.is_placeholder is True
    assert product.is_published is False
    assert product.warranty_period_months == 0
    assert order.details[0].product_name == 'Mystery Oud'


def test_order_totals_do_not_change_with_fees(
        db, fees, perfume, line_for):
    order = order_service.create_order(checkout_form(), [line_for(perfume)])
    vat, _ = fees
    vat.value = Decimal('20')
    db.session.commit()

    stored = order_service.get_order(order.id)
    assert stored.vat_amount == Decimal('200000')
    assert stored.total_amount == Decimal('2230000')
    assert Fee.query.filter_by(name='VAT').one().value == Decimal('20')


@pytest.mark.parametrize('overrides', [
    {'full_name': ''},
    {'email': 'not-an-email'},
    {'phone': 'abc'},
    {'payment_method': 'E_WALLET'},
    {'payment_method': 'BITCOIN'},
])
def test_checkout_form_validation(db, fees, perfume, line_for, overrides):
    with pytest.raises(ValidationError):
        order_service.create_order(
            checkout_form(**overrides), [line_for(perfume)])
    assert Order.query.count() == 0


def test_checkout_rejects_empty_cart_and_bad_quantity(
        db, fees, perfume, line_for):
    with pytest.raises(ValidationError):
        order_service.create_order(checkout_form(), [])
    with pytest.raises(ValidationError):
        order_service.create_order(checkout_form(), [line_for(perfume, 11)])


def test_used_coupon_rolls_back_cod_order(
        db, fees, perfume, make_coupon, line_for):
    coupon = make_coupon('GIFT50K')
    voucher = voucher_service.find_voucher('GIFT50K')
    coupon.is_used = True
    db.session.commit()

    with pytest.raises(ConflictError):
        order_service.create_order(
            checkout_form(), [line_for(perfume)], voucher)
    assert Order.query.count() == 0


def test_used_coupon_rejected_for_bank_transfer(
        db, fees, perfume, make_coupon, line_for):
    coupon = make_coupon('GIFT50K', amount='50000')
    voucher = voucher_service.find_voucher('GIFT50K')
    order_service.create_order(checkout_form(), [line_for(perfume)], voucher)

    with pytest.raises(ConflictError):
        order_service.create_order(
            checkout_form(payment_method='bank_transfer'),
            [line_for(perfume)],
            voucher)

    db.session.expire_all()
    assert Order.query.count() == 1
    assert Order.query.filter_by(coupon_id=coupon.id).count() == 1


def test_coupon_of_another_customer_is_rejected_at_checkout(
        db, fees, perfume, make_coupon, make_customer, line_for):
    owner = make_customer('owner@example.com')
    coupon = make_coupon('MINEONLY', amount='50000')
    voucher = voucher_service.find_voucher('MINEONLY')
    coupon.customer_id = owner.id
    db.session.commit()

    with pytest.raises(ConflictError):
        order_service.create_order(
            checkout_form(payment_method='bank_transfer'),
            [line_for(perfume)],
            voucher)
    assert Order.query.count() == 0


def test_shared_wheel_code_can_be_reused(db, fees, perfume, line_for):
    voucher = voucher_service.stack_voucher(
        None, voucher_service.WHEEL_BY_CODE['LUCKY10'])

    first = order_service.create_order(
        checkout_form(), [line_for(perfume)], voucher)
    second = order_service.create_order(
        checkout_form(), [line_for(perfume)], voucher)

    assert first.coupon_id == second.coupon_id
    assert second.total_amount == Decimal('2030000')


@pytest.mark.parametrize('old, new, allowed', [
    (OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID, True),
    (OrderStatus.AWAITING_PAYMENT, OrderStatus.SHIPPING, False),
    (OrderStatus.PROCESSING, OrderStatus.CONFIRMED, True),
    (OrderStatus.PAID, OrderStatus.SHIPPING, True),
    (OrderStatus.SHIPPING, OrderStatus.DELIVERED, True),
    (OrderStatus.DELIVERED, OrderStatus.SHIPPING, True),
    (OrderStatus.CONFIRMED, OrderStatus.DELIVERED, False),
    (OrderStatus.CANCELLED, OrderStatus.PROCESSING, False),
])
def test_transition_table(old, new, allowed):
    assert order_service.can_transition(old, new) is allowed


def test_status_labels_are_accepted(db, fees, perfume, line_for):
    order = order_service.create_order(checkout_form(), [line_for(perfume)])

    change = order_service.change_status(order.id, 'Đã xác nhận')

    assert change.changed
    assert change.new_status == OrderStatus.CONFIRMED
    with pytest.raises(ValidationError):
        order_service.change_status(order.id, 'NOT_A_STATUS')


def test_disallowed_transition_is_rejected(db, fees, perfume, line_for):
    order = order_service.create_order(checkout_form(), [line_for(perfume)])
    order_service.change_status(order.id, OrderStatus.CANCELLED)

    with pytest.raises(ConflictError):
        order_service.change_status(order.id, OrderStatus.SHIPPING)


def test_delivery_issues_warranties(db, fees, make_product, line_for):
    perfume = make_product('Dior Sauvage', warranty_months=12)
    sample = make_product('Travel Sample', price='100000', warranty_months=0)
    order = order_service.create_order(
        checkout_form(), [line_for(perfume), line_for(sample)])
    order_service.change_status(order.id, OrderStatus.SHIPPING)

    change = order_service.change_status(order.id, OrderStatus.DELIVERED)

    assert change.warranty_report.created_count == 1
    skipped = change.warranty_report.skipped
    assert [o.reason for o in skipped] == ['Product has no warranty period']
    assert Warranty.query.count() == 1


def test_admin_cancel_after_delivery_removes_warranties(
        db, fees, make_product, line_for):
    first = make_product('Dior Sauvage', warranty_months=12)
    second = make_product('Bleu de Chanel', warranty_months=24)
    order = order_service.create_order(
        checkout_form(), [line_for(first), line_for(second)])
    order_service.change_status(order.id, OrderStatus.SHIPPING)
    order_service.change_status(order.id, OrderStatus.DELIVERED)
    warranty = Warranty.query.first()
    warranty_service.submit_claim(
        warranty.id, order.customer_id, 'Leaking',
        'The atomizer leaks after a week')

    change = order_service.cancel_order_by_admin(order.id, 'Khách trả hàng')

    assert change.warranties_deleted == 2
    assert 'warranties deleted' in change.message
    assert Warranty.query.count() == 0
    assert WarrantyClaim.query.count() == 0
    stored = order_service.get_order(order.id)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.cancel_reason == 'Khách trả hàng'


def test_admin_cancel_needs_reason(db, fees, perfume, line_for):
    order = order_service.create_order(checkout_form(), [line_for(perfume)])

    with pytest.raises(ValidationError):
        order_service.cancel_order_by_admin(order.id, '  ')

    order_service.cancel_order_by_admin(order.id, 'Hết hàng')
    with pytest.raises(ConflictError):
        order_service.cancel_order_by_admin(order.id, 'Hết hàng')


def test_customer_cancel_only_before_confirmation(
        db, fees, perfume, line_for):
    order = order_service.create_order(checkout_form(), [line_for(perfume)])
    other = order_service.create_order(checkout_form(), [line_for(perfume)])
    order_service.change_status(other.id, OrderStatus.CONFIRMED)

    change = order_service.cancel_order_by_customer(
        order.id, order.customer_id)
    assert change.new_status == OrderStatus.CANCELLED

    with pytest.raises(ConflictError):
        order_service.cancel_order_by_customer(other.id, other.customer_id)
    with pytest.raises(NotFoundError):
        order_service.cancel_order_by_customer(other.id, 9999)


def test_confirm_payment_is_idempotent(
        db, fees, perfume, make_coupon, line_for):
    coupon = make_coupon('GIFT50K')
    order = order_service.create_order(
        checkout_form(payment_method='BANK_TRANSFER'),
        [line_for(perfume)],
        voucher_service.find_voucher('GIFT50K'))
    paid_on = datetime(2026, 3, 1, 9, 30)

    first = order_service.confirm_payment(str(order.id), now=paid_on)
    second = order_service.confirm_payment(order.id)

    assert first.already_paid is False
    assert first.coupon_consumed is True
    assert second.already_paid is True
    stored = order_service.get_order(order.id)
    assert stored.status == OrderStatus.PAID
    assert stored.paid_at == paid_on
    assert db.session.get(Coupon, coupon.id).is_used is True


def test_confirm_payment_rejects_bad_codes(db, fees, perfume, line_for):
    cod = order_service.create_order(checkout_form(), [line_for(perfume)])

    with pytest.raises(ValidationError):
        order_service.confirm_payment('abc')
    with pytest.raises(NotFoundError):
        order_service.confirm_payment('424242')
    with pytest.raises(ConflictError):
        order_service.confirm_payment(cod.id)


def test_cancel_payment_marks_note(db, fees, perfume, line_for):
    order = order_service.create_order(
        checkout_form(payment_method='BANK_TRANSFER'), [line_for(perfume)])

    cancelled = order_service.cancel_payment(order.id)
    again = order_service.cancel_payment(order.id)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.payment_note == 'Chuyển khoản ngân hàng (Đã hủy)'
    assert again.id == cancelled.id


def test_start_payment_returns_mock_link(
        db, fees, perfume, line_for):
    order = order_service.create_order(
        checkout_form(payment_method='BANK_TRANSFER'), [line_for(perfume)])

    link = order_service.start_payment(
        order.id, order.customer_id,
        'http://localhost/payment-success',
        'http://localhost/cancel-payment')

    assert link['mock'] is True
    assert link['amount'] == 2230000
    assert link['checkout_url'].endswith(f'?orderCode={order.id}')


def test_list_orders_filters(db, fees, perfume, line_for):
    order_service.create_order(checkout_form(), [line_for(perfume)])
    bank = order_service.create_order(
        checkout_form(email='other@example.com', full_name='Trần Thị B'),
        [line_for(perfume)])
    order_service.change_status(bank.id, OrderStatus.CONFIRMED)

    confirmed = order_service.list_orders(
        order_service.OrderFilters(status=OrderStatus.CONFIRMED)).all()
    by_name = order_service.list_orders(
        order_service.OrderFilters(search='Trần')).all()

    assert [o.id for o in confirmed] == [bank.id]
    assert [o.id for o in by_name] == [bank.id]
