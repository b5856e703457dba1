from datetime import datetime, timedelta
from decimal import Decimal
import pytest
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value
from perfume_store.models import (
    Coupon,
    Order,
    OrderStatus,
    PaymentMethod,
    User,
)
from perfume_store.services import voucher_service
from perfume_store.services.errors import (
    ValidationError,
    ConflictError,
    NotFoundError,
)


def test_normalize_code_trims_and_uppercases():
    assert voucher_service.normalize_code('  summer50k ') == 'SUMMER50K'


@pytest.mark.parametrize('raw', ['', '   ', 'BAD-CODE', 'X' * 31, None])
def test_normalize_code_rejects_invalid(raw):
    with pytest.raises(ValidationError):
        voucher_service.normalize_code(raw)


def test_generated_codes_are_long_and_alphanumeric(db):
    code = voucher_service.generate_unique_code()
    assert len(code) == 30
    assert voucher_service.normalize_code(code) == code


def test_spin_weights_give_remainder_to_first():
    assert voucher_service.spin_weights(3) == [34, 33, 33]
    assert voucher_service.spin_weights(1) == [100]
    assert sum(voucher_service.spin_weights(7)) == 100
    assert voucher_service.spin_weights(0) == []


def test_draw_index_follows_cumulative_weights(fixed_random):
    weights = [34, 33, 33]
    assert voucher_service.draw_index(weights, fixed_random(1)) == 0
    assert voucher_service.draw_index(weights, fixed_random(34)) == 0
    assert voucher_service.draw_index(weights, fixed_random(35)) == 1
    assert voucher_service.draw_index(weights, fixed_random(100)) == 2


def test_stacking_different_code_replaces_voucher():
    first = voucher_service.stack_voucher(
        None, voucher_service.WHEEL_BY_CODE['LUCKY10'])
    first = voucher_service.stack_voucher(
        first, voucher_service.WHEEL_BY_CODE['LUCKY10'])
    assert first.times_applied == 2
    assert first.accumulated_value == Decimal('20')

    replaced = voucher_service.stack_voucher(
        first, voucher_service.WHEEL_BY_CODE['CASH100K'])
    assert replaced.code == 'CASH100K'
    assert replaced.times_applied == 1
    assert replaced.accumulated_value == Decimal('100000')


def test_stacking_freeship_is_idempotent():
    freeship = voucher_service.WHEEL_BY_CODE['FREESHIP']
    voucher = voucher_service.stack_voucher(None, freeship)
    voucher = voucher_service.stack_voucher(voucher, freeship)
    voucher = voucher_service.stack_voucher(voucher, freeship)

    assert voucher.times_applied == 3
    assert voucher.accumulated_value == Decimal('1')


def test_voucher_survives_session_round_trip():
    voucher = voucher_service.stack_voucher(
        None, voucher_service.WHEEL_BY_CODE['CASH50K'])
    restored = voucher_service.Voucher.from_session(voucher.to_session())
    assert restored == voucher


def test_coupon_claim_is_exclusive(db, make_customer, make_coupon):
    first = make_customer('a@example.com')
    second = make_customer('b@example.com')
    coupon = make_coupon('ONLYONE')

    assert voucher_service.claim_coupon(coupon.id, first.id) is True
    assert voucher_service.claim_coupon(coupon.id, second.id) is False
    # Claiming again by the owner is not a loss
    assert voucher_service.claim_coupon(coupon.id, first.id) is True
    db.session.commit()

    assert db.session.get(Coupon, coupon.id).customer_id == first.id


def test_spin_candidates_filter(db, make_customer, make_coupon):
    me = make_customer('me@example.com')
    other = make_customer('other@example.com')
    free = make_coupon('FREEONE')
    mine = make_coupon('MINEONE', customer_id=me.id)
    make_coupon('THEIRS', customer_id=other.id)
    make_coupon('USEDONE', is_used=True)
    make_coupon('OLDONE', expires_in_days=-1)
    make_coupon('ZERO', amount='0')
    make_coupon('LUCKY10', amount='0')
    make_coupon('CASH50K', amount='50000')

    codes = {c.code for c in voucher_service.spin_candidates(me.id)}
    assert codes == {free.code, mine.code}

    guest_codes = {c.code for c in voucher_service.spin_candidates(None)}
    assert guest_codes == {free.code}


def test_spin_claims_drawn_coupon(
        db, make_customer, make_coupon, fixed_random):
    customer = make_customer(spins=3)
    coupon = make_coupon('SPINWIN', amount='80000')

    result = voucher_service.spin(customer, rng=fixed_random(1))

    assert result.source == 'coupon'
    assert result.voucher.code == 'SPINWIN'
    assert result.voucher.coupon_id == coupon.id
    assert result.spins_left == 2
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).customer_id == customer.id
    assert customer.spin_number == 2


def test_spin_redraws_after_losing_claim(
        db, make_customer, make_coupon, fixed_random, monkeypatch):
    rival = make_customer('rival@example.com')
    customer = make_customer('me@example.com')
    lost = make_coupon('LOSTONE')
    won = make_coupon('WONONE')
    # Someone else claims the first coupon after the pool was read.
    original = voucher_service.spin_candidates

    def stale_candidates(customer_id, now=None):
        pool = original(customer_id, now)
        voucher_service.claim_coupon(lost.id, rival.id)
        return pool

    monkeypatch.setattr(voucher_service, 'spin_candidates', stale_candidates)
    result = voucher_service.spin(customer, rng=fixed_random(1, 1))

    assert result.voucher.code == won.code
    db.session.expire_all()
    assert db.session.get(Coupon, lost.id).customer_id == rival.id
    assert db.session.get(Coupon, won.id).customer_id == customer.id


def test_spin_falls_back_to_prize_wheel(db, make_customer, fixed_random):
    customer = make_customer()

    # FREESHIP occupies 1..12, NONE 13..22, LUCKY15 23..37
    result = voucher_service.spin(customer, rng=fixed_random(23))

    assert result.source == 'wheel'
    assert result.voucher.code == 'LUCKY15'
    assert result.segment == 2
    assert result.is_prize


def test_guest_spin_does_not_claim(db, make_coupon, fixed_random):
    coupon = make_coupon('GUESTWIN')

    result = voucher_service.spin(None, guest_spins=1, rng=fixed_random(1))

    assert result.voucher.code == 'GUESTWIN'
    assert result.spins_left == 0
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).customer_id is None


def test_spin_without_spins_left(db, make_customer):
    customer = make_customer(spins=0)
    with pytest.raises(voucher_service.NoSpinsLeftError):
        voucher_service.spin(customer)
    with pytest.raises(voucher_service.NoSpinsLeftError):
        voucher_service.spin(None, guest_spins=0)


def test_spin_with_stale_counter_does_not_claim(
        db, make_customer, make_coupon, fixed_random):
    customer = make_customer(spins=1)
    coupon = make_coupon('LASTSPIN')
    # Another request uses the last spin after this one loaded the customer
    db.session.execute(
        update(User)
        .where(User.id == customer.id)
        .values(spin_number=0)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    set_committed_value(customer, 'spin_number', 1)

    with pytest.raises(voucher_service.NoSpinsLeftError):
        voucher_service.spin(customer, rng=fixed_random(1))

    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).customer_id is None
    assert customer.spin_number == 0


def test_reset_spins(db, make_customer):
    customer = make_customer(spins=0)
    assert voucher_service.reset_spins() == 1
    db.session.expire_all()
    assert customer.spin_number == 3


def test_find_voucher_resolves_catalog_and_coupons(
        db, make_customer, make_coupon):
    me = make_customer('me@example.com')
    other = make_customer('other@example.com')
    make_coupon('MYGIFT', amount='70000', customer_id=me.id)
    make_coupon('OTHERGIFT', customer_id=other.id)
    make_coupon('SPENT', is_used=True)
    make_coupon('STALE', expires_in_days=-2)

    wheel = voucher_service.find_voucher(' lucky30 ')
    assert wheel.type == 'percent'
    assert wheel.value == Decimal('30')

    gift = voucher_service.find_voucher('mygift', me.id)
    assert gift.type == 'amount'
    assert gift.value == Decimal('70000')

    with pytest.raises(ConflictError):
        voucher_service.find_voucher('OTHERGIFT', me.id)
    with pytest.raises(ConflictError):
        voucher_service.find_voucher('SPENT', me.id)
    with pytest.raises(ValidationError):
        voucher_service.find_voucher('STALE', me.id)
    with pytest.raises(NotFoundError):
        voucher_service.find_voucher('NOSUCHCODE', me.id)


def test_consume_coupon_only_once(db, make_coupon):
    coupon = make_coupon('ONCE')

    assert voucher_service.consume_coupon(coupon.id) is True
    assert voucher_service.consume_coupon(coupon.id) is False
    db.session.commit()
    db.session.expire_all()
    assert coupon.is_used is True
    assert coupon.used_at is not None


def test_create_coupon_normalizes_and_rejects_duplicates(db):
    coupon = voucher_service.create_coupon(' newyear ', '150000')
    assert coupon.code == 'NEWYEAR'

    with pytest.raises(ConflictError):
        voucher_service.create_coupon('NewYear', '20000')


def test_create_coupon_validation(db):
    now = datetime.utcnow()
    with pytest.raises(ValidationError):
        voucher_service.create_coupon('ZEROVALUE', '0')
    with pytest.raises(ValidationError):
        voucher_service.create_coupon(
            'BACKWARDS', '1000', expiry_date=now - timedelta(days=1),
            created_at=now)


def test_update_coupon(db, make_coupon, make_customer):
    customer = make_customer()
    coupon = make_coupon('EDITME')

    updated = voucher_service.update_coupon(
        coupon.id, code='edited', discount_amount='90000',
        customer_id=customer.id)

    assert updated.code == 'EDITED'
    assert updated.discount_amount == Decimal('90000')
    assert updated.customer_id == customer.id

    with pytest.raises(NotFoundError):
        voucher_service.update_coupon(9999, code='X')


def test_update_coupon_duplicate_code_with_customer(
        db, make_coupon, make_customer):
    customer = make_customer()
    make_coupon('AAA111')
    second = make_coupon('BBB222')

    with pytest.raises(ConflictError):
        voucher_service.update_coupon(
            second.id, code='aaa111', customer_id=customer.id)

    db.session.expire_all()
    assert db.session.get(Coupon, second.id).code == 'BBB222'
    assert db.session.get(Coupon, second.id).customer_id is None


@pytest.mark.parametrize('code', ['CASH50K', 'lucky10', 'FreeShip'])
def test_prize_wheel_codes_are_reserved(db, make_coupon, code):
    with pytest.raises(ConflictError):
        voucher_service.create_coupon(code, '50000')

    coupon = make_coupon('PLAIN1')
    with pytest.raises(ConflictError):
        voucher_service.update_coupon(coupon.id, code=code)
    db.session.expire_all()
    assert db.session.get(Coupon, coupon.id).code == 'PLAIN1'
    assert Coupon.query.count() == 1


def test_delete_coupon_guards(db, make_coupon, make_customer):
    customer = make_customer()
    free = make_coupon('DELETEME')
    used = make_coupon('USEDUP', is_used=True)
    linked = make_coupon('LINKED')
    db.session.add(Order(
        customer_id=customer.id,
        coupon_id=linked.id,
        status=OrderStatus.AWAITING_PAYMENT,
        payment_method=PaymentMethod.BANK_TRANSFER,
    ))
    db.session.commit()

    assert voucher_service.delete_coupon(free.id) == 'DELETEME'
    with pytest.raises(ConflictError):
        voucher_service.delete_coupon(used.id)
    with pytest.raises(ConflictError):
        voucher_service.delete_coupon(linked.id)
    with pytest.raises(NotFoundError):
        voucher_service.delete_coupon(free.id)


def test_assign_coupon(db, make_coupon, make_customer):
    customer = make_customer()
    coupon = make_coupon('ASSIGNME')

    voucher_service.assign_coupon(coupon.id, customer.id)
    assert coupon.customer_id == customer.id

    with pytest.raises(NotFoundError):
        voucher_service.assign_coupon(coupon.id, 4242)


def test_resolve_coupon_creates_row_for_wheel_code(db):
    voucher = voucher_service.stack_voucher(
        None, voucher_service.WHEEL_BY_CODE['CASH100K'])

    coupon = voucher_service.resolve_coupon_for_voucher(voucher)
    db.session.commit()

    assert coupon.code == 'CASH100K'
    assert coupon.discount_amount == Decimal('100000')
    assert coupon.expiry_date > datetime.utcnow() + timedelta(days=29)
    assert voucher_service.resolve_coupon_for_voucher(voucher).id == coupon.id

    percent = voucher_service.resolve_coupon_for_voucher(
        voucher_service.WHEEL_BY_CODE['LUCKY20'])
    assert percent.discount_amount == Decimal('0')
    assert voucher_service.resolve_coupon_for_voucher(
        voucher_service.WHEEL_BY_CODE['NONE']) is None
