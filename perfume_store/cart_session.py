"""Cart and voucher held in the browsing session."""
from flask import session
from perfume_store.services.pricing_service import CartLine
from perfume_store.services.voucher_service import Voucher
from perfume_store.utils import D

CART_KEY = 'cart'
VOUCHER_KEY = 'applied_voucher'
GUEST_SPINS_KEY = 'guest_spins'


def load_cart():
    lines = []
    for raw in session.get(CART_KEY, []):
        lines.append(CartLine(
            product_id=raw.get('product_id'),
            name=raw.get('name') or '',
            unit_price=D(raw.get('unit_price')),
            quantity=int(raw.get('quantity') or 0),
            image_url=raw.get('image_url'),
        ))
    return lines


def save_cart(lines):
    session[CART_KEY] = [
        {
            'product_id': line.product_id,
            'name': line.name,
            'unit_price': str(line.unit_price),
            'quantity': line.quantity,
            'image_url': line.image_url,
        }
        for line in lines
    ]


def load_voucher():
    return Voucher.from_session(session.get(VOUCHER_KEY))


def save_voucher(voucher):
    if voucher is None:
        session.pop(VOUCHER_KEY, None)
    else:
        session[VOUCHER_KEY] = voucher.to_session()


def clear_checkout_state():
    session.pop(CART_KEY, None)
    session.pop(VOUCHER_KEY, None)
