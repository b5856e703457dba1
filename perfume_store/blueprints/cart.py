from dataclasses import replace
from flask import Blueprint, request, jsonify, current_app
from flask_login import current_user
from perfume_store.extensions import db
from perfume_store.models import Product
from perfume_store.cart_session import (
    load_cart,
    save_cart,
    load_voucher,
    save_voucher,
    clear_checkout_state,
)
from perfume_store.services import voucher_service
from perfume_store.services.pricing_service import CartLine, price_cart
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('cart', __name__)


def _parse_quantity(raw):
    try:
        quantity = int(raw)
    except (TypeError, ValueError):
        return None, 'Quantity must be a whole number'
    max_quantity = current_app.config['CART_MAX_QUANTITY']
    if quantity < 1 or quantity > max_quantity:
        return None, f'Quantity must be between 1 and {max_quantity}'
    return quantity, None


def cart_summary():
    lines = load_cart()
    voucher = load_voucher()
    totals = price_cart(lines, voucher)
    return {
        'items': [line.to_dict() for line in lines],
        'item_count': sum(line.quantity for line in lines),
        'voucher': voucher.to_dict() if voucher else None,
        'totals': totals.to_dict(),
    }


@bp.route('/api/cart', methods=['GET'])
def get_cart():
    return jsonify(cart_summary())


@bp.route('/api/cart/items', methods=['POST'])
def add_cart_item():
    data = request.get_json() or {}
    product_id = data.get('product_id')
    if not product_id:
        return jsonify({'error': 'Product ID cannot be empty'}), 400

    quantity, error = _parse_quantity(data.get('quantity', 1))
    if error:
        return jsonify({'error': error}), 400

    product = db.session.get(Product, product_id)
    if product is None or not product.is_published:
        return jsonify({'error': 'Product not found'}), 404

    lines = load_cart()
    existing = next(
        (line for line in lines if line.product_id == product.id), None)
    if existing:
        new_quantity, error = _parse_quantity(existing.quantity + quantity)
        if error:
            return jsonify({'error': error}), 400
        lines = [
            replace(line, quantity=new_quantity)
            if line.product_id == product.id else line
            for line in lines
        ]
    else:
        lines.append(CartLine(
            product_id=product.id,
            name=product.name,
            unit_price=product.price,
            quantity=quantity,
            image_url=product.image_path,
        ))
    save_cart(lines)
    return jsonify(cart_summary()), 201


@bp.route('/api/cart/items/<int:product_id>', methods=['PATCH'])
def update_cart_item(product_id):
    data = request.get_json() or {}
    quantity, error = _parse_quantity(data.get('quantity'))
    if error:
        return jsonify({'error': error}), 400

    lines = load_cart()
    if not any(line.product_id == product_id for line in lines):
        return jsonify({'error': 'Item is not in the cart'}), 404
    save_cart([
        replace(line, quantity=quantity)
        if line.product_id == product_id else line
        for line in lines
    ])
    return jsonify(cart_summary())


@bp.route('/api/cart/items/<int:product_id>', methods=['DELETE'])
def delete_cart_item(product_id):
    lines = load_cart()
    remaining = [line for line in lines if line.product_id != product_id]
    if len(remaining) == len(lines):
        return jsonify({'error': 'Item is not in the cart'}), 404
    save_cart(remaining)
    return jsonify(cart_summary())


@bp.route('/api/cart', methods=['DELETE'])
def clear_cart():
    clear_checkout_state()
    return jsonify(cart_summary())


@bp.route('/api/cart/voucher', methods=['POST'])
def apply_voucher():
    data = request.get_json() or {}
    customer_id = (
        current_user.id if current_user.is_authenticated else None
    )
    incoming = voucher_service.find_voucher(data.get('code'), customer_id)
    voucher = voucher_service.stack_voucher(load_voucher(), incoming)
    save_voucher(voucher)
    logger.info(
        "Voucher %s applied (x%s) by %s",
        voucher.code,
        voucher.times_applied,
        customer_id or 'guest',
    )
    return jsonify(cart_summary())


@bp.route('/api/cart/voucher', methods=['DELETE'])
def remove_voucher():
    save_voucher(None)
    return jsonify(cart_summary())
