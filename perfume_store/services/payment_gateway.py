"""PayOS checkout links.

With PAYOS_ENABLED off the gateway is mocked: the checkout URL points
straight at the local success callback.
"""
from flask import current_app
from perfume_store.services.errors import ExternalServiceError
from perfume_store.utils import round_money
import hashlib
import hmac
import logging
import requests

logger = logging.getLogger(__name__)

# PayOS rejects longer descriptions
MAX_DESCRIPTION_LENGTH = 25


def sign_payload(data, checksum_key):
    message = '&'.join(
        f'{key}={data[key]}'
        for key in ('amount', 'cancelUrl', 'description', 'orderCode',
                    'returnUrl')
    )
    return hmac.new(
        checksum_key.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256,
    ).hexdigest()


def _headers(config):
    return {
        'x-client-id': config['PAYOS_CLIENT_ID'],
        'x-api-key': config['PAYOS_API_KEY'],
        'Content-Type': 'application/json',
    }


def create_payment_link(order, return_url, cancel_url):
    config = current_app.config
    amount = int(round_money(order.total_amount))
    description = f'DH{order.id}'[:MAX_DESCRIPTION_LENGTH]

    if not config.get('PAYOS_ENABLED'):
        logger.info(
            "Creating payment link (Mock): order=%s amount=%s",
            order.id,
            amount,
        )
        return {
            'checkout_url': f'{return_url}?orderCode={order.id}',
            'order_code': order.id,
            'amount': amount,
            'mock': True,
        }

    body = {
        'orderCode': order.id,
        'amount': amount,
        'description': description,
        'cancelUrl': cancel_url,
        'returnUrl': return_url,
        'items': [
            {
                'name': d.product_name[:50],
                'quantity': d.quantity,
                'price': int(round_money(d.unit_price)),
            }
            for d in order.details
        ],
    }
    body['signature'] = sign_payload(body, config['PAYOS_CHECKSUM_KEY'])

    url = f"{config['PAYOS_API_URL'].rstrip('/')}/v2/payment-requests"
    try:
        response = requests.post(
            url,
            json=body,
            headers=_headers(config),
            timeout=config['PAYOS_TIMEOUT'],
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(
            "PayOS payment link failed for order %s: %s",
            order.id,
            e,
            exc_info=True,
        )
        raise ExternalServiceError('Could not create payment link')

    data = payload.get('data') or {}
    if payload.get('code') != '00' or not data.get('checkoutUrl'):
        logger.error(
            "PayOS rejected order %s: code=%s desc=%s",
            order.id,
            payload.get('code'),
            payload.get('desc'),
        )
        raise ExternalServiceError('Could not create payment link')

    return {
        'checkout_url': data['checkoutUrl'],
        'order_code': order.id,
        'amount': amount,
        'mock': False,
    }


def fetch_payment_status(order_code):
    """Gateway-side status of a payment request, e.g. PAID or CANCELLED.
    None when the gateway is mocked."""
    config = current_app.config
    if not config.get('PAYOS_ENABLED'):
        return None

    url = (
        f"{config['PAYOS_API_URL'].rstrip('/')}"
        f"/v2/payment-requests/{order_code}"
    )
    try:
        response = requests.get(
            url,
            headers=_headers(config),
            timeout=config['PAYOS_TIMEOUT'],
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(
            "PayOS status lookup failed for order %s: %s",
            order_code,
            e,
            exc_info=True,
        )
        raise ExternalServiceError('Could not verify payment status')

    return (payload.get('data') or {}).get('status')
