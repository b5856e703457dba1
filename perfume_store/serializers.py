from perfume_store.utils import money_json


def _iso(value):
    return value.isoformat() if value else None


def serialize_address(address):
    if address is None:
        return None
    return {
        'id': address.id,
        'recipient_name': address.recipient_name,
        'phone': address.phone,
        'province': address.province,
        'district': address.district,
        'ward': address.ward,
        'address_line': address.address_line,
        'full_address': address.full_address,
        'is_default': address.is_default,
    }


def serialize_customer(user):
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'phone': user.phone,
        'is_active': user.is_active,
        'spin_number': user.spin_number,
        'created_at': _iso(user.created_at),
    }


def serialize_order(order, include_details=True):
    data = {
        'id': order.id,
        'customer_id': order.customer_id,
        'customer_email': order.customer.email if order.customer else None,
        'status': order.status.value,
        'status_label': order.status.label,
        'payment_method': order.payment_method.value,
        'payment_note': order.payment_note,
        'voucher_code': order.voucher_code,
        'subtotal': money_json(order.subtotal),
        'discount': money_json(order.discount_amount),
        'vat': money_json(order.vat_amount),
        'shipping_fee': money_json(order.shipping_fee),
        'total_amount': money_json(order.total_amount),
        'notes': order.notes,
        'cancel_reason': order.cancel_reason,
        'paid_at': _iso(order.paid_at),
        'created_at': _iso(order.created_at),
    }
    if include_details:
        data['address'] = serialize_address(order.address)
        data['items'] = [
            {
                'id': d.id,
                'product_id': d.product_id,
                'product_name': d.product_name,
                'quantity': d.quantity,
                'unit_price': money_json(d.unit_price),
                'line_total': money_json(d.line_total),
                'warranty_code': (
                    d.warranty.warranty_code if d.warranty else None
                ),
            }
            for d in order.details
        ]
    return data


def serialize_coupon(coupon):
    return {
        'id': coupon.id,
        'code': coupon.code,
        'discount_amount': money_json(coupon.discount_amount),
        'created_at': _iso(coupon.created_at),
        'expiry_date': _iso(coupon.expiry_date),
        'is_used': coupon.is_used,
        'used_at': _iso(coupon.used_at),
        'customer_id': coupon.customer_id,
        'customer_email': coupon.customer.email if coupon.customer else None,
    }


def serialize_fee(fee):
    return {
        'id': fee.id,
        'name': fee.name,
        'value': money_json(fee.value),
        'description': fee.description,
        'threshold': (
            money_json(fee.threshold) if fee.threshold is not None else None
        ),
        'updated_at': _iso(fee.updated_at),
    }


def serialize_claim(claim):
    return {
        'id': claim.id,
        'warranty_id': claim.warranty_id,
        'claim_code': claim.claim_code,
        'issue_type': claim.issue_type,
        'description': claim.description,
        'status': claim.status.value,
        'submitted_at': _iso(claim.submitted_at),
        'processed_at': _iso(claim.processed_at),
        'completed_at': _iso(claim.completed_at),
        'resolution': claim.resolution,
        'resolution_type': claim.resolution_type,
        'admin_notes': claim.admin_notes,
        'processed_by': claim.processed_by,
    }


def serialize_warranty(warranty, include_claims=False):
    detail = warranty.order_detail
    data = {
        'id': warranty.id,
        'warranty_code': warranty.warranty_code,
        'order_detail_id': warranty.order_detail_id,
        'order_id': detail.order_id if detail else None,
        'product_name': detail.product_name if detail else None,
        'customer_id': warranty.customer_id,
        'start_date': _iso(warranty.start_date),
        'end_date': _iso(warranty.end_date),
        'period_months': warranty.period_months,
        'status': warranty.status.value,
        'notes': warranty.notes,
    }
    if include_claims:
        data['claims'] = [serialize_claim(c) for c in warranty.claims]
    return data
