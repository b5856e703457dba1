from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from perfume_store.extensions import db
from perfume_store.models import Fee
from perfume_store.services.errors import (
    ValidationError,
    ConflictError,
    NotFoundError,
)
from perfume_store.services.pricing_service import (
    VAT_FEE_NAME,
    SHIPPING_FEE_NAME,
)
from perfume_store.utils import D
from decimal import InvalidOperation
import logging

logger = logging.getLogger(__name__)


def _money(raw, field_name):
    try:
        return D(raw)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'{field_name} must be a number')


def _validate(name, value, threshold):
    if name.lower() == VAT_FEE_NAME.lower():
        if value < 0 or value > 100:
            raise ValidationError('VAT must be between 0 and 100')
    elif name.lower() == SHIPPING_FEE_NAME.lower():
        if value < 0:
            raise ValidationError('Shipping fee cannot be negative')
    elif value < 0:
        raise ValidationError('Fee value cannot be negative')
    if threshold is not None and threshold < 0:
        raise ValidationError('Threshold cannot be negative')


def _check_name_free(name, fee_id=None):
    # Fees are looked up by name ignoring case
    query = Fee.query.filter(db.func.lower(Fee.name) == name.lower())
    if fee_id is not None:
        query = query.filter(Fee.id != fee_id)
    if query.first() is not None:
        raise ConflictError('A fee with this name already exists')


def get_fee(fee_id) -> Fee:
    fee = db.session.get(Fee, fee_id)
    if fee is None:
        raise NotFoundError('Fee not found')
    return fee


def _commit(fee_id=None):
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('A fee with this name already exists')
    except StaleDataError:
        db.session.rollback()
        if fee_id is not None and db.session.get(Fee, fee_id) is None:
            raise NotFoundError('Fee not found')
        raise


def create_fee(name, value, description=None, threshold=None):
    name = (name or '').strip()
    if not name:
        raise ValidationError('Fee name cannot be empty')
    value = _money(value, 'value')
    if threshold is not None:
        threshold = _money(threshold, 'threshold')
    _validate(name, value, threshold)
    _check_name_free(name)

    fee = Fee(
        name=name,
        value=value,
        description=description,
        threshold=threshold,
    )
    db.session.add(fee)
    _commit()
    logger.info("Fee %s created: %s", fee.name, fee.value)
    return fee


def update_fee(fee_id, name=None, value=None, description=None):
    fee = get_fee(fee_id)
    if name is not None:
        name = name.strip()
        if not name:
            raise ValidationError('Fee name cannot be empty')
        _check_name_free(name, fee_id)
        fee.name = name
    if value is not None:
        fee.value = _money(value, 'value')
    if description is not None:
        fee.description = description
    try:
        _validate(fee.name, D(fee.value), fee.threshold)
    except ValidationError:
        db.session.rollback()
        raise
    _commit(fee_id)
    return fee


def update_threshold(fee_id, threshold):
    fee = get_fee(fee_id)
    fee.threshold = (
        _money(threshold, 'threshold') if threshold is not None else None
    )
    try:
        _validate(fee.name, D(fee.value), fee.threshold)
    except ValidationError:
        db.session.rollback()
        raise
    _commit(fee_id)
    return fee


def delete_fee(fee_id):
    fee = get_fee(fee_id)
    name = fee.name
    db.session.delete(fee)
    db.session.commit()
    logger.info("Fee %s deleted", name)
    return name
