from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from perfume_store.extensions import db
from perfume_store.models import (
    Order,
    OrderDetail,
    Warranty,
    WarrantyStatus,
    WarrantyClaim,
    ClaimStatus,
    OPEN_CLAIM_STATUSES,
)
from perfume_store.services.errors import (
    ValidationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
)
import calendar
import logging
import random
import uuid

logger = logging.getLogger(__name__)

MIN_CLAIM_DESCRIPTION = 10
AUTO_CREATED_NOTE = 'Tự động tạo khi giao hàng thành công'

_system_random = random.SystemRandom()


@dataclass
class LineOutcome:
    order_detail_id: int
    product_name: str
    created: bool
    warranty_code: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self):
        return {
            'order_detail_id': self.order_detail_id,
            'product_name': self.product_name,
            'created': self.created,
            'warranty_code': self.warranty_code,
            'reason': self.reason,
        }


@dataclass
class IssuanceReport:
    order_id: int
    outcomes: List[LineOutcome] = field(default_factory=list)

    @property
    def created(self):
        return [o for o in self.outcomes if o.created]

    @property
    def skipped(self):
        return [o for o in self.outcomes if not o.created]

    @property
    def created_count(self):
        return len(self.created)

    def to_dict(self):
        return {
            'order_id': self.order_id,
            'created_count': self.created_count,
            'skipped_count': len(self.skipped),
            'lines': [o.to_dict() for o in self.outcomes],
        }


@dataclass
class WarrantyFilters:
    status: Optional[WarrantyStatus] = None
    customer_id: Optional[int] = None
    search: Optional[str] = None
    expiring_within_days: Optional[int] = None


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _code_exists(code):
    return db.session.execute(
        select(Warranty.id).where(Warranty.warranty_code == code)
    ).first() is not None


def generate_warranty_code(now=None, rng=None, exists=_code_exists):
    now = now or datetime.utcnow()
    rng = rng or _system_random
    stamp = now.strftime('%Y%m%d%H%M%S')
    attempts = current_app.config['WARRANTY_CODE_MAX_ATTEMPTS']
    for _ in range(attempts):
        code = f'WR{stamp}{rng.randint(1000, 9999)}'
        if not exists(code):
            return code
    logger.warning(
        "Warranty code collided %s times, using random suffix", attempts)
    return f'WR{stamp}{uuid.uuid4().hex[:8].upper()}'


def generate_claim_code(warranty_id, now=None, rng=None):
    now = now or datetime.utcnow()
    rng = rng or _system_random
    return (
        f'WC{now.strftime("%Y%m%d")}{warranty_id:04d}'
        f'{rng.randint(1000, 9999)}'
    )


def _issue_for_line(detail: OrderDetail, customer_id, now, pending_codes):
    product = detail.product
    period = product.warranty_period_months if product else 0
    if not period or period <= 0:
        return LineOutcome(
            detail.id, detail.product_name, False,
            reason='Product has no warranty period')
    if detail.warranty is not None:
        return LineOutcome(
            detail.id, detail.product_name, False,
            warranty_code=detail.warranty.warranty_code,
            reason='Warranty already exists')

    code = generate_warranty_code(
        now,
        exists=lambda c: c in pending_codes or _code_exists(c))
    pending_codes.add(code)
    warranty = Warranty(
        order_detail=detail,
        customer_id=customer_id,
        warranty_code=code,
        start_date=now,
        end_date=add_months(now, period),
        period_months=period,
        status=WarrantyStatus.ACTIVE,
        notes=AUTO_CREATED_NOTE,
        created_at=now,
        updated_at=now,
    )
    db.session.add(warranty)
    return LineOutcome(detail.id, detail.product_name, True, code)


def create_warranties_for_order(order_id, now=None) -> IssuanceReport:
    """Issue one warranty per eligible order line. Runs inside the
    caller's transaction; every line is reported, created or not."""
    now = now or datetime.utcnow()
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError('Order not found')

    report = IssuanceReport(order_id=order.id)
    pending_codes = set()
    for detail in order.details:
        outcome = _issue_for_line(
            detail, order.customer_id, now, pending_codes)
        if not outcome.created:
            logger.info(
                "Warranty skipped for order %s line %s: %s",
                order.id,
                detail.id,
                outcome.reason,
            )
        report.outcomes.append(outcome)
    db.session.flush()

    logger.info(
        "Issued %s warranties for order %s (%s skipped)",
        report.created_count,
        order.id,
        len(report.skipped),
    )
    return report


def delete_warranties_for_order(order_id) -> int:
    warranties = Warranty.query.join(
        OrderDetail, Warranty.order_detail_id == OrderDetail.id
    ).filter(OrderDetail.order_id == order_id).all()
    if not warranties:
        return 0

    # Claims go with their warranty through the delete cascade
    for warranty in warranties:
        db.session.delete(warranty)
    db.session.flush()

    logger.info(
        "Deleted %s warranties for order %s", len(warranties), order_id)
    return len(warranties)


def reissue_warranties_for_order(order_id, now=None) -> IssuanceReport:
    delete_warranties_for_order(order_id)
    db.session.expire_all()
    return create_warranties_for_order(order_id, now)


def get_warranty(warranty_id) -> Warranty:
    warranty = db.session.get(Warranty, warranty_id)
    if warranty is None:
        raise NotFoundError('Warranty not found')
    return warranty


def update_warranty_status(warranty_id, status, notes=None):
    warranty = get_warranty(warranty_id)
    warranty.status = status
    if notes is not None:
        warranty.notes = notes
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        if db.session.get(Warranty, warranty_id) is None:
            raise NotFoundError('Warranty not found')
        raise
    return warranty


def expire_warranties(now=None) -> int:
    now = now or datetime.utcnow()
    warranties = Warranty.query.filter(
        Warranty.status == WarrantyStatus.ACTIVE,
        Warranty.end_date < now,
    ).all()
    for warranty in warranties:
        warranty.status = WarrantyStatus.EXPIRED
    db.session.commit()
    if warranties:
        logger.info("Marked %s warranties as expired", len(warranties))
    return len(warranties)


def expiring_warranties(days=None, now=None):
    now = now or datetime.utcnow()
    if days is None:
        days = current_app.config['WARRANTY_EXPIRY_NOTICE_DAYS']
    return Warranty.query.filter(
        Warranty.status == WarrantyStatus.ACTIVE,
        Warranty.end_date >= now,
        Warranty.end_date <= now + timedelta(days=days),
    ).order_by(Warranty.end_date.asc()).all()


def list_warranties(filters: WarrantyFilters, now=None):
    query = Warranty.query
    if filters.status is not None:
        query = query.filter(Warranty.status == filters.status)
    if filters.customer_id is not None:
        query = query.filter(Warranty.customer_id == filters.customer_id)
    if filters.search:
        query = query.filter(
            Warranty.warranty_code.ilike(f'%{filters.search.strip()}%'))
    if filters.expiring_within_days is not None:
        now = now or datetime.utcnow()
        query = query.filter(
            Warranty.end_date >= now,
            Warranty.end_date <= now + timedelta(
                days=filters.expiring_within_days),
        )
    return query.order_by(Warranty.created_at.desc())


def warranties_for_customer(customer_id):
    return Warranty.query.filter_by(customer_id=customer_id).order_by(
        Warranty.created_at.desc()).all()


def claims_for_customer(customer_id):
    return WarrantyClaim.query.join(
        Warranty, WarrantyClaim.warranty_id == Warranty.id
    ).filter(Warranty.customer_id == customer_id).order_by(
        WarrantyClaim.submitted_at.desc()).all()


def warranty_stats(now=None):
    now = now or datetime.utcnow()
    return {
        'total': Warranty.query.count(),
        'active': Warranty.query.filter(
            Warranty.status == WarrantyStatus.ACTIVE).count(),
        'expired': Warranty.query.filter(
            Warranty.status == WarrantyStatus.EXPIRED).count(),
        'expiring_soon': len(expiring_warranties(now=now)),
        'open_claims': WarrantyClaim.query.filter(
            WarrantyClaim.status.in_(OPEN_CLAIM_STATUSES)).count(),
    }


def submit_claim(
        warranty_id,
        customer_id,
        issue_type,
        description,
        now=None,
        rng=None):
    now = now or datetime.utcnow()
    warranty = get_warranty(warranty_id)
    if warranty.customer_id != customer_id:
        raise PermissionDeniedError('This warranty belongs to someone else')

    issue_type = (issue_type or '').strip()
    description = (description or '').strip()
    if not issue_type:
        raise ValidationError('Issue type is required')
    if len(description) < MIN_CLAIM_DESCRIPTION:
        raise ValidationError(
            'Description must be at least '
            f'{MIN_CLAIM_DESCRIPTION} characters')
    if warranty.status != WarrantyStatus.ACTIVE or warranty.is_expired(now):
        raise ConflictError('Warranty has expired')

    claim = WarrantyClaim(
        warranty_id=warranty.id,
        claim_code=generate_claim_code(warranty.id, now, rng),
        issue_type=issue_type,
        description=description,
        status=ClaimStatus.PENDING,
        submitted_at=now,
    )
    db.session.add(claim)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('This warranty already has an open claim')

    logger.info(
        "Claim %s submitted for warranty %s",
        claim.claim_code,
        warranty.warranty_code,
    )
    return claim


def get_claim(claim_id) -> WarrantyClaim:
    claim = db.session.get(WarrantyClaim, claim_id)
    if claim is None:
        raise NotFoundError('Claim not found')
    return claim


def process_claim(
        claim_id,
        status,
        resolution=None,
        resolution_type=None,
        admin_notes=None,
        processed_by=None,
        now=None):
    now = now or datetime.utcnow()
    claim = get_claim(claim_id)

    claim.status = status
    if resolution is not None:
        claim.resolution = resolution
    if resolution_type is not None:
        claim.resolution_type = resolution_type
    if admin_notes is not None:
        claim.admin_notes = admin_notes
    if processed_by:
        claim.processed_by = processed_by

    if status == ClaimStatus.PROCESSING:
        claim.processed_at = now
    elif status in (ClaimStatus.COMPLETED, ClaimStatus.REJECTED):
        claim.completed_at = now
        if claim.processed_at is None:
            claim.processed_at = now

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('This warranty already has an open claim')
    logger.info("Claim %s set to %s", claim.claim_code, status.value)
    return claim
