from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from perfume_store.middleware import role_required
from perfume_store.serializers import serialize_warranty, serialize_claim
from perfume_store.services import warranty_service
from perfume_store.services.audit_service import log_audit
from perfume_store.services.errors import NotFoundError
import logging

logger = logging.getLogger(__name__)

bp = Blueprint('warranty', __name__)


@bp.route('/api/warranties', methods=['GET'])
@login_required
@role_required('CUSTOMER')
def my_warranties():
    warranties = warranty_service.warranties_for_customer(current_user.id)
    return jsonify({'items': [serialize_warranty(w) for w in warranties]})


@bp.route('/api/warranties/<int:warranty_id>', methods=['GET'])
@login_required
@role_required('CUSTOMER')
def warranty_detail(warranty_id):
    warranty = warranty_service.get_warranty(warranty_id)
    if warranty.customer_id != current_user.id:
        raise NotFoundError('Warranty not found')
    return jsonify(serialize_warranty(warranty, include_claims=True))


@bp.route('/api/warranties/<int:warranty_id>/claims', methods=['POST'])
@login_required
@role_required('CUSTOMER')
def submit_claim(warranty_id):
    data = request.get_json() or {}
    claim = warranty_service.submit_claim(
        warranty_id,
        current_user.id,
        data.get('issue_type'),
        data.get('description'),
    )

    log_audit(
        actor_id=current_user.id,
        actor_role=current_user.role.value,
        action='WARRANTY_CLAIM_SUBMIT',
        target_type='WARRANTY_CLAIM',
        target_id=claim.id,
        payload={'warranty_id': warranty_id, 'claim_code': claim.claim_code})
    return jsonify(serialize_claim(claim)), 201


@bp.route('/api/warranty-claims', methods=['GET'])
@login_required
@role_required('CUSTOMER')
def my_claims():
    claims = warranty_service.claims_for_customer(current_user.id)
    return jsonify({'items': [serialize_claim(c) for c in claims]})
