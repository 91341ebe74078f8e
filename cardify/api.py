import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from web3 import Web3
from werkzeug.utils import secure_filename

from cardify.codes import commitment_for
from cardify.errors import (
    CardifyError,
    ChainTransientError,
    Forbidden,
    InvariantViolation,
    NotFound,
    ValidationError,
)
from cardify.models import BASE_URI_MAX, db
from cardify.storage import build_metadata

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def services():
    return current_app.extensions['cardify']


def error_response(error):
    if isinstance(error, InvariantViolation):
        logger.critical(f"Invariant violation: {error.message} {error.details}")
    return jsonify(error.to_dict()), error.status_code


def _orchestrator():
    orchestrator = services().orchestrator
    if orchestrator is None:
        raise ChainTransientError("Blockchain client is not configured")
    return orchestrator


def _address(value, field='address'):
    if not value or not Web3.is_address(value):
        raise ValidationError(f"{field} is not a valid address")
    return value.lower()


def _owned_collection(address):
    collection = services().store.collection(_address(address))
    if collection is None:
        raise NotFound("Collection not found")
    if collection.owner_id != current_user.id:
        raise Forbidden("Not authorized to access this collection")
    return collection


def _owned_attempt(attempt_id):
    attempt = services().store.get_attempt(attempt_id)
    if attempt is None:
        raise NotFound("Deployment attempt not found")
    if attempt.profile_id != current_user.id:
        raise Forbidden("Not authorized to access this deployment attempt")
    return attempt


def _parse_used_filter(value):
    if value is None:
        return None
    if value.lower() in ('true', '1'):
        return True
    if value.lower() in ('false', '0'):
        return False
    raise ValidationError("used must be true or false")


# Deployment

@api.route('/deploy-collection', methods=['POST'])
@login_required
def deploy_collection():
    """Deploy a collection, register its redemption codes and record it"""
    try:
        data = request.get_json(silent=True)
        result = _orchestrator().deploy_collection_with_codes(
            current_user, data, key=request.headers.get('Idempotency-Key'))
        return jsonify(result.payload), result.status_code
    except CardifyError as e:
        db.session.rollback()
        return error_response(e)
    except Exception as e:
        logger.error(f"Error deploying collection: {e}")
        db.session.rollback()
        return jsonify({"success": False, "error": str(e)}), 500


@api.route('/deployments/<int:attempt_id>', methods=['GET'])
@login_required
def get_deployment(attempt_id):
    try:
        return jsonify({"attempt": _owned_attempt(attempt_id).to_dict()}), 200
    except CardifyError as e:
        return error_response(e)


@api.route('/deployments/<int:attempt_id>/resume', methods=['POST'])
@login_required
def resume_deployment(attempt_id):
    """Continue a retryable deployment from its last completed step"""
    try:
        result = _orchestrator().resume(_owned_attempt(attempt_id), current_user)
        return jsonify(result.payload), result.status_code
    except CardifyError as e:
        db.session.rollback()
        return error_response(e)
    except Exception as e:
        logger.error(f"Error resuming deployment {attempt_id}: {e}")
        db.session.rollback()
        return jsonify({"success": False, "error": str(e)}), 500


@api.route('/deployments/<int:attempt_id>/reconcile', methods=['POST'])
@login_required
def reconcile_deployment(attempt_id):
    """Record a deployed-but-unrecorded collection and settle its credits"""
    try:
        result = _orchestrator().reconcile(_owned_attempt(attempt_id), current_user)
        return jsonify(result.payload), result.status_code
    except CardifyError as e:
        db.session.rollback()
        return error_response(e)
    except Exception as e:
        logger.error(f"Error reconciling deployment {attempt_id}: {e}")
        db.session.rollback()
        return jsonify({"success": False, "error": str(e)}), 500


# Redemption

@api.route('/redeem-code', methods=['POST'])
def redeem_code():
    """Redeem a code exactly once"""
    try:
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        if not data.get('code') or not data.get('collectionAddress'):
            raise ValidationError("collectionAddress and code are required")
        if not isinstance(data['code'], str):
            raise ValidationError("code must be a string")
        address = _address(data['collectionAddress'], 'collectionAddress')

        if current_user.is_authenticated:
            redeemer = current_user.wallet_address or current_user.username
        else:
            redeemer = data.get('redeemer')
            if redeemer is not None and (not isinstance(redeemer, str) or len(redeemer) > 128):
                raise ValidationError("redeemer must be a string of at most 128 characters")

        result = services().ledger.redeem(address, data['code'], redeemer)
        return jsonify({
            "success": True,
            "collectionAddress": result.collection_address,
            "redeemedAt": result.redeemed_at.isoformat(),
        }), 200
    except CardifyError as e:
        return error_response(e)
    except Exception as e:
        logger.error(f"Error redeeming code: {e}")
        db.session.rollback()
        return jsonify({"success": False, "error": "Failed to redeem code"}), 500


# Collections

@api.route('/collections', methods=['GET'])
def list_collections():
    """Collections owned by a wallet address"""
    try:
        owner = _address(request.args.get('owner'), 'owner')
        collections = services().store.collections_for_owner(owner)
        return jsonify([collection.to_dict() for collection in collections]), 200
    except CardifyError as e:
        return error_response(e)


@api.route('/collections/<address>', methods=['GET'])
def get_collection(address):
    try:
        collection = services().store.collection(_address(address))
        if collection is None:
            raise NotFound("collection not found")
        payload = collection.to_dict()
        payload['total_codes'] = collection.codes.count()
        payload['used_codes'] = services().ledger.used_count(collection.address)
        return jsonify(payload), 200
    except CardifyError as e:
        return error_response(e)


@api.route('/collections/<address>/activate', methods=['PUT'])
@login_required
def activate_collection(address):
    """Toggle a collection's active flag and optionally attach its CID"""
    try:
        collection = _owned_collection(address)
        data = request.get_json(silent=True) or {}
        active = data.get('active', True)
        if not isinstance(active, bool):
            raise ValidationError("active must be a boolean")
        cid = data.get('cid')
        if cid is not None and (not isinstance(cid, str) or len(cid) > BASE_URI_MAX):
            raise ValidationError(f"cid must be a string of at most {BASE_URI_MAX} characters")
        services().store.set_active(collection, active, cid=cid)
        return jsonify({"ok": True, "collection": collection.to_dict()}), 200
    except CardifyError as e:
        db.session.rollback()
        return error_response(e)


@api.route('/collections/<address>/codes', methods=['GET'])
@login_required
def collection_codes(address):
    """Codes of a collection the caller owns, optionally filtered by used state"""
    try:
        collection = _owned_collection(address)
        used = _parse_used_filter(request.args.get('used'))
        codes = services().ledger.codes_for(collection.address, used=used)
        return jsonify([code.to_dict() for code in codes]), 200
    except CardifyError as e:
        return error_response(e)


@api.route('/collections/<address>/codes/<code>', methods=['GET'])
@login_required
def code_status(address, code):
    """Owner-facing status of a single code"""
    try:
        collection = _owned_collection(address)
        status, row = services().ledger.lookup(collection.address, code)
        payload = {"status": status}
        if row is not None:
            payload["code"] = row.to_dict()
        return jsonify(payload), 200
    except CardifyError as e:
        return error_response(e)


@api.route('/collections/<address>/verify', methods=['GET'])
@login_required
def verify_collection(address):
    """Compare stored commitments with the on-chain registry"""
    try:
        collection = _owned_collection(address)
        registrar = services().registrar
        if registrar is None:
            raise ChainTransientError("Blockchain client is not configured")

        codes = services().ledger.codes_for(collection.address)
        mismatched = [code.code for code in codes if commitment_for(code.code) != code.commitment]
        status = registrar.registry_status(collection.address, [code.commitment for code in codes])
        return jsonify({
            "collectionAddress": collection.address,
            "total": len(codes),
            "valid": status.valid,
            "used": status.used,
            "invalid": status.invalid,
            "hashMismatches": mismatched,
        }), 200
    except CardifyError as e:
        return error_response(e)


# Metadata

@api.route('/metadata', methods=['POST'])
@login_required
def pin_metadata():
    """Pin an NFT metadata document and return its ipfs:// URI"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('name') or not data.get('image'):
            raise ValidationError("name and image are required")
        metadata = build_metadata(data['name'], data.get('description', ''), data['image'],
                                  attributes=data.get('attributes'))
        gateway = services().gateway
        uri = gateway.pin_json(metadata, name=data['name'])
        return jsonify({"metadataUri": uri, "gatewayUrl": gateway.gateway_link(uri)}), 201
    except CardifyError as e:
        return error_response(e)


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in current_app.config['ALLOWED_EXTENSIONS']


@api.route('/upload', methods=['POST'])
@login_required
def upload_image():
    """Pin card artwork and return its ipfs:// URI"""
    try:
        if 'image' not in request.files:
            return jsonify({"error": "No image provided"}), 400

        file = request.files['image']

        if file.filename == '':
            return jsonify({"error": "No image selected"}), 400
        if not allowed_file(file.filename):
            return jsonify({"error": "Invalid file format"}), 400

        gateway = services().gateway
        uri = gateway.pin_file(file.stream, secure_filename(file.filename))
        return jsonify({"imageUri": uri, "gatewayUrl": gateway.gateway_link(uri)}), 201
    except CardifyError as e:
        return error_response(e)
