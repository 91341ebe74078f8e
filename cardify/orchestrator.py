"""Collection deployment with redemption codes.

One deployment runs these steps in order, each gated on the one before:

    validated -> codes_generated -> contract_deployed -> commitments_registered
              -> ownership_transferred -> persisted

Commitments are registered while the operator still owns the collection;
only the owner may call ``addValidCodes``.

Progress is checkpointed on a ``DeploymentAttempt`` row after every step, so
a retried attempt continues where it stopped instead of repeating on-chain
transactions. Transaction hashes are recorded before waiting on them. A hash
that cannot be recorded fails the attempt permanently so nothing is broadcast
twice. A timed-out transaction is awaited again on resume, never re-submitted.

Once the contract exists the caller owns a real asset. Failures to record it
(persistence) or to charge for it (credits) are retried and reconciled; they
never turn the deployment into a reported failure.
"""
import decimal
import hashlib
import json
import logging
from collections import namedtuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import Web3

from cardify.deployer import DeployParams
from cardify.errors import (
    CardifyError,
    Forbidden,
    InsufficientCredits,
    InvariantViolation,
    PersistenceRejected,
    PersistenceTransientError,
    TransactionUnrecorded,
    ValidationError,
)
from cardify.models import BASE_URI_MAX, COLLECTION_KINDS, NAME_MAX, SYMBOL_MAX
from cardify.storage import extract_cid, to_ipfs_base_uri

logger = logging.getLogger(__name__)

ZERO_ADDRESS = '0x' + '0' * 40

DeploymentRequest = namedtuple('DeploymentRequest', [
    'kind', 'name', 'symbol', 'description', 'image_uri', 'base_uri', 'cid',
    'max_supply', 'mint_price', 'royalty_bps', 'royalty_recipient', 'owner_address',
])

Success = namedtuple('Success', ['step'])
Failure = namedtuple('Failure', ['step', 'error'])

DeploymentResult = namedtuple('DeploymentResult', ['payload', 'status_code'])


def _require_int(data, key, error):
    value = data.get(key)
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(error)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(error)


def parse_request(data, min_supply=5, max_supply=1000, default_royalty_bps=250, default_recipient=None):
    """Validate a deploy request body and normalize it"""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    metadata_uri = data.get('metadataUri') or data.get('baseUri')
    missing = [key for key, value in (('name', data.get('name')), ('symbol', data.get('symbol')),
                                      ('metadataUri', metadata_uri), ('maxSupply', data.get('maxSupply')),
                                      ('ownerAddress', data.get('ownerAddress'))) if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing=missing)
    if not isinstance(metadata_uri, str):
        raise ValidationError("metadataUri must be a string")

    supply = _require_int(data, 'maxSupply', "maxSupply must be an integer")
    if supply < min_supply or supply > max_supply:
        raise ValidationError(f"Max supply must be between {min_supply} and {max_supply}")

    royalty_bps = data.get('royaltyBps', default_royalty_bps)
    royalty_bps = _require_int({'royaltyBps': royalty_bps}, 'royaltyBps', "royaltyBps must be an integer")
    if royalty_bps < 0 or royalty_bps > 10000:
        raise ValidationError("royaltyBps must be between 0 and 10000")

    owner = data['ownerAddress']
    if not Web3.is_address(owner) or owner.lower() == ZERO_ADDRESS:
        raise ValidationError("ownerAddress is not a valid address")

    recipient = data.get('royaltyRecipient') or default_recipient
    if recipient and not Web3.is_address(recipient):
        raise ValidationError("royaltyRecipient is not a valid address")
    if royalty_bps > 0 and (not recipient or recipient.lower() == ZERO_ADDRESS):
        raise ValidationError("royaltyRecipient required when royaltyBps > 0")

    kind = data.get('collectionType', 'erc1155')
    if kind not in COLLECTION_KINDS:
        raise ValidationError(f"collectionType must be one of {', '.join(COLLECTION_KINDS)}")

    try:
        mint_price = Web3.to_wei(data.get('mintPrice') or 0, 'ether')
    except (TypeError, ValueError, decimal.InvalidOperation):
        raise ValidationError("mintPrice must be a number")
    if mint_price < 0:
        raise ValidationError("mintPrice cannot be negative")

    for field, value, limit in (('name', str(data['name']), NAME_MAX),
                                ('symbol', str(data['symbol']), SYMBOL_MAX),
                                ('metadataUri', metadata_uri, BASE_URI_MAX),
                                ('metadataUri', to_ipfs_base_uri(metadata_uri), BASE_URI_MAX)):
        if len(value) > limit:
            raise ValidationError(f"{field} must be at most {limit} characters")

    return DeploymentRequest(
        kind=kind,
        name=str(data['name']),
        symbol=str(data['symbol']),
        description=str(data.get('description') or ''),
        image_uri=metadata_uri,
        base_uri=to_ipfs_base_uri(metadata_uri),
        cid=extract_cid(metadata_uri),
        max_supply=supply,
        mint_price=mint_price,
        royalty_bps=royalty_bps,
        royalty_recipient=(recipient or ZERO_ADDRESS).lower(),
        owner_address=owner.lower(),
    )


def idempotency_key(profile_id, data, header_key=None):
    """Caller-supplied key, or a fingerprint of caller and request body"""
    if header_key:
        return f"{profile_id}:{header_key}"[:128]
    body = json.dumps({'profile': profile_id, 'request': data}, sort_keys=True, default=str)
    return hashlib.sha256(body.encode('utf-8')).hexdigest()


class DeploymentOrchestrator:

    def __init__(self, store, chain, generator, deployer, registrar, credits, credit_costs,
                 min_supply=5, max_supply=1000, default_royalty_bps=250, lease_seconds=600,
                 persist_attempts=5, persist_max_wait=8):
        self.store = store
        self.chain = chain
        self.generator = generator
        self.deployer = deployer
        self.registrar = registrar
        self.credits = credits
        self.credit_costs = credit_costs
        self.min_supply = min_supply
        self.max_supply = max_supply
        self.default_royalty_bps = default_royalty_bps
        self.lease_seconds = lease_seconds
        self.persist_attempts = persist_attempts
        self.persist_max_wait = persist_max_wait

    def parse(self, data):
        return parse_request(data, self.min_supply, self.max_supply, self.default_royalty_bps,
                             default_recipient=self.chain.operator_address)

    def cost_of(self, request):
        return self.credit_costs.get(request.kind, 0)

    # Entry points

    def deploy_collection_with_codes(self, profile, data, key=None):
        request = self.parse(data)

        key = idempotency_key(profile.id, data, key)
        attempt = self.store.get_attempt_by_key(key)
        if attempt is not None:
            self._check_owner(attempt, profile)
            if attempt.status == 'completed':
                logger.info(f"Replaying completed deployment attempt {attempt.id}")
                return self._completed(attempt, request)
            if attempt.status == 'failed' and not attempt.retryable:
                return self._failure_result(attempt)
        else:
            self.credits.ensure(profile.id, self.cost_of(request))
            attempt = self.store.create_attempt(key, profile.id, json.dumps(data, sort_keys=True, default=str))

        return self._run(attempt)

    def resume(self, attempt, profile):
        self._check_owner(attempt, profile)
        if attempt.status == 'completed' and attempt.credit_settled:
            return self._completed(attempt, self.parse(attempt.request))
        if attempt.status == 'failed' and not attempt.retryable:
            raise ValidationError(f"Deployment attempt {attempt.id} failed permanently at {attempt.failed_step}",
                                  attempt=attempt.to_dict())
        return self._run(attempt)

    def reconcile(self, attempt, profile):
        """Finish bookkeeping for an attempt whose contract is already live"""
        self._check_owner(attempt, profile)
        if not attempt.reached('ownership_transferred'):
            raise ValidationError(f"Deployment attempt {attempt.id} has nothing to reconcile",
                                  attempt=attempt.to_dict())
        return self._run(attempt)

    def _check_owner(self, attempt, profile):
        if attempt.profile_id != profile.id:
            raise Forbidden("Not authorized to access this deployment attempt")

    # Step sequence

    def _run(self, attempt):
        self.store.claim(attempt, self.lease_seconds)
        try:
            return self._advance(attempt)
        finally:
            self.store.release(attempt)

    def _advance(self, attempt):
        request = self.parse(attempt.request)
        if attempt.status == 'failed':
            self.store.checkpoint(attempt, status='in_progress', failed_step=None, error_kind=None,
                                  error_detail=None, retryable=False)

        steps = (
            ('codes_generated', self._generate_codes),
            ('contract_deployed', self._deploy_contract),
            ('commitments_registered', self._register_commitments),
            ('ownership_transferred', self._transfer_ownership),
        )
        for step, action in steps:
            if attempt.reached(step):
                continue
            outcome = self._run_step(step, action, attempt, request)
            if isinstance(outcome, Failure):
                return self._fail(attempt, outcome)

        if not attempt.reached('persisted'):
            outcome = self._persist(attempt, request)
            if isinstance(outcome, Failure):
                return self._unrecorded(attempt, request, outcome.error)

        self._settle(attempt, request)
        return self._completed(attempt, request)

    def _run_step(self, step, action, attempt, request):
        try:
            action(attempt, request)
        except CardifyError as e:
            return Failure(step, e)
        logger.info(f"Deployment attempt {attempt.id} reached {step}")
        return Success(step)

    def _generate_codes(self, attempt, request):
        batch = self.generator.generate(request.max_supply)
        self.store.checkpoint(attempt, codes_json=json.dumps([[c.code, c.commitment] for c in batch]),
                              step='codes_generated')

    def _deploy_contract(self, attempt, request):
        if attempt.deploy_tx_hash:
            receipt = self.chain.wait(attempt.deploy_tx_hash)
            deployment = self.deployer.collect(request.kind, receipt)
        else:
            params = DeployParams(
                kind=request.kind, name=request.name, symbol=request.symbol, description=request.description,
                base_uri=request.base_uri, max_supply=request.max_supply, mint_price=request.mint_price,
                royalty_bps=request.royalty_bps, royalty_recipient=request.royalty_recipient,
            )
            deployment = self.deployer.deploy(
                params, on_submit=lambda tx_hash: self._record_tx(attempt, tx_hash, deploy_tx_hash=tx_hash))
        self.store.checkpoint(attempt, contract_address=deployment.contract_address, step='contract_deployed')

    def _transfer_ownership(self, attempt, request):
        address = attempt.contract_address
        if attempt.transfer_tx_hash:
            self.chain.wait(attempt.transfer_tx_hash)
            self.deployer.confirm_transfer(address, request.owner_address)
        else:
            self.deployer.transfer_ownership(
                address, request.owner_address,
                on_submit=lambda tx_hash: self._record_tx(attempt, tx_hash, transfer_tx_hash=tx_hash))
        self.store.checkpoint(attempt, step='ownership_transferred')

    def _register_commitments(self, attempt, request):
        def record(tx_hash):
            self._record_tx(attempt, tx_hash, pending_tx_hash=tx_hash,
                            register_tx_hashes=json.dumps(attempt.register_hashes + [tx_hash]))

        commitments = [commitment for _, commitment in attempt.codes]
        self.registrar.register(attempt.contract_address, commitments,
                                pending_tx_hash=attempt.pending_tx_hash, on_submit=record)
        self.store.checkpoint(attempt, pending_tx_hash=None, step='commitments_registered')

    def _record_tx(self, attempt, tx_hash, **changes):
        """Checkpoint a broadcast transaction hash, or fail without a retry"""
        try:
            self._retrying()(self.store.checkpoint, attempt, **changes)
        except (PersistenceTransientError, PersistenceRejected) as e:
            raise TransactionUnrecorded(
                f"Transaction {tx_hash} was broadcast but could not be recorded; reconcile it manually",
                tx_hash=tx_hash, contract_address=attempt.contract_address) from e

    def _retrying(self):
        return Retrying(
            retry=retry_if_exception_type(PersistenceTransientError),
            stop=stop_after_attempt(self.persist_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.persist_max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _persist(self, attempt, request):
        fields = {
            'address': attempt.contract_address,
            'owner_id': attempt.profile_id,
            'owner_address': request.owner_address,
            'name': request.name,
            'symbol': request.symbol,
            'description': request.description,
            'base_uri': request.base_uri,
            'image_uri': request.image_uri,
            'cid': request.cid,
            'max_supply': request.max_supply,
            'mint_price': str(request.mint_price),
            'kind': request.kind,
            'royalty_recipient': request.royalty_recipient,
            'royalty_bps': request.royalty_bps,
            'transaction_hash': attempt.deploy_tx_hash,
        }
        try:
            self._retrying()(self.store.save_collection_with_codes, attempt, fields, attempt.codes)
        except (PersistenceTransientError, PersistenceRejected) as e:
            return Failure('persisted', e)
        return Success('persisted')

    def _settle(self, attempt, request):
        if attempt.credit_settled:
            return
        try:
            self._retrying()(self.store.settle_credits, attempt, self.credits, self.cost_of(request))
        except (PersistenceTransientError, InsufficientCredits) as e:
            logger.error(f"Credits for deployment attempt {attempt.id} not settled: {e}")

    # Results

    def _fail(self, attempt, failure):
        error = failure.error
        if isinstance(error, InvariantViolation):
            logger.critical(f"Deployment attempt {attempt.id} violated an invariant at {failure.step}: "
                            f"{error.message} (contract {attempt.contract_address})")
        else:
            logger.warning(f"Deployment attempt {attempt.id} failed at {failure.step}: {error.message}")
        try:
            self._retrying()(self.store.checkpoint, attempt, status='failed', failed_step=failure.step,
                             error_kind=error.kind, error_detail=error.message, retryable=error.retryable)
        except PersistenceTransientError:
            logger.error(f"Could not record failure of deployment attempt {attempt.id}")
        tx_hash = attempt.deploy_tx_hash
        if tx_hash is None and failure.step == 'contract_deployed':
            tx_hash = error.details.get('tx_hash')
        payload = error.to_dict()
        payload.update({
            'failedStep': failure.step,
            'attemptId': attempt.id,
            'collectionAddress': attempt.contract_address,
            'transactionHash': tx_hash,
        })
        return DeploymentResult(payload, error.status_code)

    def _failure_result(self, attempt):
        payload = {
            'success': False,
            'error': attempt.error_detail,
            'kind': attempt.error_kind,
            'retryable': attempt.retryable,
            'failedStep': attempt.failed_step,
            'attemptId': attempt.id,
            'collectionAddress': attempt.contract_address,
            'transactionHash': attempt.deploy_tx_hash,
        }
        return DeploymentResult(payload, 409)

    def _unrecorded(self, attempt, request, error):
        logger.error(f"Collection {attempt.contract_address} deployed but not recorded "
                     f"(attempt {attempt.id}): {error.message}")
        try:
            self.store.checkpoint(attempt, status='deployed_unrecorded', error_kind=error.kind,
                                  error_detail=error.message, retryable=error.retryable)
        except PersistenceTransientError:
            logger.error(f"Could not flag deployment attempt {attempt.id} for reconciliation")
        payload = {
            'success': True,
            'state': 'deployed_unrecorded',
            'recorded': False,
            'collectionAddress': attempt.contract_address,
            'codes': [code for code, _ in attempt.codes],
            'transactionHash': attempt.deploy_tx_hash,
            'attemptId': attempt.id,
            'retryable': error.retryable,
            'message': ("Collection deployed on-chain but not yet recorded; it will be reconciled"
                        if error.retryable else
                        "Collection deployed on-chain but the record was rejected; it needs manual reconciliation"),
        }
        return DeploymentResult(payload, 202)

    def _completed(self, attempt, request):
        try:
            balance = self.credits.get_balance(attempt.profile_id)
        except PersistenceTransientError:
            balance = 'unknown'
        payload = {
            'success': True,
            'state': 'completed',
            'recorded': True,
            'collectionAddress': attempt.contract_address,
            'codes': [code for code, _ in attempt.codes],
            'transactionHash': attempt.deploy_tx_hash,
            'creditsDeducted': attempt.credits_deducted,
            'creditSettled': attempt.credit_settled,
            'newCreditBalance': balance,
            'attemptId': attempt.id,
            'collection': {
                'address': attempt.contract_address,
                'name': request.name,
                'symbol': request.symbol,
                'maxSupply': request.max_supply,
                'active': True,
                'type': request.kind,
            },
            'message': "NFT collection deployed successfully!",
        }
        return DeploymentResult(payload, 200)
