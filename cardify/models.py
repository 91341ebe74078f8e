import datetime
import json

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import validates
from werkzeug.security import generate_password_hash, check_password_hash

from cardify.errors import InvariantViolation

db = SQLAlchemy()

COLLECTION_KINDS = ('erc721', 'erc1155')

NAME_MAX = 128
SYMBOL_MAX = 32
BASE_URI_MAX = 256

# Forward-only progression of a deployment attempt
ATTEMPT_STEPS = (
    'validated',
    'codes_generated',
    'contract_deployed',
    'commitments_registered',
    'ownership_transferred',
    'persisted',
)

ATTEMPT_STATUSES = ('in_progress', 'failed', 'deployed_unrecorded', 'completed')


class Profile(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256))
    api_token = db.Column(db.String(64), unique=True, index=True)
    wallet_address = db.Column(db.String(42))
    credits = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow)
    collections = db.relationship('Collection', backref='owner', lazy='dynamic')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'wallet_address': self.wallet_address,
            'credits': self.credits,
            'created_at': self.created_at.isoformat(),
        }


class Collection(db.Model):
    address = db.Column(db.String(42), primary_key=True)  # lower-cased
    owner_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    owner_address = db.Column(db.String(42), nullable=False)
    name = db.Column(db.String(NAME_MAX), nullable=False)
    symbol = db.Column(db.String(SYMBOL_MAX), nullable=False)
    description = db.Column(db.Text)
    base_uri = db.Column(db.String(BASE_URI_MAX), nullable=False)
    image_uri = db.Column(db.String(BASE_URI_MAX))
    cid = db.Column(db.String(BASE_URI_MAX))
    max_supply = db.Column(db.Integer, nullable=False)
    mint_price = db.Column(db.String(78), default='0')  # wei, decimal string
    kind = db.Column(db.String(16), nullable=False, default='erc1155')
    royalty_recipient = db.Column(db.String(42))
    royalty_bps = db.Column(db.Integer, nullable=False, default=0)
    active = db.Column(db.Boolean, nullable=False, default=False)
    transaction_hash = db.Column(db.String(66))
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow)
    codes = db.relationship('RedemptionCode', backref='collection', lazy='dynamic')

    @validates('address', 'max_supply')
    def validate_immutable(self, key, value):
        if key == 'address':
            value = value.lower()
        current = getattr(self, key)
        if current is not None and current != value:
            raise InvariantViolation(f"Collection {key} cannot change once set")
        return value

    @validates('kind')
    def validate_kind(self, key, value):
        if value not in COLLECTION_KINDS:
            raise ValueError(f"Unknown collection kind: {value}")
        return value

    def to_dict(self):
        return {
            'address': self.address,
            'owner_id': self.owner_id,
            'owner_address': self.owner_address,
            'name': self.name,
            'symbol': self.symbol,
            'description': self.description,
            'base_uri': self.base_uri,
            'image_uri': self.image_uri,
            'cid': self.cid,
            'max_supply': self.max_supply,
            'mint_price': self.mint_price,
            'type': self.kind,
            'royalty_recipient': self.royalty_recipient,
            'royalty_bps': self.royalty_bps,
            'active': self.active,
            'transaction_hash': self.transaction_hash,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class RedemptionCode(db.Model):
    __table_args__ = (
        db.UniqueConstraint('collection_address', 'code', name='uq_redemption_code_collection_code'),
    )

    id = db.Column(db.Integer, primary_key=True)
    collection_address = db.Column(db.String(42), db.ForeignKey('collection.address'), nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False)
    commitment = db.Column(db.String(66), nullable=False)  # 0x-prefixed keccak-256
    used = db.Column(db.Boolean, nullable=False, default=False)
    used_by = db.Column(db.String(128))
    used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow)

    @validates('used')
    def validate_used(self, key, value):
        if self.used and not value:
            raise InvariantViolation("A used code cannot be marked unused")
        return value

    def to_dict(self):
        return {
            'collection_address': self.collection_address,
            'code': self.code,
            'hash': self.commitment,
            'used': self.used,
            'used_by': self.used_by,
            'used_at': self.used_at.isoformat() if self.used_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class DeploymentAttempt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(128), unique=True, nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    request_json = db.Column(db.Text, nullable=False)
    step = db.Column(db.String(32), nullable=False, default='validated')
    status = db.Column(db.String(32), nullable=False, default='in_progress')
    running = db.Column(db.Boolean, nullable=False, default=False)
    claimed_at = db.Column(db.DateTime)
    failed_step = db.Column(db.String(32))
    error_kind = db.Column(db.String(64))
    error_detail = db.Column(db.Text)
    retryable = db.Column(db.Boolean, nullable=False, default=False)
    codes_json = db.Column(db.Text)
    contract_address = db.Column(db.String(42))
    deploy_tx_hash = db.Column(db.String(66))
    transfer_tx_hash = db.Column(db.String(66))
    register_tx_hashes = db.Column(db.Text)  # JSON list
    pending_tx_hash = db.Column(db.String(66))
    credits_deducted = db.Column(db.Integer, nullable=False, default=0)
    credit_settled = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    @validates('step')
    def validate_step(self, key, value):
        if value not in ATTEMPT_STEPS:
            raise ValueError(f"Unknown attempt step: {value}")
        if self.step is not None and ATTEMPT_STEPS.index(value) < ATTEMPT_STEPS.index(self.step):
            raise InvariantViolation(f"Attempt step cannot move back from {self.step} to {value}")
        return value

    @validates('status')
    def validate_status(self, key, value):
        if value not in ATTEMPT_STATUSES:
            raise ValueError(f"Unknown attempt status: {value}")
        return value

    def reached(self, step):
        return ATTEMPT_STEPS.index(self.step) >= ATTEMPT_STEPS.index(step)

    @property
    def current_step(self):
        return 'failed' if self.status == 'failed' else self.step

    @property
    def request(self):
        return json.loads(self.request_json)

    @property
    def codes(self):
        return json.loads(self.codes_json) if self.codes_json else []

    @property
    def register_hashes(self):
        return json.loads(self.register_tx_hashes) if self.register_tx_hashes else []

    def to_dict(self):
        return {
            'id': self.id,
            'idempotency_key': self.idempotency_key,
            'step': self.current_step,
            'last_completed_step': self.step,
            'status': self.status,
            'failed_step': self.failed_step,
            'error_kind': self.error_kind,
            'error': self.error_detail,
            'retryable': self.retryable,
            'contract_address': self.contract_address,
            'deploy_tx_hash': self.deploy_tx_hash,
            'transfer_tx_hash': self.transfer_tx_hash,
            'register_tx_hashes': self.register_hashes,
            'pending_tx_hash': self.pending_tx_hash,
            'credit_settled': self.credit_settled,
            'credits_deducted': self.credits_deducted,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
