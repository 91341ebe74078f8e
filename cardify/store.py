import datetime
import logging

from sqlalchemy import or_
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError

from cardify.errors import AttemptInProgress, InvariantViolation, PersistenceRejected, PersistenceUnavailable
from cardify.models import Collection, DeploymentAttempt, RedemptionCode, db

logger = logging.getLogger(__name__)


class CollectionStore:
    """Persistence for deployment attempts, collections and their codes"""

    def _commit(self, what):
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise
        except DataError as e:
            db.session.rollback()
            logger.error(f"Database rejected {what}: {e}")
            raise PersistenceRejected(f"Database rejected {what}") from e
        except DBAPIError as e:
            db.session.rollback()
            logger.warning(f"Database unavailable while saving {what}: {e}")
            raise PersistenceUnavailable(f"Database unavailable while saving {what}") from e

    def get_attempt(self, attempt_id):
        return db.session.get(DeploymentAttempt, attempt_id)

    def get_attempt_by_key(self, key):
        return DeploymentAttempt.query.filter_by(idempotency_key=key).first()

    def create_attempt(self, key, profile_id, request_json):
        attempt = DeploymentAttempt(idempotency_key=key, profile_id=profile_id, request_json=request_json,
                                    step='validated', status='in_progress')
        db.session.add(attempt)
        try:
            self._commit('deployment attempt')
        except IntegrityError:
            # Another request created the same key first
            return self.get_attempt_by_key(key)
        return attempt

    def claim(self, attempt, lease_seconds):
        """Take the attempt's lease, or raise AttemptInProgress"""
        now = datetime.datetime.utcnow()
        stale = now - datetime.timedelta(seconds=lease_seconds)
        try:
            claimed = DeploymentAttempt.query.filter(
                DeploymentAttempt.id == attempt.id,
                or_(DeploymentAttempt.running.is_(False), DeploymentAttempt.claimed_at < stale),
            ).update({'running': True, 'claimed_at': now}, synchronize_session=False)
            self._commit('attempt lease')
        except DBAPIError as e:
            db.session.rollback()
            raise PersistenceUnavailable("Could not claim deployment attempt") from e
        if claimed != 1:
            raise AttemptInProgress(f"Deployment attempt {attempt.id} is already running")
        db.session.refresh(attempt)
        return attempt

    def release(self, attempt):
        attempt.running = False
        try:
            self._commit('attempt lease')
        except PersistenceUnavailable:
            logger.error(f"Could not release lease on attempt {attempt.id}; it expires on its own")

    def checkpoint(self, attempt, **changes):
        for key, value in changes.items():
            setattr(attempt, key, value)
        self._commit(f"attempt {attempt.id}")
        return attempt

    def save_collection_with_codes(self, attempt, fields, codes):
        """Insert the collection and every code row, and mark the attempt persisted.

        Re-running after a commit whose acknowledgement was lost finds the
        collection already present and only advances the attempt.
        """
        if len(codes) > fields['max_supply']:
            raise InvariantViolation(
                f"{len(codes)} codes exceed max supply {fields['max_supply']} for {fields['address']}")

        address = fields['address'].lower()
        existing = db.session.get(Collection, address)
        if existing is None:
            db.session.add(Collection(active=True, **fields))
            db.session.add_all([
                RedemptionCode(collection_address=address, code=code, commitment=commitment, used=False)
                for code, commitment in codes
            ])
        else:
            logger.info(f"Collection {address} already recorded")
        attempt.step = 'persisted'
        attempt.status = 'completed'
        attempt.pending_tx_hash = None
        try:
            self._commit(f"collection {address}")
        except IntegrityError as e:
            raise PersistenceRejected(f"Database rejected collection {address}") from e
        logger.info(f"Persisted collection {address} with {len(codes)} codes")

    def settle_credits(self, attempt, credit_service, amount):
        """Debit the caller and flag the attempt settled in one commit"""
        credit_service.debit(attempt.profile_id, amount, commit=False)
        attempt.credit_settled = True
        attempt.credits_deducted = amount
        self._commit(f"credit settlement for attempt {attempt.id}")

    def collection(self, address):
        return db.session.get(Collection, address.lower())

    def collections_for_owner(self, owner_address):
        return Collection.query.filter_by(owner_address=owner_address.lower()).order_by(
            Collection.created_at.desc()).all()

    def set_active(self, collection, active, cid=None):
        collection.active = active
        if cid:
            collection.cid = cid
        self._commit(f"collection {collection.address}")
        return collection
