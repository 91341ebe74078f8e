"""Single-use redemption of codes.

A code moves from unused to used exactly once. The transition is one
conditional UPDATE keyed by (collection, code, used = false), so two
concurrent redeemers of the same code cannot both succeed.
"""
import datetime
import logging
from collections import namedtuple

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError

from cardify.codes import normalize_code
from cardify.errors import CardifyError, CodeNotFoundOrAlreadyUsed, PersistenceUnavailable
from cardify.models import Collection, RedemptionCode, db

logger = logging.getLogger(__name__)

RedemptionResult = namedtuple('RedemptionResult', ['collection_address', 'code', 'redeemed_by', 'redeemed_at'])


class RedemptionLedger:

    def __init__(self, registrar=None, check_onchain=False):
        self.registrar = registrar
        self.check_onchain = check_onchain and registrar is not None

    def redeem(self, collection_address, code, redeemer=None):
        address = collection_address.lower()
        code = normalize_code(code)
        now = datetime.datetime.utcnow()

        # The update must be the first statement of the transaction; a read
        # beforehand would let SQLite writers deadlock on the shared lock.
        active_collection = sa.exists().where(
            Collection.address == RedemptionCode.collection_address,
            Collection.active.is_(True),
        )
        stmt = (
            sa.update(RedemptionCode)
            .where(
                RedemptionCode.collection_address == address,
                RedemptionCode.code == code,
                RedemptionCode.used.is_(False),
                active_collection,
            )
            .values(used=True, used_by=redeemer, used_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.session.execute(stmt)
            db.session.commit()
        except DBAPIError as e:
            db.session.rollback()
            logger.warning(f"Redemption store unavailable for {address}: {e}")
            raise PersistenceUnavailable("Redemption store unavailable, try again") from e

        if result.rowcount != 1:
            logger.info(f"Rejected redemption attempt on {address}")
            raise CodeNotFoundOrAlreadyUsed()

        logger.info(f"Code redeemed on {address} by {redeemer or 'anonymous'}")
        if self.check_onchain:
            self._cross_check(address, code)
        return RedemptionResult(address, code, redeemer, now)

    def _cross_check(self, address, code):
        row = RedemptionCode.query.filter_by(collection_address=address, code=code).first()
        try:
            used_onchain = self.registrar.is_used(address, row.commitment)
        except CardifyError as e:
            logger.warning(f"On-chain used-state check failed for {address}: {e}")
            return
        if used_onchain:
            logger.warning(f"Code {row.commitment} on {address} was already used on-chain")

    def lookup(self, collection_address, code):
        """Owner-facing status: 'unknown', 'unused' or 'used'"""
        row = RedemptionCode.query.filter_by(
            collection_address=collection_address.lower(), code=normalize_code(code)).first()
        if row is None:
            return 'unknown', None
        return ('used' if row.used else 'unused'), row

    def codes_for(self, collection_address, used=None):
        query = RedemptionCode.query.filter_by(collection_address=collection_address.lower())
        if used is not None:
            query = query.filter_by(used=used)
        return query.order_by(RedemptionCode.id.asc()).all()

    def used_count(self, collection_address):
        return RedemptionCode.query.filter_by(collection_address=collection_address.lower(), used=True).count()
