import logging

from sqlalchemy.exc import DBAPIError

from cardify.errors import InsufficientCredits, NotFound, PersistenceUnavailable
from cardify.models import Profile, db

logger = logging.getLogger(__name__)


class CreditService:
    """Pre-paid credit balance of a caller"""

    def get_balance(self, profile_id):
        try:
            profile = db.session.get(Profile, profile_id)
        except DBAPIError as e:
            raise PersistenceUnavailable("Could not read credit balance") from e
        if profile is None:
            raise NotFound("User profile not found")
        return profile.credits

    def ensure(self, profile_id, amount):
        balance = self.get_balance(profile_id)
        if balance < amount:
            raise InsufficientCredits(
                f"Insufficient credits. You need {amount} credits, you have {balance}.",
                required=amount, balance=balance)
        return balance

    def debit(self, profile_id, amount, commit=True):
        """Subtract credits without ever going below zero; returns rows updated"""
        try:
            updated = Profile.query.filter(
                Profile.id == profile_id, Profile.credits >= amount
            ).update({Profile.credits: Profile.credits - amount}, synchronize_session=False)
            if commit:
                db.session.commit()
        except DBAPIError as e:
            db.session.rollback()
            raise PersistenceUnavailable("Could not debit credits") from e
        if updated != 1:
            raise InsufficientCredits(f"Could not debit {amount} credits from profile {profile_id}")
        logger.info(f"Debited {amount} credits from profile {profile_id}")
        return updated

