"""Redemption code generation and commitments.

A commitment is keccak-256 over the UTF-8 bytes of the plaintext code, as a
0x-prefixed hex string. The collection contracts key ``validCodes`` and
``usedCodes`` by the same ``bytes32`` value, so the database and the chain
always agree on which hash belongs to which code.
"""
import logging
import secrets
import string
from collections import namedtuple

from web3 import Web3

from cardify.errors import InvalidCount

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits

GeneratedCode = namedtuple('GeneratedCode', ['code', 'commitment'])


def commitment_for(code):
    """Return the 0x-prefixed keccak-256 commitment of a code"""
    return Web3.to_hex(Web3.keccak(text=code))


def verify_commitment(code, commitment):
    return commitment_for(code) == commitment.lower()


def normalize_code(code):
    return code.strip().upper()


class CodeGenerator:
    """Produce batches of unique, unguessable redemption codes"""

    def __init__(self, length=12, max_count=1000, alphabet=CODE_ALPHABET):
        self.length = length
        self.max_count = max_count
        self.alphabet = alphabet

    def _token(self):
        return ''.join(secrets.choice(self.alphabet) for _ in range(self.length))

    def generate(self, count):
        if isinstance(count, bool) or not isinstance(count, int):
            raise InvalidCount(f"Code count must be an integer, got {count!r}")
        if count < 1 or count > self.max_count:
            raise InvalidCount(f"Code count must be between 1 and {self.max_count}, got {count}")

        seen = set()
        batch = []
        collisions = 0
        while len(batch) < count:
            code = self._token()
            if code in seen:
                collisions += 1
                continue
            seen.add(code)
            batch.append(GeneratedCode(code, commitment_for(code)))

        if collisions:
            logger.warning(f"Discarded {collisions} colliding codes while generating {count}")
        logger.info(f"Generated {count} redemption codes")
        return batch
