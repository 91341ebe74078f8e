import logging
from collections import namedtuple

from cardify.chain import COLLECTION_ABI
from cardify.errors import TransactionTimedOut

logger = logging.getLogger(__name__)

RegistrationConfirmation = namedtuple(
    'RegistrationConfirmation', ['contract_address', 'tx_hashes', 'registered', 'skipped'])

RegistryStatus = namedtuple('RegistryStatus', ['valid', 'used', 'invalid'])


def _batches(items, size):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class CommitmentRegistrar:
    """Submit code commitments to a collection's on-chain registry"""

    def __init__(self, chain, batch_size=250):
        self.chain = chain
        self.batch_size = batch_size

    def pending_commitments(self, contract_address, commitments):
        """Commitments the registry does not hold yet"""
        return [c for c in commitments
                if not self.chain.call(contract_address, COLLECTION_ABI, 'validCodes', c)]

    def register(self, contract_address, commitments, pending_tx_hash=None, on_submit=None):
        """Register commitments in batches, waiting for each batch to confirm.

        ``pending_tx_hash`` is a batch transaction from an earlier attempt that
        timed out; it is awaited before anything new is submitted.
        ``on_submit`` is called with each new transaction hash before waiting so
        the caller can record it.
        """
        tx_hashes = []
        if pending_tx_hash:
            logger.info(f"Waiting for earlier addValidCodes transaction {pending_tx_hash}")
            receipt = self.chain.wait(pending_tx_hash)
            tx_hashes.append(receipt['transactionHash'])

        remaining = self.pending_commitments(contract_address, commitments)
        skipped = len(commitments) - len(remaining)
        if skipped:
            logger.info(f"{skipped} commitments already registered on {contract_address}")

        for batch in _batches(remaining, self.batch_size):
            tx_hash = self.chain.transact(contract_address, COLLECTION_ABI, 'addValidCodes', batch)
            if on_submit:
                on_submit(tx_hash)
            try:
                receipt = self.chain.wait(tx_hash)
            except TransactionTimedOut as e:
                e.tx_hash = e.tx_hash or tx_hash
                raise
            tx_hashes.append(receipt['transactionHash'])
            logger.info(f"Registered {len(batch)} commitments on {contract_address} in {tx_hash}")

        return RegistrationConfirmation(contract_address, tx_hashes, len(remaining), skipped)

    def registry_status(self, contract_address, commitments):
        valid = used = invalid = 0
        for commitment in commitments:
            if self.chain.call(contract_address, COLLECTION_ABI, 'usedCodes', commitment):
                used += 1
            elif self.chain.call(contract_address, COLLECTION_ABI, 'validCodes', commitment):
                valid += 1
            else:
                invalid += 1
        return RegistryStatus(valid, used, invalid)

    def is_used(self, contract_address, commitment):
        return bool(self.chain.call(contract_address, COLLECTION_ABI, 'usedCodes', commitment))
