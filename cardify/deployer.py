import logging
from collections import namedtuple

from web3 import Web3

from cardify.chain import COLLECTION_ABI, FACTORY_ABIS, decode_event, find_event_abi
from cardify.errors import (
    ChainFatalError,
    EventNotFound,
    OwnerMismatch,
    OwnershipTransferMismatch,
    ValidationError,
)

logger = logging.getLogger(__name__)

DeployParams = namedtuple('DeployParams', [
    'kind', 'name', 'symbol', 'description', 'base_uri', 'max_supply',
    'mint_price', 'royalty_bps', 'royalty_recipient',
])

Deployment = namedtuple('Deployment', ['contract_address', 'receipt'])


def find_deployed_address(receipt, factory_address, event_abi):
    """First collection address announced by the factory in a receipt, or None.

    Logs from other contracts or other events in the same transaction are
    skipped.
    """
    factory_address = factory_address.lower()
    for log in receipt.get('logs', []):
        if log['address'].lower() != factory_address:
            continue
        args = decode_event(log, event_abi)
        if args and args.get('collection'):
            return args['collection'].lower()
    return None


class CollectionDeployer:
    """Clone collections through a factory and hand them to their owners"""

    def __init__(self, chain, factories):
        self.chain = chain
        self.factories = {kind: address for kind, address in factories.items() if address}

    def _factory_call_args(self, params):
        if params.kind == 'erc721':
            return (params.name, params.symbol, params.base_uri, params.max_supply,
                    params.mint_price, params.royalty_bps, Web3.to_checksum_address(params.royalty_recipient))
        return (params.base_uri, params.name, params.symbol, params.description or '',
                params.mint_price, params.max_supply, Web3.to_checksum_address(params.royalty_recipient),
                params.royalty_bps)

    def factory_for(self, kind):
        factory = self.factories.get(kind)
        if not factory:
            raise ValidationError(f"No factory configured for {kind} collections")
        return factory

    def submit(self, params):
        """Send the createCollection transaction and return its hash"""
        factory = self.factory_for(params.kind)
        if not self.chain.has_code(factory):
            raise ChainFatalError(f"No code at factory address {factory}; check network configuration")

        tx_hash = self.chain.transact(factory, FACTORY_ABIS[params.kind], 'createCollection',
                                      *self._factory_call_args(params))
        logger.info(f"Deploying {params.kind} collection {params.name} ({params.symbol}): {tx_hash}")
        return tx_hash

    def collect(self, kind, receipt):
        """Recover the deployed address from a confirmed createCollection receipt"""
        factory = self.factory_for(kind)
        event_abi = find_event_abi(FACTORY_ABIS[kind], 'CollectionDeployed')
        address = find_deployed_address(receipt, factory, event_abi)
        if address is None:
            raise EventNotFound(
                f"CollectionDeployed event not found in {receipt['transactionHash']}",
                tx_hash=receipt['transactionHash'])
        logger.info(f"Collection deployed at {address}")
        return Deployment(address, receipt)

    def deploy(self, params, on_submit=None):
        tx_hash = self.submit(params)
        if on_submit:
            on_submit(tx_hash)
        return self.collect(params.kind, self.chain.wait(tx_hash))

    def current_owner(self, contract_address):
        return self.chain.call(contract_address, COLLECTION_ABI, 'owner').lower()

    def verify_operator_owned(self, contract_address):
        owner = self.current_owner(contract_address)
        operator = self.chain.operator_address.lower()
        if owner != operator:
            raise OwnerMismatch(f"owner() of {contract_address} is {owner}, expected operator {operator}",
                                contract_address=contract_address)

    def submit_transfer(self, contract_address, new_owner):
        self.verify_operator_owned(contract_address)
        tx_hash = self.chain.transact(contract_address, COLLECTION_ABI, 'transferOwnership',
                                      Web3.to_checksum_address(new_owner))
        logger.info(f"Transferring {contract_address} to {new_owner}: {tx_hash}")
        return tx_hash

    def confirm_transfer(self, contract_address, new_owner):
        """Re-read owner() after the transfer confirmed"""
        observed = self.current_owner(contract_address)
        if observed != new_owner.lower():
            raise OwnershipTransferMismatch(
                f"owner() of {contract_address} is {observed} after transfer to {new_owner}",
                contract_address=contract_address, observed_owner=observed)
        logger.info(f"Ownership of {contract_address} confirmed for {new_owner}")

    def transfer_ownership(self, contract_address, new_owner, on_submit=None):
        tx_hash = self.submit_transfer(contract_address, new_owner)
        if on_submit:
            on_submit(tx_hash)
        receipt = self.chain.wait(tx_hash)
        self.confirm_transfer(contract_address, new_owner)
        return receipt
