"""In-memory stand-ins for the chain and storage boundaries."""
import itertools

from eth_abi import encode
from web3 import Web3

from cardify.chain import FACTORY_ABIS, event_topic, find_event_abi
from cardify.errors import InsufficientFunds, PersistenceUnavailable, TransactionReverted, TransactionTimedOut
from cardify.store import CollectionStore

OPERATOR = Web3.to_checksum_address('0x' + '11' * 20)
OWNER = '0x' + 'ab' * 20
OTHER = '0x' + 'cd' * 20


def _pad_address(address):
    return '0x' + '00' * 12 + address.lower()[2:]


class FakeContract:

    def __init__(self, owner, name='', symbol='', max_supply=0):
        self.owner = owner
        self.name = name
        self.symbol = symbol
        self.max_supply = max_supply
        self.valid = set()
        self.used = set()


class FakeChain:
    """Chain capability backed by dicts.

    ``time_out`` names functions whose next transaction stays pending until
    ``mine`` is called; ``revert`` names functions that revert; ``hijack_owner``
    makes transferOwnership land on a different address. Only the collection
    owner may call ``addValidCodes`` or ``transferOwnership``.
    """

    def __init__(self, factories=None):
        self.operator_address = OPERATOR
        self.factories = {kind: address.lower() for kind, address in (factories or {}).items()}
        self.contracts = {}
        self.receipts = {}
        self.pending = {}
        self.submitted = []
        self.time_out = set()
        self.revert = set()
        self.underfunded = False
        self.hijack_owner = None
        self.omit_event = False
        self._counter = itertools.count(1)
        self.block = 100

    def _tx_hash(self):
        return '0x%064x' % next(self._counter)

    def _new_address(self):
        return '0x%040x' % (0xC0FFEE0000 + next(self._counter))

    def has_code(self, address):
        address = address.lower()
        return address in self.factories.values() or address in self.contracts

    def call(self, address, abi, fn_name, *args):
        contract = self.contracts[address.lower()]
        if fn_name == 'owner':
            return Web3.to_checksum_address(contract.owner)
        if fn_name == 'validCodes':
            return args[0].lower() in contract.valid
        if fn_name == 'usedCodes':
            return args[0].lower() in contract.used
        if fn_name == 'name':
            return contract.name
        if fn_name == 'symbol':
            return contract.symbol
        if fn_name == 'maxSupply':
            return contract.max_supply
        raise AssertionError(f"unexpected call {fn_name}")

    def _deploy_logs(self, kind, factory, collection, args):
        event_abi = find_event_abi(FACTORY_ABIS[kind], 'CollectionDeployed')
        if kind == 'erc721':
            name, symbol, _, _, mint_price, royalty_bps, receiver = args
            data = encode(['address', 'string', 'string', 'uint256', 'uint96', 'address'],
                          [collection, name, symbol, mint_price, royalty_bps, receiver])
        else:
            data = encode(['address'], [collection])
        unrelated = {
            'address': collection,
            'topics': [Web3.to_hex(Web3.keccak(text='OwnershipTransferred(address,address)')),
                       _pad_address('0x' + '00' * 20), _pad_address(factory)],
            'data': '0x',
        }
        deployed = {
            'address': factory,
            'topics': [event_topic(event_abi), _pad_address(self.operator_address)],
            'data': Web3.to_hex(data),
        }
        return [unrelated] if self.omit_event else [unrelated, deployed]

    def transact(self, address, abi, fn_name, *args):
        address = address.lower()
        if fn_name in self.revert:
            raise TransactionReverted(f"{fn_name} reverted: Ownable: caller is not the owner")
        if self.underfunded:
            raise InsufficientFunds(f"{fn_name}: operator account cannot pay for gas")
        if fn_name in ('addValidCodes', 'transferOwnership'):
            if self.contracts[address].owner != self.operator_address.lower():
                raise TransactionReverted(f"{fn_name} reverted: Ownable: caller is not the owner")

        tx_hash = self._tx_hash()
        self.submitted.append((fn_name, address, args))
        logs = []
        if fn_name == 'createCollection':
            kind = next(k for k, a in self.factories.items() if a == address)
            collection = self._new_address()
            if kind == 'erc721':
                name, symbol, max_supply = args[0], args[1], args[3]
            else:
                name, symbol, max_supply = args[1], args[2], args[5]
            self.contracts[collection] = FakeContract(self.operator_address.lower(), name, symbol, max_supply)
            logs = self._deploy_logs(kind, address, collection, args)
        elif fn_name == 'transferOwnership':
            self.contracts[address].owner = (self.hijack_owner or args[0]).lower()
        elif fn_name == 'addValidCodes':
            self.contracts[address].valid.update(h.lower() for h in args[0])
        else:
            raise AssertionError(f"unexpected transaction {fn_name}")

        self.block += 1
        receipt = {'transactionHash': tx_hash, 'status': 1, 'blockNumber': self.block, 'logs': logs}
        if fn_name in self.time_out:
            self.time_out.discard(fn_name)
            self.pending[tx_hash] = receipt
        else:
            self.receipts[tx_hash] = receipt
        return tx_hash

    def mine(self):
        self.receipts.update(self.pending)
        self.pending.clear()

    def wait(self, tx_hash, timeout=None):
        if tx_hash in self.pending:
            raise TransactionTimedOut(f"Transaction {tx_hash} not mined", tx_hash=tx_hash)
        return self.receipts[tx_hash]

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def calls_to(self, fn_name):
        return [entry for entry in self.submitted if entry[0] == fn_name]


class FlakyStore(CollectionStore):
    """Store whose collection insert fails a set number of times.

    ``checkpoint_failures`` maps an attempt field to how many checkpoints
    writing that field fail before one succeeds.
    """

    def __init__(self, failures, checkpoint_failures=None):
        self.failures = failures
        self.checkpoint_failures = dict(checkpoint_failures or {})
        self.save_calls = 0

    def checkpoint(self, attempt, **changes):
        for field in changes:
            if self.checkpoint_failures.get(field, 0) > 0:
                self.checkpoint_failures[field] -= 1
                raise PersistenceUnavailable(f"Database unavailable while saving {field}")
        return super().checkpoint(attempt, **changes)

    def save_collection_with_codes(self, attempt, fields, codes):
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceUnavailable("Database unavailable while saving collection")
        return super().save_collection_with_codes(attempt, fields, codes)
