"""Blockchain client for the operator signing key.

``Web3ChainClient`` is the only place that talks to an RPC node. The rest of
the workflow depends on its small surface (``operator_address``, ``call``,
``transact``, ``wait``, ``get_receipt``, ``has_code``), so tests swap in an
in-memory chain with the same methods.
"""
import logging
import threading
import time

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from cardify.errors import (
    CardifyError,
    ChainTransientError,
    InsufficientFunds,
    TransactionReverted,
    TransactionTimedOut,
)

logger = logging.getLogger(__name__)

# Contract ABIs

COLLECTION_ABI = [
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "address", "name": "newOwner", "type": "address"}],
        "name": "transferOwnership",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "bytes32[]", "name": "hashes", "type": "bytes32[]"}],
        "name": "addValidCodes",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
        "name": "validCodes",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
        "name": "usedCodes",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "name",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "maxSupply",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
]

ERC721_FACTORY_ABI = [
    {
        "inputs": [
            {"internalType": "string", "name": "name_", "type": "string"},
            {"internalType": "string", "name": "symbol_", "type": "string"},
            {"internalType": "string", "name": "baseURI_", "type": "string"},
            {"internalType": "uint256", "name": "maxSupply_", "type": "uint256"},
            {"internalType": "uint256", "name": "mintPrice_", "type": "uint256"},
            {"internalType": "uint96", "name": "royaltyBps_", "type": "uint96"},
            {"internalType": "address", "name": "royaltyReceiver_", "type": "address"}
        ],
        "name": "createCollection",
        "outputs": [{"internalType": "address", "name": "clone", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "creator", "type": "address"},
            {"indexed": False, "internalType": "address", "name": "collection", "type": "address"},
            {"indexed": False, "internalType": "string", "name": "name", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "symbol", "type": "string"},
            {"indexed": False, "internalType": "uint256", "name": "mintPrice", "type": "uint256"},
            {"indexed": False, "internalType": "uint96", "name": "royaltyBps", "type": "uint96"},
            {"indexed": False, "internalType": "address", "name": "royaltyReceiver", "type": "address"}
        ],
        "name": "CollectionDeployed",
        "type": "event"
    },
]

ERC1155_FACTORY_ABI = [
    {
        "inputs": [
            {"internalType": "string", "name": "baseUri", "type": "string"},
            {"internalType": "string", "name": "name_", "type": "string"},
            {"internalType": "string", "name": "symbol_", "type": "string"},
            {"internalType": "string", "name": "description", "type": "string"},
            {"internalType": "uint256", "name": "mintPrice", "type": "uint256"},
            {"internalType": "uint256", "name": "maxSupply", "type": "uint256"},
            {"internalType": "address", "name": "royaltyRecip", "type": "address"},
            {"internalType": "uint96", "name": "royaltyBps", "type": "uint96"}
        ],
        "name": "createCollection",
        "outputs": [{"internalType": "address", "name": "col", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "creator", "type": "address"},
            {"indexed": False, "internalType": "address", "name": "collection", "type": "address"}
        ],
        "name": "CollectionDeployed",
        "type": "event"
    },
]

FACTORY_ABIS = {
    'erc721': ERC721_FACTORY_ABI,
    'erc1155': ERC1155_FACTORY_ABI,
}


def find_event_abi(abi, name):
    for entry in abi:
        if entry.get('type') == 'event' and entry.get('name') == name:
            return entry
    raise KeyError(f"Event {name} not in ABI")


def event_topic(event_abi):
    """keccak-256 of the canonical event signature, used as topics[0]"""
    signature = '%s(%s)' % (event_abi['name'], ','.join(i['type'] for i in event_abi['inputs']))
    return Web3.to_hex(Web3.keccak(text=signature))


def to_hex(value):
    if isinstance(value, str):
        return value.lower() if value.startswith('0x') else '0x' + value.lower()
    return Web3.to_hex(HexBytes(value))


def decode_event(log, event_abi):
    """Decode one log entry against an event ABI.

    Returns a dict of event arguments, or None when the log belongs to some
    other event or cannot be decoded.
    """
    topics = [to_hex(t) for t in log.get('topics') or []]
    if not topics or topics[0] != event_topic(event_abi):
        return None

    indexed = [i for i in event_abi['inputs'] if i.get('indexed')]
    plain = [i for i in event_abi['inputs'] if not i.get('indexed')]
    if len(topics) != len(indexed) + 1:
        return None

    try:
        values = decode([i['type'] for i in plain], HexBytes(log.get('data') or b''))
        args = dict(zip((i['name'] for i in plain), values))
        for item, topic in zip(indexed, topics[1:]):
            if item['type'] in ('string', 'bytes') or item['type'].endswith(']'):
                # dynamic indexed values are stored as their hash
                args[item['name']] = topic
            else:
                args[item['name']] = decode([item['type']], HexBytes(topic))[0]
    except (DecodingError, ValueError, TypeError):
        return None
    return args


def normalize_receipt(receipt):
    return {
        'transactionHash': to_hex(receipt['transactionHash']),
        'status': receipt.get('status', 1),
        'blockNumber': receipt['blockNumber'],
        'logs': [
            {
                'address': log['address'].lower(),
                'topics': [to_hex(t) for t in log['topics']],
                'data': to_hex(log['data']),
            }
            for log in receipt.get('logs', [])
        ],
    }


def translate_chain_error(exc, action):
    """Map an RPC or contract exception onto the workflow error taxonomy"""
    if isinstance(exc, CardifyError):
        return exc
    if isinstance(exc, ContractLogicError):
        return TransactionReverted(f"{action} reverted: {exc}")

    message = str(exc).lower()
    if 'insufficient funds' in message:
        return InsufficientFunds(f"{action}: operator account cannot pay for gas")
    if any(s in message for s in ('nonce too low', 'replacement transaction underpriced', 'already known')):
        return ChainTransientError(f"{action}: nonce conflict ({exc})")
    if 'execution reverted' in message:
        return TransactionReverted(f"{action} reverted: {exc}")
    return ChainTransientError(f"{action} failed: {exc}")


class NonceManager:
    """Hand out consecutive nonces for one signer.

    Callers hold ``lock`` across reserve / sign / send so two requests never
    sign with the same nonce.
    """

    def __init__(self, w3, address):
        self.w3 = w3
        self.address = address
        self.lock = threading.RLock()
        self._next = None

    def reserve(self):
        with self.lock:
            if self._next is None:
                self._next = self.w3.eth.get_transaction_count(self.address, 'pending')
            nonce = self._next
            self._next += 1
            return nonce

    def reset(self):
        with self.lock:
            self._next = None


class Web3ChainClient:
    """Sign, submit and confirm transactions for the operator key"""

    def __init__(self, rpc_url=None, private_key=None, chain_id=None, timeout=120,
                 poll_interval=2.0, confirmations=1, w3=None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.account: LocalAccount = Account.from_key(private_key)
        self.chain_id = chain_id
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.confirmations = max(1, confirmations)
        self.nonces = NonceManager(self.w3, self.account.address)
        logger.info(f"Initialized operator account: {self.account.address}")

    @property
    def operator_address(self):
        return self.account.address

    def _function(self, address, abi, fn_name, *args):
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        return getattr(contract.functions, fn_name)(*args)

    def has_code(self, address):
        try:
            code = self.w3.eth.get_code(Web3.to_checksum_address(address))
        except (Web3Exception, ValueError, RequestException) as e:
            raise translate_chain_error(e, 'get_code') from e
        return len(code) > 0

    def block_number(self):
        return self.w3.eth.block_number

    def call(self, address, abi, fn_name, *args):
        """Read-only contract call"""
        try:
            return self._function(address, abi, fn_name, *args).call({'from': self.account.address})
        except (Web3Exception, ValueError, RequestException) as e:
            raise translate_chain_error(e, fn_name) from e

    def transact(self, address, abi, fn_name, *args):
        """Submit a state-changing call and return its transaction hash.

        A static call runs first so a guarded or missing function fails
        without spending gas.
        """
        fn = self._function(address, abi, fn_name, *args)
        try:
            fn.call({'from': self.account.address})
        except (Web3Exception, ValueError, RequestException) as e:
            raise translate_chain_error(e, fn_name) from e

        with self.nonces.lock:
            nonce = self.nonces.reserve()
            params = {'from': self.account.address, 'nonce': nonce}
            if self.chain_id:
                params['chainId'] = self.chain_id
            try:
                tx = fn.build_transaction(params)
                signed_tx = self.account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            except (Web3Exception, ValueError, RequestException) as e:
                self.nonces.reset()
                raise translate_chain_error(e, fn_name) from e

        tx_hash = to_hex(tx_hash)
        logger.info(f"Submitted {fn_name} to {address} with nonce {nonce}: {tx_hash}")
        return tx_hash

    def _confirmed(self, receipt):
        return self.w3.eth.block_number - receipt['blockNumber'] + 1 >= self.confirmations

    def _finish(self, receipt):
        normalized = normalize_receipt(receipt)
        if normalized['status'] != 1:
            raise TransactionReverted(f"Transaction {normalized['transactionHash']} reverted",
                                      tx_hash=normalized['transactionHash'])
        return normalized

    def wait(self, tx_hash, timeout=None):
        """Block until the transaction is mined and has enough confirmations"""
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_interval)
            while not self._confirmed(receipt):
                if time.monotonic() >= deadline:
                    raise TransactionTimedOut(
                        f"Transaction {tx_hash} lacks {self.confirmations} confirmations", tx_hash=tx_hash)
                time.sleep(self.poll_interval)
        except TimeExhausted:
            raise TransactionTimedOut(f"Transaction {tx_hash} not mined within {timeout}s", tx_hash=tx_hash)
        except (Web3Exception, ValueError, RequestException) as e:
            raise translate_chain_error(e, 'wait_for_transaction_receipt') from e
        return self._finish(receipt)

    def get_receipt(self, tx_hash):
        """Return the confirmed receipt, or None while the transaction is pending"""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, ValueError, RequestException) as e:
            raise translate_chain_error(e, 'get_transaction_receipt') from e
        if receipt is None or not self._confirmed(receipt):
            return None
        return self._finish(receipt)
