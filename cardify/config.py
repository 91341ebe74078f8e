import os


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev_key_for_testing')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///cardify.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_FILE = os.environ.get('LOG_FILE', 'cardify.log')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Blockchain configuration
    RPC_URL = os.environ.get('RPC_URL', 'https://sepolia.base.org')
    CHAIN_ID = int(os.environ.get('CHAIN_ID', 84532))  # Base Sepolia
    WALLET_PRIVATE_KEY = os.environ.get('WALLET_PRIVATE_KEY')
    FACTORY_ADDRESS_ERC721 = os.environ.get('FACTORY_ADDRESS_ERC721')
    FACTORY_ADDRESS_ERC1155 = os.environ.get('FACTORY_ADDRESS_ERC1155')
    TX_TIMEOUT = int(os.environ.get('TX_TIMEOUT', 120))
    TX_POLL_INTERVAL = float(os.environ.get('TX_POLL_INTERVAL', 2.0))
    CONFIRMATIONS = int(os.environ.get('CONFIRMATIONS', 1))
    COMMITMENT_BATCH_SIZE = int(os.environ.get('COMMITMENT_BATCH_SIZE', 250))

    # IPFS pinning
    PINATA_JWT = os.environ.get('PINATA_JWT')
    PINATA_GATEWAY = os.environ.get('PINATA_GATEWAY', 'https://gateway.pinata.cloud/ipfs/')
    ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max upload

    # Collection and code rules
    MIN_MAX_SUPPLY = int(os.environ.get('MIN_MAX_SUPPLY', 5))
    MAX_MAX_SUPPLY = int(os.environ.get('MAX_MAX_SUPPLY', 1000))
    CODE_LENGTH = int(os.environ.get('CODE_LENGTH', 12))
    DEFAULT_ROYALTY_BPS = int(os.environ.get('DEFAULT_ROYALTY_BPS', 250))
    DEPLOY_CREDIT_COST = {
        'erc721': int(os.environ.get('DEPLOY_CREDIT_COST_ERC721', 20)),
        'erc1155': int(os.environ.get('DEPLOY_CREDIT_COST_ERC1155', 10)),
    }
    DEFAULT_CREDITS = int(os.environ.get('DEFAULT_CREDITS', 0))

    # Orchestration
    PERSIST_RETRY_ATTEMPTS = int(os.environ.get('PERSIST_RETRY_ATTEMPTS', 5))
    PERSIST_RETRY_MAX_WAIT = float(os.environ.get('PERSIST_RETRY_MAX_WAIT', 8))
    ATTEMPT_LEASE_SECONDS = int(os.environ.get('ATTEMPT_LEASE_SECONDS', 600))
    REDEEM_CHECK_ONCHAIN = _env_bool('REDEEM_CHECK_ONCHAIN')


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WALLET_PRIVATE_KEY = None
    PINATA_JWT = None
    FACTORY_ADDRESS_ERC721 = '0x00000000000000000000000000000000000f7210'
    FACTORY_ADDRESS_ERC1155 = '0x0000000000000000000000000000000000f11550'
    TX_TIMEOUT = 5
    TX_POLL_INTERVAL = 0.01
    PERSIST_RETRY_ATTEMPTS = 3
    PERSIST_RETRY_MAX_WAIT = 0
    DEFAULT_CREDITS = 0
