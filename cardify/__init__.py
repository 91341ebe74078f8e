"""Cardify: trading-card NFT collections with single-use redemption codes."""
import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from flask_migrate import Migrate

from cardify.chain import Web3ChainClient
from cardify.codes import CodeGenerator
from cardify.config import Config
from cardify.credits import CreditService
from cardify.deployer import CollectionDeployer
from cardify.ledger import RedemptionLedger
from cardify.models import Profile, db
from cardify.orchestrator import DeploymentOrchestrator
from cardify.registrar import CommitmentRegistrar
from cardify.storage import PinataGateway
from cardify.store import CollectionStore

logger = logging.getLogger(__name__)

login_manager = LoginManager()
migrate = Migrate()


@login_manager.user_loader
def load_user(id):
    return db.session.get(Profile, int(id))


@login_manager.request_loader
def load_user_from_request(request):
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    token = header[len('Bearer '):].strip()
    if not token:
        return None
    return Profile.query.filter_by(api_token=token).first()


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "error": "Authentication required", "kind": "authorization_error"}), 401


class Services:
    """Workflow components shared by every request of one app"""

    def __init__(self, app, chain_client=None, gateway=None, store=None):
        config = app.config
        self.chain = chain_client
        if self.chain is None and config.get('WALLET_PRIVATE_KEY'):
            self.chain = Web3ChainClient(
                rpc_url=config['RPC_URL'],
                private_key=config['WALLET_PRIVATE_KEY'],
                chain_id=config['CHAIN_ID'],
                timeout=config['TX_TIMEOUT'],
                poll_interval=config['TX_POLL_INTERVAL'],
                confirmations=config['CONFIRMATIONS'],
            )
        if self.chain is None:
            logger.warning("No operator key configured. Deployment endpoints are disabled.")

        self.gateway = gateway or PinataGateway(config.get('PINATA_JWT'), config['PINATA_GATEWAY'])
        self.store = store or CollectionStore()
        self.credits = CreditService()
        self.generator = CodeGenerator(length=config['CODE_LENGTH'], max_count=config['MAX_MAX_SUPPLY'])

        self.registrar = None
        self.deployer = None
        self.orchestrator = None
        if self.chain is not None:
            self.registrar = CommitmentRegistrar(self.chain, batch_size=config['COMMITMENT_BATCH_SIZE'])
            self.deployer = CollectionDeployer(self.chain, {
                'erc721': config.get('FACTORY_ADDRESS_ERC721'),
                'erc1155': config.get('FACTORY_ADDRESS_ERC1155'),
            })
            self.orchestrator = DeploymentOrchestrator(
                store=self.store,
                chain=self.chain,
                generator=self.generator,
                deployer=self.deployer,
                registrar=self.registrar,
                credits=self.credits,
                credit_costs=config['DEPLOY_CREDIT_COST'],
                min_supply=config['MIN_MAX_SUPPLY'],
                max_supply=config['MAX_MAX_SUPPLY'],
                default_royalty_bps=config['DEFAULT_ROYALTY_BPS'],
                lease_seconds=config['ATTEMPT_LEASE_SECONDS'],
                persist_attempts=config['PERSIST_RETRY_ATTEMPTS'],
                persist_max_wait=config['PERSIST_RETRY_MAX_WAIT'],
            )

        self.ledger = RedemptionLedger(registrar=self.registrar, check_onchain=config['REDEEM_CHECK_ONCHAIN'])


def create_app(config_object=None, chain_client=None, gateway=None, store=None):
    """Application factory; every external collaborator can be injected"""
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.extensions['cardify'] = Services(app, chain_client=chain_client, gateway=gateway, store=store)

    from cardify.api import api
    from cardify.users import users
    app.register_blueprint(users)
    app.register_blueprint(api)

    return app
