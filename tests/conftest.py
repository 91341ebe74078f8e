"""Pytest configuration and shared fixtures for the cardify tests."""
import pytest

from cardify import create_app
from cardify.config import TestConfig
from cardify.models import Profile, db
from tests.fakes import FakeChain, OWNER

TOKEN = 'test-token'


@pytest.fixture
def chain():
    return FakeChain(factories={
        'erc721': TestConfig.FACTORY_ADDRESS_ERC721,
        'erc1155': TestConfig.FACTORY_ADDRESS_ERC1155,
    })


@pytest.fixture
def store():
    """Default store; tests override this to inject failures"""
    return None


@pytest.fixture
def app(tmp_path, chain, store):
    class Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'cardify.db'}"

    app = create_app(Config, chain_client=chain, store=store)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions['cardify']


@pytest.fixture
def profile_id(app):
    with app.app_context():
        profile = Profile(username='alice', email='alice@example.com', api_token=TOKEN,
                          wallet_address=OWNER, credits=100)
        profile.set_password('secret')
        db.session.add(profile)
        db.session.commit()
        return profile.id


@pytest.fixture
def auth_headers(profile_id):
    return {'Authorization': f'Bearer {TOKEN}'}


@pytest.fixture
def deploy_body():
    return {
        'name': 'Series One',
        'symbol': 'S1',
        'description': 'First print run',
        'metadataUri': 'https://gateway.pinata.cloud/ipfs/QmTestCid123/',
        'maxSupply': 10,
        'royaltyBps': 500,
        'royaltyRecipient': OWNER,
        'ownerAddress': OWNER,
        'collectionType': 'erc1155',
    }
