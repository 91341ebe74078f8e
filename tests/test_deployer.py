import pytest

from cardify.config import TestConfig
from cardify.deployer import CollectionDeployer, DeployParams
from cardify.errors import ChainFatalError, EventNotFound, OwnerMismatch, OwnershipTransferMismatch, ValidationError
from tests.fakes import OTHER, OWNER, FakeChain


@pytest.fixture
def chain():
    return FakeChain(factories={
        'erc721': TestConfig.FACTORY_ADDRESS_ERC721,
        'erc1155': TestConfig.FACTORY_ADDRESS_ERC1155,
    })


@pytest.fixture
def deployer(chain):
    return CollectionDeployer(chain, chain.factories)


def _params(kind='erc1155', **overrides):
    values = dict(kind=kind, name='Series One', symbol='S1', description='First print run',
                  base_uri='ipfs://QmTestCid123/', max_supply=10, mint_price=0,
                  royalty_bps=500, royalty_recipient=OWNER)
    values.update(overrides)
    return DeployParams(**values)


@pytest.mark.parametrize('kind', ['erc721', 'erc1155'])
def test_deploy_recovers_address_from_factory_event(chain, deployer, kind):
    submitted = []

    deployment = deployer.deploy(_params(kind), on_submit=submitted.append)

    assert deployment.contract_address in chain.contracts
    assert submitted == [deployment.receipt['transactionHash']]
    contract = chain.contracts[deployment.contract_address]
    assert contract.owner == chain.operator_address.lower()
    assert contract.max_supply == 10
    assert contract.name == 'Series One'


def test_deploy_without_event_is_an_invariant_violation(chain, deployer):
    chain.omit_event = True

    with pytest.raises(EventNotFound) as info:
        deployer.deploy(_params())

    assert info.value.details['tx_hash'] in chain.receipts
    assert info.value.status_code == 500
    assert not info.value.retryable


def test_deploy_refuses_factory_without_code(chain):
    deployer = CollectionDeployer(chain, {'erc1155': '0x' + '99' * 20})

    with pytest.raises(ChainFatalError):
        deployer.deploy(_params())

    assert chain.submitted == []


def test_deploy_unknown_kind_has_no_factory(chain):
    deployer = CollectionDeployer(chain, {'erc1155': TestConfig.FACTORY_ADDRESS_ERC1155, 'erc721': ''})

    with pytest.raises(ValidationError):
        deployer.deploy(_params('erc721'))


def test_transfer_ownership_hands_collection_to_owner(chain, deployer):
    address = deployer.deploy(_params()).contract_address

    deployer.transfer_ownership(address, OWNER)

    assert deployer.current_owner(address) == OWNER


def test_transfer_requires_operator_ownership(chain, deployer):
    address = deployer.deploy(_params()).contract_address
    chain.contracts[address].owner = OTHER

    with pytest.raises(OwnerMismatch):
        deployer.transfer_ownership(address, OWNER)

    assert chain.calls_to('transferOwnership') == []


def test_transfer_landing_elsewhere_is_detected(chain, deployer):
    address = deployer.deploy(_params()).contract_address
    chain.hijack_owner = OTHER

    with pytest.raises(OwnershipTransferMismatch) as info:
        deployer.transfer_ownership(address, OWNER)

    assert info.value.details['observed_owner'] == OTHER
