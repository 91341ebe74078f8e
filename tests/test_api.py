import io
from unittest.mock import MagicMock

import pytest

from cardify import storage
from tests.conftest import TOKEN
from tests.fakes import OTHER, OWNER


@pytest.fixture
def deployed(client, auth_headers, deploy_body):
    response = client.post('/api/deploy-collection', json=deploy_body, headers=auth_headers)
    assert response.status_code == 200
    return response.get_json()


@pytest.fixture
def other_headers(client):
    response = client.post('/api/users/register', json={
        'username': 'bob', 'email': 'bob@example.com', 'password': 'pw', 'wallet_address': OTHER})
    return {'Authorization': f"Bearer {response.get_json()['token']}"}


def test_deploy_requires_authentication(client, deploy_body):
    response = client.post('/api/deploy-collection', json=deploy_body)

    assert response.status_code == 401
    assert response.get_json()['success'] is False


def test_deploy_rejects_invalid_body(client, auth_headers, deploy_body):
    deploy_body['maxSupply'] = 3

    response = client.post('/api/deploy-collection', json=deploy_body, headers=auth_headers)

    assert response.status_code == 400
    assert response.get_json()['kind'] == 'validation_error'


@pytest.mark.parametrize('field, value', [
    ('mintPrice', 'abc'),
    ('maxSupply', 5.9),
    ('name', 'N' * 129),
    ('symbol', 'S' * 33),
])
def test_deploy_rejects_malformed_fields_before_broadcast(client, auth_headers, deploy_body, chain, field, value):
    deploy_body[field] = value

    response = client.post('/api/deploy-collection', json=deploy_body, headers=auth_headers)

    assert response.status_code == 400
    assert response.get_json()['kind'] == 'validation_error'
    assert field in response.get_json()['error']
    assert chain.submitted == []


def test_deploy_without_credits_is_forbidden(client, other_headers, deploy_body):
    response = client.post('/api/deploy-collection', json=deploy_body, headers=other_headers)

    assert response.status_code == 403
    assert response.get_json()['kind'] == 'insufficient_credits'


def test_deploy_returns_codes_and_collection(deployed):
    assert deployed['success'] is True
    assert len(deployed['codes']) == 10
    assert deployed['collection']['maxSupply'] == 10
    assert deployed['collection']['type'] == 'erc1155'
    assert deployed['newCreditBalance'] == 90


def test_idempotency_header_replays(client, auth_headers, deploy_body, chain):
    headers = dict(auth_headers, **{'Idempotency-Key': 'deploy-1'})
    first = client.post('/api/deploy-collection', json=deploy_body, headers=headers).get_json()
    deploy_body['description'] = 'changed'
    second = client.post('/api/deploy-collection', json=deploy_body, headers=headers).get_json()

    assert second['collectionAddress'] == first['collectionAddress']
    assert len(chain.calls_to('createCollection')) == 1


def test_codes_listing_and_redemption(client, auth_headers, deployed):
    address = deployed['collectionAddress']
    code = deployed['codes'][3]

    codes = client.get(f'/api/collections/{address}/codes', headers=auth_headers).get_json()
    assert {c['code'] for c in codes} == set(deployed['codes'])
    assert all(c['hash'].startswith('0x') and len(c['hash']) == 66 for c in codes)

    response = client.post('/api/redeem-code', json={'collectionAddress': address, 'code': code})
    assert response.status_code == 200
    assert response.get_json()['success'] is True

    again = client.post('/api/redeem-code', json={'collectionAddress': address, 'code': code})
    assert again.status_code == 404
    assert again.get_json()['error'] == 'not found or used'

    used = client.get(f'/api/collections/{address}/codes?used=true', headers=auth_headers).get_json()
    assert [c['code'] for c in used] == [code]
    unused = client.get(f'/api/collections/{address}/codes?used=false', headers=auth_headers).get_json()
    assert len(unused) == 9

    detail = client.get(f'/api/collections/{address}').get_json()
    assert detail['total_codes'] == 10
    assert detail['used_codes'] == 1


def test_redeem_unknown_code_matches_used_response(client, deployed):
    response = client.post('/api/redeem-code', json={
        'collectionAddress': deployed['collectionAddress'], 'code': 'ZZZZZZZZZZZZ'})

    assert response.status_code == 404
    assert response.get_json()['error'] == 'not found or used'


def test_redeem_records_authenticated_wallet(client, auth_headers, deployed):
    address = deployed['collectionAddress']
    code = deployed['codes'][0]

    client.post('/api/redeem-code', json={'collectionAddress': address, 'code': code}, headers=auth_headers)
    status = client.get(f'/api/collections/{address}/codes/{code}', headers=auth_headers).get_json()

    assert status['status'] == 'used'
    assert status['code']['used_by'] == OWNER


def test_redeem_requires_fields(client):
    response = client.post('/api/redeem-code', json={'code': 'ABC'})

    assert response.status_code == 400


@pytest.mark.parametrize('body', [
    {'collectionAddress': OWNER, 'code': 123},
    {'collectionAddress': OWNER, 'code': ['ABC']},
    {'collectionAddress': OWNER, 'code': 'ABC', 'redeemer': 7},
])
def test_redeem_rejects_non_string_fields(client, body):
    response = client.post('/api/redeem-code', json=body)

    assert response.status_code == 400
    assert response.get_json()['kind'] == 'validation_error'


def test_activate_rejects_oversized_cid(client, auth_headers, deployed):
    address = deployed['collectionAddress']

    response = client.put(f'/api/collections/{address}/activate',
                          json={'active': True, 'cid': 'Q' * 300}, headers=auth_headers)

    assert response.status_code == 400


def test_code_status_distinguishes_unknown_for_owner(client, auth_headers, deployed):
    address = deployed['collectionAddress']

    unknown = client.get(f'/api/collections/{address}/codes/NOPE', headers=auth_headers).get_json()
    unused = client.get(f"/api/collections/{address}/codes/{deployed['codes'][1]}", headers=auth_headers).get_json()

    assert unknown == {'status': 'unknown'}
    assert unused['status'] == 'unused'


def test_other_users_cannot_read_codes(client, other_headers, deployed):
    response = client.get(f"/api/collections/{deployed['collectionAddress']}/codes", headers=other_headers)

    assert response.status_code == 403


def test_deactivated_collection_blocks_redemption(client, auth_headers, deployed):
    address = deployed['collectionAddress']

    response = client.put(f'/api/collections/{address}/activate', json={'active': False}, headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['collection']['active'] is False

    blocked = client.post('/api/redeem-code', json={'collectionAddress': address, 'code': deployed['codes'][2]})
    assert blocked.status_code == 404

    client.put(f'/api/collections/{address}/activate', json={'active': True, 'cid': 'QmNew'}, headers=auth_headers)
    allowed = client.post('/api/redeem-code', json={'collectionAddress': address, 'code': deployed['codes'][2]})
    assert allowed.status_code == 200


def test_verify_reports_registry_counts(client, auth_headers, deployed, chain):
    address = deployed['collectionAddress']
    client.post('/api/redeem-code', json={'collectionAddress': address, 'code': deployed['codes'][0]})
    contract = chain.contracts[address]
    first = sorted(contract.valid)[0]
    contract.used.add(first)

    report = client.get(f'/api/collections/{address}/verify', headers=auth_headers).get_json()

    assert report['total'] == 10
    assert report['used'] == 1
    assert report['valid'] == 9
    assert report['invalid'] == 0
    assert report['hashMismatches'] == []


def test_list_collections_by_owner(client, deployed):
    listed = client.get(f'/api/collections?owner={OWNER}').get_json()

    assert [c['address'] for c in listed] == [deployed['collectionAddress']]
    assert client.get('/api/collections?owner=nope').status_code == 400


def test_deployment_status_and_ownership(client, auth_headers, other_headers, deployed):
    attempt_id = deployed['attemptId']

    mine = client.get(f'/api/deployments/{attempt_id}', headers=auth_headers)
    theirs = client.get(f'/api/deployments/{attempt_id}', headers=other_headers)

    assert mine.get_json()['attempt']['status'] == 'completed'
    assert theirs.status_code == 403
    assert client.get('/api/deployments/999', headers=auth_headers).status_code == 404


def test_failed_deployment_resumes_over_http(client, auth_headers, deploy_body, chain):
    chain.time_out.add('transferOwnership')
    failed = client.post('/api/deploy-collection', json=deploy_body, headers=auth_headers)
    assert failed.status_code == 503
    body = failed.get_json()
    assert body['failedStep'] == 'ownership_transferred'

    chain.mine()
    resumed = client.post(f"/api/deployments/{body['attemptId']}/resume", headers=auth_headers)

    assert resumed.status_code == 200
    assert resumed.get_json()['collectionAddress'] == body['collectionAddress']
    assert len(chain.calls_to('transferOwnership')) == 1


def test_register_login_and_me(client):
    registered = client.post('/api/users/register', json={
        'username': 'carol', 'email': 'carol@example.com', 'password': 'pw'})
    assert registered.status_code == 201

    duplicate = client.post('/api/users/register', json={
        'username': 'carol', 'email': 'other@example.com', 'password': 'pw'})
    assert duplicate.status_code == 400

    login = client.post('/api/users/login', json={'username': 'carol', 'password': 'pw'})
    assert login.status_code == 200
    token = login.get_json()['token']
    assert token == registered.get_json()['token']

    me = client.get('/api/users/me', headers={'Authorization': f'Bearer {token}'})
    assert me.get_json()['user']['username'] == 'carol'
    assert me.get_json()['user']['credits'] == 0

    wrong = client.post('/api/users/login', json={'username': 'carol', 'password': 'nope'})
    assert wrong.status_code == 401


def test_bad_token_is_unauthorized(client, profile_id):
    response = client.get('/api/users/me', headers={'Authorization': f'Bearer {TOKEN}x'})

    assert response.status_code == 401


def test_metadata_is_pinned(client, auth_headers, services, monkeypatch):
    services.gateway.jwt = 'jwt-token'
    response = MagicMock(status_code=200)
    response.json.return_value = {'IpfsHash': 'QmMeta'}
    monkeypatch.setattr(storage.requests, 'post', MagicMock(return_value=response))

    pinned = client.post('/api/metadata', json={'name': 'Card', 'image': 'ipfs://QmImg'}, headers=auth_headers)

    assert pinned.status_code == 201
    assert pinned.get_json()['metadataUri'] == 'ipfs://QmMeta'
    assert pinned.get_json()['gatewayUrl'].endswith('/QmMeta')


def test_upload_pins_image(client, auth_headers, services, monkeypatch):
    services.gateway.jwt = 'jwt-token'
    response = MagicMock(status_code=200)
    response.json.return_value = {'IpfsHash': 'QmImage'}
    monkeypatch.setattr(storage.requests, 'post', MagicMock(return_value=response))

    uploaded = client.post('/api/upload', headers=auth_headers, content_type='multipart/form-data',
                           data={'image': (io.BytesIO(b'\x89PNG'), 'card.png')})
    rejected = client.post('/api/upload', headers=auth_headers, content_type='multipart/form-data',
                           data={'image': (io.BytesIO(b'MZ'), 'card.exe')})

    assert uploaded.status_code == 201
    assert uploaded.get_json()['imageUri'] == 'ipfs://QmImage'
    assert rejected.status_code == 400


def test_metadata_without_gateway_credentials(client, auth_headers):
    response = client.post('/api/metadata', json={'name': 'Card', 'image': 'ipfs://QmImg'}, headers=auth_headers)

    assert response.status_code == 400


def test_profile_wallet_update(client, auth_headers):
    bad = client.put('/api/users/me', json={'wallet_address': 'nope'}, headers=auth_headers)
    good = client.put('/api/users/me', json={'wallet_address': OTHER.upper().replace('0X', '0x')},
                      headers=auth_headers)

    assert bad.status_code == 400
    assert good.status_code == 200
    assert good.get_json()['user']['wallet_address'] == OTHER
