import json
import logging
from urllib.parse import urlparse

import requests

from cardify.errors import StorageUnavailable, ValidationError

logger = logging.getLogger(__name__)

PINATA_API = 'https://api.pinata.cloud'


def _looks_like_cid(value):
    return value.startswith('Qm') or value.startswith('bafy')


def extract_cid(url):
    """Pull the CID out of a gateway URL, an ipfs:// URI or a bare CID"""
    if not url:
        return None
    if url.startswith('ipfs://'):
        cid = url[len('ipfs://'):].strip('/').split('/')[0]
        return cid or None
    if '://' not in url:
        return url if _looks_like_cid(url) else None

    parts = [p for p in urlparse(url).path.split('/') if p]
    if 'ipfs' in parts:
        index = parts.index('ipfs')
        if index + 1 < len(parts):
            return parts[index + 1]
    if parts and _looks_like_cid(parts[-1]):
        return parts[-1]
    return None


def to_ipfs_base_uri(url):
    """Normalize a gateway URL or CID to an ``ipfs://<cid>/`` base URI"""
    if url.startswith('ipfs://'):
        return url if url.endswith('/') else url + '/'
    cid = extract_cid(url)
    if cid:
        return f"ipfs://{cid}/"
    return url if url.endswith('/') else url + '/'


def build_metadata(name, description, image_url, attributes=None):
    """Create metadata for an NFT"""
    metadata = {
        "name": name,
        "description": description,
        "image": image_url,
    }

    if attributes:
        metadata["attributes"] = attributes

    return metadata


class PinataGateway:
    """Pin files and JSON documents on IPFS through Pinata"""

    def __init__(self, jwt, gateway_url='https://gateway.pinata.cloud/ipfs/', api_url=PINATA_API, timeout=60):
        self.jwt = jwt
        self.gateway_url = gateway_url
        self.api_url = api_url
        self.timeout = timeout

    def _headers(self):
        if not self.jwt:
            raise ValidationError("PINATA_JWT is not configured")
        return {"Authorization": f"Bearer {self.jwt}"}

    def _cid_from(self, response, what):
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            logger.error(f"Pinata rejected {what}: {response.status_code} {response.text}")
            raise StorageUnavailable(f"Pinata upload failed with status {response.status_code}") from e
        cid = response.json()['IpfsHash']
        logger.info(f"Pinned {what} to IPFS: {cid}")
        return f"ipfs://{cid}"

    def pin_json(self, document, name=None):
        payload = {"pinataContent": document}
        if name:
            payload["pinataMetadata"] = {"name": name}
        try:
            response = requests.post(f"{self.api_url}/pinning/pinJSONToIPFS", headers=self._headers(),
                                     json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageUnavailable(f"Could not reach Pinata: {e}") from e
        return self._cid_from(response, name or 'metadata')

    def pin_file(self, stream, filename):
        files = {"file": (filename, stream)}
        data = {"pinataMetadata": json.dumps({"name": filename})}
        try:
            response = requests.post(f"{self.api_url}/pinning/pinFileToIPFS", headers=self._headers(),
                                     files=files, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageUnavailable(f"Could not reach Pinata: {e}") from e
        return self._cid_from(response, filename)

    def gateway_link(self, ipfs_uri):
        cid = extract_cid(ipfs_uri)
        return f"{self.gateway_url.rstrip('/')}/{cid}" if cid else ipfs_uri
