"""
Content-addressed metadata storage.
Pins to Pinata when PINATA_JWT is set; always keeps a local copy keyed by
the sha256 of the content so criteria-hash lookups work without a gateway.
"""
import hashlib
import json
import logging
import os
import re

import requests as http_requests

from config import Config

logger = logging.getLogger('gateway.metadata')

PUBLIC_GATEWAYS = (
    'https://ipfs.io/ipfs',
    'https://cloudflare-ipfs.com/ipfs',
    'https://w3s.link/ipfs',
)

_HEX_HASH_RE = re.compile(r'^[0-9a-f]{64}$')


def canonical_json(content) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def hash_content(content) -> str:
    """0x-prefixed sha256 of the canonical serialization."""
    data = canonical_json(content)
    return '0x' + hashlib.sha256(data.encode('utf-8')).hexdigest()


def generate_criteria_hash(metadata) -> str:
    return hash_content(metadata)


def _local_path(key: str) -> str:
    return os.path.join(Config.IPFS_LOCAL_PATH, f"{key}.json")


def _write_local(key: str, data: str):
    os.makedirs(Config.IPFS_LOCAL_PATH, exist_ok=True)
    with open(_local_path(key), 'w', encoding='utf-8') as f:
        f.write(data)


def _pin_to_pinata(data: str, filename: str):
    """Returns the CID, or None when pinning is unavailable."""
    if not Config.PINATA_JWT:
        return None
    try:
        resp = http_requests.post(
            f"{Config.PINATA_API_URL}/pinning/pinFileToIPFS",
            headers={'Authorization': f"Bearer {Config.PINATA_JWT}"},
            files={'file': (filename, data.encode('utf-8'), 'application/json')},
            timeout=30,
        )
        if resp.ok:
            return resp.json().get('IpfsHash')
        logger.warning("Pinata upload rejected (%d), falling back to local", resp.status_code)
    except (http_requests.RequestException, ValueError) as e:
        logger.warning("Pinata upload failed, falling back to local: %s", e)
    return None


def store_content(content, filename=None) -> dict:
    data = canonical_json(content)
    digest = hash_content(data)[2:]
    _write_local(digest, data)

    cid = _pin_to_pinata(data, filename or f"{digest}.json")
    if cid:
        return {
            "hash": cid,
            "uri": f"ipfs://{cid}",
            "gateway": f"{Config.PINATA_GATEWAY_URL}/{cid}",
            "criteriaHash": '0x' + digest,
            "size": len(data),
        }
    return {
        "hash": digest,
        "uri": f"local://{digest}",
        "gateway": f"/ipfs/{digest}",
        "criteriaHash": '0x' + digest,
        "size": len(data),
    }


def store_metadata(metadata: dict) -> dict:
    return store_content(metadata)


def _strip_scheme(hash_or_uri: str) -> str:
    for prefix in ('ipfs://', 'local://'):
        if hash_or_uri.startswith(prefix):
            return hash_or_uri[len(prefix):]
    if hash_or_uri.startswith('0x'):
        return hash_or_uri[2:].lower()
    return hash_or_uri


def fetch_content(hash_or_uri: str):
    """Return the stored text, or None when no source has it."""
    if not hash_or_uri:
        return None
    key = _strip_scheme(hash_or_uri)
    if not key or '/' in key or '..' in key:
        return None

    path = _local_path(key)
    if os.path.exists(path):
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()

    # Raw sha256 keys only exist locally; gateways serve CIDs
    if _HEX_HASH_RE.match(key):
        return None

    for gateway in (Config.PINATA_GATEWAY_URL,) + PUBLIC_GATEWAYS:
        try:
            resp = http_requests.get(f"{gateway}/{key}", timeout=Config.METADATA_FETCH_TIMEOUT)
            if resp.ok:
                return resp.text
        except http_requests.RequestException:
            continue
    logger.debug("Content %s not found on any gateway", key)
    return None


def fetch_metadata(hash_or_uri: str):
    content = fetch_content(hash_or_uri)
    if content is None:
        return None
    try:
        return json.loads(content)
    except ValueError:
        return content
