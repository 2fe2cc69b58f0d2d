"""
Transaction builder: ABI-encodes call data for every protocol action and
returns an unsigned transaction descriptor. Never signs; the caller signs
and broadcasts with their own wallet.
"""
from web3 import Web3

from config import Config
from core.abi import AIRDROP_ABI, ESCROW_ABI
from core.protocol import ZERO_ADDRESS, hex_to_bytes32, is_native_token

_w3 = Web3()


def _contract(address, abi):
    return _w3.eth.contract(address=Web3.to_checksum_address(address or ZERO_ADDRESS), abi=abi)


def _unsigned_tx(to, from_address, data, value=0) -> dict:
    return {
        "to": to or None,
        "from": from_address,
        "data": data,
        "value": str(value),
        "chainId": Config.CHAIN_ID,
    }


def build_escrow_tx(from_address: str, fn_name: str, args: list, value: int = 0) -> dict:
    contract = _contract(Config.ESCROW_CONTRACT_ADDRESS, ESCROW_ABI)
    data = contract.encode_abi(fn_name, args=args)
    return _unsigned_tx(Config.ESCROW_CONTRACT_ADDRESS, from_address, data, value)


def build_airdrop_tx(from_address: str, fn_name: str, args: list) -> dict:
    contract = _contract(Config.SETTLE_AIRDROP_ADDRESS, AIRDROP_ABI)
    data = contract.encode_abi(fn_name, args=args)
    return _unsigned_tx(Config.SETTLE_AIRDROP_ADDRESS, from_address, data)


# --- Escrow actions ---

def build_create_escrow(from_address, token, amount: int, deadline: int,
                        criteria_hash: str, review_period: int = 0) -> dict:
    value = amount if is_native_token(token) else 0
    return build_escrow_tx(from_address, 'createEscrow', [
        Web3.to_checksum_address(token), amount, deadline,
        hex_to_bytes32(criteria_hash), review_period,
    ], value)


def build_accept(from_address, escrow_id) -> dict:
    return build_escrow_tx(from_address, 'acceptEscrow', [hex_to_bytes32(escrow_id)])


def build_submit(from_address, escrow_id, evidence_hash) -> dict:
    return build_escrow_tx(from_address, 'submitWork', [
        hex_to_bytes32(escrow_id), hex_to_bytes32(evidence_hash),
    ])


def build_release(from_address, escrow_id) -> dict:
    return build_escrow_tx(from_address, 'release', [hex_to_bytes32(escrow_id)])


def build_dispute(from_address, escrow_id, dispute_fee: int = 0) -> dict:
    return build_escrow_tx(from_address, 'dispute', [hex_to_bytes32(escrow_id)], dispute_fee)


def build_auto_release(from_address, escrow_id) -> dict:
    return build_escrow_tx(from_address, 'autoRelease', [hex_to_bytes32(escrow_id)])


def build_resolve(from_address, escrow_id, completion_pct: int) -> dict:
    return build_escrow_tx(from_address, 'resolve', [hex_to_bytes32(escrow_id), completion_pct])


# --- Airdrop actions ---

def build_airdrop_claim(from_address, referrer=None) -> dict:
    return build_airdrop_tx(from_address, 'claim', [Web3.to_checksum_address(referrer or ZERO_ADDRESS)])


def build_milestone_claim(from_address, milestone_id: bytes) -> dict:
    return build_airdrop_tx(from_address, 'claimMilestone', [milestone_id])
