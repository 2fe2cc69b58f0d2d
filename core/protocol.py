"""Escrow protocol constants, enums and input normalisation helpers."""
import re
from enum import Enum

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
ZERO_BYTES32 = '0x' + '00' * 32

_ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
_BYTES32_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')
_UINT_RE = re.compile(r'^[0-9]+$')


class EscrowState(str, Enum):
    """On-chain escrow state; member order matches the contract's uint8."""
    PENDING = 'Pending'
    ACTIVE = 'Active'
    SUBMITTED = 'Submitted'
    DISPUTED = 'Disputed'
    RESOLVED = 'Resolved'

    @classmethod
    def from_index(cls, index: int) -> 'EscrowState':
        return list(cls)[index]

    @classmethod
    def parse(cls, value):
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        return None


class Outcome(str, Enum):
    NONE = 'None'
    FULL_RELEASE = 'FullRelease'
    FULL_REFUND = 'FullRefund'
    PARTIAL = 'Partial'

    @classmethod
    def from_index(cls, index: int) -> 'Outcome':
        return list(cls)[index]


class License(str, Enum):
    PUBLIC_DOMAIN = 'public-domain'
    ATTRIBUTION = 'attribution'
    NON_COMMERCIAL = 'non-commercial'

    @classmethod
    def parse(cls, value):
        for member in cls:
            if member.value == value:
                return member
        return None


TASK_CATEGORIES = ('creative', 'coding', 'data', 'research', 'other')


def is_address(value) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def is_bytes32(value) -> bool:
    return isinstance(value, str) and bool(_BYTES32_RE.match(value))


def normalize_address(value: str) -> str:
    return value.lower()


def is_native_token(token: str) -> bool:
    return token.lower() == ZERO_ADDRESS


def parse_uint(value) -> int:
    """Parse a non-negative integer of arbitrary size from an int or a decimal string.

    Raises ValueError for anything else (floats, negatives, hex, empty).
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer amount")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and _UINT_RE.match(value.strip()):
        result = int(value.strip())
    else:
        raise ValueError(f"not a non-negative integer: {value!r}")
    if result < 0:
        raise ValueError(f"negative value: {value!r}")
    return result


def bytes32_to_hex(value) -> str:
    """Normalise bytes / HexBytes / hex string to a lower-case 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith('0x') else '0x' + text


def hex_to_bytes32(value: str) -> bytes:
    return bytes.fromhex(value.replace('0x', ''))
