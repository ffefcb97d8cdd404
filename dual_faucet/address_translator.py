"""
Address Translator

Maps between the two address encodings of the same 20-byte account id:

- Ledger-A (bank ledger): bech32 with the configured human readable prefix
- Ledger-B (EVM): 0x-prefixed 40 hex characters

Both encodings are direct repackagings of the same bytes. No hashing happens
here: the hex bytes are bech32-encoded as they are, and decoding reverses it.
"""

import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Optional

import bech32
from eth_utils import is_checksum_address, to_checksum_address

from .errors import InvalidAddress


ADDRESS_LENGTH_BYTES = 20
HEX_ADDRESS_PATTERN = re.compile(r"0x[0-9a-fA-F]{40}")


class Environment(str, Enum):
    """Execution environment an address belongs to"""
    LEDGER_A = "ledger_a"
    LEDGER_B = "ledger_b"
    INVALID = "invalid"


@dataclass(frozen=True)
class AddressInfo:
    """A classified recipient address in both encodings"""
    raw: str
    environment: Environment
    address: str               # In the recipient's own encoding
    ledger_a_address: str
    ledger_b_address: str
    normalized: str            # Lowercase hex of the 20 bytes, shared by both encodings

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['environment'] = self.environment.value
        return data


def _decode_bech32(address: str, prefix: str) -> bytes:
    """
    Decode a bech32 address into its 20 payload bytes

    Raises:
        InvalidAddress: bad checksum, wrong prefix or wrong payload length
    """
    hrp, words = bech32.bech32_decode(address)
    if hrp is None or words is None:
        raise InvalidAddress(f"Malformed bech32 address or bad checksum: {address}", recipient=address)

    if hrp != prefix.lower():
        raise InvalidAddress(
            f"Wrong address prefix '{hrp}', expected '{prefix}'",
            recipient=address
        )

    payload = bech32.convertbits(words, 5, 8, False)
    if payload is None or len(payload) != ADDRESS_LENGTH_BYTES:
        raise InvalidAddress(
            f"bech32 payload must be {ADDRESS_LENGTH_BYTES} bytes",
            recipient=address
        )

    return bytes(payload)


def _decode_hex(address: str) -> bytes:
    """
    Decode a 0x hex address into its 20 bytes

    Mixed-case input must carry a valid EIP-55 checksum.
    """
    if not isinstance(address, str) or not HEX_ADDRESS_PATTERN.fullmatch(address):
        raise InvalidAddress(
            f"Hex address must be 0x followed by 40 hex characters: {address}",
            recipient=address
        )

    body = address[2:]
    if body != body.lower() and body != body.upper() and not is_checksum_address(address):
        raise InvalidAddress(f"Hex address has an invalid EIP-55 checksum: {address}", recipient=address)

    return bytes.fromhex(body)


def _encode_bech32(payload: bytes, prefix: str) -> str:
    words = bech32.convertbits(payload, 8, 5, True)
    return bech32.bech32_encode(prefix.lower(), words)


def classify(raw: Optional[str], prefix: str) -> Environment:
    """
    Classify a raw address string

    Args:
        raw: Address as submitted by the requester
        prefix: Ledger-A bech32 human readable prefix

    Returns:
        Environment.LEDGER_A, Environment.LEDGER_B or Environment.INVALID
    """
    if not raw or not isinstance(raw, str):
        return Environment.INVALID

    try:
        if raw.lower().startswith("0x"):
            _decode_hex(raw)
            return Environment.LEDGER_B
        _decode_bech32(raw, prefix)
        return Environment.LEDGER_A
    except InvalidAddress:
        return Environment.INVALID


def to_environment_b(address_a: str, prefix: str) -> str:
    """
    Translate a Ledger-A bech32 address into its Ledger-B hex form

    Args:
        address_a: bech32 address carrying the configured prefix
        prefix: Ledger-A bech32 human readable prefix

    Returns:
        EIP-55 checksummed hex address
    """
    payload = _decode_bech32(address_a, prefix)
    return to_checksum_address("0x" + payload.hex())


def to_environment_a(address_b: str, prefix: str) -> str:
    """
    Translate a Ledger-B hex address into its Ledger-A bech32 form

    Args:
        address_b: 0x hex address
        prefix: Ledger-A bech32 human readable prefix

    Returns:
        bech32 address
    """
    payload = _decode_hex(address_b)
    return _encode_bech32(payload, prefix)


def normalize(raw: Optional[str], prefix: str) -> AddressInfo:
    """
    Classify an address and derive its counterpart in the other environment

    Raises:
        InvalidAddress: the input is neither a valid Ledger-A nor Ledger-B address
    """
    if not raw or not isinstance(raw, str):
        raise InvalidAddress("Address is required")

    if raw.lower().startswith("0x"):
        payload = _decode_hex(raw)
        environment = Environment.LEDGER_B
    else:
        payload = _decode_bech32(raw, prefix)
        environment = Environment.LEDGER_A

    ledger_b_address = to_checksum_address("0x" + payload.hex())
    ledger_a_address = _encode_bech32(payload, prefix)

    return AddressInfo(
        raw=raw,
        environment=environment,
        address=ledger_a_address if environment == Environment.LEDGER_A else ledger_b_address,
        ledger_a_address=ledger_a_address,
        ledger_b_address=ledger_b_address,
        normalized="0x" + payload.hex()
    )
