"""Structural payout address checks keyed by the plan's payout asset."""
from __future__ import annotations

import hashlib
import logging
from typing import Callable, Dict, Optional, Tuple

from django.conf import settings

logger = logging.getLogger(__name__)

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

# (p2pkh, p2sh) version bytes and segwit human readable part per network.
BITCOIN_NETWORKS = {
    "mainnet": {"versions": (0x00, 0x05), "hrp": "bc"},
    "testnet": {"versions": (0x6F, 0xC4), "hrp": "tb"},
}


def _bitcoin_network() -> dict:
    network = getattr(settings, "BILLING_BITCOIN_NETWORK", "mainnet")
    return BITCOIN_NETWORKS.get(network, BITCOIN_NETWORKS["mainnet"])


def _b58decode(value: str) -> Optional[bytes]:
    number = 0
    for char in value:
        index = BASE58_ALPHABET.find(char)
        if index < 0:
            return None
        number = number * 58 + index
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    leading_zeros = len(value) - len(value.lstrip("1"))
    return b"\x00" * leading_zeros + body


def _is_base58check_address(address: str, versions: Tuple[int, ...]) -> bool:
    if not 26 <= len(address) <= 35:
        return False
    raw = _b58decode(address)
    if raw is None or len(raw) != 25:
        return False
    payload, checksum = raw[:-4], raw[-4:]
    if hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] != checksum:
        return False
    return payload[0] in versions


def _bech32_polymod(values) -> int:
    generator = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def _bech32_hrp_expand(hrp: str):
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _bech32_decode(address: str) -> Tuple[Optional[str], Optional[list], Optional[int]]:
    """Return (hrp, data, checksum constant) or a triple of None."""
    if any(ord(char) < 33 or ord(char) > 126 for char in address):
        return None, None, None
    if address.lower() != address and address.upper() != address:
        return None, None, None
    address = address.lower()
    separator = address.rfind("1")
    if separator < 1 or separator + 7 > len(address) or len(address) > 90:
        return None, None, None
    if not all(char in BECH32_CHARSET for char in address[separator + 1:]):
        return None, None, None
    hrp = address[:separator]
    data = [BECH32_CHARSET.find(char) for char in address[separator + 1:]]
    const = _bech32_polymod(_bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        return None, None, None
    return hrp, data[:-6], const


def _convertbits(data, from_bits: int, to_bits: int) -> Optional[list]:
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << to_bits) - 1
    for value in data:
        if value < 0 or (value >> from_bits):
            return None
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            ret.append((acc >> bits) & maxv)
    if bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        return None
    return ret


def _is_segwit_address(address: str, expected_hrp: str) -> bool:
    hrp, data, const = _bech32_decode(address)
    if hrp != expected_hrp or not data:
        return False
    witness_version = data[0]
    if witness_version > 16:
        return False
    program = _convertbits(data[1:], 5, 8)
    if program is None or not 2 <= len(program) <= 40:
        return False
    if witness_version == 0:
        return const == BECH32_CONST and len(program) in (20, 32)
    return const == BECH32M_CONST


def is_valid_bitcoin_address(address: str) -> bool:
    """Legacy (P2PKH/P2SH) and segwit (bech32/bech32m) address check for the configured network."""
    if not isinstance(address, str):
        return False
    address = address.strip()
    if not address:
        return False
    network = _bitcoin_network()
    if address.lower().startswith(network["hrp"] + "1"):
        return _is_segwit_address(address, network["hrp"])
    return _is_base58check_address(address, network["versions"])


ADDRESS_VALIDATORS: Dict[str, Callable[[str], bool]] = {
    "BTC": is_valid_bitcoin_address,
}


def is_valid_payout_address(address: str, asset: str = "BTC") -> bool:
    validator = ADDRESS_VALIDATORS.get((asset or "").upper())
    if validator is None:
        logger.warning("No payout address validator registered for asset '%s'.", asset)
        return False
    return validator(address)
