# portal/services/wallet.py
"""
Cardano wallet helpers: PASO token balance from wallet-reported UTXOs.

Browser wallets (CIP-30) hand back each UTXO as CBOR hex. Inside a UTXO the
multi-asset value is `{policy_id: {asset_name: amount}}`, so the amount we
want is the unsigned integer right after the asset-name byte string that
follows our policy id. Only CBOR major type 0 (unsigned int) is decoded.

Display only: wallet balances never feed the PASO credit ledger.
"""
from __future__ import annotations

import logging
from typing import Iterable, Tuple

from portal.core.config import settings

log = logging.getLogger(__name__)

SUPPORTED_WALLETS = {
    "begin": "Begin",
    "nami": "Nami",
    "eternl": "Eternl",
    "flint": "Flint",
    "typhon": "Typhon",
    "yoroi": "Yoroi",
    "lace": "Lace",
}

_UINT_SIZES = {24: 1, 25: 2, 26: 4, 27: 8}


class CborDecodeError(ValueError):
    pass


def decode_uint(buf: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode one CBOR unsigned int at `offset`; returns (value, next_offset)."""
    if offset >= len(buf):
        raise CborDecodeError("unexpected end of input")
    initial = buf[offset]
    major, info = initial >> 5, initial & 0x1F
    if major != 0:
        raise CborDecodeError(f"expected unsigned int, got major type {major}")
    if info < 24:
        return info, offset + 1
    size = _UINT_SIZES.get(info)
    if size is None:
        raise CborDecodeError(f"unsupported additional info {info}")
    end = offset + 1 + size
    if end > len(buf):
        raise CborDecodeError("truncated unsigned int")
    return int.from_bytes(buf[offset + 1:end], "big"), end


def _bytestring_header(length: int) -> bytes:
    # major type 2; names and policy ids are always < 256 bytes
    return bytes([0x40 | length]) if length < 24 else bytes([0x58, length])


def extract_token_amount(utxo_hex: str, policy_id: str, asset_name: str) -> int:
    """Amount of policy_id.asset_name in one UTXO (0 if absent)."""
    try:
        raw = bytes.fromhex(utxo_hex)
        policy = bytes.fromhex(policy_id)
        name = bytes.fromhex(asset_name)
    except ValueError:
        log.warning("[wallet] UTXO or asset id is not valid hex")
        return 0

    p = raw.find(_bytestring_header(len(policy)) + policy)
    if p == -1:
        return 0
    key = _bytestring_header(len(name)) + name
    k = raw.find(key, p + len(policy))
    if k == -1:
        return 0
    try:
        amount, _ = decode_uint(raw, k + len(key))
        return amount
    except CborDecodeError as e:
        # asset is there but the amount isn't a plain uint: count it as held
        log.warning("[wallet] could not decode PASO amount: %s", e)
        return 1


def token_balance(utxos: Iterable[str], policy_id: str | None = None, asset_name: str | None = None) -> int:
    policy_id = policy_id or settings.paso_policy_id
    asset_name = asset_name or settings.paso_asset_name
    total = 0
    for utxo in utxos or ():
        total += extract_token_amount(utxo, policy_id, asset_name)
    return total


def format_address(address: str | None) -> str:
    if not address:
        return ""
    if len(address) > 20:
        return f"{address[:8]}...{address[-6:]}"
    return address
