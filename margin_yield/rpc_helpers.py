#!/usr/bin/env python3
"""
RPC Helpers — BCS Encoding/Decoding and Sui JSON-RPC Client
============================================================

Low-level Sui interaction primitives shared by supply_reader.py and
position_indexer.py:

  • BCS encoding (uleb128, u8/u16/u64, bool, vector, string, address, TypeTag)
  • BCS decoding of view-function return values (u64, little-endian)
  • JSON-RPC client (generic call, sui_devInspectTransactionBlock)

All layouts follow Binary Canonical Serialization:
  https://github.com/diem/bcs
and the Sui JSON-RPC reference:
  https://docs.sui.io/sui-api-ref

Terminology:
  • ULEB128: unsigned LEB128 length/variant prefix used by every BCS vector
  • Address: 32 bytes, hex encoded with 0x prefix, left-padded with zeros
  • TypeTag: BCS enum describing a Move type (primitives, vector, struct)
"""

import base64
import logging
import re
from typing import Any, List, Sequence, Tuple, Union

import httpx

logger = logging.getLogger(__name__)

# ── BCS Constants ───────────────────────────────────────────────────────

ADDRESS_BYTES = 32             # Sui address / object ID = 32 bytes
ADDRESS_HEX = 64               # 32 bytes × 2 hex chars
U64_BYTES = 8                  # u64 = 8 bytes little-endian
U64_MAX = 2 ** 64 - 1
U16_MAX = 2 ** 16 - 1

# TypeTag enum variants (sui-types TypeTag)
_PRIMITIVE_TYPE_TAGS: dict[str, int] = {
    "bool": 0,
    "u8": 1,
    "u64": 2,
    "u128": 3,
    "address": 4,
    "signer": 5,
    "u16": 8,
    "u32": 9,
    "u256": 10,
}
TYPE_TAG_VECTOR = 6
TYPE_TAG_STRUCT = 7

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]{1,64}$")


# ── Address Helpers ─────────────────────────────────────────────────────

def normalize_sui_address(addr: str) -> str:
    """Normalize an address / object ID to 0x + 64 lowercase hex chars.

    >>> normalize_sui_address('0x6')
    '0x0000000000000000000000000000000000000000000000000000000000000006'
    """
    cleaned = addr.strip()
    if not _HEX_RE.match(cleaned):
        raise ValueError(f"Invalid Sui address: {addr!r}")
    return "0x" + cleaned.lower().replace("0x", "").zfill(ADDRESS_HEX)


def is_sui_address(addr: str) -> bool:
    """True for a full-length 0x-prefixed 32-byte hex address."""
    return bool(re.fullmatch(r"0x[0-9a-fA-F]{64}", addr or ""))


# ── BCS Encoding ────────────────────────────────────────────────────────

def encode_uleb128(value: int) -> bytes:
    """Encode a non-negative integer as ULEB128.

    >>> encode_uleb128(300).hex()
    'ac02'
    """
    if value < 0:
        raise ValueError(f"ULEB128 value must be non-negative, got {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_u8(value: int) -> bytes:
    return value.to_bytes(1, "little")


def encode_u16(value: int) -> bytes:
    if not 0 <= value <= U16_MAX:
        raise ValueError(f"u16 out of range: {value}")
    return value.to_bytes(2, "little")


def encode_u64(value: int) -> bytes:
    """Encode a u64 as 8 little-endian bytes.

    >>> encode_u64(1).hex()
    '0100000000000000'
    """
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"u64 out of range: {value}")
    return value.to_bytes(U64_BYTES, "little")


def encode_bool(value: bool) -> bytes:
    return b"\x01" if value else b"\x00"


def encode_bytes(data: bytes) -> bytes:
    """Encode vector<u8>: ULEB128 length + raw bytes."""
    return encode_uleb128(len(data)) + data


def encode_string(value: str) -> bytes:
    """Encode a UTF-8 string (Move identifier, module name)."""
    return encode_bytes(value.encode("utf-8"))


def encode_vector(items: Sequence[bytes]) -> bytes:
    """Encode a vector of already-encoded elements."""
    return encode_uleb128(len(items)) + b"".join(items)


def encode_address(addr: str) -> bytes:
    """Encode an address as 32 raw bytes (no length prefix)."""
    return bytes.fromhex(normalize_sui_address(addr)[2:])


def split_type_params(params: str) -> List[str]:
    """Split the inside of `<...>` at top-level commas.

    >>> split_type_params('0x2::sui::SUI, vector<u8>')
    ['0x2::sui::SUI', 'vector<u8>']
    """
    parts, depth, start = [], 0, 0
    for i, ch in enumerate(params):
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(params[start:i])
            start = i + 1
    parts.append(params[start:])
    return [p.strip() for p in parts if p.strip()]


def type_params_of(type_str: str) -> List[str]:
    """Generic arguments of a struct type string.

    >>> type_params_of('0xabc::margin_pool::MarginPool<0x2::sui::SUI>')
    ['0x2::sui::SUI']
    """
    t = type_str.strip()
    if "<" not in t:
        return []
    if not t.endswith(">"):
        raise ValueError(f"Invalid Move type: {type_str}")
    return split_type_params(t[t.index("<") + 1:-1])


def encode_type_tag(type_str: str) -> bytes:
    """Encode a Move type string (e.g. '0x2::sui::SUI') as a BCS TypeTag."""
    t = type_str.strip()
    if t in _PRIMITIVE_TYPE_TAGS:
        return encode_uleb128(_PRIMITIVE_TYPE_TAGS[t])
    if t.startswith("vector<") and t.endswith(">"):
        return encode_uleb128(TYPE_TAG_VECTOR) + encode_type_tag(t[len("vector<"):-1])

    base = t.split("<", 1)[0]
    parts = base.split("::")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid Move type: {type_str}")
    address, module, name = parts
    params = [encode_type_tag(p) for p in type_params_of(t)]
    return (
        encode_uleb128(TYPE_TAG_STRUCT)
        + encode_address(address)
        + encode_string(module)
        + encode_string(name)
        + encode_vector(params)
    )


# ── BCS Decoding ────────────────────────────────────────────────────────

def decode_uleb128(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode ULEB128 at offset. Returns (value, next_offset)."""
    value, shift = 0, 0
    while True:
        if offset >= len(data):
            raise ValueError("Truncated ULEB128")
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7


def decode_u64(raw: Union[bytes, Sequence[int]]) -> int:
    """Decode a BCS u64 (8 bytes little-endian) from a return value.

    Dev-inspect returns bytes as a JSON list of ints.

    >>> decode_u64([232, 3, 0, 0, 0, 0, 0, 0])
    1000
    """
    data = bytes(raw)
    if len(data) != U64_BYTES:
        raise ValueError(f"u64 must be {U64_BYTES} bytes, got {len(data)}")
    return int.from_bytes(data, "little")


# ── JSON-RPC Client ─────────────────────────────────────────────────────

async def sui_rpc(rpc_url: str, method: str, params: List[Any], timeout: int = 20) -> Any:
    """
    Execute one Sui JSON-RPC request.

    Args:
        rpc_url: Fullnode endpoint (e.g. https://fullnode.mainnet.sui.io:443)
        method: RPC method name (e.g. sui_multiGetObjects)
        params: Positional params list
        timeout: HTTP timeout in seconds

    Returns:
        The `result` member of the response.

    Raises:
        RuntimeError: If the node returns an error or no result.
    """
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": method,
        "params": params,
    }
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payload)
        result = resp.json()
    if "error" in result:
        err = result["error"]
        message = err.get("message", err) if isinstance(err, dict) else err
        raise RuntimeError(f"RPC error: {message}")
    if "result" not in result:
        raise RuntimeError(f"Empty response for {method}")
    return result["result"]


async def dev_inspect(
    rpc_url: str, tx_kind: bytes, sender: str, timeout: int = 20
) -> dict:
    """
    Simulate a transaction kind without signing, gas, or state changes.

    Args:
        rpc_url: Fullnode endpoint
        tx_kind: BCS-encoded TransactionKind
        sender: Address the simulation runs as
        timeout: HTTP timeout in seconds

    Returns:
        DevInspectResults dict: {"effects": {...}, "results": [...], ...}
    """
    tx_b64 = base64.b64encode(tx_kind).decode("ascii")
    logger.debug("devInspect %d bytes as %s", len(tx_kind), sender[:10])
    return await sui_rpc(
        rpc_url,
        "sui_devInspectTransactionBlock",
        [normalize_sui_address(sender), tx_b64, None, None],
        timeout=timeout,
    )


def execution_succeeded(result: dict) -> bool:
    """True when a dev-inspect result reports a success status."""
    status = (result or {}).get("effects", {}).get("status", {})
    return status.get("status") == "success"


def return_values(result: dict, index: int) -> List[Any]:
    """Return values of the command at `index`, as [bytes, type] pairs.

    Returns an empty list if the command produced nothing.
    """
    results = (result or {}).get("results") or []
    if index >= len(results):
        return []
    return results[index].get("returnValues") or []
