"""
Locking scripts used by the agent: OP_RETURN data carriers and P2PKH.
"""

import json
import logging
from typing import Any, List, Optional

from ..config import PROTOCOL_TAG
from ..errors import ValidationError

logger = logging.getLogger(__name__)

OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_RETURN = 0x6A
OP_DUP = 0x76
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC

MAX_PUSH_SIZE = 0xFFFF


def push_data(data: bytes) -> bytes:
    """Length-prefix ``data`` with the smallest push opcode.

    Pushes beyond 65535 bytes are rejected; OP_PUSHDATA4 is not emitted.
    """
    length = len(data)
    if length <= 75:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= MAX_PUSH_SIZE:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    raise ValidationError("Data too large for OP_RETURN", {"size": length, "max": MAX_PUSH_SIZE})


def canonical_payload_bytes(payload: Any) -> bytes:
    """Compact JSON in insertion order, UTF-8"""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_op_return_script(payload: Any, tag: str = PROTOCOL_TAG) -> bytes:
    """OP_RETURN <tag> <json payload>"""
    return bytes([OP_RETURN]) + push_data(tag.encode("utf-8")) + push_data(canonical_payload_bytes(payload))


def read_pushes(script: bytes, offset: int = 0) -> List[bytes]:
    """Read consecutive push operations starting at ``offset``.

    Stops at the first non-push opcode or truncated push.
    """
    pushes = []
    while offset < len(script):
        op = script[offset]
        offset += 1
        if op <= 75:
            length = op
        elif op == OP_PUSHDATA1:
            if offset + 1 > len(script):
                break
            length = script[offset]
            offset += 1
        elif op == OP_PUSHDATA2:
            if offset + 2 > len(script):
                break
            length = int.from_bytes(script[offset:offset + 2], "little")
            offset += 2
        else:
            break
        if offset + length > len(script):
            break
        pushes.append(script[offset:offset + length])
        offset += length
    return pushes


def parse_op_return_payload(script: bytes) -> Optional[Any]:
    """Decode the JSON payload of an OP_RETURN <tag> <json> script.

    Returns None for anything that is not such a script.
    """
    if not script:
        return None
    start = 1
    if script[0] == OP_FALSE and len(script) > 1 and script[1] == OP_RETURN:
        start = 2
    elif script[0] != OP_RETURN:
        return None
    pushes = read_pushes(script, start)
    if len(pushes) < 2:
        return None
    try:
        return json.loads(pushes[1].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug(f"OP_RETURN payload is not JSON: {e}")
        return None


def p2pkh_locking_script(pubkey_hash: bytes) -> bytes:
    if len(pubkey_hash) != 20:
        raise ValidationError("P2PKH requires a 20-byte hash160")
    return bytes([OP_DUP, OP_HASH160, 20]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2pkh_unlocking_script(signature_der: bytes, sighash_type: int, public_key: bytes) -> bytes:
    return push_data(signature_der + bytes([sighash_type])) + push_data(public_key)
