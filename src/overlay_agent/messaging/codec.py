"""
Signed relay message codec.

The signing preimage is ``to + type + json(payload)`` where the JSON is the
compact, insertion-ordered serialization every agent produces for the same
payload object. The signature is ECDSA over ``sha256(sha256(preimage))``,
DER hex encoded.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..ledger.interfaces import LedgerCrypto
from ..ledger.secp256k1 import hash256

logger = logging.getLogger(__name__)


@dataclass
class VerifyResult:
    valid: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"valid": self.valid}
        if self.reason is not None:
            data["reason"] = self.reason
        return data


def serialize_payload(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def signing_preimage(to: str, msg_type: str, payload: Any) -> bytes:
    return (to + msg_type + serialize_payload(payload)).encode("utf-8")


def message_digest(to: str, msg_type: str, payload: Any) -> bytes:
    return hash256(signing_preimage(to, msg_type, payload))


class SignedMessageCodec:
    """Signs outgoing and verifies incoming relay messages"""

    def __init__(self, ledger: LedgerCrypto):
        self.ledger = ledger

    def sign(self, to: str, msg_type: str, payload: Any) -> str:
        """DER hex signature over the message preimage"""
        return self.ledger.sign_digest(message_digest(to, msg_type, payload)).hex()

    def verify(self, from_key: str, to: str, msg_type: str, payload: Any,
               signature_hex: Optional[str]) -> VerifyResult:
        """Check a signature; never raises.

        Missing signatures are invalid with reason ``"no signature"``;
        malformed hex, DER or keys are invalid with the underlying error as
        the reason.
        """
        if not signature_hex:
            return VerifyResult(False, "no signature")
        try:
            signature = bytes.fromhex(signature_hex)
            valid = self.ledger.verify_digest(from_key, message_digest(to, msg_type, payload), signature)
            return VerifyResult(valid)
        except Exception as e:
            logger.debug(f"Signature check from {from_key[:16]}... failed: {e}")
            return VerifyResult(False, str(e))

    def envelope(self, from_key: str, to: str, msg_type: str, payload: Any) -> Dict[str, Any]:
        """``{from, to, type, payload, signature}`` ready for ``/relay/send``"""
        return {
            "from": from_key,
            "to": to,
            "type": msg_type,
            "payload": payload,
            "signature": self.sign(to, msg_type, payload),
        }
