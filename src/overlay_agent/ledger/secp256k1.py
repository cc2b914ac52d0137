"""
secp256k1 key handling for the agent identity.

ECDSA signatures are DER encoded and normalised to low-S. Digests are signed
as-is; callers decide what they hash.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

import base58
from Crypto.Hash import RIPEMD160
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from ..errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

ADDRESS_VERSION = {
    "mainnet": 0x00,
    "testnet": 0x6F,
}


# ============================================================================
# Hash helpers
# ============================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA-256"""
    return sha256(sha256(data))


def ripemd160(data: bytes) -> bytes:
    return RIPEMD160.new(data).digest()


def hash160(data: bytes) -> bytes:
    return ripemd160(sha256(data))


# ============================================================================
# Key helpers
# ============================================================================

def load_public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    """Parse a compressed or uncompressed SEC1 public key"""
    try:
        raw = bytes.fromhex(public_key_hex)
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
    except ValueError as e:
        raise ValidationError(f"Invalid public key: {e}", {"publicKey": public_key_hex})


def compress_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def normalize_signature(der: bytes) -> bytes:
    """Re-encode a DER signature with ``s`` in the lower half of the order"""
    r, s = decode_dss_signature(der)
    if s > CURVE_ORDER // 2:
        s = CURVE_ORDER - s
    return encode_dss_signature(r, s)


def p2pkh_address(pubkey_hash: bytes, network: str = "mainnet") -> str:
    return base58.b58encode_check(bytes([ADDRESS_VERSION[network]]) + pubkey_hash).decode("ascii")


def address_to_hash160(address: str) -> bytes:
    try:
        payload = base58.b58decode_check(address)
    except ValueError as e:
        raise ValidationError(f"Invalid address: {address}") from e
    if len(payload) != 21:
        raise ValidationError(f"Invalid address length: {address}")
    return payload[1:]


# ============================================================================
# Secp256k1Ledger
# ============================================================================

class Secp256k1Ledger:
    """Default :class:`LedgerCrypto` backed by the ``cryptography`` package"""

    def __init__(self, private_key_hex: str, network: str = "mainnet"):
        try:
            secret = int(private_key_hex, 16)
        except ValueError:
            raise ValidationError("Private key must be hex")
        if not 0 < secret < CURVE_ORDER:
            raise ValidationError("Private key out of range")
        self.network = network
        self._private_key = ec.derive_private_key(secret, ec.SECP256K1())
        self._identity_key = compress_public_key(self._private_key.public_key()).hex()

    @classmethod
    def from_identity_file(cls, path: Path, network: Optional[str] = None) -> "Secp256k1Ledger":
        """Load ``wallet-identity.json`` (``{rootKeyHex, identityKey, network}``)"""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Wallet not initialized: {path} not found")
        data = json.loads(path.read_text(encoding="utf-8"))
        ledger = cls(data["rootKeyHex"], network or data.get("network", "mainnet"))
        if data.get("identityKey") and data["identityKey"] != ledger.identity_key:
            logger.warning("identityKey in wallet identity file does not match rootKeyHex")
        return ledger

    @property
    def identity_key(self) -> str:
        return self._identity_key

    def sign_digest(self, digest: bytes) -> bytes:
        der = self._private_key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
        return normalize_signature(der)

    def verify_digest(self, public_key_hex: str, digest: bytes, signature: bytes) -> bool:
        public_key = load_public_key(public_key_hex)
        try:
            public_key.verify(signature, digest, ec.ECDSA(Prehashed(hashes.SHA256())))
            return True
        except InvalidSignature:
            return False

    def hash160(self, public_key_hex: Optional[str] = None) -> bytes:
        key_hex = public_key_hex or self._identity_key
        compressed = compress_public_key(load_public_key(key_hex))
        return hash160(compressed)

    def address(self, public_key_hex: Optional[str] = None) -> str:
        return p2pkh_address(self.hash160(public_key_hex), self.network)
