"""
Collaborator interfaces.

The core never locates the ledger key material or the wallet on its own; the
host process constructs implementations of these protocols once and passes
them in through :class:`overlay_agent.context.AgentContext`.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable


@runtime_checkable
class LedgerCrypto(Protocol):
    """Signing key and address derivation for the agent's identity"""

    @property
    def identity_key(self) -> str:
        """Compressed public key, hex"""
        ...

    def sign_digest(self, digest: bytes) -> bytes:
        """ECDSA-sign a 32-byte digest, returning low-S DER bytes"""
        ...

    def verify_digest(self, public_key_hex: str, digest: bytes, signature: bytes) -> bool:
        ...

    def hash160(self, public_key_hex: Optional[str] = None) -> bytes:
        """RIPEMD160(SHA256(pubkey)) of the given key (own key by default)"""
        ...

    def address(self, public_key_hex: Optional[str] = None) -> str:
        """Base58Check P2PKH address of the given key (own key by default)"""
        ...


@runtime_checkable
class WalletHandle(Protocol):
    """An open wallet session. Released with :meth:`destroy`."""

    async def get_identity_key(self) -> str:
        ...

    async def get_balance(self) -> int:
        ...

    async def verify_payment(self, beef: str) -> Dict[str, Any]:
        """Returns ``{"valid": bool, "errors": [str]}``"""
        ...

    async def accept_payment(self, beef: str, derivation_prefix: str, derivation_suffix: str,
                             sender_identity_key: str, description: str) -> Dict[str, Any]:
        """Returns ``{"accepted": bool, ...}``"""
        ...

    async def create_payment(self, to: str, satoshis: int, description: str) -> Dict[str, Any]:
        """Returns ``{beef, txid, satoshis, derivationPrefix, derivationSuffix, senderIdentityKey}``"""
        ...

    async def destroy(self) -> None:
        ...


@runtime_checkable
class WalletProvider(Protocol):
    """Factory that opens a wallet session for the configured storage"""

    async def load(self, config: Any) -> WalletHandle:
        ...
