"""
Explicit collaborator wiring.

The host builds one :class:`AgentContext` and hands it to every component;
nothing in the core discovers the ledger or the wallet on its own.
"""

import importlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncContextManager, AsyncIterator, Optional

from .config import AgentConfig
from .errors import ConfigurationError
from .ledger.interfaces import LedgerCrypto, WalletHandle, WalletProvider
from .ledger.secp256k1 import Secp256k1Ledger
from .net.explorer import ExplorerClient
from .net.fetch import ResilientFetch
from .storage.state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """Initialized collaborator handles for one agent identity"""
    config: AgentConfig
    ledger: LedgerCrypto
    fetch: ResilientFetch
    wallet_provider: Optional[WalletProvider] = None
    state: StateStore = field(default=None)
    explorer: ExplorerClient = field(default=None)

    def __post_init__(self):
        if self.state is None:
            self.state = StateStore(self.config)
        if self.explorer is None:
            self.explorer = ExplorerClient(self.config, self.fetch)

    @property
    def identity_key(self) -> str:
        return self.ledger.identity_key

    @classmethod
    def from_config(cls, config: AgentConfig, fetch: Optional[ResilientFetch] = None,
                    wallet_provider: Optional[WalletProvider] = None) -> "AgentContext":
        """Build a context from the wallet identity file and configured provider"""
        ledger = Secp256k1Ledger.from_identity_file(config.wallet_identity_path, config.network)
        if wallet_provider is None and config.wallet_provider:
            wallet_provider = resolve_wallet_provider(config.wallet_provider)
        return cls(
            config=config,
            ledger=ledger,
            fetch=fetch or ResilientFetch(),
            wallet_provider=wallet_provider,
        )

    async def close(self) -> None:
        await self.fetch.close()

    def wallet(self) -> AsyncContextManager[WalletHandle]:
        """``async with ctx.wallet() as handle:`` scoped wallet access"""
        if self.wallet_provider is None:
            raise ConfigurationError("No wallet provider configured (set OVERLAY_WALLET_PROVIDER)")
        return wallet_session(self.wallet_provider, self.config)


def resolve_wallet_provider(spec: str) -> WalletProvider:
    """Import a provider from ``"package.module:attribute"``.

    A class or zero-argument factory is called; anything else is used as-is.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Wallet provider must look like 'module:attr', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load wallet provider {spec!r}: {e}")
    if isinstance(target, type):
        return target()
    if hasattr(target, "load"):
        return target
    if callable(target):
        return target()
    raise ConfigurationError(f"Wallet provider {spec!r} has no load()")


@asynccontextmanager
async def wallet_session(provider: WalletProvider, config: AgentConfig) -> AsyncIterator[WalletHandle]:
    """Acquire a wallet handle for one operation and always release it"""
    handle = await provider.load(config)
    try:
        yield handle
    finally:
        await handle.destroy()
