"""
Shared fixtures for the overlay agent tests

- AgentConfig rooted in tmp_path
- Deterministic secp256k1 identities
- In-memory wallet implementing the WalletHandle protocol
- Scripted fetch stub standing in for the overlay, relay, explorer and hook
"""

import base64
import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from overlay_agent.config import AgentConfig
from overlay_agent.context import AgentContext
from overlay_agent.ledger.merkle import build_merkle_path_from_tsc
from overlay_agent.ledger.script import p2pkh_locking_script
from overlay_agent.ledger.secp256k1 import Secp256k1Ledger
from overlay_agent.ledger.transaction import Beef, Transaction, TxInput, TxOutput
from overlay_agent.net.fetch import FetchResponse

AGENT_PRIVATE_KEY = "11" * 32
PEER_PRIVATE_KEY = "22" * 32

OVERLAY_URL = "http://overlay.test"
EXPLORER_API = "https://api.whatsonchain.com/v1/bsv/main"


# =============================================================================
# Fake wallet
# =============================================================================

class FakeWallet:
    """WalletHandle with scripted verify/accept results"""

    def __init__(self, identity_key: str = "03" + "ab" * 32, balance: int = 5000):
        self.identity_key = identity_key
        self.balance = balance
        self.verify_result: Dict[str, Any] = {"valid": True, "errors": []}
        self.accept_result: Dict[str, Any] = {"accepted": True}
        self.accept_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.verified: List[str] = []
        self.accepted: List[Dict[str, Any]] = []
        self.created: List[Dict[str, Any]] = []
        self.destroyed = 0

    async def get_identity_key(self) -> str:
        return self.identity_key

    async def get_balance(self) -> int:
        return self.balance

    async def verify_payment(self, beef: str) -> Dict[str, Any]:
        self.verified.append(beef)
        return self.verify_result

    async def accept_payment(self, beef, derivation_prefix, derivation_suffix, sender_identity_key, description):
        if self.accept_error is not None:
            raise self.accept_error
        self.accepted.append({
            "beef": beef,
            "derivationPrefix": derivation_prefix,
            "derivationSuffix": derivation_suffix,
            "senderIdentityKey": sender_identity_key,
            "description": description,
        })
        return self.accept_result

    async def create_payment(self, to: str, satoshis: int, description: str) -> Dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"to": to, "satoshis": satoshis, "description": description})
        return {
            "beef": "beef-" + to[:8],
            "txid": "cd" * 32,
            "satoshis": satoshis,
            "derivationPrefix": "prefix",
            "derivationSuffix": "suffix",
            "senderIdentityKey": self.identity_key,
        }

    async def destroy(self) -> None:
        self.destroyed += 1


class FakeWalletProvider:
    def __init__(self, wallet: FakeWallet):
        self.wallet = wallet
        self.loads = 0

    async def load(self, config) -> FakeWallet:
        self.loads += 1
        return self.wallet


# =============================================================================
# Fetch stub
# =============================================================================

Route = Union[FetchResponse, Callable[[Dict[str, Any]], FetchResponse]]


def json_response(data: Any, status: int = 200) -> FetchResponse:
    return FetchResponse(status=status, body=json.dumps(data).encode("utf-8"))


def text_response(text: str, status: int = 200) -> FetchResponse:
    return FetchResponse(status=status, body=text.encode("utf-8"))


class StubFetch:
    """Drop-in for ResilientFetch that answers from a route table"""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, url: str, route: Route) -> None:
        self.routes[(method.upper(), url)] = route

    def calls_to(self, url_part: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if url_part in c["url"]]

    async def fetch(self, url: str, method: str = "GET", headers=None, max_retries=None, timeout_ms=None,
                    **kwargs) -> FetchResponse:
        call = {"method": method.upper(), "url": url, "headers": headers or {}, **kwargs}
        self.calls.append(call)
        route = self.routes.get((method.upper(), url))
        if route is None:
            return text_response("not found", 404)
        if callable(route):
            return route(call)
        return route

    async def fetch_once(self, url: str, method: str = "GET", timeout_ms: int = 15000, **kwargs) -> FetchResponse:
        return await self.fetch(url, method=method, max_retries=0, timeout_ms=timeout_ms, **kwargs)

    async def close(self) -> None:
        pass


# =============================================================================
# Chain helpers
# =============================================================================

def make_funding_tx(ledger: Secp256k1Ledger, satoshis: int, confirmed: bool = True) -> Transaction:
    """A confirmed transaction paying ``satoshis`` to the ledger's address"""
    tx = Transaction()
    tx.add_input(TxInput(source_txid="00" * 32, source_output_index=0, unlocking_script=b"\x51"))
    tx.add_output(TxOutput(satoshis, p2pkh_locking_script(ledger.hash160())))
    if confirmed:
        tx.merkle_path = build_merkle_path_from_tsc(tx.txid(), 0, ["*"], 800000)
    return tx


def atomic_beef(tx: Transaction) -> bytes:
    return b"\x01\x01\x01\x01" + bytes.fromhex(tx.txid())[::-1] + tx.to_beef()


def submitted_transaction(call: Dict[str, Any]) -> Transaction:
    """The last transaction of a BEEF posted to /submit"""
    beef = Beef.from_binary(base64.b64decode(call["json"]["beef"]))
    return beef.txs[-1].transaction


def fund_from_explorer(stub: StubFetch, ledger: Secp256k1Ledger, satoshis: int = 1000) -> Transaction:
    funding = make_funding_tx(ledger, satoshis)
    address = ledger.address()
    stub.add("GET", f"{EXPLORER_API}/address/{address}/unspent", json_response([
        {"tx_hash": funding.txid(), "tx_pos": 0, "value": satoshis, "height": 800000},
    ]))
    stub.add("GET", f"{EXPLORER_API}/tx/{funding.txid()}/beef", text_response(funding.to_beef().hex()))
    return funding


def accept_submissions(stub: StubFetch) -> None:
    stub.add("POST", f"{OVERLAY_URL}/submit", json_response({"status": "success"}))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config(tmp_path) -> AgentConfig:
    return AgentConfig(
        overlay_url=OVERLAY_URL,
        network="mainnet",
        wallet_dir=tmp_path / "wallet",
        state_dir=tmp_path / "state",
        openclaw_config=tmp_path / "openclaw.json",
    )


@pytest.fixture
def hook_config(config) -> AgentConfig:
    """config with a delivery hook token on port 18789"""
    config.openclaw_config.write_text(json.dumps({
        "hooks": {"token": "hook-secret"},
        "gateway": {"port": 18789},
    }))
    return config


@pytest.fixture
def ledger() -> Secp256k1Ledger:
    return Secp256k1Ledger(AGENT_PRIVATE_KEY)


@pytest.fixture
def peer_ledger() -> Secp256k1Ledger:
    return Secp256k1Ledger(PEER_PRIVATE_KEY)


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def wallet_provider(wallet) -> FakeWalletProvider:
    return FakeWalletProvider(wallet)


@pytest.fixture
def stub_fetch() -> StubFetch:
    return StubFetch()


@pytest.fixture
def ctx(config, ledger, stub_fetch, wallet_provider) -> AgentContext:
    return AgentContext(config=config, ledger=ledger, fetch=stub_fetch, wallet_provider=wallet_provider)
