"""
Configuration, context and CLI tests
"""

import json
import sys
import types

import pytest
from typer.testing import CliRunner

from conftest import AGENT_PRIVATE_KEY, FakeWallet
from overlay_agent.cli import app
from overlay_agent.config import DEFAULT_OVERLAY_URL, AgentConfig
from overlay_agent.context import AgentContext, resolve_wallet_provider, wallet_session
from overlay_agent.errors import ConfigurationError, ErrorHandler, NotFoundError
from overlay_agent.ledger.secp256k1 import Secp256k1Ledger


# =============================================================================
# AgentConfig
# =============================================================================

class TestAgentConfig:

    def test_from_env(self, tmp_path):
        config = AgentConfig.from_env({
            "OVERLAY_URL": "https://overlay.example/",
            "BSV_NETWORK": "testnet",
            "BSV_WALLET_DIR": str(tmp_path / "w"),
            "OVERLAY_STATE_DIR": str(tmp_path / "s"),
            "AGENT_NAME": "Alice",
            "OVERLAY_WALLET_PROVIDER": "mywallet:Provider",
        })

        assert config.overlay_url == "https://overlay.example"
        assert config.relay_ws_url == "wss://overlay.example"
        assert config.explorer_api_base == "https://api.whatsonchain.com/v1/bsv/test"
        assert config.wallet_identity_path == tmp_path / "w" / "wallet-identity.json"
        assert config.service_queue_path.parent == tmp_path / "s"
        assert config.agent_name == "Alice"
        assert config.wallet_provider == "mywallet:Provider"

    def test_defaults(self):
        config = AgentConfig.from_env({})
        assert config.overlay_url == DEFAULT_OVERLAY_URL
        assert config.network == "mainnet"
        assert config.hook_host == "127.0.0.1"

    def test_unsupported_network(self):
        with pytest.raises(ConfigurationError):
            AgentConfig.from_env({"BSV_NETWORK": "regtest"})

    def test_hook_settings(self, config):
        assert config.load_hook_settings() == {"token": None, "port": 18789}

        config.openclaw_config.write_text(json.dumps({"hooks": {"token": "t"}, "gateway": {"port": 9000}}))
        assert config.load_hook_settings() == {"token": "t", "port": 9000}

        config.openclaw_config.write_text("{broken")
        assert config.load_hook_settings()["token"] is None


# =============================================================================
# Wallet provider resolution
# =============================================================================

class Provider:
    def __init__(self):
        self.wallet = FakeWallet()

    async def load(self, config):
        return self.wallet


class TestWalletProvider:

    @pytest.fixture
    def provider_module(self, monkeypatch):
        module = types.ModuleType("fake_wallet_provider")
        module.Provider = Provider
        module.instance = Provider()
        module.factory = lambda: Provider()
        module.nothing = 42
        monkeypatch.setitem(sys.modules, "fake_wallet_provider", module)
        return module

    def test_class_instance_and_factory(self, provider_module):
        assert isinstance(resolve_wallet_provider("fake_wallet_provider:Provider"), Provider)
        assert resolve_wallet_provider("fake_wallet_provider:instance") is provider_module.instance
        assert isinstance(resolve_wallet_provider("fake_wallet_provider:factory"), Provider)

    @pytest.mark.parametrize("spec", ["no-colon", "fake_wallet_provider:missing", "not_a_module_xyz:thing",
                                      "fake_wallet_provider:nothing"])
    def test_bad_specs(self, provider_module, spec):
        with pytest.raises(ConfigurationError):
            resolve_wallet_provider(spec)

    def test_context_without_provider(self, config, ledger, stub_fetch):
        ctx = AgentContext(config=config, ledger=ledger, fetch=stub_fetch)
        with pytest.raises(ConfigurationError):
            ctx.wallet()

    @pytest.mark.asyncio
    async def test_session_destroys_on_error(self, config, wallet, wallet_provider):
        with pytest.raises(RuntimeError):
            async with wallet_session(wallet_provider, config):
                raise RuntimeError("boom")
        assert wallet.destroyed == 1


class TestErrorHandler:

    def test_domain_error(self):
        response = ErrorHandler.format_error_response(NotFoundError("gone", {"requestId": "r1"}))
        assert response == {"success": False, "error": "gone", "errorCode": "NOT_FOUND",
                            "details": {"requestId": "r1"}}

    def test_unexpected_error(self):
        response = ErrorHandler.format_error_response(KeyError("x"))
        assert response["errorCode"] == "INTERNAL_ERROR"


# =============================================================================
# CLI
# =============================================================================

def last_json(output: str) -> dict:
    lines = [line for line in output.splitlines() if line.startswith('{"success"')]
    return json.loads(lines[-1])


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    for name in ("OVERLAY_URL", "BSV_NETWORK", "OVERLAY_WALLET_PROVIDER", "WOC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BSV_WALLET_DIR", str(tmp_path / "wallet"))
    monkeypatch.setenv("OVERLAY_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("OPENCLAW_CONFIG", str(tmp_path / "openclaw.json"))
    return tmp_path


@pytest.fixture
def wallet_file(cli_env):
    path = cli_env / "wallet" / "wallet-identity.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"rootKeyHex": AGENT_PRIVATE_KEY, "network": "mainnet"}))
    return path


class TestCli:

    def test_setup_check(self, cli_env):
        result = CliRunner().invoke(app, ["setup-check"])

        assert result.exit_code == 0
        data = last_json(result.output)["data"]
        assert data["walletInitialized"] is False
        assert data["hooksConfigured"] is False
        assert data["stateDir"] == str(cli_env / "state")

    def test_identity_without_wallet(self, cli_env):
        result = CliRunner().invoke(app, ["identity"])

        assert result.exit_code == 1
        response = last_json(result.output)
        assert response["success"] is False
        assert response["errorCode"] == "CONFIG_ERROR"

    def test_identity(self, wallet_file):
        result = CliRunner().invoke(app, ["identity"])

        assert result.exit_code == 0
        assert last_json(result.output)["data"]["identityKey"] == Secp256k1Ledger(AGENT_PRIVATE_KEY).identity_key

    def test_baemail_setup_and_block(self, wallet_file):
        runner = CliRunner()

        setup = runner.invoke(app, ["baemail-setup", "telegram", "10"])
        assert setup.exit_code == 0
        assert last_json(setup.output)["data"]["config"]["tiers"] == {"standard": 10, "priority": 20, "urgent": 50}

        sender = "02" + "ab" * 32
        assert runner.invoke(app, ["baemail-block", sender]).exit_code == 0
        again = runner.invoke(app, ["baemail-block", sender])
        assert again.exit_code == 1
        assert last_json(again.output)["errorCode"] == "STATE_ERROR"

    def test_invalid_tiers(self, wallet_file):
        result = CliRunner().invoke(app, ["baemail-setup", "telegram", "10", "5"])
        assert result.exit_code == 1
        assert last_json(result.output)["errorCode"] == "VALIDATION_ERROR"

    def test_empty_queue(self, wallet_file):
        result = CliRunner().invoke(app, ["queue"])
        assert last_json(result.output)["data"] == {"entries": [], "count": 0}
