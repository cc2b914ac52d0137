"""
Configuration for the overlay agent.

Values come from environment variables; a ``.env`` in the overlay state
directory is loaded first without overriding anything already set.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# ============================================================================
# Protocol constants
# ============================================================================

PROTOCOL_ID = "clawdbot-overlay-v1"
PROTOCOL_TAG = "clawdbot"

DEFAULT_OVERLAY_URL = "http://162.243.168.235:8080"
DEFAULT_HOOK_PORT = 18789
DEFAULT_SERVICE_PRICE = 5


class Topics:
    """Topic managers for overlay submissions"""
    IDENTITY = "tm_clawdbot_identity"
    SERVICES = "tm_clawdbot_services"


class LookupServices:
    """Lookup services for overlay queries"""
    AGENTS = "ls_clawdbot_agents"
    SERVICES = "ls_clawdbot_services"


def _default_home() -> Path:
    return Path.home() / ".clawdbot"


@dataclass
class AgentConfig:
    """Runtime configuration for one agent identity"""
    overlay_url: str = DEFAULT_OVERLAY_URL
    network: str = "mainnet"
    wallet_dir: Path = field(default_factory=lambda: _default_home() / "bsv-wallet")
    state_dir: Path = field(default_factory=lambda: _default_home() / "bsv-overlay")
    woc_api_key: str = ""
    agent_name: Optional[str] = None
    agent_description: Optional[str] = None
    wallet_provider: Optional[str] = None
    hook_host: str = "127.0.0.1"
    openclaw_config: Path = field(default_factory=lambda: Path.home() / ".openclaw" / "openclaw.json")

    def __post_init__(self):
        self.overlay_url = self.overlay_url.rstrip("/")
        self.wallet_dir = Path(self.wallet_dir).expanduser()
        self.state_dir = Path(self.state_dir).expanduser()
        self.openclaw_config = Path(self.openclaw_config).expanduser()
        if self.network not in ("mainnet", "testnet"):
            raise ConfigurationError(f"Unsupported network: {self.network}", {"network": self.network})

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "AgentConfig":
        """Build configuration from environment variables.

        Args:
            env: Mapping to read from (defaults to ``os.environ``)

        Returns:
            AgentConfig
        """
        if env is None:
            state_dir = Path(os.getenv("OVERLAY_STATE_DIR", str(_default_home() / "bsv-overlay"))).expanduser()
            load_state_dotenv(state_dir)
            env = dict(os.environ)

        kwargs: Dict[str, Any] = {
            "overlay_url": env.get("OVERLAY_URL") or DEFAULT_OVERLAY_URL,
            "network": env.get("BSV_NETWORK") or "mainnet",
            "woc_api_key": env.get("WOC_API_KEY", ""),
            "agent_name": env.get("AGENT_NAME"),
            "agent_description": env.get("AGENT_DESCRIPTION"),
            "wallet_provider": env.get("OVERLAY_WALLET_PROVIDER"),
            "hook_host": env.get("CLAWDBOT_HOST") or env.get("OPENCLAW_HOST") or "127.0.0.1",
        }
        if env.get("BSV_WALLET_DIR"):
            kwargs["wallet_dir"] = Path(env["BSV_WALLET_DIR"])
        if env.get("OVERLAY_STATE_DIR"):
            kwargs["state_dir"] = Path(env["OVERLAY_STATE_DIR"])
        if env.get("OPENCLAW_CONFIG"):
            kwargs["openclaw_config"] = Path(env["OPENCLAW_CONFIG"])
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def wallet_identity_path(self) -> Path:
        return self.wallet_dir / "wallet-identity.json"

    @property
    def registration_path(self) -> Path:
        return self.state_dir / "registration.json"

    @property
    def services_path(self) -> Path:
        return self.state_dir / "services.json"

    @property
    def latest_change_path(self) -> Path:
        return self.state_dir / "latest-change.json"

    @property
    def service_queue_path(self) -> Path:
        return self.state_dir / "service-queue.jsonl"

    @property
    def notifications_path(self) -> Path:
        return self.state_dir / "notifications.jsonl"

    @property
    def baemail_config_path(self) -> Path:
        return self.state_dir / "baemail-config.json"

    @property
    def baemail_log_path(self) -> Path:
        return self.state_dir / "baemail-log.jsonl"

    # ------------------------------------------------------------------
    # Network-dependent URLs
    # ------------------------------------------------------------------

    @property
    def explorer_api_base(self) -> str:
        net = "main" if self.network == "mainnet" else "test"
        return f"https://api.whatsonchain.com/v1/bsv/{net}"

    @property
    def explorer_base(self) -> str:
        if self.network == "mainnet":
            return "https://whatsonchain.com"
        return "https://test.whatsonchain.com"

    def explorer_tx_url(self, txid: str) -> str:
        return f"{self.explorer_base}/tx/{txid}"

    @property
    def relay_ws_url(self) -> str:
        """Overlay URL with the scheme switched to ws/wss"""
        if self.overlay_url.startswith("https://"):
            return "wss://" + self.overlay_url[len("https://"):]
        if self.overlay_url.startswith("http://"):
            return "ws://" + self.overlay_url[len("http://"):]
        return self.overlay_url

    # ------------------------------------------------------------------
    # Delivery hook settings
    # ------------------------------------------------------------------

    def load_hook_settings(self) -> Dict[str, Any]:
        """Read the delivery hook token and gateway port.

        Returns:
            ``{"token": str | None, "port": int}``; an unreadable config file
            yields no token.
        """
        settings: Dict[str, Any] = {"token": None, "port": DEFAULT_HOOK_PORT}
        if not self.openclaw_config.exists():
            return settings
        try:
            data = json.loads(self.openclaw_config.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable hook config {self.openclaw_config}: {e}")
            return settings
        settings["token"] = (data.get("hooks") or {}).get("token")
        settings["port"] = (data.get("gateway") or {}).get("port") or DEFAULT_HOOK_PORT
        return settings


def load_state_dotenv(state_dir: Path) -> bool:
    """Load ``<state_dir>/.env`` without overriding existing variables."""
    env_path = Path(state_dir) / ".env"
    if env_path.exists():
        logger.debug(f"Loading environment from {env_path}")
        return load_dotenv(env_path, override=False)
    return False
