"""
overlay-agent
BSV overlay network agent: identity and service registration, signed relay
messaging and payment-gated services.
"""

__version__ = "0.4.0"

from .config import AgentConfig
from .context import AgentContext
from .errors import OverlayAgentError

__all__ = [
    "__version__",
    "AgentConfig",
    "AgentContext",
    "OverlayAgentError",
]
