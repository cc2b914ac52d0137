"""Signed relay messaging: codec, transport and protocol router."""

from .codec import SignedMessageCodec, VerifyResult
from .relay import RelayClient, RelaySubscriber, ShutdownToken
from .router import MessageRouter, MessageType, RouteAction, RouteResult

__all__ = [
    "SignedMessageCodec",
    "VerifyResult",
    "RelayClient",
    "RelaySubscriber",
    "ShutdownToken",
    "MessageRouter",
    "MessageType",
    "RouteAction",
    "RouteResult",
]
