"""
Relay transport.

RelayClient talks to the relay's HTTP API (send / inbox / ack).
RelaySubscriber holds the WebSocket subscription open with reconnect and
exponential backoff until a :class:`ShutdownToken` is triggered.

Inbound envelopes are handed to the handler one at a time; the next frame is
not read until the handler returns.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import WebSocketException

from ..errors import NetworkError
from ..net.fetch import ResilientFetch
from .codec import SignedMessageCodec

logger = logging.getLogger(__name__)

INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0


# ============================================================================
# HTTP relay client
# ============================================================================

class RelayClient:
    """Signed send, inbox fetch and ack against ``{overlay}/relay``"""

    def __init__(self, overlay_url: str, identity_key: str, codec: SignedMessageCodec, fetch: ResilientFetch):
        self.overlay_url = overlay_url.rstrip("/")
        self.identity_key = identity_key
        self.codec = codec
        self.fetch = fetch

    async def send_envelope(self, envelope: Dict[str, Any]) -> Optional[str]:
        """POST a pre-built ``{from,to,type,payload,signature}`` envelope.

        Returns:
            Relay-assigned message id
        """
        resp = await self.fetch.fetch_once(f"{self.overlay_url}/relay/send", method="POST", json=envelope)
        if not resp.ok:
            raise NetworkError(f"Relay send failed ({resp.status}): {resp.text()}",
                               {"to": envelope.get("to"), "type": envelope.get("type")})
        data = resp.json() if resp.body else {}
        message_id = data.get("id")
        logger.info(f"Sent {envelope.get('type')} to {str(envelope.get('to'))[:16]}... id={message_id}")
        return message_id

    async def send(self, to: str, msg_type: str, payload: Any) -> Optional[str]:
        """Sign and send one message"""
        envelope = self.codec.envelope(self.identity_key, to, msg_type, payload)
        return await self.send_envelope(envelope)

    async def fetch_inbox(self, since: Optional[str] = None) -> Dict[str, Any]:
        """Pending messages, each annotated with ``signatureValid``.

        ``signatureValid`` is None for unsigned messages.
        """
        params = {"identity": self.identity_key}
        if since:
            params["since"] = str(since)
        resp = await self.fetch.fetch_once(f"{self.overlay_url}/relay/inbox", params=params)
        if not resp.ok:
            raise NetworkError(f"Relay inbox failed ({resp.status}): {resp.text()}")
        result = resp.json()
        messages = []
        for msg in result.get("messages", []):
            if not isinstance(msg, dict):
                logger.warning(f"Skipping malformed inbox entry: {msg!r:.80}")
                continue
            signature_valid = None
            if msg.get("signature"):
                signature_valid = self.codec.verify(
                    msg.get("from", ""), msg.get("to", ""), msg.get("type", ""),
                    msg.get("payload"), msg.get("signature"),
                ).valid
            messages.append({**msg, "signatureValid": signature_valid})
        return {"messages": messages, "count": len(messages)}

    async def ack(self, message_ids: List[str]) -> int:
        """Acknowledge processed messages; returns the relay's acked count"""
        if not message_ids:
            return 0
        resp = await self.fetch.fetch_once(
            f"{self.overlay_url}/relay/ack",
            method="POST",
            json={"identity": self.identity_key, "messageIds": list(message_ids)},
        )
        if not resp.ok:
            raise NetworkError(f"Relay ack failed ({resp.status}): {resp.text()}", {"messageIds": message_ids})
        data = resp.json() if resp.body else {}
        return int(data.get("acked", 0))


def subscribe_url(ws_base: str, identity_key: str) -> str:
    return f"{ws_base.rstrip('/')}/relay/subscribe?identity={quote(identity_key)}"


# ============================================================================
# Shutdown token
# ============================================================================

class ShutdownToken:
    """Explicit cancellation token for long-running loops"""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self) -> None:
        if not self._event.is_set():
            logger.info("Shutdown requested")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> bool:
        """Sleep unless shutdown comes first. Returns True if shutdown fired."""
        sleeper = asyncio.ensure_future(sleep(seconds))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return self.requested


# ============================================================================
# WebSocket subscriber
# ============================================================================

EnvelopeHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class RelaySubscriber:
    """Keeps ``/relay/subscribe`` open until shutdown.

    Reconnect delay starts at 1s, doubles after every close or failed
    connect, caps at 30s, and resets to 1s after each successful open.
    """

    def __init__(
        self,
        url: str,
        handler: EnvelopeHandler,
        shutdown: ShutdownToken,
        connect: Callable[[str], Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        initial_delay: float = INITIAL_RECONNECT_DELAY,
        max_delay: float = MAX_RECONNECT_DELAY,
    ):
        self.url = url
        self.handler = handler
        self.shutdown = shutdown
        self._connect = connect
        self._sleep = sleep
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.reconnect_delay = initial_delay
        self.connections = 0
        self._ws = None

    async def run(self) -> None:
        """Block until the shutdown token fires"""
        closer = asyncio.ensure_future(self._close_on_shutdown())
        try:
            while not self.shutdown.requested:
                await self._connect_and_drain()
                if self.shutdown.requested:
                    break
                delay = self.reconnect_delay
                logger.warning(f"Relay disconnected, reconnecting in {delay:g}s")
                if await self.shutdown.sleep(delay, self._sleep):
                    break
                self.reconnect_delay = min(self.reconnect_delay * 2, self.max_delay)
        finally:
            closer.cancel()
            await self._close_socket()
        logger.info("Relay subscriber stopped")

    async def _connect_and_drain(self) -> None:
        try:
            ws = await self._connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(f"Relay connect failed: {e}")
            return

        self._ws = ws
        self.connections += 1
        self.reconnect_delay = self.initial_delay
        logger.info(f"Connected to relay {self.url}")
        try:
            async for raw in ws:
                if self.shutdown.requested:
                    break
                await self._dispatch(raw)
        except WebSocketException as e:
            logger.warning(f"Relay connection closed: {e}")
        finally:
            await self._close_socket()

    async def _dispatch(self, raw: Any) -> None:
        try:
            envelope = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning(f"Invalid JSON from relay: {e}")
            return
        try:
            await self.handler(envelope)
        except Exception as e:
            logger.error(f"Error processing relay envelope: {e}", exc_info=True)

    async def _close_on_shutdown(self) -> None:
        await self.shutdown.wait()
        await self._close_socket()

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
