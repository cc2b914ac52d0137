"""
Agent runner
エージェントの常駐処理 (connect) とワンショット処理 (poll)

Wires the router, payment gate, service queue and baemail service from one
AgentContext and drives them from either the WebSocket subscription or the
HTTP inbox.
"""

import asyncio
import logging
import signal
import time
from typing import Any, Callable, Dict, List, Optional

from .context import AgentContext
from .errors import NetworkError
from .messaging.codec import SignedMessageCodec
from .messaging.relay import RelayClient, RelaySubscriber, ShutdownToken, subscribe_url
from .messaging.router import MessageRouter, RouteAction, RouteResult
from .services.baemail import DeliveryHook, TieredDeliveryService
from .services.payment_gate import PaymentGate
from .services.queue import ServiceQueue

logger = logging.getLogger(__name__)

ENVELOPE_MESSAGE = "message"
ENVELOPE_SERVICE_ANNOUNCED = "service-announced"


def _now_ms() -> int:
    return int(time.time() * 1000)


class AgentRunner:
    """Routes inbound relay traffic for one agent identity"""

    def __init__(
        self,
        ctx: AgentContext,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Args:
            ctx: Initialized collaborators
            on_event: Called with every routing result and announcement
                (the CLI prints them as JSON lines)
        """
        self.ctx = ctx
        self.on_event = on_event or (lambda event: None)
        self.codec = SignedMessageCodec(ctx.ledger)
        self.relay = RelayClient(ctx.config.overlay_url, ctx.identity_key, self.codec, ctx.fetch)
        self.queue = ServiceQueue(ctx.config.service_queue_path)
        self.payment_gate = PaymentGate(ctx.wallet_provider, ctx.config)
        self.router = MessageRouter(
            identity_key=ctx.identity_key,
            codec=self.codec,
            relay=self.relay,
            payment_gate=self.payment_gate,
            queue=self.queue,
            services_provider=ctx.state.load_services,
        )
        self.baemail = TieredDeliveryService(
            config=ctx.config,
            router=self.router,
            payment_gate=self.payment_gate,
            hook=DeliveryHook(ctx.config, ctx.fetch),
            ledger=ctx.ledger,
            explorer=ctx.explorer,
        )
        self.baemail.attach()
        self.shutdown = ShutdownToken()

    # ------------------------------------------------------------------
    # poll
    # ------------------------------------------------------------------

    async def poll(self, since: Optional[str] = None) -> Dict[str, Any]:
        """Fetch the inbox, route every message in order, then batch-ack"""
        inbox = await self.relay.fetch_inbox(since)
        results: List[RouteResult] = []
        for msg in inbox["messages"]:
            try:
                result = await self.router.process_message(msg)
            except Exception as e:
                # left un-acked so the relay redelivers it; the rest of the batch still acks
                logger.error(f"Error processing message {msg.get('id')}: {e}", exc_info=True)
                result = RouteResult(msg.get("id"), msg.get("type"), RouteAction.UNHANDLED, msg.get("from"), False,
                                     {"error": str(e)})
            results.append(result)
            self.on_event(result.to_dict())

        ack_ids = [r.id for r in results if r.ack and r.id]
        acked = await self.relay.ack(ack_ids) if ack_ids else 0
        logger.info(f"Poll processed {len(results)} message(s), acked {acked}")
        return {
            "processed": len(results),
            "acked": acked,
            "results": [r.to_dict() for r in results],
        }

    # ------------------------------------------------------------------
    # connect
    # ------------------------------------------------------------------

    async def handle_envelope(self, envelope: Dict[str, Any]) -> None:
        """One WebSocket frame, processed to completion"""
        kind = envelope.get("type")
        if kind == ENVELOPE_MESSAGE:
            msg = envelope.get("message") or {}
            result = await self.router.process_message(msg)
            record = {**result.to_dict(), "_ts": _now_ms()}
            self.ctx.state.append_notification(record)
            self.on_event(record)
            if result.ack and result.id:
                try:
                    await self.relay.ack([result.id])
                except NetworkError as e:
                    logger.warning(f"Ack failed for {result.id}: {e.message}")
        elif kind == ENVELOPE_SERVICE_ANNOUNCED:
            service = envelope.get("service") or {}
            announcement = {
                "event": "service-announced",
                "serviceId": service.get("serviceId"),
                "name": service.get("name"),
                "description": service.get("description"),
                "priceSats": service.get("pricingSats"),
                "provider": service.get("identityKey"),
                "txid": envelope.get("txid"),
                "_ts": _now_ms(),
            }
            logger.info(f"Service announced: {announcement['serviceId']} by {str(announcement['provider'])[:16]}...")
            self.ctx.state.append_notification(announcement)
            self.on_event(announcement)
        else:
            logger.debug(f"Ignoring relay envelope of type {kind!r}")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown.request)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    async def connect(self, subscriber: Optional[RelaySubscriber] = None) -> None:
        """Hold the relay subscription open until SIGINT/SIGTERM"""
        url = subscribe_url(self.ctx.config.relay_ws_url, self.ctx.identity_key)
        subscriber = subscriber or RelaySubscriber(url, self.handle_envelope, self.shutdown)
        self.install_signal_handlers()
        logger.info(f"Listening for relay messages as {self.ctx.identity_key[:16]}...")
        await subscriber.run()
