"""
Message Router
リレーメッセージのプロトコル状態機械

Dispatch by message type:
- ping             -> signed pong reply            (replied-pong, ack)
- service-request  -> signature required, then payment gate, then a
                      registered service handler or the service queue
                                                       (rejected | queued-for-agent, ack)
- pong             -> received                     (ack)
- service-response -> received, surfaced as incoming result (ack)
- anything else    -> unhandled                    (no ack)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import DEFAULT_SERVICE_PRICE
from ..errors import PaymentError, SignatureError
from ..services.payment_gate import PaymentGate
from ..services.queue import ServiceQueue, ServiceQueueEntry
from .codec import SignedMessageCodec
from .relay import RelayClient

logger = logging.getLogger(__name__)


class MessageType:
    PING = "ping"
    PONG = "pong"
    SERVICE_REQUEST = "service-request"
    SERVICE_RESPONSE = "service-response"


class RouteAction(Enum):
    """ルーティング結果のアクション"""
    REPLIED_PONG = "replied-pong"
    REJECTED = "rejected"
    QUEUED_FOR_AGENT = "queued-for-agent"
    RECEIVED = "received"
    UNHANDLED = "unhandled"
    FULFILLED = "fulfilled"
    DELIVERY_FAILED = "delivery_failed"


@dataclass
class RouteResult:
    """ルーティング結果"""
    id: str
    type: str
    action: RouteAction
    sender: str
    ack: bool
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "action": self.action.value,
            "from": self.sender,
            "ack": self.ack,
            **self.extra,
        }


ServiceHandler = Callable[[Dict[str, Any]], Awaitable[RouteResult]]


def payload_fields(msg: Dict[str, Any]) -> Dict[str, Any]:
    """The message payload when it is an object, else no fields.

    Payloads are arbitrary JSON; strings, lists and numbers carry no
    named fields.
    """
    payload = msg.get("payload")
    return payload if isinstance(payload, dict) else {}


class MessageRouter:
    """メッセージルーター

    Processes one inbound relay message to completion. Callers decide
    whether to ack based on ``RouteResult.ack``.
    """

    def __init__(
        self,
        identity_key: str,
        codec: SignedMessageCodec,
        relay: RelayClient,
        payment_gate: PaymentGate,
        queue: ServiceQueue,
        services_provider: Optional[Callable[[], List[Dict[str, Any]]]] = None,
    ):
        """MessageRouterを初期化

        Args:
            identity_key: This agent's identity key
            codec: Signature codec
            relay: Relay client used for replies
            payment_gate: Payment verification/settlement
            queue: Queue for requests handed to the agent
            services_provider: Returns the advertised services (for price floors)
        """
        self.identity_key = identity_key
        self.codec = codec
        self.relay = relay
        self.payment_gate = payment_gate
        self.queue = queue
        self.services_provider = services_provider or (lambda: [])
        self._service_handlers: Dict[str, ServiceHandler] = {}

    def register_service(self, service_id: str, handler: ServiceHandler) -> None:
        """Route service-requests for ``service_id`` to a dedicated handler"""
        self._service_handlers[service_id] = handler
        logger.debug(f"Registered service handler: {service_id}")

    async def process_message(self, msg: Dict[str, Any]) -> RouteResult:
        msg_id = msg.get("id")
        msg_type = msg.get("type")
        sender = msg.get("from")
        payload = payload_fields(msg)

        signature_valid = None
        if msg.get("signature"):
            check = self.codec.verify(sender, msg.get("to"), msg_type, msg.get("payload"), msg.get("signature"))
            signature_valid = check.valid
        else:
            check = None

        if msg_type == MessageType.SERVICE_REQUEST and signature_valid is not True:
            reason = check.reason if check and check.reason else "missing signature"
            logger.warning(f"Rejected service-request {msg_id} from {str(sender)[:16]}...: {reason}")
            return RouteResult(msg_id, msg_type, RouteAction.REJECTED, sender, True,
                               {"reason": "invalid-signature", "signatureValid": signature_valid,
                                "errorCode": SignatureError.code})

        if msg_type == MessageType.PING:
            return await self._reply_pong(msg_id, sender, payload)

        if msg_type == MessageType.SERVICE_REQUEST:
            service_id = payload.get("serviceId")
            handler = self._service_handlers.get(service_id)
            if handler is not None:
                return await handler(msg)
            return await self.queue_for_agent(msg, service_id)

        if msg_type == MessageType.PONG:
            return RouteResult(msg_id, msg_type, RouteAction.RECEIVED, sender, True, {
                "text": payload.get("text"),
                "inReplyTo": payload.get("inReplyTo"),
            })

        if msg_type == MessageType.SERVICE_RESPONSE:
            return RouteResult(msg_id, msg_type, RouteAction.RECEIVED, sender, True, {
                "serviceId": payload.get("serviceId"),
                "status": payload.get("status"),
                "result": payload.get("result"),
                "requestId": payload.get("requestId"),
                "direction": "incoming-response",
            })

        logger.info(f"Unhandled message type {msg_type!r} ({msg_id})")
        return RouteResult(msg_id, msg_type, RouteAction.UNHANDLED, sender, False, {
            "payload": msg.get("payload"),
            "signatureValid": signature_valid,
        })

    async def _reply_pong(self, msg_id: str, sender: str, payload: Dict[str, Any]) -> RouteResult:
        pong = {
            "text": "pong",
            "inReplyTo": msg_id,
            "originalText": payload.get("text"),
        }
        await self.relay.send(sender, MessageType.PONG, pong)
        return RouteResult(msg_id, MessageType.PING, RouteAction.REPLIED_PONG, sender, True)

    def price_for(self, service_id: Optional[str]) -> int:
        for service in self.services_provider():
            if service.get("serviceId") == service_id:
                return service.get("priceSats") or DEFAULT_SERVICE_PRICE
        return DEFAULT_SERVICE_PRICE

    async def send_service_response(self, to: str, payload: Dict[str, Any]) -> Optional[str]:
        return await self.relay.send(to, MessageType.SERVICE_RESPONSE, payload)

    async def queue_for_agent(self, msg: Dict[str, Any], service_id: Optional[str]) -> RouteResult:
        """Take payment, then queue the request for the agent to fulfil"""
        msg_id = msg.get("id")
        sender = msg.get("from")
        payload = payload_fields(msg)
        min_price = self.price_for(service_id)

        payment = await self.payment_gate.verify_and_accept(payload.get("payment"), min_price, sender, service_id)
        if not payment.accepted:
            await self.send_service_response(sender, {
                "requestId": msg_id,
                "serviceId": service_id,
                "status": "rejected",
                "reason": f"Payment rejected: {payment.error}",
            })
            return RouteResult(msg_id, MessageType.SERVICE_REQUEST, RouteAction.REJECTED, sender, True, {
                "serviceId": service_id,
                "reason": payment.error or "payment rejected",
                "errorCode": PaymentError.code,
            })

        self.queue.enqueue(ServiceQueueEntry(
            request_id=msg_id,
            service_id=service_id,
            sender=sender,
            identity_key=self.identity_key,
            input=payload.get("input") if payload.get("input") is not None else msg.get("payload"),
            payment_txid=payment.txid,
            satoshis_received=payment.satoshis,
            wallet_accepted=payment.wallet_accepted,
        ))
        return RouteResult(msg_id, MessageType.SERVICE_REQUEST, RouteAction.QUEUED_FOR_AGENT, sender, True, {
            "serviceId": service_id,
            "paymentAccepted": True,
            "paymentTxid": payment.txid,
            "satoshisReceived": payment.satoshis,
        })
