"""
Outgoing service requests and responses to queued requests.
"""

import logging
import re
from typing import Any, Dict, Optional

from ..context import AgentContext
from ..errors import ValidationError
from ..messaging.relay import RelayClient
from ..messaging.router import MessageType
from ..storage.state import utc_now_iso
from .queue import ServiceQueue

logger = logging.getLogger(__name__)

IDENTITY_KEY_PATTERN = re.compile(r"^0[23][0-9a-fA-F]{64}$")
DEFAULT_REQUEST_SATS = 5


def validate_identity_key(key: str) -> str:
    if not key or not IDENTITY_KEY_PATTERN.match(key):
        raise ValidationError("Target must be a compressed public key (66 hex chars, 02/03 prefix)",
                              {"identityKey": key})
    return key


async def request_service(
    ctx: AgentContext,
    relay: RelayClient,
    target_key: str,
    service_id: str,
    sats: int = DEFAULT_REQUEST_SATS,
    input_data: Any = None,
) -> Dict[str, Any]:
    """Send a signed service-request, paying ``sats`` through the wallet.

    A payment that cannot be created is sent as ``{"error": ...}`` so the
    provider can reject it explicitly.
    """
    validate_identity_key(target_key)
    if not service_id:
        raise ValidationError("serviceId is required")
    if sats < 0:
        raise ValidationError("sats must be >= 0", {"sats": sats})

    payment: Optional[Dict[str, Any]] = None
    if sats > 0:
        try:
            async with ctx.wallet() as wallet:
                created = await wallet.create_payment(
                    to=target_key, satoshis=sats, description=f"service-request: {service_id}"
                )
            payment = {
                "beef": created.get("beef"),
                "txid": created.get("txid"),
                "satoshis": created.get("satoshis"),
                "derivationPrefix": created.get("derivationPrefix"),
                "derivationSuffix": created.get("derivationSuffix"),
                "senderIdentityKey": created.get("senderIdentityKey"),
            }
        except Exception as e:
            logger.warning(f"Payment for {service_id} could not be created: {e}")
            payment = {"error": str(e)}

    request_payload: Dict[str, Any] = {"serviceId": service_id}
    if input_data:
        request_payload["input"] = input_data
    request_payload["payment"] = payment
    request_payload["requestedAt"] = utc_now_iso()

    request_id = await relay.send(target_key, MessageType.SERVICE_REQUEST, request_payload)
    payment_included = bool(payment) and not payment.get("error")
    return {
        "sent": True,
        "requestId": request_id,
        "to": target_key,
        "serviceId": service_id,
        "paymentIncluded": payment_included,
        "paymentTxid": (payment or {}).get("txid"),
        "satoshis": (payment or {}).get("satoshis") or 0,
        "note": "Poll for service-response to get the result",
    }


async def respond_service(
    relay: RelayClient,
    queue: ServiceQueue,
    request_id: str,
    recipient_key: str,
    service_id: str,
    result: Any,
) -> Dict[str, Any]:
    """Send a fulfilled service-response and mark the queue entry fulfilled"""
    validate_identity_key(recipient_key)
    await relay.send(recipient_key, MessageType.SERVICE_RESPONSE, {
        "requestId": request_id,
        "serviceId": service_id,
        "status": "fulfilled",
        "result": result,
    })
    marked = queue.mark_fulfilled(request_id)
    if not marked:
        logger.warning(f"No pending queue entry for {request_id}")
    return {"sent": True, "requestId": request_id, "serviceId": service_id, "to": recipient_key,
            "queueUpdated": marked}
