"""
Baemail: paid message forwarding with tiered pricing.

A sender pays at least the standard rate to have a message delivered to the
operator through the local agent hook. The amount paid picks the tier.
Failed deliveries are logged as refundable; the operator refunds them with a
separate command, exactly once per request.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..config import AgentConfig
from ..errors import ConfigurationError, LedgerError, NotFoundError, PaymentError, StateError, ValidationError
from ..ledger.interfaces import LedgerCrypto
from ..ledger.script import p2pkh_locking_script
from ..ledger.transaction import Transaction, TxInput, TxOutput
from ..messaging.router import MessageRouter, MessageType, RouteAction, RouteResult, payload_fields
from ..net.explorer import ExplorerClient
from ..net.fetch import ResilientFetch
from ..storage.state import read_json, read_jsonl, update_jsonl, append_jsonl, utc_now_iso, write_json
from .payment_gate import PaymentGate

logger = logging.getLogger(__name__)

SERVICE_ID = "baemail"
DEFAULT_MAX_MESSAGE_LENGTH = 4000

REFUND_FEE_SATS = 10
REFUND_TARGET_MARGIN = 50
REFUND_MIN_MARGIN = 10


class Tier(Enum):
    STANDARD = "standard"
    PRIORITY = "priority"
    URGENT = "urgent"


TIER_MARKERS = {
    Tier.STANDARD: "📧",
    Tier.PRIORITY: "⚡",
    Tier.URGENT: "🚨",
}


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class BaemailConfig:
    delivery_channel: str
    standard: int
    priority: int
    urgent: int
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    blocklist: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.standard < 1:
            raise ValidationError("Standard rate must be a positive integer (sats)")
        if self.priority < self.standard:
            raise ValidationError("Priority rate must be >= standard rate")
        if self.urgent < self.priority:
            raise ValidationError("Urgent rate must be >= priority rate")

    @property
    def tiers(self) -> Dict[str, int]:
        return {"standard": self.standard, "priority": self.priority, "urgent": self.urgent}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deliveryChannel": self.delivery_channel,
            "tiers": self.tiers,
            "maxMessageLength": self.max_message_length,
            "blocklist": list(self.blocklist),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BaemailConfig":
        tiers = data.get("tiers") or {}
        return cls(
            delivery_channel=data["deliveryChannel"],
            standard=int(tiers["standard"]),
            priority=int(tiers["priority"]),
            urgent=int(tiers["urgent"]),
            max_message_length=data.get("maxMessageLength") or DEFAULT_MAX_MESSAGE_LENGTH,
            blocklist=list(data.get("blocklist") or []),
            created_at=data.get("createdAt") or utc_now_iso(),
            updated_at=data.get("updatedAt") or utc_now_iso(),
        )


def classify_tier(paid_sats: int, config: BaemailConfig) -> Tier:
    if paid_sats >= config.urgent:
        return Tier.URGENT
    if paid_sats >= config.priority:
        return Tier.PRIORITY
    return Tier.STANDARD


def format_delivery_message(tier: Tier, sender_name: str, paid_sats: int, reply_key: str, message: str) -> str:
    return (
        f"{TIER_MARKERS[tier]} **Baemail** ({tier.value.upper()})\n\n"
        f"**From:** {sender_name}\n"
        f"**Paid:** {paid_sats} sats\n"
        f"**Reply to:** `{reply_key[:16]}...`\n\n"
        f"---\n\n"
        f"{message}\n\n"
        f"---\n"
        f"_Reply via overlay: `overlay-agent send {reply_key} ping \"your reply\"`_"
    )


# ============================================================================
# Delivery hook
# ============================================================================

class DeliveryHook:
    """POSTs messages to the local agent gateway's ``/hooks/agent``"""

    def __init__(self, config: AgentConfig, fetch: ResilientFetch):
        self.config = config
        self.fetch = fetch

    def settings(self) -> Dict[str, Any]:
        return self.config.load_hook_settings()

    def is_configured(self) -> bool:
        return bool(self.settings().get("token"))

    async def deliver(self, message: str, request_id: str, channel: str) -> Tuple[bool, Optional[str]]:
        """Returns ``(delivered, error)``"""
        settings = self.settings()
        token = settings.get("token")
        url = f"http://{self.config.hook_host}:{settings['port']}/hooks/agent"
        try:
            resp = await self.fetch.fetch_once(
                url,
                method="POST",
                headers={
                    "Authorization": f"Bearer {token}",
                    "x-clawdbot-token": token or "",
                },
                json={
                    "message": message,
                    "name": "Baemail",
                    "sessionKey": f"baemail:{request_id}",
                    "wakeMode": "now",
                    "deliver": True,
                    "channel": channel,
                },
            )
        except Exception as e:
            logger.warning(f"Baemail delivery for {request_id} failed: {e}")
            return False, str(e)
        if resp.ok:
            return True, None
        return False, f"Hook failed: {resp.status} {resp.text()}"


# ============================================================================
# TieredDeliveryService
# ============================================================================

class TieredDeliveryService:
    """Handles ``baemail`` service-requests and the operator commands"""

    def __init__(
        self,
        config: AgentConfig,
        router: MessageRouter,
        payment_gate: PaymentGate,
        hook: DeliveryHook,
        ledger: Optional[LedgerCrypto] = None,
        explorer: Optional[ExplorerClient] = None,
    ):
        self.config = config
        self.router = router
        self.payment_gate = payment_gate
        self.hook = hook
        self.ledger = ledger
        self.explorer = explorer

    def attach(self) -> None:
        self.router.register_service(SERVICE_ID, self.handle_request)

    # ------------------------------------------------------------------
    # Config commands
    # ------------------------------------------------------------------

    def load_config(self) -> Optional[BaemailConfig]:
        data = read_json(self.config.baemail_config_path)
        return BaemailConfig.from_dict(data) if data else None

    def save_config(self, baemail_config: BaemailConfig) -> None:
        write_json(self.config.baemail_config_path, baemail_config.to_dict())

    def require_config(self) -> BaemailConfig:
        baemail_config = self.load_config()
        if baemail_config is None:
            raise StateError("Baemail not configured. Run baemail-setup first.")
        return baemail_config

    def setup(self, channel: str, standard: int, priority: Optional[int] = None,
              urgent: Optional[int] = None) -> BaemailConfig:
        """Create the service config; priority and urgent default to 2x and 5x standard"""
        baemail_config = BaemailConfig(
            delivery_channel=channel,
            standard=standard,
            priority=priority if priority is not None else standard * 2,
            urgent=urgent if urgent is not None else standard * 5,
        )
        self.save_config(baemail_config)
        logger.info(f"Baemail configured on {channel} with tiers {baemail_config.tiers}")
        return baemail_config

    def block(self, identity_key: str) -> int:
        baemail_config = self.require_config()
        if identity_key in baemail_config.blocklist:
            raise StateError("Identity already blocked")
        baemail_config.blocklist.append(identity_key)
        baemail_config.updated_at = utc_now_iso()
        self.save_config(baemail_config)
        return len(baemail_config.blocklist)

    def unblock(self, identity_key: str) -> int:
        baemail_config = self.require_config()
        if identity_key not in baemail_config.blocklist:
            raise StateError("Identity not in blocklist")
        baemail_config.blocklist.remove(identity_key)
        baemail_config.updated_at = utc_now_iso()
        self.save_config(baemail_config)
        return len(baemail_config.blocklist)

    def log_entries(self) -> List[Dict[str, Any]]:
        return read_jsonl(self.config.baemail_log_path)

    def recent_log(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest first"""
        entries = self.log_entries()
        return list(reversed(entries[-limit:])) if limit > 0 else []

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def _reject(self, msg: Dict[str, Any], reason_text: str, reason: str,
                      error_code: Optional[str] = None) -> RouteResult:
        await self.router.send_service_response(msg.get("from"), {
            "requestId": msg.get("id"),
            "serviceId": SERVICE_ID,
            "status": "rejected",
            "reason": reason_text,
        })
        logger.info(f"Baemail request {msg.get('id')} rejected: {reason}")
        return RouteResult(msg.get("id"), MessageType.SERVICE_REQUEST, RouteAction.REJECTED, msg.get("from"), True,
                           {"serviceId": SERVICE_ID, "reason": reason,
                            "errorCode": error_code or ValidationError.code})

    async def handle_request(self, msg: Dict[str, Any]) -> RouteResult:
        payload = payload_fields(msg)
        service_input = payload.get("input") or payload
        sender = msg.get("from")
        request_id = msg.get("id")

        baemail_config = self.load_config()
        if baemail_config is None:
            return await self._reject(msg, "Baemail service not configured on this agent.", "not configured",
                                      StateError.code)

        if sender in baemail_config.blocklist:
            return await self._reject(msg, "Sender is blocked.", "blocked")

        message = service_input.get("message") if isinstance(service_input, dict) else None
        if not isinstance(message, str) or not message.strip():
            return await self._reject(msg, 'Missing or empty message. Send {message: "your message"}',
                                      "missing message")

        if len(message) > baemail_config.max_message_length:
            return await self._reject(
                msg, f"Message too long. Max {baemail_config.max_message_length} characters.", "message too long"
            )

        # Payment is never captured when delivery cannot happen
        if not self.hook.is_configured():
            return await self._reject(msg, "OpenClaw hooks not configured. Payment NOT accepted.",
                                      "hooks not configured", ConfigurationError.code)

        min_price = baemail_config.standard
        payment = await self.payment_gate.verify_and_accept(payload.get("payment"), min_price, sender, SERVICE_ID)
        if not payment.accepted:
            return await self._reject(msg, f"Payment rejected: {payment.error}. Minimum: {min_price} sats.",
                                      payment.error, PaymentError.code)

        paid_sats = payment.satoshis
        tier = classify_tier(paid_sats, baemail_config)
        sender_name = service_input.get("senderName") or "Anonymous"
        reply_key = service_input.get("replyIdentityKey") or sender

        formatted = format_delivery_message(tier, sender_name, paid_sats, reply_key, message)
        delivered, delivery_error = await self.hook.deliver(formatted, request_id, baemail_config.delivery_channel)

        append_jsonl(self.config.baemail_log_path, {
            "requestId": request_id,
            "from": sender,
            "senderName": sender_name,
            "tier": tier.value,
            "paidSats": paid_sats,
            "messageLength": len(message),
            "deliveryChannel": baemail_config.delivery_channel,
            "deliverySuccess": delivered,
            "deliveryError": delivery_error,
            "paymentTxid": payment.txid or "",
            "refundStatus": None if delivered else "pending",
            "timestamp": utc_now_iso(),
        })

        result: Dict[str, Any] = {
            "delivered": delivered,
            "tier": tier.value,
            "channel": baemail_config.delivery_channel,
            "paidSats": paid_sats,
            "error": delivery_error,
            "replyTo": self.router.identity_key,
            "refundable": not delivered,
        }
        if not delivered:
            result["note"] = f"Delivery failed. Run: baemail-refund {request_id}"
        status = "fulfilled" if delivered else "delivery_failed"
        await self.router.send_service_response(sender, {
            "requestId": request_id,
            "serviceId": SERVICE_ID,
            "status": status,
            "result": result,
            "paymentAccepted": True,
            "paymentTxid": payment.txid,
            "satoshisReceived": payment.satoshis,
        })

        logger.info(f"Baemail {request_id} ({tier.value}, {paid_sats} sats): {status}")
        action = RouteAction.FULFILLED if delivered else RouteAction.DELIVERY_FAILED
        return RouteResult(request_id, MessageType.SERVICE_REQUEST, action, sender, True, {
            "serviceId": SERVICE_ID,
            "tier": tier.value,
            "deliverySuccess": delivered,
            "deliveryError": delivery_error,
            "paymentAccepted": True,
            "paymentTxid": payment.txid,
            "satoshisReceived": payment.satoshis,
        })

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(self, request_id: str) -> Dict[str, Any]:
        """Refund a failed delivery, ``paidSats - 1``, to the sender's address"""
        entry = next((e for e in self.log_entries() if e.get("requestId") == request_id), None)
        if entry is None:
            raise NotFoundError(f"No baemail log entry for request {request_id}", {"requestId": request_id})
        if entry.get("deliverySuccess"):
            raise StateError("This delivery was successful, no refund needed", {"requestId": request_id})
        if entry.get("refundStatus") == "completed":
            raise StateError("Refund already processed for this request", {"requestId": request_id})
        if self.ledger is None or self.explorer is None:
            raise StateError("Refunds need the ledger and explorer collaborators")

        refund_sats = int(entry.get("paidSats", 0)) - 1
        if refund_sats < 1:
            raise ValidationError("Amount too small to refund", {"paidSats": entry.get("paidSats")})

        refund_hash = self.ledger.hash160(entry["from"])
        refund_address = self.ledger.address(entry["from"])
        own_script = p2pkh_locking_script(self.ledger.hash160())

        utxos = await self.explorer.list_unspent(self.ledger.address())
        if not utxos:
            raise LedgerError("No UTXOs available for refund")

        tx = Transaction()
        total_input = 0
        for utxo in utxos:
            if total_input >= refund_sats + REFUND_TARGET_MARGIN:
                break
            tx.add_input(TxInput(
                source_txid=utxo["tx_hash"],
                source_output_index=utxo["tx_pos"],
                source_satoshis=utxo["value"],
                source_locking_script=own_script,
            ))
            total_input += utxo["value"]

        if total_input < refund_sats + REFUND_MIN_MARGIN:
            raise LedgerError("Insufficient funds for refund", {"available": total_input, "needed": refund_sats})

        tx.add_output(TxOutput(refund_sats, p2pkh_locking_script(refund_hash)))
        change = total_input - refund_sats - REFUND_FEE_SATS
        if change > 1:
            tx.add_output(TxOutput(change, own_script))
        tx.sign_p2pkh(self.ledger)

        txid = await self.explorer.broadcast(tx)
        refunded_at = utc_now_iso()
        update_jsonl(
            self.config.baemail_log_path,
            lambda record: record.get("requestId") == request_id,
            lambda record: {**record, "refundStatus": "completed", "refundTxid": txid, "refundedAt": refunded_at},
        )
        logger.info(f"Refunded {refund_sats} sats for {request_id} in {txid}")
        return {
            "refunded": True,
            "requestId": request_id,
            "refundSats": refund_sats,
            "refundAddress": refund_address,
            "txid": txid,
            "note": f"Refunded {refund_sats} sats to sender",
        }
