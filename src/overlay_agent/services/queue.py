"""
Durable queue of accepted service requests awaiting fulfilment.

Append-only JSONL; marking an entry fulfilled rewrites the whole file.
Status moves pending -> fulfilled only.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..storage.state import append_jsonl, read_jsonl, update_jsonl

logger = logging.getLogger(__name__)


class QueueStatus(Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"


@dataclass
class ServiceQueueEntry:
    """One accepted request; ``timestamp`` is epoch milliseconds"""
    request_id: str
    service_id: str
    sender: str
    identity_key: str
    input: Any = None
    payment_txid: Optional[str] = None
    satoshis_received: int = 0
    wallet_accepted: bool = False
    status: QueueStatus = QueueStatus.PENDING
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    fulfilled_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status.value,
            "requestId": self.request_id,
            "serviceId": self.service_id,
            "from": self.sender,
            "identityKey": self.identity_key,
            "input": self.input,
            "paymentTxid": self.payment_txid,
            "satoshisReceived": self.satoshis_received,
            "walletAccepted": self.wallet_accepted,
            "_ts": self.timestamp,
        }
        if self.fulfilled_at is not None:
            data["fulfilledAt"] = self.fulfilled_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceQueueEntry":
        return cls(
            request_id=data["requestId"],
            service_id=data.get("serviceId"),
            sender=data.get("from"),
            identity_key=data.get("identityKey"),
            input=data.get("input"),
            payment_txid=data.get("paymentTxid"),
            satoshis_received=data.get("satoshisReceived", 0),
            wallet_accepted=data.get("walletAccepted", False),
            status=QueueStatus(data.get("status", "pending")),
            timestamp=data.get("_ts", 0),
            fulfilled_at=data.get("fulfilledAt"),
        )


class ServiceQueue:
    """File-backed service request queue"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def enqueue(self, entry: ServiceQueueEntry) -> ServiceQueueEntry:
        append_jsonl(self.path, entry.to_dict())
        logger.info(f"Queued {entry.service_id} request {entry.request_id}")
        return entry

    def entries(self) -> List[ServiceQueueEntry]:
        result = []
        for record in read_jsonl(self.path):
            try:
                result.append(ServiceQueueEntry.from_dict(record))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed queue record: {e}")
        return result

    def list_pending(self) -> List[ServiceQueueEntry]:
        return [e for e in self.entries() if e.status == QueueStatus.PENDING]

    def get(self, request_id: str) -> Optional[ServiceQueueEntry]:
        for entry in self.entries():
            if entry.request_id == request_id:
                return entry
        return None

    def mark_fulfilled(self, request_id: str) -> bool:
        """Flip the matching pending entry to fulfilled.

        Returns:
            True if an entry changed
        """
        now_ms = int(time.time() * 1000)

        def is_pending_match(record: Dict[str, Any]) -> bool:
            return record.get("requestId") == request_id and record.get("status") == QueueStatus.PENDING.value

        def fulfil(record: Dict[str, Any]) -> Dict[str, Any]:
            return {**record, "status": QueueStatus.FULFILLED.value, "fulfilledAt": now_ms}

        changed = update_jsonl(self.path, is_pending_match, fulfil)
        if changed:
            logger.info(f"Marked {request_id} fulfilled")
        return changed > 0
