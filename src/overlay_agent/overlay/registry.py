"""
Overlay registry: agent registration, service advertisements and discovery.

Identity and service records are published as anchor transactions; the
local registration and service list are kept in the state directory.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..config import LookupServices, PROTOCOL_ID, Topics
from ..context import AgentContext
from ..errors import NetworkError, NotFoundError, StateError, ValidationError
from ..ledger.script import parse_op_return_payload
from ..ledger.transaction import Transaction
from ..storage.state import utc_now_iso
from .anchor import AnchorFunder

logger = logging.getLogger(__name__)

DEFAULT_AGENT_NAME = "BSV Agent"
DEFAULT_AGENT_DESCRIPTION = "A BSV overlay network agent"


@dataclass
class ServiceAdvertisement:
    service_id: str
    name: str
    description: str
    price_sats: int
    txid: Optional[str] = None
    registered_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "serviceId": self.service_id,
            "name": self.name,
            "description": self.description,
            "priceSats": self.price_sats,
        }
        if self.txid:
            data["txid"] = self.txid
        if self.registered_at:
            data["registeredAt"] = self.registered_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceAdvertisement":
        return cls(
            service_id=data["serviceId"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            price_sats=int(data.get("priceSats", 0)),
            txid=data.get("txid"),
            registered_at=data.get("registeredAt"),
        )


def _decode_beef(beef: Union[str, List[int], bytes]) -> bytes:
    if isinstance(beef, (bytes, bytearray)):
        return bytes(beef)
    if isinstance(beef, list):
        return bytes(beef)
    try:
        return base64.b64decode(beef, validate=True)
    except (binascii.Error, ValueError):
        return bytes.fromhex(beef)


def parse_overlay_output(beef: Union[str, List[int], bytes], output_index: int) -> Optional[Dict[str, Any]]:
    """Decode the OP_RETURN JSON record at ``output_index`` of an atomic BEEF.

    Returns None for anything undecodable.
    """
    try:
        tx = Transaction.from_atomic_beef(_decode_beef(beef))
    except (ValidationError, ValueError, TypeError) as e:
        logger.debug(f"Undecodable overlay output: {e}")
        return None
    if not 0 <= output_index < len(tx.outputs):
        return None
    data = parse_op_return_payload(tx.outputs[output_index].locking_script)
    return data if isinstance(data, dict) else None


def resolve_txid(beef: Union[str, List[int], bytes]) -> Optional[str]:
    """Display-only enrichment; any failure yields None"""
    try:
        return Transaction.from_atomic_beef(_decode_beef(beef)).txid()
    except (ValidationError, ValueError, TypeError) as e:
        logger.debug(f"Could not resolve txid: {e}")
        return None


class OverlayRegistry:
    """Registration, advertisement and lookup against the overlay"""

    def __init__(self, ctx: AgentContext, funder: Optional[AnchorFunder] = None):
        self.ctx = ctx
        self.funder = funder or AnchorFunder(ctx)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, name: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
        identity_key = self.ctx.identity_key
        existing = self.ctx.state.load_registration()
        if existing and existing.get("identityKey") == identity_key:
            return {
                "alreadyRegistered": True,
                "identityKey": identity_key,
                "identityTxid": existing.get("identityTxid"),
                "overlayUrl": self.ctx.config.overlay_url,
            }

        agent_name = name or self.ctx.config.agent_name or DEFAULT_AGENT_NAME
        agent_description = description or self.ctx.config.agent_description or DEFAULT_AGENT_DESCRIPTION
        identity_result = await self.funder.build_anchor({
            "protocol": PROTOCOL_ID,
            "type": "identity",
            "identityKey": identity_key,
            "name": agent_name,
            "description": agent_description,
            "registeredAt": utc_now_iso(),
        }, Topics.IDENTITY)

        service_txid = None
        services = self.services()
        if services:
            try:
                bundle_result = await self.funder.build_anchor({
                    "protocol": PROTOCOL_ID,
                    "type": "service-bundle",
                    "identityKey": identity_key,
                    "services": [{
                        "serviceId": s.service_id,
                        "name": s.name,
                        "description": s.description,
                        "pricingSats": s.price_sats,
                    } for s in services],
                    "registeredAt": utc_now_iso(),
                }, Topics.SERVICES)
                service_txid = bundle_result.txid
            except NetworkError as e:
                logger.warning(f"Identity registered but service bundle failed: {e.message}")

        self.ctx.state.save_registration({
            "identityKey": identity_key,
            "agentName": agent_name,
            "agentDescription": agent_description,
            "overlayUrl": self.ctx.config.overlay_url,
            "identityTxid": identity_result.txid,
            "serviceTxid": service_txid,
            "funded": identity_result.funded,
            "registeredAt": utc_now_iso(),
        })
        logger.info(f"Registered {agent_name} ({identity_key[:16]}...) in {identity_result.txid}")
        return {
            "registered": True,
            "identityKey": identity_key,
            "identityTxid": identity_result.txid,
            "serviceTxid": service_txid,
            "overlayUrl": self.ctx.config.overlay_url,
            "funded": identity_result.funded,
        }

    def unregister(self) -> Dict[str, Any]:
        """Drop the local registration; on-chain records remain"""
        existing = self.ctx.state.load_registration()
        if not existing:
            raise StateError("Not registered")
        self.ctx.state.delete_registration()
        return {
            "unregistered": True,
            "identityKey": existing.get("identityKey"),
            "note": "Local registration removed. On-chain records remain.",
        }

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def services(self) -> List[ServiceAdvertisement]:
        return [ServiceAdvertisement.from_dict(s) for s in self.ctx.state.load_services()]

    def _save_services(self, services: List[ServiceAdvertisement]) -> None:
        self.ctx.state.save_services([s.to_dict() for s in services])

    def _service_payload(self, service: ServiceAdvertisement, updated: bool = False) -> Dict[str, Any]:
        payload = {
            "protocol": PROTOCOL_ID,
            "type": "service",
            "identityKey": self.ctx.identity_key,
            "serviceId": service.service_id,
            "name": service.name,
            "description": service.description,
            "pricingSats": service.price_sats,
            "advertisedAt": service.registered_at,
        }
        if updated:
            payload["updated"] = True
        return payload

    async def advertise(self, service_id: str, name: str, price_sats: int,
                        description: Optional[str] = None) -> Dict[str, Any]:
        if price_sats < 0:
            raise ValidationError("priceSats must be a non-negative integer", {"priceSats": price_sats})
        services = self.services()
        if any(s.service_id == service_id for s in services):
            raise StateError(f"Service '{service_id}' already exists. Use 'readvertise' to update.")

        service = ServiceAdvertisement(
            service_id=service_id,
            name=name,
            description=description or f"{name} service",
            price_sats=price_sats,
            registered_at=utc_now_iso(),
        )
        result = await self.funder.build_anchor(self._service_payload(service), Topics.SERVICES)
        service.txid = result.txid
        services.append(service)
        self._save_services(services)
        logger.info(f"Advertised {service_id} at {price_sats} sats in {result.txid}")
        return {"advertised": True, "service": service.to_dict(), "txid": result.txid, "funded": result.funded}

    async def readvertise(self, service_id: str, name: Optional[str] = None, price_sats: Optional[int] = None,
                          description: Optional[str] = None) -> Dict[str, Any]:
        services = self.services()
        service = next((s for s in services if s.service_id == service_id), None)
        if service is None:
            raise NotFoundError(f"Service '{service_id}' not found. Use 'advertise' to create.")
        if price_sats is not None and price_sats < 0:
            raise ValidationError("priceSats must be a non-negative integer", {"priceSats": price_sats})

        if name:
            service.name = name
        if price_sats is not None:
            service.price_sats = price_sats
        if description:
            service.description = description
        service.registered_at = utc_now_iso()

        result = await self.funder.build_anchor(self._service_payload(service, updated=True), Topics.SERVICES)
        service.txid = result.txid
        self._save_services(services)
        return {"readvertised": True, "service": service.to_dict(), "txid": result.txid, "funded": result.funded}

    def remove(self, service_id: str) -> Dict[str, Any]:
        services = self.services()
        service = next((s for s in services if s.service_id == service_id), None)
        if service is None:
            raise NotFoundError(f"Service '{service_id}' not found")
        self._save_services([s for s in services if s.service_id != service_id])
        return {
            "removed": True,
            "service": service.to_dict(),
            "note": "Removed from local registry. On-chain record remains.",
        }

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def lookup(self, service: str, query: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.ctx.fetch.fetch_once(f"{self.ctx.config.overlay_url}/lookup", method="POST",
                                               json={"service": service, "query": query})
        if not resp.ok:
            raise NetworkError(f"Lookup failed: {resp.status} - {resp.text()}", {"service": service})
        return resp.json()

    async def _lookup_records(self, service: str, query: Dict[str, Any], record_type: str) -> List[Dict[str, Any]]:
        result = await self.lookup(service, query)
        records = []
        for output in result.get("outputs") or []:
            data = parse_overlay_output(output.get("beef"), output.get("outputIndex", 0))
            if data and data.get("type") == record_type:
                records.append({**data, "txid": resolve_txid(output.get("beef"))})
        return records

    async def discover(self, service_filter: Optional[str] = None,
                       agent_filter: Optional[str] = None) -> Dict[str, Any]:
        """Agents and/or services known to the overlay.

        A failing half of the query is reported as ``agentError`` /
        ``serviceError`` rather than failing the whole call.
        """
        agents: List[Dict[str, Any]] = []
        services: List[Dict[str, Any]] = []
        result: Dict[str, Any] = {"overlayUrl": self.ctx.config.overlay_url}

        if not service_filter:
            query = {"name": agent_filter} if agent_filter else {"type": "list"}
            try:
                agents = await self._lookup_records(LookupServices.AGENTS, query, "identity")
            except NetworkError as e:
                result["agentError"] = e.message

        if not agent_filter:
            query = {"serviceType": service_filter} if service_filter else {}
            try:
                services = await self._lookup_records(LookupServices.SERVICES, query, "service")
            except NetworkError as e:
                result["serviceError"] = e.message

        result.update({
            "agentCount": len(agents),
            "serviceCount": len(services),
            "agents": agents,
            "services": services,
        })
        return result
