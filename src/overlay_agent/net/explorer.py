"""
Block-explorer client (WhatsOnChain API).

Thin wrappers around :class:`ResilientFetch`; every call goes through the
retry/backoff policy.
"""

import logging
from typing import Any, Dict, List, Optional

from ..config import AgentConfig
from ..errors import LedgerError, NetworkError, ValidationError
from ..ledger.merkle import MerklePath, build_merkle_path_from_tsc
from ..ledger.transaction import Beef, Transaction
from .fetch import ResilientFetch

logger = logging.getLogger(__name__)


class ExplorerClient:
    """Address UTXOs, raw transactions, proofs and broadcast"""

    def __init__(self, config: AgentConfig, fetch: ResilientFetch):
        self.config = config
        self.fetch = fetch
        self.base_url = config.explorer_api_base

    def _headers(self) -> Dict[str, str]:
        if self.config.woc_api_key:
            return {"Authorization": f"Bearer {self.config.woc_api_key}"}
        return {}

    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self.base_url}{path}"

    async def get(self, path: str, **kwargs):
        return await self.fetch.fetch(self._url(path), headers=self._headers(), **kwargs)

    def tx_url(self, txid: str) -> str:
        return self.config.explorer_tx_url(txid)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_unspent(self, address: str) -> List[Dict[str, Any]]:
        """``[{tx_hash, tx_pos, value, height}]`` for an address"""
        resp = await self.get(f"/address/{address}/unspent")
        if not resp.ok:
            raise NetworkError(f"Failed to fetch UTXOs: {resp.status}", {"address": address})
        return resp.json() or []

    async def get_balance(self, address: str) -> Dict[str, int]:
        resp = await self.get(f"/address/{address}/balance")
        if not resp.ok:
            raise NetworkError(f"Failed to fetch balance: {resp.status}", {"address": address})
        data = resp.json() or {}
        return {
            "confirmed": int(data.get("confirmed", 0)),
            "unconfirmed": int(data.get("unconfirmed", 0)),
        }

    async def get_transaction(self, txid: str) -> Transaction:
        resp = await self.get(f"/tx/{txid}/hex")
        if not resp.ok:
            raise NetworkError(f"Failed to fetch transaction {txid}: {resp.status}", {"txid": txid})
        return Transaction.from_hex(resp.text())

    async def get_beef(self, txid: str) -> Optional[Beef]:
        """Pre-built BEEF for ``txid``, or None when unavailable"""
        try:
            resp = await self.get(f"/tx/{txid}/beef")
        except NetworkError as e:
            logger.warning(f"BEEF fetch for {txid} failed: {e.message}")
            return None
        if not resp.ok:
            return None
        hex_str = resp.text().strip()
        if len(hex_str) < 8:
            return None
        try:
            return Beef.from_hex(hex_str)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Unusable BEEF for {txid}: {e}")
            return None

    async def get_merkle_path(self, txid: str, block_height: int = 0) -> Optional[MerklePath]:
        """Merkle path rebuilt from the TSC proof, or None if unconfirmed"""
        resp = await self.get(f"/tx/{txid}/proof/tsc")
        if not resp.ok:
            return None
        proofs = resp.json()
        if isinstance(proofs, dict):
            proofs = [proofs]
        if not proofs:
            return None
        proof = proofs[0]
        height = proof.get("blockHeight") or block_height
        return build_merkle_path_from_tsc(txid, proof["index"], proof["nodes"], height)

    async def broadcast(self, tx: Transaction) -> str:
        """Broadcast raw hex; rejections surface verbatim as LedgerError"""
        resp = await self.fetch.fetch(
            self._url("/tx/raw"),
            method="POST",
            headers=self._headers(),
            json={"txhex": tx.to_hex()},
        )
        if not resp.ok:
            raise LedgerError(f"Broadcast failed: {resp.text()}", {"status": resp.status})
        txid = tx.txid()
        logger.info(f"Broadcast {txid}")
        return txid
