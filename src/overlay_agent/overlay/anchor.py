"""
Anchor transactions: minimal-value transactions carrying an OP_RETURN record
that are submitted to an overlay topic.

Funding reuses the change output of the previous anchor (the stored change)
when it is large enough, so a single UTXO lineage can fund many anchors
without querying the explorer. The stored change keeps up to ten ancestor
transactions so each submission can carry a complete BEEF.
"""

import base64
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..context import AgentContext
from ..errors import LedgerError, NetworkError, ValidationError
from ..ledger.merkle import MerklePath
from ..ledger.script import build_op_return_script, p2pkh_locking_script
from ..ledger.transaction import Transaction, TxInput, TxOutput
from ..storage.state import utc_now_iso

logger = logging.getLogger(__name__)

OP_RETURN_SATS = 1
MIN_CHANGE = 200
MAX_FEE = 100
MIN_INPUT = OP_RETURN_SATS + MIN_CHANGE + MAX_FEE
MAX_SOURCE_CHAIN = 10
CHANGE_VOUT = 1

FUNDED_STORED = "stored-beef"
FUNDED_EXPLORER = "woc"


def estimate_fee(op_return_script_len: int) -> int:
    """1 sat per started kilobyte of the estimated size, at least 1 sat"""
    estimated_size = 148 + 34 + op_return_script_len + 34 + 10
    return max(math.ceil(estimated_size / 1000), 1)


# ============================================================================
# Persisted change record
# ============================================================================

@dataclass
class SourceChainEntry:
    tx_hex: str
    txid: str
    merkle_path_hex: Optional[str] = None
    block_height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"txHex": self.tx_hex, "txid": self.txid}
        if self.merkle_path_hex:
            data["merklePathHex"] = self.merkle_path_hex
        if self.block_height is not None:
            data["blockHeight"] = self.block_height
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceChainEntry":
        return cls(
            tx_hex=data["txHex"],
            txid=data["txid"],
            merkle_path_hex=data.get("merklePathHex"),
            block_height=data.get("blockHeight"),
        )

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "SourceChainEntry":
        entry = cls(tx_hex=tx.to_hex(), txid=tx.txid())
        if tx.merkle_path is not None:
            entry.merkle_path_hex = tx.merkle_path.to_hex()
            entry.block_height = tx.merkle_path.block_height
        return entry

    def to_transaction(self) -> Transaction:
        tx = Transaction.from_hex(self.tx_hex)
        if self.merkle_path_hex:
            tx.merkle_path = MerklePath.from_hex(self.merkle_path_hex)
        return tx


@dataclass
class StoredChange:
    """The one spendable output kept after the last anchor"""
    tx_hex: str
    txid: str
    vout: int
    satoshis: int
    source_chain: List[SourceChainEntry] = field(default_factory=list)
    saved_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHex": self.tx_hex,
            "txid": self.txid,
            "vout": self.vout,
            "satoshis": self.satoshis,
            "sourceChain": [e.to_dict() for e in self.source_chain],
            "savedAt": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredChange":
        return cls(
            tx_hex=data["txHex"],
            txid=data["txid"],
            vout=data["vout"],
            satoshis=data["satoshis"],
            source_chain=[SourceChainEntry.from_dict(e) for e in data.get("sourceChain") or []],
            saved_at=data.get("savedAt") or utc_now_iso(),
        )

    def to_transaction(self) -> Transaction:
        """The change transaction with its ancestors linked through input 0"""
        tx = Transaction.from_hex(self.tx_hex)
        child = tx
        for entry in self.source_chain:
            parent = entry.to_transaction()
            if not child.inputs:
                raise ValidationError(f"Chained transaction {child.txid()} has no inputs")
            child.inputs[0].source_transaction = parent
            child = parent
        return tx


@dataclass
class Funding:
    source: Transaction
    vout: int
    satoshis: int
    method: str
    chain: List[SourceChainEntry] = field(default_factory=list)


@dataclass
class AnchorResult:
    txid: str
    funded: str
    explorer: str

    def to_dict(self) -> Dict[str, Any]:
        return {"txid": self.txid, "funded": self.funded, "explorer": self.explorer}


# ============================================================================
# AnchorFunder
# ============================================================================

class AnchorFunder:
    """Builds, signs and submits anchor transactions"""

    def __init__(self, ctx: AgentContext):
        self.ctx = ctx

    @property
    def own_script(self) -> bytes:
        return p2pkh_locking_script(self.ctx.ledger.hash160())

    def load_stored_change(self) -> Optional[StoredChange]:
        data = self.ctx.state.load_stored_change()
        if not data:
            return None
        try:
            return StoredChange.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed stored change: {e}")
            return None

    def _fund_from_stored_change(self) -> Optional[Funding]:
        stored = self.load_stored_change()
        if stored is None or stored.satoshis < MIN_INPUT:
            return None
        try:
            source = stored.to_transaction()
        except (ValidationError, ValueError) as e:
            logger.warning(f"Stored change unusable, falling back to explorer: {e}")
            return None
        logger.info(f"Funding from stored change {stored.txid}:{stored.vout} ({stored.satoshis} sats)")
        return Funding(source=source, vout=stored.vout, satoshis=stored.satoshis,
                       method=FUNDED_STORED, chain=stored.source_chain)

    async def _fund_from_explorer(self) -> Funding:
        address = self.ctx.ledger.address()
        utxos = await self.ctx.explorer.list_unspent(address)
        utxo = next((u for u in utxos if u.get("value", 0) >= MIN_INPUT), None)
        if utxo is None:
            raise LedgerError(f"No suitable UTXO found. Need >= {MIN_INPUT} sats. Fund address: {address}",
                              {"address": address, "minInput": MIN_INPUT})

        txid = utxo["tx_hash"]
        source = None
        beef = await self.ctx.explorer.get_beef(txid)
        if beef is not None:
            source = beef.find_transaction(txid)
        if source is None:
            source = await self.ctx.explorer.get_transaction(txid)
        if source.merkle_path is None and not any(i.source_transaction for i in source.inputs):
            source.merkle_path = await self.ctx.explorer.get_merkle_path(txid, utxo.get("height") or 0)
            if source.merkle_path is None:
                raise LedgerError(f"Cannot obtain BEEF for UTXO {txid}. Transaction may be unconfirmed.",
                                  {"txid": txid})

        logger.info(f"Funding from explorer UTXO {txid}:{utxo['tx_pos']} ({utxo['value']} sats)")
        return Funding(source=source, vout=utxo["tx_pos"], satoshis=utxo["value"], method=FUNDED_EXPLORER)

    def build_transaction(self, payload: Any, funding: Funding) -> Transaction:
        """Single input; OP_RETURN output at vout 0; change at vout 1 if >= MIN_CHANGE"""
        tx = Transaction()
        tx.add_input(TxInput(
            source_txid=funding.source.txid(),
            source_output_index=funding.vout,
            source_transaction=funding.source,
        ))
        script = build_op_return_script(payload)
        tx.add_output(TxOutput(OP_RETURN_SATS, script))
        change = funding.satoshis - OP_RETURN_SATS - estimate_fee(len(script))
        if change >= MIN_CHANGE:
            tx.add_output(TxOutput(change, self.own_script))
        tx.sign_p2pkh(self.ctx.ledger)
        return tx

    async def submit(self, beef: bytes, topic: str) -> Dict[str, Any]:
        url = f"{self.ctx.config.overlay_url}/submit"
        resp = await self.ctx.fetch.fetch_once(url, method="POST", json={
            "beef": base64.b64encode(beef).decode("ascii"),
            "topics": [topic],
        })
        if not resp.ok:
            raise NetworkError(f"Overlay submission failed: {resp.status} - {resp.text()}",
                               {"topic": topic, "status": resp.status})
        return resp.json() if resp.body else {}

    async def build_anchor(self, payload: Any, topic: str) -> AnchorResult:
        """Fund, sign and submit an anchor, then persist the new change.

        Nothing is persisted unless the overlay accepts the submission.
        """
        funding = self._fund_from_stored_change() or await self._fund_from_explorer()
        tx = self.build_transaction(payload, funding)
        txid = tx.txid()

        await self.submit(tx.to_beef(), topic)
        logger.info(f"Anchor {txid} submitted to {topic} (funded: {funding.method})")

        if len(tx.outputs) > CHANGE_VOUT:
            chain = [SourceChainEntry.from_transaction(funding.source)] + list(funding.chain)
            self.ctx.state.save_stored_change(StoredChange(
                tx_hex=tx.to_hex(),
                txid=txid,
                vout=CHANGE_VOUT,
                satoshis=tx.outputs[CHANGE_VOUT].satoshis,
                source_chain=chain[:MAX_SOURCE_CHAIN],
            ).to_dict())
        else:
            self.ctx.state.delete_stored_change()

        return AnchorResult(txid=txid, funded=funding.method, explorer=self.ctx.config.explorer_tx_url(txid))
