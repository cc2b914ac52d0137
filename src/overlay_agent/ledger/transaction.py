"""
Transaction model, P2PKH signing and BEEF serialization.

Only what the agent needs: spending P2PKH outputs into OP_RETURN / P2PKH
outputs, producing BEEF for overlay submission, and reading BEEF returned
by the overlay or the explorer.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import LedgerError, ValidationError
from .encoding import ByteReader, encode_varint
from .interfaces import LedgerCrypto
from .merkle import MerklePath
from .script import p2pkh_locking_script, p2pkh_unlocking_script
from .secp256k1 import hash256

logger = logging.getLogger(__name__)

SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
DEFAULT_SIGHASH = SIGHASH_ALL | SIGHASH_FORKID

DEFAULT_SEQUENCE = 0xFFFFFFFF

BEEF_V1 = 0xEFBE0001
BEEF_V2 = 0xEFBE0002
ATOMIC_BEEF = 0x01010101

BEEF_V2_RAW_TX = 0
BEEF_V2_RAW_TX_AND_BUMP = 1
BEEF_V2_TXID_ONLY = 2


# ============================================================================
# Inputs / outputs
# ============================================================================

@dataclass
class TxOutput:
    satoshis: int
    locking_script: bytes

    def serialize(self) -> bytes:
        return (self.satoshis.to_bytes(8, "little")
                + encode_varint(len(self.locking_script))
                + self.locking_script)


@dataclass
class TxInput:
    source_txid: str
    source_output_index: int
    unlocking_script: bytes = b""
    sequence: int = DEFAULT_SEQUENCE
    source_transaction: Optional["Transaction"] = None
    source_satoshis: Optional[int] = None
    source_locking_script: Optional[bytes] = None

    def source_output(self) -> TxOutput:
        """The output this input spends, from the parent tx or explicit fields"""
        if self.source_transaction is not None:
            try:
                return self.source_transaction.outputs[self.source_output_index]
            except IndexError:
                raise LedgerError(
                    f"Source transaction {self.source_txid} has no output {self.source_output_index}"
                )
        if self.source_satoshis is None or self.source_locking_script is None:
            raise LedgerError(f"Input {self.source_txid}:{self.source_output_index} lacks source output data")
        return TxOutput(self.source_satoshis, self.source_locking_script)

    def outpoint(self) -> bytes:
        return bytes.fromhex(self.source_txid)[::-1] + self.source_output_index.to_bytes(4, "little")

    def serialize(self) -> bytes:
        return (self.outpoint()
                + encode_varint(len(self.unlocking_script))
                + self.unlocking_script
                + self.sequence.to_bytes(4, "little"))


# ============================================================================
# Transaction
# ============================================================================

@dataclass
class Transaction:
    version: int = 1
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    lock_time: int = 0
    merkle_path: Optional[MerklePath] = None

    def add_input(self, tx_input: TxInput) -> None:
        if tx_input.source_transaction is not None and not tx_input.source_txid:
            tx_input.source_txid = tx_input.source_transaction.txid()
        self.inputs.append(tx_input)

    def add_output(self, output: TxOutput) -> None:
        self.outputs.append(output)

    # ------------------------------------------------------------------
    # Raw serialization
    # ------------------------------------------------------------------

    def serialize(self) -> bytes:
        out = bytearray(self.version.to_bytes(4, "little"))
        out += encode_varint(len(self.inputs))
        for tx_input in self.inputs:
            out += tx_input.serialize()
        out += encode_varint(len(self.outputs))
        for output in self.outputs:
            out += output.serialize()
        out += self.lock_time.to_bytes(4, "little")
        return bytes(out)

    def to_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @classmethod
    def read_from(cls, reader: ByteReader) -> "Transaction":
        version = reader.read_u32()
        inputs = []
        for _ in range(reader.read_varint()):
            txid = reader.read(32)[::-1].hex()
            vout = reader.read_u32()
            script = reader.read(reader.read_varint())
            sequence = reader.read_u32()
            inputs.append(TxInput(txid, vout, script, sequence))
        outputs = []
        for _ in range(reader.read_varint()):
            satoshis = reader.read_u64()
            outputs.append(TxOutput(satoshis, reader.read(reader.read_varint())))
        lock_time = reader.read_u32()
        return cls(version=version, inputs=inputs, outputs=outputs, lock_time=lock_time)

    @classmethod
    def from_binary(cls, data: bytes) -> "Transaction":
        reader = ByteReader(data)
        tx = cls.read_from(reader)
        if not reader.eof():
            raise ValidationError(f"Trailing bytes after transaction: {reader.remaining()}")
        return tx

    @classmethod
    def from_hex(cls, hex_str: str) -> "Transaction":
        try:
            raw = bytes.fromhex(hex_str.strip())
        except ValueError as e:
            raise ValidationError(f"Invalid transaction hex: {e}")
        return cls.from_binary(raw)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sighash_preimage(self, index: int, sighash_type: int = DEFAULT_SIGHASH) -> bytes:
        """BIP143-style preimage with FORKID for SIGHASH_ALL"""
        source = self.inputs[index].source_output()
        hash_prevouts = hash256(b"".join(i.outpoint() for i in self.inputs))
        hash_sequence = hash256(b"".join(i.sequence.to_bytes(4, "little") for i in self.inputs))
        hash_outputs = hash256(b"".join(o.serialize() for o in self.outputs))
        tx_input = self.inputs[index]
        return b"".join([
            self.version.to_bytes(4, "little"),
            hash_prevouts,
            hash_sequence,
            tx_input.outpoint(),
            encode_varint(len(source.locking_script)),
            source.locking_script,
            source.satoshis.to_bytes(8, "little"),
            tx_input.sequence.to_bytes(4, "little"),
            hash_outputs,
            self.lock_time.to_bytes(4, "little"),
            sighash_type.to_bytes(4, "little"),
        ])

    def sign_p2pkh(self, ledger: LedgerCrypto, sighash_type: int = DEFAULT_SIGHASH) -> None:
        """Sign every input as a P2PKH spend of the ledger's own key"""
        public_key = bytes.fromhex(ledger.identity_key)
        own_script = p2pkh_locking_script(ledger.hash160())
        for index, tx_input in enumerate(self.inputs):
            source = tx_input.source_output()
            if source.locking_script != own_script:
                raise LedgerError(
                    f"Input {index} does not pay to this identity's address",
                    {"txid": tx_input.source_txid, "vout": tx_input.source_output_index},
                )
            digest = hash256(self.sighash_preimage(index, sighash_type))
            signature = ledger.sign_digest(digest)
            tx_input.unlocking_script = p2pkh_unlocking_script(signature, sighash_type, public_key)

    def total_input(self) -> int:
        return sum(i.source_output().satoshis for i in self.inputs)

    def total_output(self) -> int:
        return sum(o.satoshis for o in self.outputs)

    # ------------------------------------------------------------------
    # BEEF
    # ------------------------------------------------------------------

    def ancestry(self) -> List["Transaction"]:
        """This transaction and its unproven ancestors, parents first.

        Recursion stops at any transaction carrying a merkle path.
        """
        ordered: List[Transaction] = []
        seen: Dict[str, bool] = {}

        def visit(tx: "Transaction") -> None:
            txid = tx.txid()
            if txid in seen:
                return
            seen[txid] = True
            if tx.merkle_path is None:
                for tx_input in tx.inputs:
                    if tx_input.source_transaction is not None:
                        visit(tx_input.source_transaction)
            ordered.append(tx)

        visit(self)
        return ordered

    def to_beef(self) -> bytes:
        """BEEF V1: bumps first, then transactions parents-first"""
        chain = self.ancestry()
        bumps: List[MerklePath] = []
        bump_index: Dict[str, int] = {}
        for tx in chain:
            if tx.merkle_path is not None:
                bump_index[tx.txid()] = len(bumps)
                bumps.append(tx.merkle_path)

        out = bytearray(BEEF_V1.to_bytes(4, "little"))
        out += encode_varint(len(bumps))
        for bump in bumps:
            out += bump.to_binary()
        out += encode_varint(len(chain))
        for tx in chain:
            out += tx.serialize()
            txid = tx.txid()
            if txid in bump_index:
                out.append(1)
                out += encode_varint(bump_index[txid])
            else:
                out.append(0)
        return bytes(out)

    @classmethod
    def from_atomic_beef(cls, data: bytes) -> "Transaction":
        beef = Beef.from_binary(data)
        subject = beef.subject_txid or (beef.txs[-1].txid if beef.txs else None)
        tx = beef.find_transaction(subject) if subject else None
        if tx is None:
            raise ValidationError("Atomic BEEF does not contain its subject transaction")
        return tx


# ============================================================================
# BEEF reader
# ============================================================================

@dataclass
class BeefTx:
    txid: str
    transaction: Optional[Transaction] = None
    bump_index: Optional[int] = None


@dataclass
class Beef:
    version: int
    bumps: List[MerklePath] = field(default_factory=list)
    txs: List[BeefTx] = field(default_factory=list)
    subject_txid: Optional[str] = None

    @classmethod
    def from_binary(cls, data: bytes) -> "Beef":
        reader = ByteReader(data)
        version = reader.read_u32()
        subject_txid = None
        if version == ATOMIC_BEEF:
            subject_txid = reader.read(32)[::-1].hex()
            version = reader.read_u32()
        if version not in (BEEF_V1, BEEF_V2):
            raise ValidationError(f"Unsupported BEEF version: {version:#x}")

        bumps = [MerklePath.read_from(reader) for _ in range(reader.read_varint())]
        txs: List[BeefTx] = []
        for _ in range(reader.read_varint()):
            if version == BEEF_V2:
                fmt = reader.read_u8()
                if fmt == BEEF_V2_TXID_ONLY:
                    txs.append(BeefTx(txid=reader.read(32)[::-1].hex()))
                    continue
                bump = reader.read_varint() if fmt == BEEF_V2_RAW_TX_AND_BUMP else None
                tx = Transaction.read_from(reader)
            else:
                tx = Transaction.read_from(reader)
                bump = reader.read_varint() if reader.read_u8() else None
            if bump is not None:
                if bump >= len(bumps):
                    raise ValidationError(f"BEEF bump index {bump} out of range")
                tx.merkle_path = bumps[bump]
            txs.append(BeefTx(txid=tx.txid(), transaction=tx, bump_index=bump))

        beef = cls(version=version, bumps=bumps, txs=txs, subject_txid=subject_txid)
        beef._link_sources()
        return beef

    @classmethod
    def from_hex(cls, hex_str: str) -> "Beef":
        return cls.from_binary(bytes.fromhex(hex_str.strip()))

    def _link_sources(self) -> None:
        by_txid = {entry.txid: entry.transaction for entry in self.txs if entry.transaction is not None}
        for entry in self.txs:
            if entry.transaction is None:
                continue
            for tx_input in entry.transaction.inputs:
                parent = by_txid.get(tx_input.source_txid)
                if parent is not None:
                    tx_input.source_transaction = parent

    def find_transaction(self, txid: str) -> Optional[Transaction]:
        for entry in self.txs:
            if entry.txid == txid:
                return entry.transaction
        return None
