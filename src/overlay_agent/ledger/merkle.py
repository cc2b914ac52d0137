"""
Merkle path (SPV inclusion proof) model and its BRC-74 binary encoding.

Hashes are kept in display order (as txids are shown by explorers) and
reversed on the wire.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ValidationError
from .encoding import ByteReader, encode_varint
from .secp256k1 import hash256

logger = logging.getLogger(__name__)

DUPLICATE_MARKER = "*"

FLAG_HASH = 0x00
FLAG_DUPLICATE = 0x01
FLAG_TXID = 0x02


@dataclass
class PathLeaf:
    offset: int
    hash: Optional[str] = None
    txid: bool = False
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"offset": self.offset}
        if self.hash is not None:
            data["hash"] = self.hash
        if self.txid:
            data["txid"] = True
        if self.duplicate:
            data["duplicate"] = True
        return data


@dataclass
class MerklePath:
    """Sibling hashes per tree level, leaf level first"""
    block_height: int
    path: List[List[PathLeaf]] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Binary codec
    # ------------------------------------------------------------------

    def to_binary(self) -> bytes:
        out = bytearray(encode_varint(self.block_height))
        out.append(len(self.path))
        for level in self.path:
            out += encode_varint(len(level))
            for leaf in level:
                out += encode_varint(leaf.offset)
                if leaf.duplicate:
                    out.append(FLAG_DUPLICATE)
                    continue
                out.append(FLAG_TXID if leaf.txid else FLAG_HASH)
                out += bytes.fromhex(leaf.hash)[::-1]
        return bytes(out)

    def to_hex(self) -> str:
        return self.to_binary().hex()

    @classmethod
    def read_from(cls, reader: ByteReader) -> "MerklePath":
        block_height = reader.read_varint()
        tree_height = reader.read_u8()
        path = []
        for _ in range(tree_height):
            level = []
            for _ in range(reader.read_varint()):
                offset = reader.read_varint()
                flags = reader.read_u8()
                if flags & FLAG_DUPLICATE:
                    level.append(PathLeaf(offset=offset, duplicate=True))
                else:
                    leaf_hash = reader.read(32)[::-1].hex()
                    level.append(PathLeaf(offset=offset, hash=leaf_hash, txid=bool(flags & FLAG_TXID)))
            level.sort(key=lambda leaf: leaf.offset)
            path.append(level)
        return cls(block_height=block_height, path=path)

    @classmethod
    def from_binary(cls, data: bytes) -> "MerklePath":
        return cls.read_from(ByteReader(data))

    @classmethod
    def from_hex(cls, hex_str: str) -> "MerklePath":
        return cls.from_binary(bytes.fromhex(hex_str))

    # ------------------------------------------------------------------
    # Verification helpers
    # ------------------------------------------------------------------

    def txids(self) -> List[str]:
        if not self.path:
            return []
        return [leaf.hash for leaf in self.path[0] if leaf.txid]

    def _find(self, level: int, offset: int) -> Optional[PathLeaf]:
        for leaf in self.path[level]:
            if leaf.offset == offset:
                return leaf
        return None

    def compute_root(self, txid: Optional[str] = None) -> str:
        """Fold the path up to the merkle root (display order hex)"""
        if not self.path:
            raise ValidationError("Empty merkle path")
        if txid is None:
            candidates = self.txids()
            if not candidates:
                raise ValidationError("Merkle path has no txid leaf")
            txid = candidates[0]
        leaf = next((item for item in self.path[0] if item.hash == txid), None)
        if leaf is None:
            raise ValidationError(f"txid {txid} not found in merkle path")

        index = leaf.offset
        working = bytes.fromhex(txid)[::-1]
        if len(self.path) == 1 and len(self.path[0]) == 1:
            return txid
        for height in range(len(self.path)):
            sibling_offset = (index >> height) ^ 1
            sibling = self._find(height, sibling_offset)
            if sibling is None:
                raise ValidationError(f"Missing sibling at height {height} offset {sibling_offset}")
            sibling_bytes = working if sibling.duplicate else bytes.fromhex(sibling.hash)[::-1]
            if sibling_offset % 2:
                working = hash256(working + sibling_bytes)
            else:
                working = hash256(sibling_bytes + working)
        return working[::-1].hex()


def build_merkle_path_from_tsc(txid: str, index: int, nodes: Sequence[str], block_height: int) -> MerklePath:
    """Reconstruct a merkle path from a TSC proof's sibling list.

    Args:
        txid: Transaction id (display order)
        index: Position of the transaction in its block
        nodes: Sibling hashes from the leaf level upwards; ``'*'`` marks the
            duplicate padding used for odd leaf counts
        block_height: Height of the containing block

    Returns:
        MerklePath whose level 0 holds the txid leaf and its sibling sorted
        by offset, and whose higher levels each hold one sibling at
        ``(index >> level) ^ 1``
    """
    if not nodes:
        raise ValidationError("TSC proof has no nodes", {"txid": txid})

    def sibling(offset: int, node: str) -> PathLeaf:
        if node == DUPLICATE_MARKER:
            return PathLeaf(offset=offset, duplicate=True)
        return PathLeaf(offset=offset, hash=node)

    level0 = [PathLeaf(offset=index, hash=txid, txid=True), sibling(index ^ 1, nodes[0])]
    level0.sort(key=lambda leaf: leaf.offset)
    path = [level0]
    for height in range(1, len(nodes)):
        path.append([sibling((index >> height) ^ 1, nodes[height])])

    logger.debug(f"Built merkle path for {txid} at index {index} with {len(nodes)} levels")
    return MerklePath(block_height=block_height, path=path)
