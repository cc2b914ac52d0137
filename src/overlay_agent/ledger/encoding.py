"""Bitcoin-style binary primitives: varints and a bounds-checked reader."""

from ..errors import ValidationError


def encode_varint(n: int) -> bytes:
    if n < 0:
        raise ValidationError(f"varint must be non-negative: {n}")
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def reverse_hex(hex_str: str) -> str:
    """Switch between display (big-endian) and internal byte order"""
    return bytes.fromhex(hex_str)[::-1].hex()


class ByteReader:
    """Sequential reader over a byte string"""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def eof(self) -> bool:
        return self.pos >= len(self.data)

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise ValidationError(f"Unexpected end of data reading {n} bytes at {self.pos}")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_u32(self) -> int:
        return int.from_bytes(self.read(4), "little")

    def read_u64(self) -> int:
        return int.from_bytes(self.read(8), "little")

    def read_varint(self) -> int:
        prefix = self.read_u8()
        if prefix < 0xFD:
            return prefix
        if prefix == 0xFD:
            return int.from_bytes(self.read(2), "little")
        if prefix == 0xFE:
            return int.from_bytes(self.read(4), "little")
        return int.from_bytes(self.read(8), "little")
