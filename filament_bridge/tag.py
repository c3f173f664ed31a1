"""
Filament tag payload stored in a single 16-byte MIFARE Classic block.

Layout: byte 0 material, byte 1 color, byte 2 manufacturer,
bytes 3-15 reserved (zero on write).
"""

from dataclasses import dataclass

from . import config


@dataclass(frozen=True)
class TagRecord:
    material: int
    color: int
    manufacturer: int
    raw_block: bytes

    def to_dict(self) -> dict:
        return {
            "material": self.material,
            "color": self.color,
            "manufacturer": self.manufacturer,
            "rawData": list(self.raw_block),
        }


def decode_block(data) -> TagRecord:
    """
    Decode a block read from the tag.
    A short read leaves material/color at 0 and manufacturer at its default;
    a zero byte that was actually read is kept as 0.
    """
    raw = bytes(data)
    material = raw[0] if len(raw) > 0 else 0
    color = raw[1] if len(raw) > 1 else 0
    manufacturer = raw[2] if len(raw) > 2 else config.DEFAULT_MANUFACTURER
    return TagRecord(material=material, color=color, manufacturer=manufacturer, raw_block=raw)


def to_code(value, default: int) -> int:
    """Coerce a client-supplied code to a byte, falling back on non-numeric input."""
    try:
        code = int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            code = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return default
    return code & 0xFF


def encode_block(material, color, manufacturer=config.DEFAULT_MANUFACTURER) -> bytes:
    """Build the 16-byte block to write: three leading codes, zero padding."""
    buf = bytearray(config.BLOCK_SIZE)
    buf[0] = to_code(material, 0)
    buf[1] = to_code(color, 0)
    buf[2] = to_code(manufacturer, config.DEFAULT_MANUFACTURER)
    return bytes(buf)
