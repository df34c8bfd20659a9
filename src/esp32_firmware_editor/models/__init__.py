"""
Chip registry for the ESP32 family.

Static, immutable tables indexed by ChipFamily.
"""

from .chips import (
    CHIP_MAGIC_REG,
    CHIPS,
    IMAGE_CHIP_NAMES,
    RESET_REASONS,
    SECURITY_FLAGS,
    ChipFamily,
    ChipSpec,
    StubImage,
    chip_from_id,
    chip_from_magic,
    decode_security_flags,
    get_chip,
    list_chips,
    load_stub_json,
)

__all__ = [
    "CHIP_MAGIC_REG",
    "CHIPS",
    "IMAGE_CHIP_NAMES",
    "RESET_REASONS",
    "SECURITY_FLAGS",
    "ChipFamily",
    "ChipSpec",
    "StubImage",
    "chip_from_id",
    "chip_from_magic",
    "decode_security_flags",
    "get_chip",
    "list_chips",
    "load_stub_json",
]
