"""
Checksum and digest helpers shared by the image codecs and the loader.

All CRC32 values follow the ESP-IDF convention of seeding the standard
reflected CRC32 with 0xFFFFFFFF (``esp_rom_crc32_le(UINT32_MAX, ...)``).
"""

from __future__ import annotations

import binascii
import hashlib

IMAGE_CHECKSUM_SEED = 0xEF


class Checksums:
    """Stateless checksum helpers."""

    @staticmethod
    def xor8(data: bytes, seed: int = IMAGE_CHECKSUM_SEED) -> int:
        """Single-byte XOR checksum used by firmware images and flash commands."""
        value = seed
        for byte in data:
            value ^= byte
        return value & 0xFF

    @staticmethod
    def esp_crc32(data: bytes) -> int:
        """CRC32 as computed by the ESP ROM for NVS and OTA data."""
        return binascii.crc32(data, 0xFFFFFFFF) & 0xFFFFFFFF

    @staticmethod
    def md5_hex(data: bytes) -> str:
        return hashlib.md5(data).hexdigest()

    @staticmethod
    def sha256(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    @staticmethod
    def sha1_hex(data: bytes) -> str:
        return hashlib.sha1(data).hexdigest()
