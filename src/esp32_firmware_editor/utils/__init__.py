"""
Utility helpers for ESP32 Firmware Editor.

Pure functions shared across the codecs, the loader and the CLI.
"""

from .checksums import Checksums, IMAGE_CHECKSUM_SEED

__all__ = [
    "Checksums",
    "IMAGE_CHECKSUM_SEED",
]
