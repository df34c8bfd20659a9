"""
ESP32 Firmware Editor - inspect and edit ESP32 flash images

Offline editing of flash dumps (partitions, app images, NVS, OTA data,
FAT, SPIFFS) and flash transfer over the serial bootloader.
"""

__version__ = "0.1.0"

from esp32_firmware_editor.flash_image import FlashImage
from esp32_firmware_editor.analyzer import analyze_image
from esp32_firmware_editor.protocol import ESPLoader, SerialStream

__all__ = [
    "FlashImage",
    "analyze_image",
    "ESPLoader",
    "SerialStream",
    "__version__",
]
