"""
Static chip tables for the ESP32 family.

Provides a single source of truth for:
- Chip identity (security-info chip id, ROM magic register values)
- eFuse MAC register addresses
- Security flag names and ROM reset reasons
- Stub loader images (loaded from esptool-format JSON)

Usage:
    from esp32_firmware_editor.models import (
        get_chip, chip_from_id, chip_from_magic, load_stub_json
    )

    chip = chip_from_magic(0x00F01D83)   # ChipFamily.ESP32
    spec = get_chip(chip)
    stub = load_stub_json(Path("stub_flasher_32.json"))
"""

import base64
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

CHIP_MAGIC_REG = 0x40001000


class ChipFamily(Enum):
    """Known chip families, keyed by the name esptool uses."""
    ESP32 = "esp32"
    ESP32S2 = "esp32s2"
    ESP32C3 = "esp32c3"
    ESP32S3 = "esp32s3"
    ESP32C2 = "esp32c2"
    ESP32C6 = "esp32c6"
    ESP32H2 = "esp32h2"
    ESP32P4 = "esp32p4"
    ESP32C5 = "esp32c5"
    ESP32C61 = "esp32c61"
    ESP32H21 = "esp32h21"
    ESP32H4 = "esp32h4"
    ESP32S31 = "esp32s31"


@dataclass(frozen=True)
class ChipSpec:
    """Per-family constants."""
    family: ChipFamily
    display_name: str
    image_chip_id: int
    magic_values: Tuple[int, ...] = ()
    mac_efuse_reg: Optional[int] = None
    uses_security_info: bool = True


CHIPS: Dict[ChipFamily, ChipSpec] = {
    ChipFamily.ESP32: ChipSpec(
        ChipFamily.ESP32, "ESP32", 0x0000,
        magic_values=(0x00F01D83,),
        mac_efuse_reg=0x3FF5A004,
        uses_security_info=False,
    ),
    ChipFamily.ESP32S2: ChipSpec(
        ChipFamily.ESP32S2, "ESP32-S2", 0x0002,
        magic_values=(0x000007C6,),
        mac_efuse_reg=0x3F41A044,
    ),
    ChipFamily.ESP32C3: ChipSpec(
        ChipFamily.ESP32C3, "ESP32-C3", 0x0005,
        magic_values=(0x6921506F, 0x1B31506F, 0x4881606F, 0x4361606F),
        mac_efuse_reg=0x60008844,
    ),
    ChipFamily.ESP32S3: ChipSpec(
        ChipFamily.ESP32S3, "ESP32-S3", 0x0009,
        magic_values=(0x00000009,),
        mac_efuse_reg=0x60007044,
    ),
    ChipFamily.ESP32C2: ChipSpec(
        ChipFamily.ESP32C2, "ESP32-C2", 0x000C,
        magic_values=(0x6F51306F, 0x7C41A06F),
        mac_efuse_reg=0x60008840,
    ),
    ChipFamily.ESP32C6: ChipSpec(
        ChipFamily.ESP32C6, "ESP32-C6", 0x000D,
        magic_values=(0x2CE0806F,),
        mac_efuse_reg=0x600B0844,
    ),
    ChipFamily.ESP32H2: ChipSpec(
        ChipFamily.ESP32H2, "ESP32-H2", 0x0010,
        magic_values=(0xD7B73E80,),
        mac_efuse_reg=0x600B0844,
    ),
    ChipFamily.ESP32P4: ChipSpec(ChipFamily.ESP32P4, "ESP32-P4", 0x0012),
    ChipFamily.ESP32C5: ChipSpec(ChipFamily.ESP32C5, "ESP32-C5", 0x0017),
    ChipFamily.ESP32C61: ChipSpec(ChipFamily.ESP32C61, "ESP32-C61", 0x0014),
    ChipFamily.ESP32H21: ChipSpec(ChipFamily.ESP32H21, "ESP32-H21", 0x0019),
    ChipFamily.ESP32H4: ChipSpec(ChipFamily.ESP32H4, "ESP32-H4", 0x001C),
    ChipFamily.ESP32S31: ChipSpec(ChipFamily.ESP32S31, "ESP32-S31", 0x0020),
}

# Image header chip id -> display name (0xFFFF marks an unset header)
IMAGE_CHIP_NAMES: Dict[int, str] = {spec.image_chip_id: spec.display_name for spec in CHIPS.values()}
IMAGE_CHIP_NAMES[0xFFFF] = "Invalid"

# GET_SECURITY_INFO flag bits, LSB first
SECURITY_FLAGS: List[str] = [
    "SECURE_BOOT_EN",
    "SECURE_BOOT_AGGRESSIVE_REVOKE",
    "SECURE_DOWNLOAD_ENABLE",
    "SECURE_BOOT_KEY_REVOKE0",
    "SECURE_BOOT_KEY_REVOKE1",
    "SECURE_BOOT_KEY_REVOKE2",
    "SOFT_DIS_JTAG",
    "HARD_DIS_JTAG",
    "DIS_USB",
    "DIS_DOWNLOAD_DCACHE",
    "DIS_DOWNLOAD_ICACHE",
]

RESET_REASONS: Dict[int, str] = {
    0: "NO_MEAN",
    1: "POWERON_RESET",
    3: "RTC_SW_SYS_RESET",
    5: "DEEPSLEEP_RESET",
    7: "TG0WDT_SYS_RESET",
    8: "TG1WDT_SYS_RESET",
    9: "RTCWDT_SYS_RESET",
    10: "INTRUSION_RESET",
    11: "TG0WDT_CPU_RESET",
    12: "RTC_SW_CPU_RESET",
    13: "RTCWDT_CPU_RESET",
    15: "RTCWDT_BROWN_OUT_RESET",
    16: "RTCWDT_RTC_RESET",
    17: "TG1WDT_CPU_RESET",
    18: "SUPER_WDT_RESET",
    19: "GLITCH_RTC_RESET",
    20: "EFUSE_RESET",
    21: "USB_UART_CHIP_RESET",
    22: "USB_JTAG_CHIP_RESET",
    23: "POWER_GLITCH_RESET",
}


@dataclass(frozen=True)
class StubImage:
    """RAM loader image, as shipped by esptool."""
    entry: int
    text: bytes
    text_start: int
    data: bytes = b""
    data_start: int = 0


def get_chip(family: ChipFamily) -> ChipSpec:
    return CHIPS[family]


def list_chips() -> List[ChipSpec]:
    return list(CHIPS.values())


def chip_from_id(chip_id: int) -> Optional[ChipFamily]:
    """Map a security-info / image header chip id to a family."""
    for spec in CHIPS.values():
        if spec.image_chip_id == chip_id:
            return spec.family
    return None


def chip_from_magic(value: int) -> Optional[ChipFamily]:
    """Map the ROM magic register value to a family."""
    for spec in CHIPS.values():
        if value in spec.magic_values:
            return spec.family
    return None


def decode_security_flags(flags: int) -> List[str]:
    return [name for bit, name in enumerate(SECURITY_FLAGS) if flags & (1 << bit)]


def load_stub_json(source: Union[Path, str, dict]) -> StubImage:
    """
    Load a stub loader from esptool's JSON format.

    Args:
        source: Path to the JSON file, or an already-decoded dict

    Returns:
        StubImage with base64 payloads decoded

    Raises:
        ValueError: If required keys are missing
    """
    if isinstance(source, dict):
        raw = source
    else:
        raw = json.loads(Path(source).read_text())

    missing = [k for k in ("entry", "text", "text_start") if k not in raw]
    if missing:
        raise ValueError(f"Stub JSON missing keys: {', '.join(missing)}")

    return StubImage(
        entry=int(raw["entry"]),
        text=base64.b64decode(raw["text"]),
        text_start=int(raw["text_start"]),
        data=base64.b64decode(raw["data"]) if raw.get("data") else b"",
        data_start=int(raw.get("data_start", 0)),
    )
