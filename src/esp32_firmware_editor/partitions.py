"""
Partition table codec.

The table is a flat array of 32-byte entries:
    magic (u16 LE, 0x50AA), type (u8), subtype (u8),
    offset (u32 LE), length (u32 LE), label (16 bytes), flags (u32 LE)
terminated by the first entry whose magic does not match.
"""

import logging
import struct
from dataclasses import dataclass
from typing import List, Optional

from esp32_firmware_editor.firmware_image import FirmwareImageInfo
from esp32_firmware_editor.flash_image import FlashImage
from esp32_firmware_editor.utils import Checksums

logger = logging.getLogger(__name__)

PARTITION_MAGIC = 0x50AA
ENTRY_SIZE = 32
DEFAULT_TABLE_OFFSET = 0x9000
MAX_ENTRIES = 32
DETECT_SEARCH_LIMIT = 0x10000
DETECT_ALIGNMENT = 0x1000
MAX_PLAUSIBLE = 0x10000000

TYPE_APP = 0x00
TYPE_DATA = 0x01

SUBTYPE_FACTORY = 0x00
SUBTYPE_OTA_0 = 0x10
SUBTYPE_OTA_MAX = 0x1F
SUBTYPE_TEST = 0x20

SUBTYPE_DATA_OTA = 0x00
SUBTYPE_DATA_PHY = 0x01
SUBTYPE_DATA_NVS = 0x02
SUBTYPE_DATA_COREDUMP = 0x03
SUBTYPE_DATA_NVS_KEYS = 0x04
SUBTYPE_DATA_EFUSE = 0x05
SUBTYPE_DATA_ESPHTTPD = 0x80
SUBTYPE_DATA_FAT = 0x81
SUBTYPE_DATA_SPIFFS = 0x82

TYPE_NAMES = {TYPE_APP: "APP", TYPE_DATA: "DATA"}

APP_SUBTYPES = {SUBTYPE_FACTORY: "factory", SUBTYPE_TEST: "test"}
APP_SUBTYPES.update({SUBTYPE_OTA_0 + i: f"ota_{i}" for i in range(8)})

DATA_SUBTYPES = {
    SUBTYPE_DATA_OTA: "ota",
    SUBTYPE_DATA_PHY: "phy",
    SUBTYPE_DATA_NVS: "nvs",
    SUBTYPE_DATA_COREDUMP: "coredump",
    SUBTYPE_DATA_NVS_KEYS: "nvs_keys",
    SUBTYPE_DATA_EFUSE: "efuse",
    SUBTYPE_DATA_ESPHTTPD: "esphttpd",
    SUBTYPE_DATA_FAT: "fat",
    SUBTYPE_DATA_SPIFFS: "spiffs",
}


def partition_type_name(ptype: int, subtype: int) -> str:
    """Readable name such as ``APP (ota_0)`` or ``DATA (nvs)``."""
    type_name = TYPE_NAMES.get(ptype, "UNKNOWN")
    if ptype == TYPE_APP:
        sub = APP_SUBTYPES.get(subtype, f"unknown_{subtype:x}")
    elif ptype == TYPE_DATA:
        sub = DATA_SUBTYPES.get(subtype, f"unknown_{subtype:x}")
    else:
        sub = ""
    return f"{type_name} ({sub})"


@dataclass(frozen=True)
class PartitionEntry:
    """One partition table row."""
    index: int
    type: int
    subtype: int
    offset: int
    length: int
    label: str
    flags: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def type_name(self) -> str:
        return partition_type_name(self.type, self.subtype)

    @property
    def is_app(self) -> bool:
        return self.type == TYPE_APP

    @property
    def is_ota_app(self) -> bool:
        return self.type == TYPE_APP and SUBTYPE_OTA_0 <= self.subtype <= SUBTYPE_OTA_MAX

    def is_data(self, subtype: int) -> bool:
        return self.type == TYPE_DATA and self.subtype == subtype


def decode_label(raw: bytes) -> str:
    """Printable ASCII up to the first NUL or non-printable byte."""
    out = []
    for b in raw:
        if b < 0x20 or b > 0x7E:
            break
        out.append(chr(b))
    return "".join(out)


def _label_plausible(raw: bytes) -> bool:
    for b in raw:
        if b == 0:
            return True
        if b < 0x20 or 0x7E < b < 0x80:
            return False
    return True


async def parse_partitions(image: FlashImage, offset: int = DEFAULT_TABLE_OFFSET) -> List[PartitionEntry]:
    """
    Decode entries at ``offset`` until the magic stops matching.

    Returns an empty list when there is no table at ``offset``.
    """
    entries: List[PartitionEntry] = []
    pos = offset
    while pos + ENTRY_SIZE <= image.size and len(entries) < 0x100:
        raw = await image.read_async(pos, pos + ENTRY_SIZE)
        magic, ptype, subtype, part_offset, part_length = struct.unpack_from("<HBBII", raw, 0)
        if magic != PARTITION_MAGIC:
            break
        (flags,) = struct.unpack_from("<I", raw, 28)
        entries.append(PartitionEntry(
            index=len(entries),
            type=ptype,
            subtype=subtype,
            offset=part_offset,
            length=part_length,
            label=decode_label(raw[12:28]),
            flags=flags,
        ))
        pos += ENTRY_SIZE

    logger.debug(f"Partition table at 0x{offset:X}: {len(entries)} entries")
    return entries


async def validate_partition_table(image: FlashImage, offset: int) -> int:
    """Count consecutive structurally plausible entries at ``offset`` (max 32)."""
    count = 0
    pos = offset
    for _ in range(MAX_ENTRIES):
        if pos + ENTRY_SIZE > image.size:
            break
        raw = await image.read_async(pos, pos + ENTRY_SIZE)
        magic, ptype, _, part_offset, part_length = struct.unpack_from("<HBBII", raw, 0)
        if magic != PARTITION_MAGIC:
            break
        if ptype > 0xFE or part_offset > MAX_PLAUSIBLE:
            break
        if part_length == 0 or part_length > MAX_PLAUSIBLE:
            break
        if not _label_plausible(raw[12:28]):
            break
        count += 1
        pos += ENTRY_SIZE
    return count


async def detect_partition_table_offset(
    image: FlashImage,
    boot_image: Optional[FirmwareImageInfo] = None,
) -> Optional[int]:
    """
    Find the partition table by scanning 4 KB boundaries after the bootloader.

    The offset with the most plausible entries wins.

    Returns:
        Offset of the best candidate, or None
    """
    start = boot_image.end_offset if boot_image is not None else 0
    limit = min(DETECT_SEARCH_LIMIT, image.size)
    pos = -(-start // DETECT_ALIGNMENT) * DETECT_ALIGNMENT

    best: Optional[int] = None
    best_count = 0
    while pos < limit:
        first = (await image.read_async(pos, pos + 1))[0]
        if first != 0xFF:
            count = await validate_partition_table(image, pos)
            if count > best_count:
                best, best_count = pos, count
        pos += DETECT_ALIGNMENT

    if best is not None:
        logger.debug(f"Detected partition table at 0x{best:X} ({best_count} entries)")
    return best


async def compute_partition_sha1(image: FlashImage, entry: PartitionEntry) -> Optional[str]:
    """SHA-1 hex digest of the partition contents, clamped to the image."""
    start = entry.offset
    end = min(image.size, entry.end)
    if start >= image.size or start >= end:
        return None
    return Checksums.sha1_hex(await image.read_async(start, end))


def find_partition(entries: List[PartitionEntry], label: str) -> Optional[PartitionEntry]:
    for entry in entries:
        if entry.label == label:
            return entry
    return None
