"""
OTA data (otadata partition) codec.

Two 4 KB sectors each hold one esp_ota_select_entry_t:
    ota_seq (u32), seq_label (20 bytes), ota_state (u32 @24), crc (u32 @28)

The CRC covers only the 4 sequence bytes. The bootloader boots
``(seq - 1) % number_of_ota_apps`` from the valid entry with the higher
sequence number.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

from esp32_firmware_editor.flash_image import CodecError, FlashImage
from esp32_firmware_editor.utils import Checksums

logger = logging.getLogger(__name__)

OTA_SECTOR_SIZE = 0x1000
OTA_ENTRY_COUNT = 2
ENTRY_SIZE = 32
SEQ_ERASED = 0xFFFFFFFF


class OtaDataError(CodecError):
    """Raised when otadata cannot be updated"""
    pass


class OtaImageState(IntEnum):
    NEW = 0x0
    PENDING_VERIFY = 0x1
    VALID = 0x2
    INVALID = 0x3
    ABORTED = 0x4
    UNDEFINED = 0xFFFFFFFF


def ota_state_name(state: int) -> str:
    try:
        return OtaImageState(state).name
    except ValueError:
        return f"Unknown (0x{state:X})"


def ota_entry_crc(sequence: int) -> int:
    return Checksums.esp_crc32(struct.pack("<I", sequence))


@dataclass
class OtaEntry:
    """One otadata sector."""
    index: int
    sequence: int
    state: int
    crc: int
    calculated_crc: int

    @property
    def crc_valid(self) -> bool:
        return self.crc == self.calculated_crc

    @property
    def is_empty(self) -> bool:
        return self.sequence == SEQ_ERASED

    @property
    def valid(self) -> bool:
        if self.sequence == SEQ_ERASED:
            return False
        if self.state in (OtaImageState.INVALID, OtaImageState.ABORTED):
            return False
        return self.crc_valid

    @property
    def state_name(self) -> str:
        return ota_state_name(self.state)


@dataclass
class OtaData:
    entries: List[OtaEntry] = field(default_factory=list)
    active_index: Optional[int] = None
    error: Optional[str] = None

    @property
    def active(self) -> Optional[OtaEntry]:
        if self.active_index is None:
            return None
        return self.entries[self.active_index]

    @property
    def any_valid(self) -> bool:
        return any(e.valid for e in self.entries)


def select_active(entries: List[OtaEntry]) -> Optional[int]:
    """
    Index of the entry the bootloader would use.

    Both valid: higher sequence wins (ties go to the second entry).
    One valid: that one. None valid: None.
    """
    if len(entries) < 2:
        return 0 if entries and entries[0].valid else None
    first, second = entries[0], entries[1]
    if first.valid and second.valid:
        return 0 if first.sequence > second.sequence else 1
    if first.valid:
        return 0
    if second.valid:
        return 1
    return None


def boot_slot(sequence: int, ota_app_count: int) -> int:
    """OTA app slot (0 = ota_0) selected by a sequence number."""
    if ota_app_count <= 0:
        raise ValueError("ota_app_count must be positive")
    return (sequence - 1) % ota_app_count


def decode_entry(index: int, raw: bytes) -> OtaEntry:
    (sequence,) = struct.unpack_from("<I", raw, 0)
    state, crc = struct.unpack_from("<II", raw, 24)
    return OtaEntry(
        index=index,
        sequence=sequence,
        state=state,
        crc=crc,
        calculated_crc=ota_entry_crc(sequence),
    )


def encode_entry(sequence: int, state: int = OtaImageState.VALID) -> bytes:
    """32-byte esp_ota_select_entry_t with an empty label."""
    return (
        struct.pack("<I", sequence)
        + b"\xff" * 20
        + struct.pack("<II", int(state), ota_entry_crc(sequence))
    )


async def parse_otadata(image: FlashImage, offset: int, length: int = OTA_SECTOR_SIZE * 2) -> OtaData:
    """Decode both otadata entries and pick the active one."""
    result = OtaData()
    if length < OTA_SECTOR_SIZE * OTA_ENTRY_COUNT:
        result.error = f"otadata partition too small (0x{length:X} bytes)"
        return result
    if offset + OTA_SECTOR_SIZE + ENTRY_SIZE > image.size:
        result.error = "otadata partition beyond end of flash"
        return result

    for i in range(OTA_ENTRY_COUNT):
        base = offset + i * OTA_SECTOR_SIZE
        result.entries.append(decode_entry(i, await image.read_async(base, base + ENTRY_SIZE)))

    result.active_index = select_active(result.entries)
    return result


async def set_boot_slot(
    image: FlashImage,
    offset: int,
    slot: int,
    ota_app_count: int,
    state: int = OtaImageState.VALID,
) -> OtaEntry:
    """
    Stage an otadata update so the bootloader picks OTA ``slot`` next.

    Writes a new entry into the sector that is not currently active, with a
    sequence number above every valid one.

    Raises:
        OtaDataError: If slot is out of range
    """
    if not 0 <= slot < ota_app_count:
        raise OtaDataError(f"OTA slot {slot} out of range (0..{ota_app_count - 1})")

    current = await parse_otadata(image, offset)
    if current.error:
        raise OtaDataError(current.error)

    max_seq = max((e.sequence for e in current.entries if e.valid), default=0)
    sequence = max_seq + 1
    while boot_slot(sequence, ota_app_count) != slot:
        sequence += 1

    target = 0 if current.active_index is None else (current.active_index + 1) % OTA_ENTRY_COUNT
    base = offset + target * OTA_SECTOR_SIZE
    logger.info(f"otadata: entry {target} <- seq {sequence} (ota_{slot})")
    image.write(base, b"\xff" * min(OTA_SECTOR_SIZE, image.size - base))
    image.write(base, encode_entry(sequence, state))
    return decode_entry(target, encode_entry(sequence, state))
