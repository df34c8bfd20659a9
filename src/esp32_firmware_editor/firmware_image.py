"""
ESP firmware image codec (bootloader and application images).

Layout:
- 24-byte header (magic 0xE9, segment count, SPI settings, entry point,
  extended chip fields, hash-appended flag)
- N segments, each an 8-byte header (load address, length) plus payload
- padding so the checksum byte lands at an offset where ``offset % 16 == 15``
- optional 32-byte SHA-256 over [image start, checksum] inclusive

The checksum is an XOR over segment payloads only, seeded with 0xEF.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from esp32_firmware_editor.flash_image import CodecError, FlashImage
from esp32_firmware_editor.models import IMAGE_CHIP_NAMES
from esp32_firmware_editor.utils import Checksums, IMAGE_CHECKSUM_SEED

logger = logging.getLogger(__name__)

IMAGE_MAGIC = 0xE9
HEADER_SIZE = 24
SEGMENT_HEADER_SIZE = 8
MAX_SEGMENT_LENGTH = 0x1000000
APP_DESC_MAGIC = 0xABCD5432
APP_DESC_SIZE = 256
WP_PIN_DISABLED = 0xEE
HASH_LENGTH = 32

SPI_MODES = {0: "QIO", 1: "QOUT", 2: "DIO", 3: "DOUT"}
SPI_SPEEDS = {0x0: "40MHz", 0x1: "26MHz", 0x2: "20MHz", 0xF: "80MHz"}
FLASH_SIZES = {
    0: "1MB", 1: "2MB", 2: "4MB", 3: "8MB",
    4: "16MB", 5: "32MB", 6: "64MB", 7: "128MB",
}


class FirmwareImageError(CodecError):
    """Structural error in a firmware image"""
    pass


@dataclass
class ImageSegment:
    """One loadable segment; ``offset`` is the absolute payload offset."""
    index: int
    load_address: int
    length: int
    offset: int
    truncated: bool = False


@dataclass
class AppDescription:
    """esp_app_desc_t found right after the first segment header."""
    offset: int
    secure_version: int
    version: str
    project_name: str
    time: str
    date: str
    idf_version: str
    app_elf_sha256: str


@dataclass
class FirmwareImageInfo:
    """
    Decoded firmware image.

    ``error`` is set when the image is not usable; fields parsed before the
    failure are kept.
    """
    offset: int
    magic: int = 0
    segment_count: int = 0
    spi_mode: int = 0
    spi_speed: int = 0
    flash_size: int = 0
    entry_point: int = 0
    wp_pin: int = 0
    spi_pin_drv: Tuple[int, int, int] = (0, 0, 0)
    chip_id: int = 0
    min_chip_rev: int = 0
    min_chip_rev_full: int = 0
    max_chip_rev_full: int = 0
    hash_appended: bool = False
    segments: List[ImageSegment] = field(default_factory=list)
    checksum_offset: Optional[int] = None
    checksum: Optional[int] = None
    calculated_checksum: Optional[int] = None
    sha256_offset: Optional[int] = None
    sha256: Optional[str] = None
    end_offset: int = 0
    app_description: Optional[AppDescription] = None
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None and self.magic == IMAGE_MAGIC

    @property
    def checksum_valid(self) -> bool:
        return self.checksum is not None and self.checksum == self.calculated_checksum

    @property
    def chip_name(self) -> str:
        return IMAGE_CHIP_NAMES.get(self.chip_id, f"Unknown (0x{self.chip_id:04X})")

    @property
    def spi_mode_name(self) -> str:
        return SPI_MODES.get(self.spi_mode, f"Unknown ({self.spi_mode})")

    @property
    def spi_speed_name(self) -> str:
        return SPI_SPEEDS.get(self.spi_speed, f"Unknown ({self.spi_speed})")

    @property
    def flash_size_name(self) -> str:
        return FLASH_SIZES.get(self.flash_size, f"Unknown ({self.flash_size})")

    @property
    def wp_pin_disabled(self) -> bool:
        return self.wp_pin == WP_PIN_DISABLED

    @property
    def min_chip_rev_text(self) -> str:
        return f"v{self.min_chip_rev_full // 100}.{self.min_chip_rev_full % 100}"

    @property
    def max_chip_rev_text(self) -> str:
        return f"v{self.max_chip_rev_full // 100}.{self.max_chip_rev_full % 100}"


def checksum_position(end_of_segments: int) -> int:
    """First offset at or after ``end_of_segments`` with ``offset % 16 == 15``."""
    return end_of_segments + (15 - end_of_segments % 16)


def _c_string(raw: bytes) -> str:
    out = []
    for b in raw:
        if b == 0:
            break
        if 0x20 <= b <= 0x7E:
            out.append(chr(b))
    return "".join(out).strip()


async def parse_app_description(image: FlashImage, info: FirmwareImageInfo) -> Optional[AppDescription]:
    """Decode esp_app_desc_t if present; bootloaders and blank slots return None."""
    if not info.segments:
        return None
    desc_offset = info.offset + HEADER_SIZE + SEGMENT_HEADER_SIZE
    if desc_offset + APP_DESC_SIZE > image.size:
        return None

    raw = await image.read_async(desc_offset, desc_offset + APP_DESC_SIZE)
    magic, secure_version = struct.unpack_from("<II", raw, 0)
    if magic != APP_DESC_MAGIC:
        return None

    return AppDescription(
        offset=desc_offset,
        secure_version=secure_version,
        version=_c_string(raw[16:48]),
        project_name=_c_string(raw[48:80]),
        time=_c_string(raw[80:96]),
        date=_c_string(raw[96:112]),
        idf_version=_c_string(raw[112:144]),
        app_elf_sha256=raw[144:176].hex(),
    )


async def parse_firmware_image(
    image: FlashImage,
    offset: int,
    length: Optional[int] = None,
) -> FirmwareImageInfo:
    """
    Parse an image header, its segments and trailing checksum/hash.

    Args:
        image: Flash image to read from
        offset: Absolute offset of the image header
        length: Optional bound (e.g. the partition length)

    Returns:
        FirmwareImageInfo; check ``.error`` / ``.valid``
    """
    info = FirmwareImageInfo(offset=offset)
    if offset < 0 or offset + HEADER_SIZE > image.size:
        info.error = "Offset out of bounds"
        return info

    header = await image.read_async(offset, offset + HEADER_SIZE)
    info.magic = header[0]
    if info.magic != IMAGE_MAGIC:
        info.error = f"Invalid magic 0x{info.magic:02X}"
        return info

    info.segment_count = header[1]
    info.spi_mode = header[2]
    info.spi_speed = header[3] & 0x0F
    info.flash_size = (header[3] >> 4) & 0x0F
    (info.entry_point,) = struct.unpack_from("<I", header, 4)
    info.wp_pin = header[8]
    info.spi_pin_drv = (header[9], header[10], header[11])
    (info.chip_id,) = struct.unpack_from("<H", header, 12)
    info.min_chip_rev = header[14]
    info.min_chip_rev_full, info.max_chip_rev_full = struct.unpack_from("<HH", header, 15)
    info.hash_appended = header[23] == 1

    max_offset = offset + length if length is not None else image.size
    max_offset = min(max_offset, image.size)
    checksum = IMAGE_CHECKSUM_SEED
    pos = offset + HEADER_SIZE

    for i in range(info.segment_count):
        if pos + SEGMENT_HEADER_SIZE > image.size:
            info.error = f"Segment {i} header beyond end of flash"
            break
        load_address, seg_length = struct.unpack(
            "<II", await image.read_async(pos, pos + SEGMENT_HEADER_SIZE)
        )
        if seg_length == 0xFFFFFFFF or seg_length > MAX_SEGMENT_LENGTH:
            info.error = f"Segment {i} has invalid length (0x{seg_length:X})"
            break

        payload_offset = pos + SEGMENT_HEADER_SIZE
        if payload_offset + seg_length > max_offset:
            info.segments.append(
                ImageSegment(i, load_address, seg_length, payload_offset, truncated=True)
            )
            info.error = (
                f"Segment {i} extends beyond image bounds (offset: 0x{payload_offset:X}, "
                f"length: {seg_length}, max: 0x{max_offset:X})"
            )
            break

        info.segments.append(ImageSegment(i, load_address, seg_length, payload_offset))
        checksum = Checksums.xor8(
            await image.read_async(payload_offset, payload_offset + seg_length), checksum
        )
        pos = payload_offset + seg_length

    pos = checksum_position(pos)
    if pos < image.size:
        info.checksum_offset = pos
        info.checksum = (await image.read_async(pos, pos + 1))[0]
        if info.error is None:
            info.calculated_checksum = checksum
        pos += 1

        if info.hash_appended and pos + HASH_LENGTH <= image.size:
            info.sha256_offset = pos
            info.sha256 = (await image.read_async(pos, pos + HASH_LENGTH)).hex()
            pos += HASH_LENGTH

    info.end_offset = pos
    if info.error is None:
        info.app_description = await parse_app_description(image, info)
    return info


async def calculate_image_checksum(
    image: FlashImage,
    offset: int,
    length: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Compute the XOR checksum of an image.

    Returns:
        (checksum, absolute checksum offset)

    Raises:
        FirmwareImageError: On bad magic or implausible segments
    """
    header = await image.read_async(offset, offset + HEADER_SIZE)
    if len(header) < HEADER_SIZE or header[0] != IMAGE_MAGIC:
        raise FirmwareImageError("Invalid image magic")

    max_offset = min(offset + length if length is not None else image.size, image.size)
    checksum = IMAGE_CHECKSUM_SEED
    pos = offset + HEADER_SIZE
    for i in range(header[1]):
        if pos + SEGMENT_HEADER_SIZE > max_offset:
            raise FirmwareImageError(f"Segment {i} header beyond image bounds")
        _, seg_length = struct.unpack("<II", await image.read_async(pos, pos + SEGMENT_HEADER_SIZE))
        if seg_length == 0xFFFFFFFF or seg_length > MAX_SEGMENT_LENGTH:
            raise FirmwareImageError(
                f"Segment {i} has invalid length (0x{seg_length:X}) - image may be corrupted"
            )
        pos += SEGMENT_HEADER_SIZE
        if pos + seg_length > max_offset:
            raise FirmwareImageError(f"Segment {i} extends beyond image bounds")
        checksum = Checksums.xor8(await image.read_async(pos, pos + seg_length), checksum)
        pos += seg_length

    return checksum, checksum_position(pos)


async def validate_image_sha256(image: FlashImage, info: FirmwareImageInfo) -> Tuple[bool, str]:
    """
    Check the appended SHA-256 of a parsed image.

    Returns:
        (valid, calculated hex digest); digest is empty when no hash is present
    """
    if info.sha256 is None or info.checksum_offset is None:
        return False, ""
    data = await image.read_async(info.offset, info.checksum_offset + 1)
    calculated = Checksums.sha256(data).hex()
    return calculated == info.sha256, calculated


async def fix_image_checksum(
    image: FlashImage,
    offset: int,
    length: Optional[int] = None,
) -> Tuple[int, int, bool]:
    """
    Recompute and stage the checksum byte.

    Returns:
        (old checksum, new checksum, changed)
    """
    checksum, checksum_offset = await calculate_image_checksum(image, offset, length)
    old = (await image.read_async(checksum_offset, checksum_offset + 1))[0]
    if old != checksum:
        logger.info(f"Image at 0x{offset:X}: checksum 0x{old:02X} -> 0x{checksum:02X}")
        image.write(checksum_offset, bytes([checksum]))
    return old, checksum, old != checksum


async def fix_image_sha256(
    image: FlashImage,
    offset: int,
    length: Optional[int] = None,
) -> Optional[Tuple[str, str, bool]]:
    """
    Recompute and stage the appended SHA-256.

    Call after fix_image_checksum, since the hash covers the checksum byte.

    Returns:
        (old hex, new hex, changed), or None when the image carries no hash
    """
    header = await image.read_async(offset, offset + HEADER_SIZE)
    if len(header) < HEADER_SIZE or header[0] != IMAGE_MAGIC:
        raise FirmwareImageError("Invalid image magic")
    if header[23] != 1:
        return None

    _, checksum_offset = await calculate_image_checksum(image, offset, length)
    hash_offset = checksum_offset + 1
    if hash_offset + HASH_LENGTH > image.size:
        raise FirmwareImageError("Appended hash extends beyond end of flash")

    digest = Checksums.sha256(await image.read_async(offset, hash_offset))
    old = await image.read_async(hash_offset, hash_offset + HASH_LENGTH)
    if old != digest:
        logger.info(f"Image at 0x{offset:X}: SHA-256 updated")
        image.write(hash_offset, digest)
    return old.hex(), digest.hex(), old != digest
