"""
SPIFFS page scanner (read-only).

Every page starts with a small header:
    obj_id (u16 LE), span_ix (u16 LE), flags (u8)

Span 0 is the object index header, which carries the file size (u32 @8),
type (u8 @12) and NUL-terminated name (@13). Data pages use the same
obj_id with the index bit (0x8000) cleared; their payload follows a
5-byte header.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from esp32_firmware_editor.flash_image import FlashImage, FlashImageError

logger = logging.getLogger(__name__)

SPIFFS_MAGIC = 0x20160902
DEFAULT_PAGE_SIZE = 256
DEFAULT_BLOCK_SIZE = 4096
MAX_BLOCK_SIZE = 65536
MAX_PAGE_SIZE = 2048
MAGIC_SCAN_LIMIT = 512
PATTERN_SCAN_LIMIT = 2048

OBJ_ID_ERASED = 0xFFFF
OBJ_ID_FREE = 0x0000
OBJ_ID_INDEX_FLAG = 0x8000
FLAG_DELETED_CLEAR = 0x80
DATA_HEADER_SIZE = 5
NAME_OFFSET = 13
MAX_NAME_LENGTH = 256

TYPE_FILE = 0x01
TYPE_DIR = 0x02


@dataclass
class SpiffsFile:
    name: str
    obj_id: int
    size: int
    type: int
    block_index: int
    page_index: int
    flags: int

    @property
    def deleted(self) -> bool:
        return (self.flags & FLAG_DELETED_CLEAR) == 0

    @property
    def is_directory(self) -> bool:
        return self.type == TYPE_DIR

    @property
    def data_obj_id(self) -> int:
        return self.obj_id & ~OBJ_ID_INDEX_FLAG & 0xFFFF


@dataclass
class SpiffsVolume:
    image: FlashImage
    offset: int
    length: int
    page_size: int = DEFAULT_PAGE_SIZE
    block_size: int = DEFAULT_BLOCK_SIZE
    magic_found: bool = False
    valid: bool = False
    files: List[SpiffsFile] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def pages_per_block(self) -> int:
        return self.block_size // self.page_size

    @property
    def block_count(self) -> int:
        return self.length // self.block_size

    def find_file(self, name: str) -> Optional[SpiffsFile]:
        """Live file by name; a leading slash is optional."""
        wanted = name if name.startswith("/") else f"/{name}"
        for file in self.files:
            if file.name == wanted and not file.deleted:
                return file
        return None

    def _page_headers(self, block: bytes):
        for page_index in range(self.pages_per_block):
            start = page_index * self.page_size
            if start + self.page_size > len(block):
                break
            obj_id, span = struct.unpack_from("<HH", block, start)
            if obj_id in (OBJ_ID_ERASED, OBJ_ID_FREE):
                continue
            yield page_index, start, obj_id, span, block[start + 4]

    async def read_file(self, file: SpiffsFile) -> bytes:
        """
        Reassemble a file from its data pages.

        The first page found for each span wins. Missing spans read as 0xFF.
        When no data pages exist at all, the bytes following the index page
        are returned instead.
        """
        if not file.size:
            return b""

        per_page = self.page_size - DATA_HEADER_SIZE
        span_pages: Dict[int, int] = {}
        for block_index in range(self.block_count):
            base = self.offset + block_index * self.block_size
            block = await self.image.read_async(base, base + self.block_size)
            for _, start, obj_id, span, flags in self._page_headers(block):
                if (flags & FLAG_DELETED_CLEAR) == 0 or obj_id & OBJ_ID_INDEX_FLAG:
                    continue
                if obj_id == file.data_obj_id and span not in span_pages:
                    span_pages[span] = base + start

        if not span_pages:
            header = self.offset + file.block_index * self.block_size + file.page_index * self.page_size
            content = header + self.page_size
            logger.warning(
                f"SPIFFS: no data pages for {file.name}, reading after index page at 0x{content:X}"
            )
            return await self.image.read_async(content, min(content + file.size, self.image.size))

        out = bytearray()
        while len(out) < file.size:
            span, within = divmod(len(out), per_page)
            take = min(file.size - len(out), per_page - within)
            page = span_pages.get(span)
            if page is None:
                logger.warning(f"SPIFFS: {file.name} missing span {span}, filling {take} bytes")
                out += b"\xff" * take
            else:
                start = page + DATA_HEADER_SIZE + within
                out += await self.image.read_async(start, start + take)
        return bytes(out)


def _decode_name(raw: bytes) -> str:
    out = []
    for b in raw[:MAX_NAME_LENGTH]:
        if b in (0x00, 0xFF) or not 0x20 <= b < 0x7F:
            break
        out.append(chr(b))
    return "".join(out)


def detect_by_pattern(data: bytes) -> bool:
    """Heuristic: a used page header followed shortly by a '/' path byte."""
    for i in range(0, min(PATTERN_SCAN_LIMIT, len(data) - 64), 256):
        obj_id = data[i] | (data[i + 1] << 8)
        if obj_id in (OBJ_ID_ERASED, OBJ_ID_FREE) or data[i + 2] == 0xFF:
            continue
        if 0x2F in data[i + 12:i + 64]:
            return True
    return False


async def parse_spiffs(image: FlashImage, offset: int, length: int) -> SpiffsVolume:
    """
    Scan a SPIFFS partition for object index headers.

    Format problems are reported through ``volume.error``; files found so
    far are kept.
    """
    volume = SpiffsVolume(image=image, offset=offset, length=length)
    if offset >= image.size:
        volume.error = "SPIFFS partition beyond end of flash"
        return volume

    end = min(offset + length, image.size)
    header = await image.read_async(offset, min(offset + DEFAULT_BLOCK_SIZE, end))

    for i in range(0, min(MAGIC_SCAN_LIMIT, len(header) - 4), 4):
        (magic,) = struct.unpack_from("<I", header, i)
        if magic != SPIFFS_MAGIC:
            continue
        volume.magic_found = True
        if i + 16 <= len(header):
            _, block_size, page_size = struct.unpack_from("<III", header, i + 4)
            if 0 < block_size <= MAX_BLOCK_SIZE and 0 < page_size <= MAX_PAGE_SIZE:
                volume.block_size = block_size
                volume.page_size = page_size
        break

    pattern = volume.magic_found or detect_by_pattern(header)
    logger.debug(
        f"SPIFFS at 0x{offset:X}: block={volume.block_size} page={volume.page_size} "
        f"magic={volume.magic_found}"
    )

    try:
        for block_index in range(volume.block_count):
            base = offset + block_index * volume.block_size
            if base >= image.size:
                break
            block = await image.read_async(base, min(base + volume.block_size, image.size))
            for page_index, start, obj_id, span, flags in volume._page_headers(block):
                if span != 0 or start + NAME_OFFSET >= len(block):
                    continue
                size, ftype = struct.unpack_from("<IB", block, start + 8)
                name = _decode_name(block[start + NAME_OFFSET:start + volume.page_size])
                if ftype not in (TYPE_FILE, TYPE_DIR) or not name.startswith("/"):
                    continue
                volume.files.append(SpiffsFile(
                    name=name,
                    obj_id=obj_id,
                    size=size if 0 < size < 0xFFFFFFFF else 0,
                    type=ftype,
                    block_index=block_index,
                    page_index=page_index,
                    flags=flags,
                ))
    except FlashImageError as exc:
        volume.error = f"SPIFFS scan failed: {exc}"

    volume.valid = pattern or bool(volume.files)
    if not volume.valid and volume.error is None:
        volume.error = "No SPIFFS structures found"
    logger.debug(f"SPIFFS: {len(volume.files)} files")
    return volume
