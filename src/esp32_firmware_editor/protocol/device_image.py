"""
FlashImage backed by a connected device.

Reads are widened to whole sectors. Before flushing, staged writes are
grown to whole sectors (filled from the effective image) and neighbours
are joined, so every FLASH_BEGIN covers aligned, contiguous blocks.
"""

import logging
from typing import List, Optional

from esp32_firmware_editor.flash_image import FlashImage, Segment
from esp32_firmware_editor.protocol.errors import LoaderError
from esp32_firmware_editor.protocol.loader import FLASH_SECTOR_SIZE, ESPLoader, ProgressCallback

logger = logging.getLogger(__name__)

MAX_READ_CHUNK = 0x800000


def align_down(value: int, block: int = FLASH_SECTOR_SIZE) -> int:
    return value & ~(block - 1)


def align_up(value: int, block: int = FLASH_SECTOR_SIZE) -> int:
    return (value + block - 1) & ~(block - 1)


def sector_spans(segments: List[Segment], size: int) -> List[tuple]:
    """Sector-aligned [start, end) ranges covering the segments, joined when touching."""
    spans: List[list] = []
    for seg in sorted(segments, key=lambda s: s.address):
        start = align_down(seg.address)
        end = min(align_up(seg.end), size)
        if spans and start <= spans[-1][1]:
            spans[-1][1] = max(spans[-1][1], end)
        else:
            spans.append([start, end])
    return [tuple(s) for s in spans]


def create_device_image(
    loader: ESPLoader,
    size: int,
    progress: Optional[ProgressCallback] = None,
) -> FlashImage:
    """
    Build a FlashImage whose cache misses and flushes go to the device.

    Args:
        loader: Synced loader (stub recommended for reads and writes)
        size: Flash size in bytes
        progress: Optional (done, total) callback for transfers
    """

    async def read_block(address: int, length: int):
        start = align_down(address)
        length = (min(length, MAX_READ_CHUNK) + FLASH_SECTOR_SIZE) & ~(FLASH_SECTOR_SIZE - 1)
        length = min(length, size - start)
        data = await loader.read_flash(start, length, progress)
        return start, data

    async def write_block(address: int, data: bytes) -> None:
        if address % FLASH_SECTOR_SIZE or len(data) % FLASH_SECTOR_SIZE:
            raise LoaderError(
                f"Unaligned flash write 0x{address:X}+0x{len(data):X}; "
                f"writes must cover whole 4 KiB sectors"
            )
        await loader.write_flash(address, data, progress)

    async def align_writes(image: FlashImage) -> None:
        aligned = []
        for start, end in sector_spans(image.write_segments, image.size):
            await image.ensure_cached(start, end - start)
            aligned.append(Segment(start, bytearray(image.read(start, end))))
        image.replace_writes(aligned)
        logger.debug(f"Aligned staged writes to {len(aligned)} sector block(s)")

    return FlashImage(
        size,
        read_callback=read_block,
        write_callback=write_block,
        prepare_flush=align_writes,
    )
