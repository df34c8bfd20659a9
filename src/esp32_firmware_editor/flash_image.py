"""
Sparse, lazily cached view of a flash chip.

A FlashImage keeps two independent sets of segments:
- read segments: bytes known to be on the device (fetched or seeded)
- write segments: bytes staged by the user and not yet flushed

Reads fall through write -> read -> 0xFF (erased flash). Missing ranges are
pulled in through an async read callback; staged writes are pushed out through
an async write callback on flush().
"""

import asyncio
import bisect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

ERASED_BYTE = 0xFF
DEFAULT_SECTOR_SIZE = 0x1000
MAX_FILL_ATTEMPTS = 64

ReadResult = Union[bytes, bytearray, Tuple[int, bytes]]
ReadCallback = Callable[[int, int], Awaitable[ReadResult]]
WriteCallback = Callable[[int, bytes], Awaitable[None]]
PrepareFlushCallback = Callable[["FlashImage"], Awaitable[None]]


class FlashImageError(Exception):
    """Base exception for flash image errors"""
    pass


class ImageRangeError(FlashImageError):
    """Address outside of the image"""
    pass


class CoverageError(FlashImageError):
    """Read callback did not deliver the requested range"""
    pass


class CodecError(Exception):
    """Base exception for on-flash structure mutations"""
    pass


@dataclass
class Segment:
    """Contiguous run of bytes starting at ``address``."""
    address: int
    data: bytearray

    @property
    def end(self) -> int:
        return self.address + len(self.data)

    def covers(self, address: int) -> bool:
        return self.address <= address < self.end

    def copy(self) -> "Segment":
        return Segment(self.address, bytearray(self.data))


def merge_segments(*layers: Iterable[Segment]) -> List[Segment]:
    """
    Merge segment layers into a sorted list of disjoint, non-touching segments.

    Overlapping or adjacent segments are coalesced. Where bytes overlap, later
    layers win over earlier ones, and within a layer later segments win.

    Args:
        layers: Segment iterables in ascending priority

    Returns:
        New list of merged segments sorted by address
    """
    ordered = [seg for layer in layers for seg in layer if seg.data]
    if not ordered:
        return []

    spans: List[List[int]] = []
    for seg in sorted(ordered, key=lambda s: s.address):
        if spans and seg.address <= spans[-1][1]:
            spans[-1][1] = max(spans[-1][1], seg.end)
        else:
            spans.append([seg.address, seg.end])

    starts = [start for start, _ in spans]
    buffers = [bytearray(b"\xff" * (end - start)) for start, end in spans]
    for seg in ordered:
        idx = bisect.bisect_right(starts, seg.address) - 1
        rel = seg.address - starts[idx]
        buffers[idx][rel:rel + len(seg.data)] = seg.data

    return [Segment(start, buf) for start, buf in zip(starts, buffers)]


def _find(segments: Sequence[Segment], address: int) -> Optional[Segment]:
    starts = [s.address for s in segments]
    idx = bisect.bisect_right(starts, address) - 1
    if idx >= 0 and segments[idx].covers(address):
        return segments[idx]
    return None


class FlashImage:
    """
    Byte-addressable flash image with lazy reads and buffered writes.

    Example:
        image = FlashImage(0x400000, read_callback=fetch, write_callback=store)
        header = await image.read_async(0x1000, 0x1018)
        image.write(0x1003, b"\\x2f")
        await image.flush()
    """

    def __init__(
        self,
        size: int,
        read_callback: Optional[ReadCallback] = None,
        write_callback: Optional[WriteCallback] = None,
        prepare_flush: Optional[PrepareFlushCallback] = None,
        sector_size: int = DEFAULT_SECTOR_SIZE,
    ):
        """
        Args:
            size: Total addressable size in bytes
            read_callback: async (address, length) -> bytes or (address, bytes)
            write_callback: async (address, data) -> None, called on flush
            prepare_flush: async hook run on the image before write callbacks
            sector_size: Granularity used for block-aligned staging
        """
        if size <= 0:
            raise ValueError(f"Image size must be positive, got {size}")
        self.size = size
        self.sector_size = sector_size
        self._read_callback = read_callback
        self._write_callback = write_callback
        self._prepare_flush = prepare_flush
        self._reads: List[Segment] = []
        self._writes: List[Segment] = []
        self._cache_lock = asyncio.Lock()

    @classmethod
    def from_bytes(cls, data: bytes, sector_size: int = DEFAULT_SECTOR_SIZE) -> "FlashImage":
        """Wrap an existing full buffer; every byte is treated as cached."""
        image = cls(len(data), sector_size=sector_size)
        image._reads = [Segment(0, bytearray(data))]
        return image

    # ------------------------------------------------------------------
    # Segment inspection
    # ------------------------------------------------------------------

    @property
    def read_segments(self) -> List[Segment]:
        return [s.copy() for s in self._reads]

    @property
    def write_segments(self) -> List[Segment]:
        return [s.copy() for s in self._writes]

    @property
    def has_pending_writes(self) -> bool:
        return bool(self._writes)

    def replace_writes(self, segments: Iterable[Segment]) -> None:
        """Replace the staged writes (used by prepare-flush hooks)."""
        self._writes = merge_segments(segments)

    def clear(self) -> None:
        """Drop all cached and staged data."""
        self._reads = []
        self._writes = []

    # ------------------------------------------------------------------
    # Cache fill
    # ------------------------------------------------------------------

    def _first_gap(self, start: int, end: int) -> Optional[Tuple[int, int]]:
        pos = start
        while pos < end:
            seg = _find(self._writes, pos) or _find(self._reads, pos)
            if seg is not None:
                pos = seg.end
                continue
            gap_end = end
            for seg in (*self._reads, *self._writes):
                if pos < seg.address < gap_end:
                    gap_end = seg.address
            return pos, gap_end
        return None

    def _add_read(self, address: int, data: bytes) -> None:
        self._reads = merge_segments(self._reads, [Segment(address, bytearray(data))])

    async def ensure_cached(self, address: int, length: int) -> None:
        """
        Make sure every byte of [address, address + length) is cached.

        Gaps are fetched one at a time through the read callback. Calls are
        serialized so concurrent callers never fetch the same range twice.

        Raises:
            ImageRangeError: If address is outside the image
            CoverageError: If the read callback makes no progress
        """
        async with self._cache_lock:
            if address < 0 or address >= self.size:
                raise ImageRangeError(
                    f"Address 0x{address:X} outside image of size 0x{self.size:X}"
                )
            end = min(address + max(length, 0), self.size)

            for _ in range(MAX_FILL_ATTEMPTS):
                gap = self._first_gap(address, end)
                if gap is None:
                    return
                gap_start, gap_end = gap

                if self._read_callback is None:
                    self._add_read(gap_start, b"\xff" * (gap_end - gap_start))
                    continue

                logger.debug(f"Fetching 0x{gap_start:X}+0x{gap_end - gap_start:X}")
                result = await self._read_callback(gap_start, gap_end - gap_start)
                if isinstance(result, tuple):
                    at, data = result
                else:
                    at, data = gap_start, result

                if not data:
                    raise CoverageError(f"Read callback returned no data for 0x{gap_start:X}")
                if at < 0 or at >= self.size:
                    raise CoverageError(f"Read callback returned data at invalid address 0x{at:X}")
                data = bytes(data[:self.size - at])
                if not at <= gap_start < at + len(data):
                    raise CoverageError(
                        f"Read callback returned 0x{at:X}+0x{len(data):X}, "
                        f"which does not cover 0x{gap_start:X}"
                    )
                self._add_read(at, data)

            if self._first_gap(address, end) is not None:
                raise CoverageError(
                    f"Could not cache 0x{address:X}-0x{end:X} after {MAX_FILL_ATTEMPTS} attempts"
                )

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def byte_at(self, address: int) -> Optional[int]:
        """Effective byte at address, or None when out of range."""
        if address < 0 or address >= self.size:
            return None
        seg = _find(self._writes, address) or _find(self._reads, address)
        if seg is None:
            return ERASED_BYTE
        return seg.data[address - seg.address]

    def _materialize(self, start: int, end: int, include_writes: bool = True) -> bytearray:
        out = bytearray(b"\xff" * (end - start))
        layers = (self._reads, self._writes) if include_writes else (self._reads,)
        for layer in layers:
            for seg in layer:
                lo = max(start, seg.address)
                hi = min(end, seg.end)
                if lo < hi:
                    out[lo - start:hi - start] = seg.data[lo - seg.address:hi - seg.address]
        return out

    def read(self, start: int, end: int) -> bytes:
        """Copy of [start, end) assuming the range is already cached."""
        start = max(0, start)
        end = min(end, self.size)
        if end <= start:
            return b""
        return bytes(self._materialize(start, end))

    async def read_async(self, start: int, end: int) -> bytes:
        """Cache [start, end) if needed, then return a copy of it."""
        if end > start:
            await self.ensure_cached(start, end - start)
        return self.read(start, end)

    def to_bytes(self) -> bytes:
        return self.read(0, self.size)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _is_read_covered(self, start: int, end: int) -> bool:
        pos = start
        while pos < end:
            seg = _find(self._reads, pos)
            if seg is None:
                return False
            pos = seg.end
        return True

    def _next_boundary(self, address: int) -> int:
        boundary = min(address - address % self.sector_size + self.sector_size, self.size)
        for seg in (*self._reads, *self._writes):
            for edge in (seg.address, seg.end):
                if address < edge < boundary:
                    boundary = edge
        return boundary

    def _stage(self, address: int, data: bytes) -> None:
        self._writes = merge_segments(self._writes, [Segment(address, bytearray(data))])

    def write(self, address: int, data: bytes) -> None:
        """
        Stage bytes for writing. Nothing is sent until flush().

        Bytes equal to already-cached data are not staged. A mismatch inside
        a fully cached sector stages the whole sector so device writes stay
        sector aligned.

        Raises:
            ImageRangeError: If the range does not fit in the image
        """
        data = bytes(data)
        if not data:
            return
        if address < 0 or address + len(data) > self.size:
            raise ImageRangeError(
                f"Write 0x{address:X}+0x{len(data):X} outside image of size 0x{self.size:X}"
            )

        pos = 0
        while pos < len(data):
            addr = address + pos
            remaining = len(data) - pos

            seg = _find(self._writes, addr)
            if seg is not None:
                n = min(seg.end - addr, remaining)
                rel = addr - seg.address
                seg.data[rel:rel + n] = data[pos:pos + n]
                pos += n
                continue

            rseg = _find(self._reads, addr)
            if rseg is not None:
                limit = min(rseg.end - addr, remaining)
                for w in self._writes:
                    if addr < w.address < addr + limit:
                        limit = w.address - addr
                        break
                rel = addr - rseg.address
                match = 0
                while match < limit and rseg.data[rel + match] == data[pos + match]:
                    match += 1
                if match:
                    pos += match
                    continue

                sector_start = addr - addr % self.sector_size
                sector_end = min(sector_start + self.sector_size, self.size)
                if self._is_read_covered(sector_start, sector_end):
                    block = self._materialize(sector_start, sector_end)
                    n = min(sector_end - addr, remaining)
                    block[addr - sector_start:addr - sector_start + n] = data[pos:pos + n]
                    self._stage(sector_start, block)
                    pos += n
                    continue

            n = min(self._next_boundary(addr) - addr, remaining)
            self._stage(addr, data[pos:pos + n])
            pos += n

        first = address // self.sector_size
        last = (address + len(data) - 1) // self.sector_size
        for sector in range(first, last + 1):
            self._prune_sector(sector)

    def _prune_sector(self, sector: int) -> None:
        start = sector * self.sector_size
        end = min(start + self.sector_size, self.size)
        if not any(w.address < end and w.end > start for w in self._writes):
            return
        if not self._is_read_covered(start, end):
            return
        if self._materialize(start, end, include_writes=False) != self._materialize(start, end):
            return

        kept: List[Segment] = []
        for w in self._writes:
            if w.end <= start or w.address >= end:
                kept.append(w)
                continue
            if w.address < start:
                kept.append(Segment(w.address, w.data[:start - w.address]))
            if w.end > end:
                kept.append(Segment(end, w.data[end - w.address:]))
        self._writes = merge_segments(kept)

    def fill(self, value: int, start: int = 0, end: Optional[int] = None) -> None:
        """Stage ``value`` over [start, end)."""
        if end is None:
            end = self.size
        if end > start:
            self.write(start, bytes([value & 0xFF]) * (end - start))

    async def flush(self) -> None:
        """
        Push staged writes through the write callback.

        Flushed data becomes part of the cached read data. Does nothing when
        no writes are staged.
        """
        if not self._writes:
            return

        self._writes = merge_segments(self._writes)
        if self._prepare_flush is not None:
            await self._prepare_flush(self)

        if self._write_callback is not None:
            for seg in sorted(self._writes, key=lambda s: s.address):
                logger.debug(f"Flushing 0x{seg.address:X}+0x{len(seg.data):X}")
                await self._write_callback(seg.address, bytes(seg.data))

        self._reads = merge_segments(self._reads, self._writes)
        self._writes = []
