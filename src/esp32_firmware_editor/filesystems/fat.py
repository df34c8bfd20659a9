"""
FAT12/16/32 reader/writer with optional ESP-IDF wear-leveling translation.

ESP-IDF FAT partitions usually sit on a wear-leveling layer. The last
sectors of the partition hold the wear-leveling state (two copies) plus
a spare sector, and logical sectors are rotated through the rest:

    physical = (logical + move_count) % fat_sectors
    physical += 1 if physical >= total_records

All FAT structures below are addressed with logical byte offsets; the
volume translates them to absolute image offsets, 4 KB sector by sector.
"""

import logging
import math
import struct
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from esp32_firmware_editor.flash_image import CodecError, FlashImage

logger = logging.getLogger(__name__)

WL_SECTOR_SIZE = 0x1000
WL_STATE_HEADER_SIZE = 64
WL_STATE_RECORD_SIZE = 16
WL_STATE_COPY_COUNT = 2

BOOT_SIGNATURE = 0xAA55
DIR_ENTRY_SIZE = 32
MAX_DIR_CLUSTERS = 512
MAX_DIR_DEPTH = 16

ATTR_READ_ONLY = 0x01
ATTR_HIDDEN = 0x02
ATTR_SYSTEM = 0x04
ATTR_VOLUME = 0x08
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20
ATTR_LONG_NAME = 0x0F

ATTRIBUTE_NAMES = [
    (ATTR_READ_ONLY, "Read-only"),
    (ATTR_HIDDEN, "Hidden"),
    (ATTR_SYSTEM, "System"),
    (ATTR_VOLUME, "Volume"),
    (ATTR_DIRECTORY, "Directory"),
    (ATTR_ARCHIVE, "Archive"),
]

# (first reserved/bad value, end-of-chain marker written by add_file)
FAT_LIMITS = {
    "FAT12": (0xFF7, 0xFFF),
    "FAT16": (0xFFF7, 0xFFFF),
    "FAT32": (0x0FFFFFF7, 0x0FFFFFFF),
}


class FatError(CodecError):
    """Raised when a FAT operation cannot be completed"""
    pass


@dataclass
class WearLevelingInfo:
    """Wear-leveling state read from the partition footer."""
    pos: int
    max_pos: int
    move_count: int
    access_count: int
    max_count: int
    block_size: int
    version: int
    device_id: int
    total_sectors: int
    state_sectors: int
    fat_sectors: int
    total_records: int
    state_offset: int

    @property
    def wl_size(self) -> int:
        return self.state_sectors * WL_SECTOR_SIZE * WL_STATE_COPY_COUNT + WL_SECTOR_SIZE

    @property
    def data_size(self) -> int:
        return self.total_sectors * WL_SECTOR_SIZE - self.wl_size

    def translate_sector(self, sector: int) -> int:
        translated = (sector + self.move_count) % self.fat_sectors
        if translated >= self.total_records:
            translated += 1
        return translated


def wear_leveling_geometry(length: int) -> Tuple[int, int, int]:
    """(total sectors, state sectors, fat sectors) for a partition length."""
    total = length // WL_SECTOR_SIZE
    state_size = WL_STATE_HEADER_SIZE + WL_STATE_RECORD_SIZE * total
    state_sectors = math.ceil(state_size / WL_SECTOR_SIZE)
    fat_sectors = total - 1 - WL_STATE_COPY_COUNT * state_sectors
    return total, state_sectors, fat_sectors


async def parse_wear_leveling(image: FlashImage, offset: int, length: int) -> WearLevelingInfo:
    """
    Read the wear-leveling state at the end of a partition.

    Raises:
        FatError: If the partition is too small or the state is unreadable
    """
    total, state_sectors, fat_sectors = wear_leveling_geometry(length)
    if fat_sectors <= 0:
        raise FatError(f"Partition too small for wear leveling (0x{length:X} bytes)")

    wl_size = state_sectors * WL_SECTOR_SIZE * WL_STATE_COPY_COUNT + WL_SECTOR_SIZE
    state_offset = offset + length - wl_size
    if state_offset + WL_STATE_HEADER_SIZE > image.size:
        raise FatError("Cannot read wear leveling state")

    header = await image.read_async(state_offset, state_offset + WL_STATE_HEADER_SIZE)
    fields = struct.unpack_from("<8I", header, 0)

    records = 0
    pos = state_offset + WL_STATE_HEADER_SIZE
    records_end = min(pos + WL_STATE_RECORD_SIZE * total, image.size)
    if pos < records_end:
        table = await image.read_async(pos, records_end)
        for i in range(0, len(table) - WL_STATE_RECORD_SIZE + 1, WL_STATE_RECORD_SIZE):
            if table[i:i + WL_STATE_RECORD_SIZE] == b"\xff" * WL_STATE_RECORD_SIZE:
                break
            records += 1

    return WearLevelingInfo(
        *fields,
        total_sectors=total,
        state_sectors=state_sectors,
        fat_sectors=fat_sectors,
        total_records=records,
        state_offset=state_offset,
    )


@dataclass
class BootSector:
    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_sectors: int
    num_fats: int
    root_entry_count: int
    total_sectors: int
    sectors_per_fat: int
    root_cluster: int
    volume_label: str

    @property
    def root_dir_sectors(self) -> int:
        return math.ceil(self.root_entry_count * DIR_ENTRY_SIZE / self.bytes_per_sector)

    @property
    def first_data_sector(self) -> int:
        return self.reserved_sectors + self.num_fats * self.sectors_per_fat + self.root_dir_sectors

    @property
    def total_clusters(self) -> int:
        return max(0, (self.total_sectors - self.first_data_sector) // self.sectors_per_cluster)

    @property
    def fat_type(self) -> str:
        if self.total_clusters < 4085:
            return "FAT12"
        if self.total_clusters < 65525:
            return "FAT16"
        return "FAT32"

    @property
    def cluster_size(self) -> int:
        return self.bytes_per_sector * self.sectors_per_cluster

    @property
    def root_dir_offset(self) -> int:
        return (self.reserved_sectors + self.num_fats * self.sectors_per_fat) * self.bytes_per_sector

    def fat_offset(self, copy: int = 0) -> int:
        return (self.reserved_sectors + copy * self.sectors_per_fat) * self.bytes_per_sector

    def cluster_offset(self, cluster: int) -> int:
        sector = self.first_data_sector + (cluster - 2) * self.sectors_per_cluster
        return sector * self.bytes_per_sector


def parse_boot_sector(raw: bytes) -> BootSector:
    """
    Decode a FAT boot sector.

    Raises:
        FatError: On a bad signature or zero geometry fields
    """
    (signature,) = struct.unpack_from("<H", raw, 510)
    if signature != BOOT_SIGNATURE:
        raise FatError(f"Invalid boot sector signature: 0x{signature:04X} (expected 0xAA55)")

    bps, spc, reserved, num_fats, root_entries, total16 = struct.unpack_from("<HBHBHH", raw, 11)
    (spf16,) = struct.unpack_from("<H", raw, 22)
    total32, spf32, _, _, root_cluster = struct.unpack_from("<IIHHI", raw, 32)
    if bps == 0 or spc == 0 or num_fats == 0:
        raise FatError("Invalid FAT boot sector parameters")

    fat32 = spf16 == 0
    label_offset = 71 if fat32 else 43
    label = raw[label_offset:label_offset + 11].split(b"\x00", 1)[0].decode("ascii", "replace").strip()

    return BootSector(
        bytes_per_sector=bps,
        sectors_per_cluster=spc,
        reserved_sectors=reserved,
        num_fats=num_fats,
        root_entry_count=root_entries,
        total_sectors=total16 or total32,
        sectors_per_fat=spf16 or spf32,
        root_cluster=root_cluster if fat32 else 0,
        volume_label=label,
    )


@dataclass
class FatEntry:
    """A file or directory found while walking the volume."""
    name: str
    path: str
    size: int
    cluster: int
    attr: int
    date: str
    time: str
    dir_entry_offset: int
    children: List["FatEntry"] = field(default_factory=list)

    @property
    def is_directory(self) -> bool:
        return bool(self.attr & ATTR_DIRECTORY)

    @property
    def attributes(self) -> List[str]:
        return [name for bit, name in ATTRIBUTE_NAMES if self.attr & bit]

    @property
    def timestamp(self) -> str:
        return f"{self.date} {self.time}"


def _decode_short_name(raw: bytes) -> str:
    def part(chunk: bytes) -> str:
        return "".join(chr(c) for c in chunk if c != 0x20 and 0x20 <= c <= 0x7E)

    name = part(raw[0:8])
    ext = part(raw[8:11])
    return f"{name}.{ext}" if ext and name else name


def encode_short_name(filename: str) -> bytes:
    """
    Upper-case, space-padded 8.3 name.

    Raises:
        FatError: If the name does not fit 8.3
    """
    if not filename or len(filename) > 12 or filename.count(".") > 1:
        raise FatError(f"Invalid filename '{filename}' (max 8.3 format)")
    name, _, ext = filename.partition(".")
    if not name or len(name) > 8 or len(ext) > 3:
        raise FatError(f"Invalid filename '{filename}' (max 8.3 format)")
    try:
        return (name.upper().ljust(8) + ext.upper().ljust(3)).encode("ascii")
    except UnicodeEncodeError:
        raise FatError(f"Invalid filename '{filename}' (ASCII only)")


def dos_timestamp(when: datetime) -> Tuple[int, int]:
    """(time, date) words for a directory entry."""
    time = ((when.hour & 0x1F) << 11) | ((when.minute & 0x3F) << 5) | ((when.second // 2) & 0x1F)
    date = (((when.year - 1980) & 0x7F) << 9) | ((when.month & 0x0F) << 5) | (when.day & 0x1F)
    return time, date


def format_dos_date(date_word: int) -> str:
    return f"{((date_word >> 9) & 0x7F) + 1980}-{(date_word >> 5) & 0x0F:02d}-{date_word & 0x1F:02d}"


def format_dos_time(time_word: int) -> str:
    return f"{(time_word >> 11) & 0x1F:02d}:{(time_word >> 5) & 0x3F:02d}:{(time_word & 0x1F) * 2:02d}"


class FatVolume:
    """
    FAT volume inside a partition of a FlashImage.

    Use ``await FatVolume.open(...)``; on failure ``volume.error`` is set and
    ``volume.boot`` is None.

    Example:
        volume = await FatVolume.open(image, 0x110000, 0x100000)
        for entry in await volume.list_files():
            print(entry.path, entry.size)
        data = await volume.extract_file(volume.find_file("CONFIG.JSN"))
    """

    def __init__(
        self,
        image: FlashImage,
        offset: int,
        length: int,
        wear_leveling: Optional[WearLevelingInfo] = None,
    ):
        self.image = image
        self.offset = offset
        self.length = length
        self.wear_leveling = wear_leveling
        self.boot: Optional[BootSector] = None
        self.files: List[FatEntry] = []
        self.error: Optional[str] = None

    @classmethod
    async def open(
        cls,
        image: FlashImage,
        offset: int,
        length: int,
        wear_leveling: Optional[bool] = None,
    ) -> "FatVolume":
        """
        Open a FAT volume.

        Args:
            wear_leveling: True/False to force, None to detect (falls back to
                raw access when the translated boot sector is not valid)
        """
        volume = cls(image, offset, length)
        wl_error = None

        if wear_leveling is not False:
            try:
                volume.wear_leveling = await parse_wear_leveling(image, offset, length)
                volume.boot = parse_boot_sector(await volume.read(0, 512))
            except FatError as exc:
                wl_error = str(exc)
                volume.wear_leveling = None
                volume.boot = None

        if volume.boot is None and wear_leveling is not True:
            try:
                volume.boot = parse_boot_sector(await volume.read(0, 512))
            except FatError as exc:
                volume.error = str(exc)
        elif volume.boot is None:
            volume.error = wl_error

        if volume.boot is not None:
            mode = "wear-leveled" if volume.wear_leveling else "raw"
            logger.debug(
                f"FAT at 0x{offset:X}: {volume.boot.fat_type} {mode}, "
                f"{volume.boot.total_clusters} clusters"
            )
        return volume

    # ------------------------------------------------------------------
    # Logical I/O
    # ------------------------------------------------------------------

    @property
    def data_size(self) -> int:
        if self.wear_leveling is not None:
            return self.wear_leveling.data_size
        return self.length

    def physical_offset(self, logical: int) -> int:
        """Absolute image offset of a logical byte offset."""
        if logical < 0 or logical >= self.data_size:
            raise FatError(f"Logical offset 0x{logical:X} outside volume")
        if self.wear_leveling is None:
            return self.offset + logical
        sector, within = divmod(logical, WL_SECTOR_SIZE)
        return self.offset + self.wear_leveling.translate_sector(sector) * WL_SECTOR_SIZE + within

    def _runs(self, logical: int, length: int):
        while length > 0:
            step = length
            if self.wear_leveling is not None:
                step = min(length, WL_SECTOR_SIZE - logical % WL_SECTOR_SIZE)
            yield logical, self.physical_offset(logical), step
            logical += step
            length -= step

    async def read(self, logical: int, length: int) -> bytes:
        out = bytearray()
        for _, physical, step in self._runs(logical, length):
            out += await self.image.read_async(physical, physical + step)
        return bytes(out)

    def write(self, logical: int, data: bytes) -> None:
        pos = 0
        for _, physical, step in self._runs(logical, len(data)):
            self.image.write(physical, data[pos:pos + step])
            pos += step

    def _require_boot(self) -> BootSector:
        if self.boot is None:
            raise FatError(self.error or "FAT volume not parsed")
        return self.boot

    # ------------------------------------------------------------------
    # FAT table
    # ------------------------------------------------------------------

    def _entry_position(self, cluster: int, copy: int = 0) -> Tuple[int, int]:
        boot = self._require_boot()
        base = boot.fat_offset(copy)
        if boot.fat_type == "FAT12":
            return base + cluster + cluster // 2, 2
        if boot.fat_type == "FAT16":
            return base + cluster * 2, 2
        return base + cluster * 4, 4

    async def read_fat_entry(self, cluster: int) -> int:
        boot = self._require_boot()
        pos, width = self._entry_position(cluster)
        raw = await self.read(pos, width)
        if boot.fat_type == "FAT12":
            (value,) = struct.unpack("<H", raw)
            return value >> 4 if cluster & 1 else value & 0x0FFF
        if boot.fat_type == "FAT16":
            return struct.unpack("<H", raw)[0]
        return struct.unpack("<I", raw)[0] & 0x0FFFFFFF

    async def write_fat_entry(self, cluster: int, value: int) -> None:
        """Set a FAT entry in every FAT copy."""
        boot = self._require_boot()
        for copy in range(boot.num_fats):
            pos, width = self._entry_position(cluster, copy)
            if boot.fat_type == "FAT12":
                (current,) = struct.unpack("<H", await self.read(pos, 2))
                if cluster & 1:
                    new = (current & 0x000F) | ((value & 0x0FFF) << 4)
                else:
                    new = (current & 0xF000) | (value & 0x0FFF)
                self.write(pos, struct.pack("<H", new))
            elif boot.fat_type == "FAT16":
                self.write(pos, struct.pack("<H", value & 0xFFFF))
            else:
                (current,) = struct.unpack("<I", await self.read(pos, 4))
                self.write(pos, struct.pack("<I", (current & 0xF0000000) | (value & 0x0FFFFFFF)))

    def _is_chain_cluster(self, cluster: int) -> bool:
        boot = self._require_boot()
        bad, _ = FAT_LIMITS[boot.fat_type]
        return 2 <= cluster < bad and cluster < boot.total_clusters + 2

    async def cluster_chain(self, start: int, limit: int) -> List[int]:
        """Follow a cluster chain, stopping at EOC, loops, or ``limit`` links."""
        chain: List[int] = []
        seen = set()
        cluster = start
        while self._is_chain_cluster(cluster) and cluster not in seen and len(chain) < limit:
            chain.append(cluster)
            seen.add(cluster)
            cluster = await self.read_fat_entry(cluster)
        return chain

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    async def _directory_regions(self, cluster: Optional[int]) -> List[Tuple[int, int]]:
        """(logical offset, length) runs backing a directory; None is the root."""
        boot = self._require_boot()
        if cluster is None and boot.root_cluster == 0:
            return [(boot.root_dir_offset, boot.root_entry_count * DIR_ENTRY_SIZE)]
        start = boot.root_cluster if cluster is None else cluster
        chain = await self.cluster_chain(start, MAX_DIR_CLUSTERS)
        return [(boot.cluster_offset(c), boot.cluster_size) for c in chain]

    async def _read_directory(self, cluster: Optional[int], parent: str, depth: int) -> List[FatEntry]:
        entries: List[FatEntry] = []
        for region_offset, region_length in await self._directory_regions(cluster):
            raw_dir = await self.read(region_offset, region_length)
            for i in range(0, len(raw_dir) - DIR_ENTRY_SIZE + 1, DIR_ENTRY_SIZE):
                raw = raw_dir[i:i + DIR_ENTRY_SIZE]
                first = raw[0]
                if first == 0x00:
                    return entries
                if first in (0xE5, 0x05):
                    continue
                attr = raw[11]
                if attr == ATTR_LONG_NAME or attr & ATTR_VOLUME:
                    continue
                name = _decode_short_name(raw)
                if not name or name in (".", ".."):
                    continue

                (time_word, date_word, cluster_lo, size) = struct.unpack_from("<HHHI", raw, 22)
                (cluster_hi,) = struct.unpack_from("<H", raw, 20)
                first_cluster = cluster_lo
                if self.boot.fat_type == "FAT32":
                    first_cluster |= cluster_hi << 16

                entry = FatEntry(
                    name=name,
                    path=f"{parent}/{name}" if parent else name,
                    size=size,
                    cluster=first_cluster,
                    attr=attr,
                    date=format_dos_date(date_word),
                    time=format_dos_time(time_word),
                    dir_entry_offset=region_offset + i,
                )
                entries.append(entry)

                if entry.is_directory and self._is_chain_cluster(first_cluster) and depth < MAX_DIR_DEPTH:
                    entry.children = await self._read_directory(first_cluster, entry.path, depth + 1)
        return entries

    async def list_files(self) -> List[FatEntry]:
        """
        Walk the directory tree.

        Errors are recorded in ``self.error``; entries found before the
        failure are returned.
        """
        self._require_boot()
        try:
            self.files = await self._read_directory(None, "", 0)
        except FatError as exc:
            self.error = str(exc)
        return self.files

    def iter_files(self, entries: Optional[List[FatEntry]] = None):
        for entry in self.files if entries is None else entries:
            yield entry
            if entry.children:
                yield from self.iter_files(entry.children)

    def find_file(self, path: str) -> Optional[FatEntry]:
        """Entry whose path matches, case-insensitively."""
        target = path.strip("/").lower()
        for entry in self.iter_files():
            if entry.path.lower() == target:
                return entry
        return None

    # ------------------------------------------------------------------
    # File operations
    # ------------------------------------------------------------------

    def _chain_limit(self, entry: FatEntry) -> int:
        if entry.is_directory:
            return MAX_DIR_CLUSTERS
        return math.ceil(entry.size / self._require_boot().cluster_size) + 10

    async def extract_file(self, entry: FatEntry) -> bytes:
        """File contents, following the cluster chain."""
        if entry is None or entry.is_directory:
            raise FatError("Not a file")
        boot = self._require_boot()
        out = bytearray()
        for cluster in await self.cluster_chain(entry.cluster, self._chain_limit(entry)):
            take = min(boot.cluster_size, entry.size - len(out))
            out += await self.read(boot.cluster_offset(cluster), take)
            if len(out) >= entry.size:
                break
        return bytes(out)

    async def delete_file(self, entry: FatEntry) -> int:
        """
        Delete a file: erase its clusters to 0xFF, free its FAT entries, and
        mark the directory entry deleted (0xE5).

        Returns:
            Number of clusters released
        """
        if entry is None:
            raise FatError("File not found")
        if entry.is_directory:
            raise FatError(f"'{entry.path}' is a directory")
        boot = self._require_boot()

        chain = await self.cluster_chain(entry.cluster, self._chain_limit(entry))
        for cluster in chain:
            self.write(boot.cluster_offset(cluster), b"\xff" * boot.cluster_size)
        for cluster in chain:
            await self.write_fat_entry(cluster, 0)
        self.write(entry.dir_entry_offset, b"\xe5")

        logger.info(f"FAT: deleted {entry.path} ({len(chain)} clusters)")
        self.files = []
        return len(chain)

    async def _find_free_slot(self, cluster: Optional[int]) -> Optional[int]:
        """First deleted or unused entry; nothing past the end-of-directory marker is considered."""
        for region_offset, region_length in await self._directory_regions(cluster):
            raw_dir = await self.read(region_offset, region_length)
            for i in range(0, len(raw_dir) - DIR_ENTRY_SIZE + 1, DIR_ENTRY_SIZE):
                if raw_dir[i] in (0x00, 0xE5):
                    return region_offset + i
        return None

    async def allocate_clusters(self, count: int) -> List[int]:
        boot = self._require_boot()
        allocated: List[int] = []
        for cluster in range(2, boot.total_clusters + 2):
            if len(allocated) >= count:
                break
            if await self.read_fat_entry(cluster) == 0:
                allocated.append(cluster)
        return allocated

    async def add_file(self, path: str, data: bytes, when: Optional[datetime] = None) -> FatEntry:
        """
        Create a file with an 8.3 name in an existing directory.

        Raises:
            FatError: Bad name, missing directory, name taken, or no space
        """
        boot = self._require_boot()
        parts = [p for p in path.split("/") if p]
        if not parts:
            raise FatError("Empty path")
        filename = parts.pop()
        short_name = encode_short_name(filename)

        if not self.files:
            await self.list_files()
        dir_cluster: Optional[int] = None
        dir_path = ""
        siblings = self.files
        for part in parts:
            found = next(
                (e for e in siblings if e.is_directory and e.name.lower() == part.lower()),
                None,
            )
            if found is None:
                raise FatError(f"Directory not found: {'/'.join(parts) or '(root)'}")
            dir_cluster, dir_path, siblings = found.cluster, found.path, found.children

        if any(e.name.lower() == filename.lower() for e in siblings):
            raise FatError(f"File already exists: {path}")

        slot = await self._find_free_slot(dir_cluster)
        if slot is None:
            raise FatError("No free directory entries available")

        needed = math.ceil(len(data) / boot.cluster_size)
        clusters = await self.allocate_clusters(needed)
        if len(clusters) < needed:
            raise FatError("Not enough free clusters")

        for i, cluster in enumerate(clusters):
            chunk = data[i * boot.cluster_size:(i + 1) * boot.cluster_size]
            self.write(boot.cluster_offset(cluster), chunk.ljust(boot.cluster_size, b"\xff"))

        _, eoc = FAT_LIMITS[boot.fat_type]
        for i, cluster in enumerate(clusters):
            await self.write_fat_entry(cluster, clusters[i + 1] if i + 1 < len(clusters) else eoc)

        first_cluster = clusters[0] if clusters else 0
        time_word, date_word = dos_timestamp(when or datetime.now())
        entry = bytearray(DIR_ENTRY_SIZE)
        entry[0:11] = short_name
        entry[11] = ATTR_ARCHIVE
        struct.pack_into("<H", entry, 20, first_cluster >> 16 if boot.fat_type == "FAT32" else 0)
        struct.pack_into("<HHHI", entry, 22, time_word, date_word, first_cluster & 0xFFFF, len(data))
        self.write(slot, bytes(entry))

        logger.info(f"FAT: added {path} ({len(data)} bytes, {len(clusters)} clusters)")
        self.files = []
        name = _decode_short_name(bytes(entry))
        return FatEntry(
            name=name,
            path=f"{dir_path}/{name}" if dir_path else name,
            size=len(data),
            cluster=first_cluster,
            attr=ATTR_ARCHIVE,
            date=format_dos_date(date_word),
            time=format_dos_time(time_word),
            dir_entry_offset=slot,
        )
