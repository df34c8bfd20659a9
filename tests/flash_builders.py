"""Byte-level builders for synthetic ESP32 flash contents used by the tests."""

import asyncio
import hashlib
import struct
from typing import Dict, List, Optional, Sequence, Tuple

from esp32_firmware_editor.flash_image import FlashImage
from esp32_firmware_editor.nvs import NvsPartition
from esp32_firmware_editor.otadata import encode_entry

CHIP_ID_S3 = 0x0009

NVS_OFFSET = 0x9000
NVS_SIZE = 0x6000
OTADATA_OFFSET = 0xF000
OTA0_OFFSET = 0x10000
OTA1_OFFSET = 0x50000
APP_SIZE = 0x40000
FAT_OFFSET = 0x90000
FAT_SIZE = 0x10000
SPIFFS_OFFSET = 0xA0000
SPIFFS_SIZE = 0x10000
FLASH_SIZE = 0xB0000


# ----------------------------------------------------------------------
# Firmware images
# ----------------------------------------------------------------------

def app_description(project: str = "demo", version: str = "1.0.0", idf: str = "v5.1.2") -> bytes:
    raw = bytearray(256)
    struct.pack_into("<II", raw, 0, 0xABCD5432, 3)
    raw[16:16 + len(version)] = version.encode()
    raw[48:48 + len(project)] = project.encode()
    raw[80:88] = b"12:00:00"
    raw[96:107] = b"Jan  1 2024"
    raw[112:112 + len(idf)] = idf.encode()
    raw[144:176] = bytes(range(32))
    return bytes(raw)


def build_app_image(
    segments: Optional[Sequence[Tuple[int, bytes]]] = None,
    chip_id: int = CHIP_ID_S3,
    hash_appended: bool = True,
    project: Optional[str] = "demo",
    version: str = "1.0.0",
    entry: int = 0x40080000,
) -> bytes:
    """Firmware image with header, segments, checksum and optional SHA-256."""
    if segments is None:
        first = bytes(range(256)) * 2
        if project is not None:
            first = app_description(project, version) + first
        segments = [(0x3C000020, first), (0x40380000, b"\x11\x22\x33\x44" * 64)]

    header = bytearray(24)
    header[0] = 0xE9
    header[1] = len(segments)
    header[2] = 2       # DIO
    header[3] = 0x20    # 4MB, 40MHz
    struct.pack_into("<I", header, 4, entry)
    header[8] = 0xEE
    struct.pack_into("<H", header, 12, chip_id)
    struct.pack_into("<HH", header, 15, 0, 99)
    header[23] = 1 if hash_appended else 0

    body = bytearray(header)
    checksum = 0xEF
    for address, data in segments:
        body += struct.pack("<II", address, len(data)) + data
        for b in data:
            checksum ^= b

    body += b"\x00" * (15 - len(body) % 16)
    body.append(checksum)
    if hash_appended:
        body += hashlib.sha256(body).digest()
    return bytes(body)


# ----------------------------------------------------------------------
# Partition table
# ----------------------------------------------------------------------

def partition_entry(ptype: int, subtype: int, offset: int, size: int, label: str, flags: int = 0) -> bytes:
    return struct.pack("<HBBII16sI", 0x50AA, ptype, subtype, offset, size, label.encode(), flags)


def default_partition_table() -> bytes:
    return b"".join([
        partition_entry(0x01, 0x02, NVS_OFFSET, NVS_SIZE, "nvs"),
        partition_entry(0x01, 0x00, OTADATA_OFFSET, 0x2000, "otadata"),
        partition_entry(0x00, 0x10, OTA0_OFFSET, APP_SIZE, "ota_0"),
        partition_entry(0x00, 0x11, OTA1_OFFSET, APP_SIZE, "ota_1"),
        partition_entry(0x01, 0x81, FAT_OFFSET, FAT_SIZE, "storage"),
        partition_entry(0x01, 0x82, SPIFFS_OFFSET, SPIFFS_SIZE, "spiffs"),
    ])


def otadata_sectors(*sequences: Optional[int]) -> bytes:
    """Two otadata sectors; None leaves a sector erased."""
    out = bytearray(b"\xff" * 0x2000)
    for i, seq in enumerate(sequences):
        if seq is not None:
            out[i * 0x1000:i * 0x1000 + 32] = encode_entry(seq)
    return bytes(out)


# ----------------------------------------------------------------------
# NVS
# ----------------------------------------------------------------------

def build_nvs(size: int = NVS_SIZE) -> bytes:
    """NVS partition with namespaces ``wifi`` and ``app``."""
    async def fill() -> bytes:
        image = FlashImage.from_bytes(b"\xff" * size)
        nvs = NvsPartition(image, 0, size)
        await nvs.add_namespace("wifi")
        await nvs.add_item("wifi", "ssid", "string", "HomeNet")
        await nvs.add_item("wifi", "retries", "u8", 3)
        await nvs.add_namespace("app")
        await nvs.add_item("app", "boot_count", "u32", 42)
        await nvs.add_item("app", "offset", "i16", -12)
        await nvs.add_item("app", "cal", "blob", bytes(range(40)))
        await image.flush()
        return image.to_bytes()

    return asyncio.run(fill())


# ----------------------------------------------------------------------
# FAT
# ----------------------------------------------------------------------

FAT_BPS = 512
FAT_RESERVED = 1
FAT_COUNT = 2
FAT_ROOT_ENTRIES = 64
FAT_SPF = 1


def _short_name(name: str) -> bytes:
    base, _, ext = name.partition(".")
    return (base.upper().ljust(8) + ext.upper().ljust(3)).encode()


def _dir_entry(name: bytes, attr: int, cluster: int, size: int) -> bytes:
    entry = bytearray(32)
    entry[0:11] = name
    entry[11] = attr
    # 2024-01-01 12:00:00
    struct.pack_into("<HHHI", entry, 22, 12 << 11, (44 << 9) | (1 << 5) | 1, cluster, size)
    return bytes(entry)


def _set_fat12(fat: bytearray, cluster: int, value: int) -> None:
    pos = cluster + cluster // 2
    current = fat[pos] | (fat[pos + 1] << 8)
    if cluster & 1:
        current = (current & 0x000F) | (value << 4)
    else:
        current = (current & 0xF000) | value
    fat[pos] = current & 0xFF
    fat[pos + 1] = current >> 8


def build_fat_volume(files: Dict[str, bytes], total_sectors: int = 128, label: str = "STORAGE") -> bytes:
    """
    FAT12 volume with 512-byte sectors and 1-sector clusters.

    Keys of ``files`` are 8.3 names, optionally inside one directory level
    (``LOGS/BOOT.LOG``).
    """
    boot = bytearray(FAT_BPS)
    boot[0:3] = b"\xeb\x3c\x90"
    boot[3:11] = b"MSDOS5.0"
    struct.pack_into(
        "<HBHBHHBHHHI", boot, 11,
        FAT_BPS, 1, FAT_RESERVED, FAT_COUNT, FAT_ROOT_ENTRIES, total_sectors, 0xF8, FAT_SPF, 63, 255, 0,
    )
    boot[36] = 0x80
    boot[38] = 0x29
    boot[43:54] = label.upper().ljust(11).encode()
    boot[54:62] = b"FAT12   "
    boot[510:512] = b"\x55\xaa"

    fat = bytearray(FAT_SPF * FAT_BPS)
    fat[0:3] = b"\xf8\xff\xff"
    root = bytearray(FAT_ROOT_ENTRIES * 32)
    first_data = FAT_RESERVED + FAT_COUNT * FAT_SPF + len(root) // FAT_BPS
    data_area = bytearray(b"\xff" * ((total_sectors - first_data) * FAT_BPS))

    next_cluster = [2]

    def store(payload: bytes) -> int:
        clusters = max(1, -(-len(payload) // FAT_BPS))
        start = next_cluster[0]
        for i in range(clusters):
            cluster = start + i
            _set_fat12(fat, cluster, cluster + 1 if i + 1 < clusters else 0xFFF)
            chunk = payload[i * FAT_BPS:(i + 1) * FAT_BPS]
            pos = (cluster - 2) * FAT_BPS
            data_area[pos:pos + FAT_BPS] = chunk.ljust(FAT_BPS, b"\x00")
        next_cluster[0] += clusters
        return start

    root_entries: List[bytes] = []
    directories: Dict[str, List[Tuple[str, bytes]]] = {}
    for path, payload in files.items():
        if "/" in path:
            directory, name = path.split("/", 1)
            directories.setdefault(directory, []).append((name, payload))
        else:
            root_entries.append(_dir_entry(_short_name(path), 0x20, store(payload), len(payload)))

    for directory, children in directories.items():
        cluster = next_cluster[0]
        listing = bytearray(FAT_BPS)
        listing[0:32] = _dir_entry(b".          ", 0x10, cluster, 0)
        listing[32:64] = _dir_entry(b"..         ", 0x10, 0, 0)
        store(bytes(listing))
        root_entries.append(_dir_entry(_short_name(directory), 0x10, cluster, 0))
        for i, (name, payload) in enumerate(children):
            entry = _dir_entry(_short_name(name), 0x20, store(payload), len(payload))
            listing[64 + i * 32:96 + i * 32] = entry
        pos = (cluster - 2) * FAT_BPS
        data_area[pos:pos + FAT_BPS] = listing

    for i, entry in enumerate(root_entries):
        root[i * 32:(i + 1) * 32] = entry

    return bytes(boot + fat * FAT_COUNT + root + data_area)


def wrap_wear_leveling(logical: bytes, length: int = FAT_SIZE, move_count: int = 2, records: int = 3) -> bytes:
    """
    Place a logical FAT volume behind an ESP-IDF wear-leveling layer.

    For a 64 KiB partition there are 16 sectors: 1 spare, 2 state copies of
    one sector each, and 13 rotating data sectors.
    """
    sector = 0x1000
    total = length // sector
    state_sectors = 1
    fat_sectors = total - 1 - 2 * state_sectors
    out = bytearray(b"\xff" * length)
    for logical_sector in range(len(logical) // sector):
        physical = (logical_sector + move_count) % fat_sectors
        if physical >= records:
            physical += 1
        out[physical * sector:(physical + 1) * sector] = logical[logical_sector * sector:(logical_sector + 1) * sector]

    state_offset = length - (state_sectors * sector * 2 + sector)
    out[state_offset:state_offset + 32] = struct.pack(
        "<8I", 0, fat_sectors, move_count, 0, 16, sector, 2, 0x1234
    )
    out[state_offset + 64:state_offset + 64 + 16 * records] = b"\x00" * (16 * records)
    return bytes(out)


# ----------------------------------------------------------------------
# SPIFFS
# ----------------------------------------------------------------------

SPIFFS_PAGE = 256
SPIFFS_BLOCK = 4096


def build_spiffs(
    files: Sequence[Tuple[str, bytes]],
    deleted: Sequence[str] = (),
    length: int = SPIFFS_SIZE,
    with_data_pages: bool = True,
) -> bytes:
    """SPIFFS image with one index header per file followed by its data pages."""
    out = bytearray(b"\xff" * length)
    pages_per_block = SPIFFS_BLOCK // SPIFFS_PAGE
    page_no = 1

    def next_page() -> int:
        nonlocal page_no
        if page_no % pages_per_block == 0:
            page_no += 1
        current = page_no
        page_no += 1
        return current * SPIFFS_PAGE

    for obj_id, (name, data) in enumerate(files, start=1):
        flags = 0x78 if name in deleted else 0xF8
        pos = next_page()
        header = struct.pack("<HHB", obj_id | 0x8000, 0, flags) + b"\xff" * 3
        header += struct.pack("<IB", len(data), 0x01) + name.encode() + b"\x00"
        out[pos:pos + len(header)] = header
        if not with_data_pages:
            out[pos + SPIFFS_PAGE:pos + SPIFFS_PAGE + len(data)] = data
            page_no += -(-len(data) // SPIFFS_PAGE)
            continue

        per_page = SPIFFS_PAGE - 5
        for span in range(-(-len(data) // per_page)):
            pos = next_page()
            chunk = data[span * per_page:(span + 1) * per_page]
            out[pos:pos + 5 + len(chunk)] = struct.pack("<HHB", obj_id, span, 0xFE) + chunk
    return bytes(out)


# ----------------------------------------------------------------------
# Whole flash
# ----------------------------------------------------------------------

FAT_FILES = {
    "HELLO.TXT": b"hello fat\n",
    "LOGS/BOOT.LOG": b"boot ok\n" * 100,
}

SPIFFS_FILES = [
    ("/config.json", b'{"mode": "station", "retries": 3}'),
    ("/www/index.html", b"<html>" + b"x" * 600 + b"</html>"),
    ("/old.txt", b"stale"),
]


def build_flash(ota_sequences: Tuple[Optional[int], Optional[int]] = (5, 3)) -> bytes:
    """
    Complete ESP32-S3 style flash dump:

    0x0 bootloader, 0x8000 partition table, 0x9000 nvs, 0xF000 otadata,
    0x10000 ota_0, 0x50000 ota_1, 0x90000 FAT (raw), 0xA0000 SPIFFS.
    """
    flash = bytearray(b"\xff" * FLASH_SIZE)

    def put(offset: int, data: bytes) -> None:
        flash[offset:offset + len(data)] = data

    put(0x0, build_app_image(project=None))
    put(0x8000, default_partition_table())
    put(NVS_OFFSET, build_nvs())
    put(OTADATA_OFFSET, otadata_sectors(*ota_sequences))
    put(OTA0_OFFSET, build_app_image(project="demo", version="1.0.0"))
    put(OTA1_OFFSET, build_app_image(project="demo", version="2.0.0"))
    put(FAT_OFFSET, build_fat_volume(FAT_FILES))
    put(SPIFFS_OFFSET, build_spiffs(SPIFFS_FILES, deleted=["/old.txt"]))
    return bytes(flash)
