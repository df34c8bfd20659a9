"""Tests for the SPIFFS scanner."""

import asyncio
import struct

from esp32_firmware_editor.filesystems import parse_spiffs
from esp32_firmware_editor.filesystems.spiffs import SPIFFS_MAGIC, detect_by_pattern
from esp32_firmware_editor.flash_image import FlashImage

from flash_builders import SPIFFS_FILES, SPIFFS_OFFSET, SPIFFS_SIZE, build_spiffs


def scan(raw: bytes, offset: int = 0, length: int = SPIFFS_SIZE):
    return asyncio.run(parse_spiffs(FlashImage.from_bytes(raw), offset, length))


class TestScan:
    """Finding object index headers."""

    def test_fixture_files(self, flash_bytes):
        volume = scan(flash_bytes, SPIFFS_OFFSET)
        assert volume.valid
        assert volume.error is None
        assert not volume.magic_found
        assert [f.name for f in volume.files] == ["/config.json", "/www/index.html", "/old.txt"]
        sizes = {f.name: f.size for f in volume.files}
        assert sizes["/www/index.html"] == 612

    def test_deleted_file_listed_but_not_found(self, flash_bytes):
        volume = scan(flash_bytes, SPIFFS_OFFSET)
        old = [f for f in volume.files if f.name == "/old.txt"][0]
        assert old.deleted
        assert volume.find_file("/old.txt") is None

    def test_find_file_slash_optional(self, flash_bytes):
        volume = scan(flash_bytes, SPIFFS_OFFSET)
        assert volume.find_file("config.json") is volume.find_file("/config.json")
        assert volume.find_file("/config.json").data_obj_id == 1

    def test_magic_sets_geometry(self):
        raw = bytearray(b"\xff" * SPIFFS_SIZE)
        raw[0:16] = struct.pack("<IIII", SPIFFS_MAGIC, 0, 8192, 512)
        volume = scan(bytes(raw))
        assert volume.magic_found
        assert volume.block_size == 8192
        assert volume.page_size == 512
        assert volume.valid

    def test_erased_partition(self):
        volume = scan(b"\xff" * SPIFFS_SIZE)
        assert not volume.valid
        assert volume.error == "No SPIFFS structures found"

    def test_partition_beyond_image(self):
        volume = scan(b"\xff" * 0x1000, offset=0x2000)
        assert not volume.valid
        assert "beyond" in volume.error

    def test_pattern_heuristic(self):
        assert detect_by_pattern(build_spiffs(SPIFFS_FILES)[:0x1000])
        assert not detect_by_pattern(b"\xff" * 0x1000)


class TestReadFile:
    """Reassembling file contents."""

    def test_multi_page_file(self, flash_bytes):
        volume = scan(flash_bytes, SPIFFS_OFFSET)
        data = asyncio.run(volume.read_file(volume.find_file("/www/index.html")))
        assert data == dict(SPIFFS_FILES)["/www/index.html"]

    def test_small_file(self, flash_bytes):
        volume = scan(flash_bytes, SPIFFS_OFFSET)
        data = asyncio.run(volume.read_file(volume.find_file("/config.json")))
        assert data == dict(SPIFFS_FILES)["/config.json"]

    def test_falls_back_to_bytes_after_index_page(self):
        payload = b"RAWDATA-0123456789"
        volume = scan(build_spiffs([("/raw.bin", payload)], with_data_pages=False))
        (file,) = volume.files
        assert asyncio.run(volume.read_file(file)) == payload
