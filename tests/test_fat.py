"""Tests for the FAT codec and the wear-leveling layer."""

import asyncio
from datetime import datetime

import pytest

from esp32_firmware_editor.filesystems import FatError, FatVolume, parse_wear_leveling
from esp32_firmware_editor.filesystems.fat import (
    dos_timestamp,
    encode_short_name,
    format_dos_date,
    format_dos_time,
    wear_leveling_geometry,
)
from esp32_firmware_editor.flash_image import FlashImage

from flash_builders import FAT_FILES, FAT_OFFSET, FAT_SIZE, build_fat_volume, wrap_wear_leveling


def open_fixture(flash_bytes, wear_leveling=None):
    image = FlashImage.from_bytes(flash_bytes)
    return asyncio.run(FatVolume.open(image, FAT_OFFSET, FAT_SIZE, wear_leveling))


def listed(volume):
    asyncio.run(volume.list_files())
    return volume


class TestRead:
    """Walking and extracting from the raw fixture volume."""

    def test_raw_fallback(self, flash_bytes):
        volume = open_fixture(flash_bytes)
        assert volume.error is None
        assert volume.wear_leveling is None
        assert volume.boot.fat_type == "FAT12"
        assert volume.boot.volume_label == "STORAGE"

    def test_list_files(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        paths = [e.path for e in volume.iter_files()]
        assert paths == ["HELLO.TXT", "LOGS", "LOGS/BOOT.LOG"]
        logs = volume.find_file("logs")
        assert logs.is_directory
        assert "Directory" in logs.attributes
        hello = volume.find_file("/hello.txt")
        assert hello.size == len(FAT_FILES["HELLO.TXT"])
        assert hello.timestamp == "2024-01-01 12:00:00"

    def test_extract_multi_cluster_file(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        data = asyncio.run(volume.extract_file(volume.find_file("LOGS/BOOT.LOG")))
        assert data == FAT_FILES["LOGS/BOOT.LOG"]
        assert asyncio.run(volume.cluster_chain(volume.find_file("LOGS/BOOT.LOG").cluster, 10)) == [4, 5]

    def test_extract_directory_rejected(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        with pytest.raises(FatError):
            asyncio.run(volume.extract_file(volume.find_file("LOGS")))

    def test_not_a_fat_volume(self):
        volume = asyncio.run(FatVolume.open(FlashImage.from_bytes(b"\xff" * FAT_SIZE), 0, FAT_SIZE))
        assert volume.boot is None
        assert "signature" in volume.error


class TestWrite:
    """Adding and deleting files."""

    def test_add_file_to_root(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        payload = b"new file contents " * 40
        when = datetime(2024, 5, 6, 7, 8, 10)

        entry = asyncio.run(volume.add_file("new.txt", payload, when))
        assert entry.path == "NEW.TXT"
        assert entry.date == "2024-05-06"
        assert entry.time == "07:08:10"

        listed(volume)
        found = volume.find_file("NEW.TXT")
        assert found is not None
        assert asyncio.run(volume.extract_file(found)) == payload

    def test_add_file_updates_every_fat_copy(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        asyncio.run(volume.add_file("LOGS/NEXT.LOG", b"second boot\n", datetime(2024, 1, 2)))

        boot = volume.boot
        fat_length = boot.sectors_per_fat * boot.bytes_per_sector
        first = asyncio.run(volume.read(boot.fat_offset(0), fat_length))
        second = asyncio.run(volume.read(boot.fat_offset(1), fat_length))
        assert first == second

        listed(volume)
        assert [e.path for e in volume.find_file("LOGS").children] == ["LOGS/BOOT.LOG", "LOGS/NEXT.LOG"]

    def test_delete_file(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        hello = volume.find_file("HELLO.TXT")
        released = asyncio.run(volume.delete_file(hello))
        assert released == 1

        boot = volume.boot
        assert asyncio.run(volume.read_fat_entry(hello.cluster)) == 0
        cluster = asyncio.run(volume.read(boot.cluster_offset(hello.cluster), boot.cluster_size))
        assert cluster == b"\xff" * boot.cluster_size
        assert asyncio.run(volume.read(hello.dir_entry_offset, 1)) == b"\xe5"

        listed(volume)
        assert volume.find_file("HELLO.TXT") is None

    def test_deleted_slot_is_reused(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        hello = volume.find_file("HELLO.TXT")
        asyncio.run(volume.delete_file(hello))
        listed(volume)
        entry = asyncio.run(volume.add_file("AGAIN.TXT", b"x"))
        assert entry.dir_entry_offset == hello.dir_entry_offset

    def test_entries_past_end_marker_are_ignored(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        region_offset, region_length = asyncio.run(volume._directory_regions(None))[0]
        raw_dir = asyncio.run(volume.read(region_offset, region_length))
        end_marker = next(i for i in range(0, len(raw_dir), 32) if raw_dir[i] == 0x00)
        volume.write(region_offset + end_marker + 64, b"\xe5")

        entry = asyncio.run(volume.add_file("AFTER.TXT", b"x"))
        assert entry.dir_entry_offset == region_offset + end_marker

    def test_add_errors(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        with pytest.raises(FatError, match="already exists"):
            asyncio.run(volume.add_file("hello.txt", b"dup"))
        with pytest.raises(FatError, match="8.3"):
            asyncio.run(volume.add_file("TOOLONGNAME.TXT", b"x"))
        with pytest.raises(FatError, match="Directory not found"):
            asyncio.run(volume.add_file("NOPE/A.TXT", b"x"))
        with pytest.raises(FatError, match="Not enough free clusters"):
            asyncio.run(volume.add_file("BIG.BIN", b"\x00" * (200 * 512)))

    def test_directory_cannot_be_deleted(self, flash_bytes):
        volume = listed(open_fixture(flash_bytes))
        with pytest.raises(FatError, match="directory"):
            asyncio.run(volume.delete_file(volume.find_file("LOGS")))


class TestWearLeveling:
    """Sector translation through the wear-leveling layer."""

    def wrapped(self):
        raw = wrap_wear_leveling(build_fat_volume(FAT_FILES, total_sectors=64))
        return FlashImage.from_bytes(raw)

    def test_geometry(self):
        assert wear_leveling_geometry(FAT_SIZE) == (16, 1, 13)

    def test_state_and_translation(self):
        info = asyncio.run(parse_wear_leveling(self.wrapped(), 0, FAT_SIZE))
        assert info.move_count == 2
        assert info.total_records == 3
        assert info.translate_sector(0) == 2
        assert info.translate_sector(1) == 4
        assert info.translate_sector(11) == 0
        assert info.data_size == 13 * 0x1000

    def test_wrapped_volume_detected(self):
        volume = asyncio.run(FatVolume.open(self.wrapped(), 0, FAT_SIZE))
        assert volume.wear_leveling is not None
        listed(volume)
        data = asyncio.run(volume.extract_file(volume.find_file("LOGS/BOOT.LOG")))
        assert data == FAT_FILES["LOGS/BOOT.LOG"]

    def test_add_through_wear_leveling(self):
        image = self.wrapped()
        volume = listed(asyncio.run(FatVolume.open(image, 0, FAT_SIZE)))
        asyncio.run(volume.add_file("WL.TXT", b"through the layer"))

        reopened = listed(asyncio.run(FatVolume.open(image, 0, FAT_SIZE)))
        assert asyncio.run(reopened.extract_file(reopened.find_file("WL.TXT"))) == b"through the layer"

    def test_forced_wear_leveling_on_raw_volume(self, flash_bytes):
        volume = open_fixture(flash_bytes, wear_leveling=True)
        assert volume.boot is None
        assert volume.error is not None

    def test_forced_raw_on_wrapped_volume(self):
        volume = asyncio.run(FatVolume.open(self.wrapped(), 0, FAT_SIZE, wear_leveling=False))
        assert volume.boot is None


class TestNames:

    def test_short_names(self):
        assert encode_short_name("boot.log") == b"BOOT    LOG"
        assert encode_short_name("README") == b"README     "
        for bad in ("", "a.b.c", "NINECHARS.TXT", "A.TEXT", "é.txt"):
            with pytest.raises(FatError):
                encode_short_name(bad)

    def test_dos_timestamp(self):
        time_word, date_word = dos_timestamp(datetime(2023, 12, 31, 23, 59, 58))
        assert format_dos_date(date_word) == "2023-12-31"
        assert format_dos_time(time_word) == "23:59:58"
