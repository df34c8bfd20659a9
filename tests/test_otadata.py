"""Tests for otadata decoding and boot slot selection."""

import asyncio
import binascii
import struct

import pytest

from esp32_firmware_editor.flash_image import FlashImage
from esp32_firmware_editor.otadata import (
    OtaDataError,
    OtaImageState,
    boot_slot,
    decode_entry,
    encode_entry,
    ota_state_name,
    parse_otadata,
    select_active,
    set_boot_slot,
)

from flash_builders import otadata_sectors


def _image(*sequences) -> FlashImage:
    return FlashImage.from_bytes(otadata_sectors(*sequences))


class TestEntries:
    """esp_ota_select_entry_t encoding."""

    def test_crc_covers_sequence_only(self):
        raw = encode_entry(7)
        (crc,) = struct.unpack_from("<I", raw, 28)
        assert crc == binascii.crc32(struct.pack("<I", 7), 0xFFFFFFFF)
        assert decode_entry(0, raw).crc_valid

    def test_bad_crc_is_invalid(self):
        raw = bytearray(encode_entry(7))
        raw[28] ^= 0xFF
        entry = decode_entry(0, bytes(raw))
        assert not entry.crc_valid
        assert not entry.valid

    def test_aborted_state_is_invalid(self):
        assert not decode_entry(0, encode_entry(3, OtaImageState.ABORTED)).valid

    def test_erased_entry(self):
        entry = decode_entry(0, b"\xff" * 32)
        assert entry.is_empty
        assert not entry.valid
        assert entry.state_name == "UNDEFINED"

    def test_state_names(self):
        assert ota_state_name(2) == "VALID"
        assert ota_state_name(9) == "Unknown (0x9)"


class TestSelection:
    """Which entry the bootloader uses."""

    def test_higher_sequence_wins(self):
        data = asyncio.run(parse_otadata(_image(5, 3), 0))
        assert data.active_index == 0
        assert data.active.sequence == 5
        assert boot_slot(data.active.sequence, 2) == 0

    def test_only_valid_entry_used(self):
        data = asyncio.run(parse_otadata(_image(None, 4), 0))
        assert data.active_index == 1
        assert boot_slot(4, 2) == 1

    def test_none_valid(self):
        data = asyncio.run(parse_otadata(_image(None, None), 0))
        assert data.active is None
        assert not data.any_valid

    def test_tie_goes_to_second_entry(self):
        entries = [decode_entry(0, encode_entry(2)), decode_entry(1, encode_entry(2))]
        assert select_active(entries) == 1

    def test_too_small_partition(self):
        data = asyncio.run(parse_otadata(_image(1, 2), 0, length=0x1000))
        assert data.error is not None

    def test_boot_slot_requires_apps(self):
        with pytest.raises(ValueError):
            boot_slot(1, 0)


class TestSetBootSlot:
    """Staging an otadata update."""

    def test_switch_to_other_slot(self):
        image = _image(5, 3)
        entry = asyncio.run(set_boot_slot(image, 0, 1, 2))
        assert entry.index == 1
        assert entry.sequence == 6
        assert boot_slot(entry.sequence, 2) == 1

        data = asyncio.run(parse_otadata(image, 0))
        assert data.active_index == 1
        assert data.entries[0].sequence == 5

    def test_blank_otadata(self):
        image = _image(None, None)
        entry = asyncio.run(set_boot_slot(image, 0, 0, 2))
        assert entry.index == 0
        assert entry.sequence == 1

    def test_slot_out_of_range(self):
        with pytest.raises(OtaDataError):
            asyncio.run(set_boot_slot(_image(5, 3), 0, 2, 2))
