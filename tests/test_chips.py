"""Tests for the chip registry and stub loader JSON."""

import base64
import json

import pytest

from esp32_firmware_editor.models import (
    IMAGE_CHIP_NAMES,
    RESET_REASONS,
    ChipFamily,
    chip_from_id,
    chip_from_magic,
    decode_security_flags,
    get_chip,
    list_chips,
    load_stub_json,
)


class TestChipTable:

    def test_lookup_by_id(self):
        assert chip_from_id(0) == ChipFamily.ESP32
        assert chip_from_id(9) == ChipFamily.ESP32S3
        assert chip_from_id(0x1234) is None

    def test_lookup_by_magic(self):
        assert chip_from_magic(0x00F01D83) == ChipFamily.ESP32
        assert chip_from_magic(0x1B31506F) == ChipFamily.ESP32C3
        assert chip_from_magic(0xDEADBEEF) is None

    def test_esp32_has_no_security_info(self):
        assert not get_chip(ChipFamily.ESP32).uses_security_info
        assert get_chip(ChipFamily.ESP32S3).mac_efuse_reg == 0x60007044

    def test_image_names(self):
        assert IMAGE_CHIP_NAMES[0x0005] == "ESP32-C3"
        assert IMAGE_CHIP_NAMES[0xFFFF] == "Invalid"
        assert len(list_chips()) == len(ChipFamily)

    def test_security_flags(self):
        assert decode_security_flags(0b101) == ["SECURE_BOOT_EN", "SECURE_DOWNLOAD_ENABLE"]
        assert decode_security_flags(0) == []

    def test_reset_reasons(self):
        assert RESET_REASONS[1] == "POWERON_RESET"
        assert RESET_REASONS[21] == "USB_UART_CHIP_RESET"


class TestStubJson:
    """esptool stub JSON files."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "stub.json"
        path.write_text(json.dumps({
            "entry": 0x40380000,
            "text": base64.b64encode(b"\x01\x02\x03").decode(),
            "text_start": 0x40380000,
            "data": base64.b64encode(b"\xaa").decode(),
            "data_start": 0x3FC90000,
        }))
        stub = load_stub_json(path)
        assert stub.text == b"\x01\x02\x03"
        assert stub.data == b"\xaa"
        assert stub.data_start == 0x3FC90000

    def test_data_optional(self):
        stub = load_stub_json({"entry": 1, "text": "", "text_start": 2})
        assert stub.data == b""

    def test_missing_keys(self):
        with pytest.raises(ValueError, match="entry"):
            load_stub_json({"text": "", "text_start": 0})
