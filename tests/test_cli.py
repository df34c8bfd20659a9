"""Tests for the typer CLI: argument parsing, write gating and command output."""

import functools

import pytest
import typer
from typer.testing import CliRunner

from esp32_firmware_editor import __version__, cli
from esp32_firmware_editor.core import actions
from esp32_firmware_editor.protocol.serial_stream import PortInfo

from flash_builders import OTA0_OFFSET

runner = CliRunner()


class TestParseOffset:
    """CLI wrappers convert ValueError to typer.BadParameter."""

    def test_parse_offset_formats(self):
        assert cli.parse_offset(None) is None
        assert cli.parse_offset("4096") == 4096
        assert cli.parse_offset("0x5A0") == 0x5A0
        assert cli.parse_offset("FFFFh") == 0xFFFF
        assert cli.parse_offset(" 0x1000 ") == 0x1000

    def test_parse_offset_invalid_raises(self):
        for bad in ("not_a_number", "0xZZZZ", "12.34", "-100"):
            with pytest.raises(typer.BadParameter):
                cli.parse_offset(bad)

    def test_parse_size(self):
        assert cli.parse_size("4M") == 0x400000
        with pytest.raises(typer.BadParameter):
            cli.parse_size("huge")


class TestImageCommands:
    """Offline commands against the fixture flash file."""

    def test_inspect(self, flash_file):
        result = runner.invoke(cli.app, ["inspect", str(flash_file)])
        assert result.exit_code == 0, result.output
        assert "Flash Image Analysis" in result.output
        assert "all valid" in result.output

    def test_inspect_json(self, flash_file):
        result = runner.invoke(cli.app, ["inspect", str(flash_file), "--json"])
        assert result.exit_code == 0, result.output
        assert '"boot_partition": "ota_0"' in result.output
        assert '"all_valid": true' in result.output

    def test_inspect_needs_image_or_port(self):
        result = runner.invoke(cli.app, ["inspect"])
        assert result.exit_code != 0

    def test_partitions(self, flash_file):
        result = runner.invoke(cli.app, ["partitions", str(flash_file)])
        assert result.exit_code == 0
        assert "otadata" in result.output
        assert "ota_1" in result.output

    def test_fix_checksums_dry_run_then_write(self, flash_file):
        raw = bytearray(flash_file.read_bytes())
        raw[OTA0_OFFSET + 332] ^= 0xFF
        flash_file.write_bytes(bytes(raw))

        result = runner.invoke(cli.app, ["fix-checksums", str(flash_file)])
        assert result.exit_code == 0, result.output
        assert flash_file.read_bytes() == bytes(raw)

        result = runner.invoke(cli.app, ["fix-checksums", str(flash_file), "--write"])
        assert result.exit_code == 0, result.output
        assert "Checksums saved" in result.output
        assert flash_file.read_bytes() != bytes(raw)

    def test_fix_checksums_bad_target(self, flash_file):
        result = runner.invoke(cli.app, ["fix-checksums", str(flash_file), "--target", "app"])
        assert result.exit_code != 0

    def test_nvs_set_and_list(self, flash_file):
        result = runner.invoke(
            cli.app, ["nvs-set", str(flash_file), "app", "mode", "2", "--type", "u8", "--write"],
        )
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli.app, ["nvs-list", str(flash_file), "--namespace", "app"])
        assert result.exit_code == 0
        assert "mode" in result.output
        assert "ssid" not in result.output

    def test_nvs_delete_missing_key_fails(self, flash_file):
        result = runner.invoke(cli.app, ["nvs-delete", str(flash_file), "app", "nothing", "--write"])
        assert result.exit_code == 1

    def test_ota_select(self, flash_file):
        result = runner.invoke(cli.app, ["ota-select", str(flash_file), "1", "--write"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli.app, ["ota", str(flash_file)])
        assert result.exit_code == 0
        assert "Boot partition: ota_1" in result.output

    def test_fat_and_spiffs_listing(self, flash_file):
        result = runner.invoke(cli.app, ["fat-list", str(flash_file)])
        assert result.exit_code == 0
        assert "BOOT.LOG" in result.output

        result = runner.invoke(cli.app, ["spiffs-list", str(flash_file)])
        assert result.exit_code == 0
        assert "/config.json" in result.output
        assert "/old.txt" not in result.output

    def test_fat_extract(self, flash_file, tmp_path):
        dest = tmp_path / "hello.txt"
        result = runner.invoke(cli.app, ["fat-extract", str(flash_file), "HELLO.TXT", str(dest)])
        assert result.exit_code == 0
        assert dest.read_bytes() == b"hello fat\n"

    def test_version(self):
        result = runner.invoke(cli.app, ["version"])
        assert __version__ in result.output


class TestDeviceCommands:
    """Device commands with the serial link replaced by FakeDevice."""

    @pytest.fixture
    def patched(self, monkeypatch, device):
        factory = lambda port, baud: device  # noqa: E731
        for name in (
            "device_info", "read_device_flash", "write_device_flash", "erase_device_region", "blank_check_device",
        ):
            monkeypatch.setattr(actions, name, functools.partial(getattr(actions, name), stream_factory=factory))
        return device

    def test_ports(self, monkeypatch):
        monkeypatch.setattr(
            cli, "list_serial_ports",
            lambda filter_known=True: [PortInfo("/dev/ttyUSB0", "CP2102 USB to UART", 0x10C4, 0xEA60)],
        )
        result = runner.invoke(cli.app, ["ports"])
        assert result.exit_code == 0
        assert "/dev/ttyUSB0" in result.output

    def test_no_ports(self, monkeypatch):
        monkeypatch.setattr(cli, "list_serial_ports", lambda filter_known=True: [])
        result = runner.invoke(cli.app, ["ports"])
        assert "No serial ports found" in result.output

    def test_info(self, patched):
        result = runner.invoke(cli.app, ["info", "--port", "/dev/fake"])
        assert result.exit_code == 0, result.output
        assert "ESP32-S3" in result.output

    def test_read_flash(self, patched, flash_bytes, tmp_path):
        output = tmp_path / "dump.bin"
        result = runner.invoke(
            cli.app, ["read-flash", "-p", "/dev/fake", "-o", str(output), "-a", "0x8000", "-s", "4K"],
        )
        assert result.exit_code == 0, result.output
        assert output.read_bytes() == flash_bytes[0x8000:0x9000]

    def test_write_flash_requires_write_flag(self, patched, tmp_path):
        image = tmp_path / "blob.bin"
        image.write_bytes(b"\x00" * 16)
        result = runner.invoke(cli.app, ["write-flash", str(image), "-p", "/dev/fake", "-a", "0xC0000"])
        assert result.exit_code == 1
        assert "--write" in result.output
        assert patched.commands == []

    def test_write_flash_non_interactive_needs_token(self, patched, tmp_path):
        image = tmp_path / "blob.bin"
        image.write_bytes(b"\x00" * 16)
        result = runner.invoke(cli.app, ["write-flash", str(image), "-p", "/dev/fake", "-a", "0xC0000", "--write"])
        assert result.exit_code == 1
        assert patched.flash_begins == []

    def test_write_flash_with_token(self, patched, tmp_path):
        image = tmp_path / "blob.bin"
        image.write_bytes(b"\x5a" * 16)
        result = runner.invoke(
            cli.app,
            ["write-flash", str(image), "-p", "/dev/fake", "-a", "0xC0000", "--write", "--confirm", "WRITE"],
        )
        assert result.exit_code == 0, result.output
        assert bytes(patched.flash[0xC0000:0xC0010]) == b"\x5a" * 16

    def test_write_flash_bad_token(self, patched, tmp_path):
        image = tmp_path / "blob.bin"
        image.write_bytes(b"\x5a" * 16)
        result = runner.invoke(
            cli.app,
            ["write-flash", str(image), "-p", "/dev/fake", "-a", "0xC0000", "--write", "--confirm", "yes"],
        )
        assert result.exit_code == 1
        assert patched.flash_begins == []

    def test_erase_region_requires_write_flag(self, patched, stub_file):
        result = runner.invoke(
            cli.app, ["erase-region", "-p", "/dev/fake", "-a", "0x8000", "-s", "4K", "--stub", str(stub_file)],
        )
        assert result.exit_code == 1
        assert patched.commands == []

    def test_erase_region_then_blank_check(self, patched, stub_file):
        result = runner.invoke(
            cli.app,
            ["blank-check", "-p", "/dev/fake", "-a", "0x8000", "-s", "4K"],
        )
        assert result.exit_code == 0, result.output
        assert "not blank" in result.output

        result = runner.invoke(
            cli.app,
            [
                "erase-region", "-p", "/dev/fake", "-a", "0x8000", "-s", "4K",
                "--stub", str(stub_file), "--write", "--confirm", "WRITE",
            ],
        )
        assert result.exit_code == 0, result.output
        assert bytes(patched.flash[0x8000:0x9000]) == b"\xff" * 0x1000
