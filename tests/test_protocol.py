"""Tests for SLIP framing, command packets, checksums and ROM console parsing."""

import binascii
import struct

from esp32_firmware_editor.protocol.commands import (
    SYNC_PAYLOAD,
    Command,
    build_command,
    build_command_u32,
    command_name,
    parse_response,
)
from esp32_firmware_editor.protocol.console import ConsoleMonitor, parse_reset_output
from esp32_firmware_editor.protocol.slip import SlipDecoder, slip_encode
from esp32_firmware_editor.utils import Checksums


class TestSlip:
    """RFC 1055 framing with the ESP escape set."""

    def test_encode_escapes_delimiters(self):
        assert slip_encode(b"\x01\xc0\x02\xdb") == b"\xc0\x01\xdb\xdc\x02\xdb\xdd\xc0"

    def test_decoder_handles_split_chunks(self):
        frame = slip_encode(b"\xc0hello\xdb")
        decoder = SlipDecoder()
        frames = []
        for i in range(len(frame)):
            frames.extend(decoder.feed(frame[i:i + 1]))
        assert frames == [b"\xc0hello\xdb"]

    def test_decoder_returns_multiple_frames(self):
        decoder = SlipDecoder()
        frames = decoder.feed(slip_encode(b"one") + slip_encode(b"two"))
        assert frames == [b"one", b"two"]

    def test_empty_frames_dropped(self):
        assert SlipDecoder().feed(b"\xc0\xc0\xc0") == []

    def test_invalid_escape_dropped(self):
        assert SlipDecoder().feed(b"\xc0a\xdb\x01b\xc0") == [b"ab"]


class TestChecksums:
    """XOR and CRC helpers."""

    def test_xor8_seeded(self):
        assert Checksums.xor8(bytes([1, 2, 3])) == 0xEF ^ 1 ^ 2 ^ 3

    def test_xor8_empty_is_seed(self):
        assert Checksums.xor8(b"") == 0xEF

    def test_esp_crc32_uses_all_ones_seed(self):
        data = struct.pack("<I", 1)
        assert Checksums.esp_crc32(data) == binascii.crc32(data, 0xFFFFFFFF)

    def test_digests(self):
        assert Checksums.md5_hex(b"") == "d41d8cd98f00b204e9800998ecf8427e"
        assert len(Checksums.sha256(b"abc")) == 32
        assert Checksums.sha1_hex(b"abc") == "a9993e364706816aba3e25717850c26c9cd0d89d"


class TestCommands:
    """Request building and response decoding."""

    def test_sync_packet_header(self):
        packet = build_command(Command.SYNC, SYNC_PAYLOAD)
        assert packet.command == Command.SYNC
        assert packet.payload[:4] == bytes([0x00, 0x08, 0x24, 0x00])
        assert packet.payload[8:] == SYNC_PAYLOAD

    def test_short_packets_have_zero_checksum(self):
        packet = build_command_u32(Command.READ_REG, 0x40001000)
        assert packet.payload == bytes.fromhex("000a0400" "00000000" "00100040")

    def test_data_packets_checksum_payload_after_params(self):
        data = b"\x01\x02\x03\x04" * 8
        packet = build_command_u32(Command.FLASH_DATA, len(data), 0, 0, 0, data)
        (checksum,) = struct.unpack_from("<I", packet.payload, 4)
        assert checksum == Checksums.xor8(data)

    def test_explicit_checksum_wins(self):
        packet = build_command(Command.MEM_DATA, b"\x00" * 40, checksum=0x12)
        assert struct.unpack_from("<I", packet.payload, 4)[0] == 0x12

    def test_parse_response(self):
        frame = struct.pack("<BBHI", 1, Command.READ_REG, 2, 0xDEADBEEF) + b"\x00\x00"
        response = parse_response(frame)
        assert response.value == 0xDEADBEEF
        assert not response.failed()
        assert response.body() == b""

    def test_parse_response_rejects_bad_frames(self):
        assert parse_response(b"\x01\x02") is None
        assert parse_response(struct.pack("<BBHI", 3, 8, 0, 0)) is None
        assert parse_response(struct.pack("<BBHI", 1, 8, 4, 0) + b"\x00") is None

    def test_failure_status_with_two_and_four_byte_trailers(self):
        two = parse_response(struct.pack("<BBHI", 1, 0x13, 2, 0) + b"\x01\x05")
        assert two.failed(2)
        assert two.error_code(2) == 0x05

        four = parse_response(struct.pack("<BBHI", 1, 0x13, 4, 0) + b"\x01\x06\x00\x00")
        assert four.failed(4)
        assert four.error_code(4) == 0x06
        assert not four.failed(2)

    def test_command_name(self):
        assert command_name(0x08) == "SYNC"
        assert command_name(0x77) == "0x77"


class TestConsole:
    """ROM reset banner decoding."""

    def test_normal_boot(self):
        info = parse_reset_output(["rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)"])
        assert info.reason == "POWERON_RESET"
        assert info.boot_mode == 0x13
        assert not info.download_mode

    def test_secure_download_mode(self):
        info = parse_reset_output([
            "ESP-ROM:esp32s3-20210327",
            "rst:0x15 (USB_UART_CHIP_RESET),boot:0x0 (DOWNLOAD(USB/UART0))",
            "wait uart download(secure mode)",
        ])
        assert info.reason_code == 0x15
        assert info.download_mode
        assert info.secure

    def test_waiting_for_download(self):
        info = parse_reset_output([
            "rst:0x1 (POWERON_RESET),boot:0x3 (DOWNLOAD_BOOT(UART0/UART1/SDIO_REI_REO_V2))",
            "waiting for download",
        ])
        assert info.download_mode
        assert not info.secure

    def test_no_banner(self):
        assert parse_reset_output(["hello", ""]) is None

    def test_unknown_reason_code(self):
        info = parse_reset_output(["rst:0x3f,boot:0x8"])
        assert info.reason.startswith("UNKNOWN")

    def test_monitor_joins_partial_lines(self):
        monitor = ConsoleMonitor()
        assert monitor.feed(b"rst:0x1 (POWERON_RE") == []
        lines = monitor.feed(b"SET),boot:0x13 (SPI)\r\n\x00\xff")
        assert lines == ["rst:0x1 (POWERON_RESET),boot:0x13 (SPI)"]
        assert monitor.reset_info.reason == "POWERON_RESET"

    def test_monitor_keeps_bounded_history(self):
        monitor = ConsoleMonitor(max_lines=3)
        monitor.feed(b"a\nb\nc\nd\ne\n")
        assert monitor.lines == ["c", "d", "e"]
