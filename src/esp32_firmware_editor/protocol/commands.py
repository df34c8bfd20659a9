"""
ESP serial bootloader command packets.

Request (direction 0x00):
    direction (u8), command (u8), size (u16 LE), checksum (u32 LE), data
Response (direction 0x01):
    direction (u8), command (u8), size (u16 LE), value (u32 LE), data

The response data ends with status bytes: a non-zero first status byte
means the command failed and the second holds the error code.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

from esp32_firmware_editor.utils import Checksums

PACKET_HEADER_SIZE = 8
DIRECTION_REQUEST = 0x00
DIRECTION_RESPONSE = 0x01

SYNC_PAYLOAD = bytes([0x07, 0x07, 0x12, 0x20]) + b"\x55" * 32


class Command(IntEnum):
    FLASH_BEGIN = 0x02
    FLASH_DATA = 0x03
    FLASH_END = 0x04
    MEM_BEGIN = 0x05
    MEM_END = 0x06
    MEM_DATA = 0x07
    SYNC = 0x08
    WRITE_REG = 0x09
    READ_REG = 0x0A
    SPI_SET_PARAMS = 0x0B
    SPI_ATTACH = 0x0D
    CHANGE_BAUDRATE = 0x0F
    FLASH_DEFL_BEGIN = 0x10
    FLASH_DEFL_DATA = 0x11
    FLASH_DEFL_END = 0x12
    SPI_FLASH_MD5 = 0x13
    GET_SECURITY_INFO = 0x14
    ERASE_FLASH = 0xD0
    ERASE_REGION = 0xD1
    READ_FLASH = 0xD2
    RUN_USER_CODE = 0xD3


def command_name(command: int) -> str:
    try:
        return Command(command).name
    except ValueError:
        return f"0x{command:02X}"


@dataclass(frozen=True)
class CommandPacket:
    """Unframed request bytes plus the command code to match the reply."""
    command: int
    payload: bytes


@dataclass(frozen=True)
class ResponsePacket:
    direction: int
    command: int
    size: int
    value: int
    data: bytes

    def failed(self, status_length: int = 2) -> bool:
        return len(self.data) >= status_length and self.data[-status_length] != 0

    def error_code(self, status_length: int = 2) -> int:
        if len(self.data) < status_length:
            return 0
        return self.data[-status_length + 1]

    def body(self, status_length: int = 2) -> bytes:
        """Response data without the status trailer."""
        return self.data[:-status_length] if len(self.data) >= status_length else b""


def flash_checksum(data: bytes) -> int:
    """XOR checksum of data-carrying commands (seed 0xEF)."""
    return Checksums.xor8(data)


def build_command(command: int, data: bytes = b"", checksum: Optional[int] = None) -> CommandPacket:
    """
    Build a request packet.

    Without an explicit ``checksum``, packets with more than 32 data bytes
    get the XOR checksum of everything after the 16-byte parameter block.
    """
    if checksum is None:
        checksum = flash_checksum(data[16:]) if len(data) > 32 else 0
    header = struct.pack("<BBHI", DIRECTION_REQUEST, int(command), len(data), checksum)
    return CommandPacket(command=int(command), payload=header + bytes(data))


def build_command_u32(command: int, *values: Union[int, bytes, bytearray]) -> CommandPacket:
    """Build a request from little-endian u32 words and trailing byte blobs."""
    data = bytearray()
    for value in values:
        if isinstance(value, (bytes, bytearray)):
            data += value
        else:
            data += struct.pack("<I", value & 0xFFFFFFFF)
    return build_command(command, bytes(data))


def parse_response(frame: bytes) -> Optional[ResponsePacket]:
    """
    Decode a deframed packet.

    Returns None when the frame is too short, the direction byte is above
    2, or the declared size disagrees with the frame length.
    """
    if len(frame) < PACKET_HEADER_SIZE:
        return None
    direction, command, size, value = struct.unpack_from("<BBHI", frame, 0)
    if direction > 2 or len(frame) != PACKET_HEADER_SIZE + size:
        return None
    return ResponsePacket(
        direction=direction,
        command=command,
        size=size,
        value=value,
        data=bytes(frame[PACKET_HEADER_SIZE:]),
    )
