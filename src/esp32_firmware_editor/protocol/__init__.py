"""
Serial bootloader protocol for ESP32-family chips.

- slip: SLIP framing
- commands: request/response packets
- serial_stream: pyserial transport
- loader: command engine, sync, stub upload, flash read/write
- device_image: FlashImage backed by a live device
"""

from .commands import Command, CommandPacket, ResponsePacket, build_command, build_command_u32, parse_response
from .console import ConsoleMonitor, ResetInfo, parse_reset_output
from .device_image import create_device_image
from .errors import (
    IntegrityError,
    LoaderError,
    LoaderNotConnectedError,
    LoaderProtocolError,
    LoaderTimeoutError,
    StubLoaderError,
)
from .loader import DeviceSession, ESPLoader, LoaderConfig, SecurityInfo
from .serial_stream import PortInfo, SerialStream, list_serial_ports
from .slip import SlipDecoder, slip_encode

__all__ = [
    "Command",
    "CommandPacket",
    "ResponsePacket",
    "build_command",
    "build_command_u32",
    "parse_response",
    "ConsoleMonitor",
    "ResetInfo",
    "parse_reset_output",
    "create_device_image",
    "IntegrityError",
    "LoaderError",
    "LoaderNotConnectedError",
    "LoaderProtocolError",
    "LoaderTimeoutError",
    "StubLoaderError",
    "DeviceSession",
    "ESPLoader",
    "LoaderConfig",
    "SecurityInfo",
    "PortInfo",
    "SerialStream",
    "list_serial_ports",
    "SlipDecoder",
    "slip_encode",
]
