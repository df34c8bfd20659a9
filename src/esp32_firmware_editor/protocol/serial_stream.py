"""
Serial byte stream for the bootloader link (pyserial).

Incoming bytes are read on a background thread and handed to the event
loop with ``call_soon_threadsafe``, so ``on_data`` always runs on the loop
thread. Writes go through the default executor.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from esp32_firmware_editor.protocol.errors import LoaderNotConnectedError

logger = logging.getLogger(__name__)

ESPRESSIF_VID = 0x303A

# USB VIDs of Espressif native USB and common USB-UART bridges
KNOWN_USB_VIDS = {
    ESPRESSIF_VID: "Espressif",
    0x0403: "FTDI",
    0x1A86: "WCH (CH340/CH9102)",
    0x10C4: "Silicon Labs (CP210x)",
    0x067B: "Prolific",
}

DEFAULT_BAUD = 115200
READ_TIMEOUT = 0.05


@dataclass
class PortInfo:
    device: str
    description: str
    vid: Optional[int] = None
    pid: Optional[int] = None

    @property
    def vendor(self) -> str:
        if self.vid is None:
            return ""
        return KNOWN_USB_VIDS.get(self.vid, f"0x{self.vid:04X}")

    @property
    def known(self) -> bool:
        return self.vid in KNOWN_USB_VIDS


def list_serial_ports(filter_known: bool = True) -> List[PortInfo]:
    """
    Enumerate serial ports.

    Args:
        filter_known: Only return ports whose USB VID belongs to Espressif
            or a common USB-UART bridge
    """
    ports = [
        PortInfo(device=p.device, description=p.description or "", vid=p.vid, pid=p.pid)
        for p in serial.tools.list_ports.comports()
    ]
    if filter_known:
        ports = [p for p in ports if p.known]
    return sorted(ports, key=lambda p: p.device)


class SerialStream:
    """
    Duplex byte stream over a serial port.

    Example:
        stream = SerialStream("/dev/ttyUSB0", baudrate=115200)
        stream.on_data = handle_bytes
        await stream.open()
        await stream.write(frame)
        await stream.close()
    """

    def __init__(self, port: str, baudrate: int = DEFAULT_BAUD):
        self.port = port
        self.baudrate = baudrate
        self.on_data: Optional[Callable[[bytes], None]] = None
        self.on_disconnect: Optional[Callable[[], None]] = None
        self.ser: Optional[serial.Serial] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._dtr = False
        self._rts = False

    @property
    def is_open(self) -> bool:
        return self.ser is not None and self.ser.is_open

    async def open(self) -> None:
        """
        Open the port and start the reader thread.

        Raises:
            LoaderNotConnectedError: If the port cannot be opened
        """
        if self.ser is not None:
            await self.close()
        self._loop = asyncio.get_running_loop()
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=READ_TIMEOUT,
                write_timeout=2.0,
            )
        except serial.SerialException as e:
            raise LoaderNotConnectedError(f"Cannot open port {self.port}: {e}")

        self.ser.reset_input_buffer()
        self._stop.clear()
        self._reader = threading.Thread(target=self._read_loop, name=f"rx-{self.port}", daemon=True)
        self._reader.start()
        logger.debug(f"Opened {self.port} at {self.baudrate} bps")

    async def close(self) -> None:
        self._stop.set()
        if self._reader is not None and self._reader is not threading.current_thread():
            await asyncio.get_running_loop().run_in_executor(None, self._reader.join, 1.0)
        self._reader = None
        if self.ser is not None and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")
        self.ser = None

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                data = self.ser.read(self.ser.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError) as e:
                if not self._stop.is_set():
                    logger.warning(f"Serial read failed on {self.port}: {e}")
                    self._notify(self._handle_lost)
                return
            if data and self.on_data is not None:
                self._notify(self.on_data, data)

    def _notify(self, callback, *args) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _handle_lost(self) -> None:
        if self.on_disconnect is not None:
            self.on_disconnect()

    async def write(self, data: bytes) -> None:
        """
        Send raw bytes.

        Raises:
            LoaderNotConnectedError: If the port is closed or the write fails
        """
        if not self.is_open:
            raise LoaderNotConnectedError("Serial port not open")
        try:
            written = await asyncio.get_running_loop().run_in_executor(None, self.ser.write, data)
        except serial.SerialException as e:
            raise LoaderNotConnectedError(f"Write error: {e}")
        if written is not None and written != len(data):
            raise LoaderNotConnectedError(f"Incomplete write: sent {written}/{len(data)} bytes")

    async def set_signals(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> None:
        """Drive DTR/RTS; True asserts the line (pin low)."""
        if not self.is_open:
            raise LoaderNotConnectedError("Serial port not open")
        if dtr is not None:
            self._dtr = dtr
            self.ser.dtr = dtr
        if rts is not None:
            self._rts = rts
            self.ser.rts = rts
            # usbser.sys only sends the RTS change together with a DTR update
            self.ser.dtr = self._dtr

    async def set_baudrate(self, baudrate: int) -> None:
        self.baudrate = baudrate
        if self.is_open:
            self.ser.baudrate = baudrate
            self.ser.reset_input_buffer()

    def device_identity(self) -> Optional[Tuple[int, int]]:
        """(vid, pid) of the USB device behind the port, if known."""
        for p in serial.tools.list_ports.comports():
            if p.device == self.port and p.vid is not None:
                return p.vid, p.pid
        return None
