"""
ESP serial bootloader client.

Handles:
- Reset into the ROM bootloader (classic DTR/RTS or native USB-JTAG)
- SYNC and chip identification
- Single-flight command/response exchange over SLIP
- Stub loader upload
- Flash read/write pipelines with MD5 verification

Commands are serialized by a lock; only one command is in flight at a
time. Replies are matched by command code. Frames that are not a reply
to the pending command are handed to the command's raw handler (flash
read data, the stub's ``OHAI`` greeting).
"""

import asyncio
import inspect
import logging
import struct
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, Union

from esp32_firmware_editor.models import (
    CHIP_MAGIC_REG,
    ChipFamily,
    StubImage,
    chip_from_id,
    chip_from_magic,
    decode_security_flags,
    get_chip,
)
from esp32_firmware_editor.protocol.commands import (
    SYNC_PAYLOAD,
    Command,
    CommandPacket,
    ResponsePacket,
    build_command,
    build_command_u32,
    command_name,
    parse_response,
)
from esp32_firmware_editor.protocol.console import ConsoleMonitor, ResetInfo
from esp32_firmware_editor.protocol.errors import (
    IntegrityError,
    LoaderError,
    LoaderNotConnectedError,
    LoaderProtocolError,
    LoaderTimeoutError,
    StubLoaderError,
)
from esp32_firmware_editor.protocol.slip import SlipDecoder, slip_encode
from esp32_firmware_editor.utils import Checksums

logger = logging.getLogger(__name__)

ESPRESSIF_VID = 0x303A
FLASH_SECTOR_SIZE = 0x1000
MB = 0x100000

ProgressCallback = Callable[[int, int], None]
RawHandler = Callable[[bytes], Union[None, object, Awaitable[object]]]


class ByteStream(Protocol):
    """What the loader needs from a transport."""
    on_data: Optional[Callable[[bytes], None]]
    on_disconnect: Optional[Callable[[], None]]
    baudrate: int

    async def open(self) -> None: ...
    async def close(self) -> None: ...
    async def write(self, data: bytes) -> None: ...
    async def set_signals(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> None: ...
    async def set_baudrate(self, baudrate: int) -> None: ...
    def device_identity(self) -> Optional[Tuple[int, int]]: ...


@dataclass
class LoaderConfig:
    """Timeouts (seconds), retry counts and block sizes."""
    command_timeout: float = 0.5
    sync_attempts: int = 4
    sync_retry_delay: float = 0.1
    sync_timeout: float = 0.3
    security_info_timeout: float = 0.3
    stub_timeout: float = 3.0
    flash_begin_timeout: float = 10.0
    flash_data_timeout: float = 5.0
    read_stall_timeout: float = 1.0
    erase_timeout_per_mb: float = 30.0
    ram_block_size: int = 0x1800
    flash_write_block: int = 0x1000
    flash_read_packet: int = 0x1000
    flash_read_block: int = 0x40000
    flash_size: int = 0x800000


@dataclass
class SecurityInfo:
    flags: int
    flash_crypt_cnt: int
    key_purposes: List[int]
    chip_id: int
    eco_version: int

    @property
    def flag_names(self) -> List[str]:
        return decode_security_flags(self.flags)

    @property
    def secure_boot(self) -> bool:
        return "SECURE_BOOT_EN" in self.flag_names

    @property
    def secure_download(self) -> bool:
        return "SECURE_DOWNLOAD_ENABLE" in self.flag_names


@dataclass
class DeviceSession:
    """State learned about the connected chip; cleared on disconnect."""
    synced: bool = False
    chip: Optional[ChipFamily] = None
    security_info: Optional[SecurityInfo] = None
    stub_running: bool = False
    usb_jtag: bool = False
    mac: Optional[str] = None
    reset_info: Optional[ResetInfo] = None
    console: List[str] = field(default_factory=list)

    @property
    def chip_name(self) -> str:
        if self.chip is None:
            return "unknown"
        return get_chip(self.chip).display_name


def parse_security_info(data: bytes) -> SecurityInfo:
    """
    Decode a GET_SECURITY_INFO reply body.

    Raises:
        LoaderProtocolError: If the reply is shorter than 20 bytes
    """
    if len(data) < 20:
        raise LoaderProtocolError(f"Invalid security info response ({len(data)} bytes)")
    flags, crypt_cnt = struct.unpack_from("<IB", data, 0)
    chip_id, eco = struct.unpack_from("<II", data, 12)
    return SecurityInfo(
        flags=flags,
        flash_crypt_cnt=crypt_cnt,
        key_purposes=list(data[5:12]),
        chip_id=chip_id,
        eco_version=eco,
    )


def format_mac(low: int, high: int) -> str:
    high &= 0xFFFF
    raw = bytes([high >> 8, high & 0xFF]) + struct.pack(">I", low & 0xFFFFFFFF)
    return ":".join(f"{b:02x}" for b in raw)


class ESPLoader:
    """
    Client for the ESP ROM bootloader and stub loader.

    Example:
        loader = ESPLoader(SerialStream("/dev/ttyUSB0"))
        await loader.connect()
        await loader.reset(bootloader=True)
        await loader.sync()
        await loader.load_stub(load_stub_json("stub_flasher_32.json"))
        data = await loader.read_flash(0x0, 0x10000)
        await loader.disconnect()
    """

    def __init__(self, stream: ByteStream, config: Optional[LoaderConfig] = None):
        self.stream = stream
        self.config = config or LoaderConfig()
        self.session = DeviceSession()
        self.console = ConsoleMonitor()
        self.on_disconnect: Optional[Callable[[], None]] = None
        self._decoder = SlipDecoder()
        self._frames: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self._command_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._connected = False
        self._stream_open = False
        stream.on_data = self._on_data
        stream.on_disconnect = self._on_stream_lost

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the stream and note whether it is Espressif native USB."""
        if self._connected:
            return
        if self._stream_open:
            # Link dropped earlier; release the stale handle first
            await self._close_stream()
        await self.stream.open()
        self._stream_open = True
        self._connected = True
        identity = self.stream.device_identity()
        self.session = DeviceSession(usb_jtag=identity is not None and identity[0] == ESPRESSIF_VID)
        if identity is not None:
            logger.info(f"Connected (VID 0x{identity[0]:04X}, PID 0x{identity[1]:04X})")

    async def disconnect(self) -> None:
        """Close the stream and forget the session. Safe to call twice."""
        was_connected = self._connected
        self._connected = False
        try:
            await self._close_stream()
        finally:
            if was_connected:
                self._reset_state()
                self._frames.put_nowait(None)

    async def _close_stream(self) -> None:
        if not self._stream_open:
            return
        self._stream_open = False
        await self.stream.close()

    def _reset_state(self) -> None:
        self.session = DeviceSession(usb_jtag=self.session.usb_jtag)
        self.console.reset()
        self._decoder.reset()

    def _on_stream_lost(self) -> None:
        logger.error("Device disconnected unexpectedly")
        self._connected = False
        self._reset_state()
        self._frames.put_nowait(None)
        if self.on_disconnect is not None:
            self.on_disconnect()

    def _on_data(self, chunk: bytes) -> None:
        logger.debug(f"<<< {chunk.hex().upper()}")
        if not self.session.synced:
            for line in self.console.feed(chunk):
                logger.debug(f"console: {line}")
            self.session.reset_info = self.console.reset_info
            self.session.console = list(self.console.lines)
        for frame in self._decoder.feed(chunk):
            self._frames.put_nowait(frame)

    async def reset(self, bootloader: bool = True) -> None:
        """
        Hardware reset through DTR/RTS.

        Args:
            bootloader: Hold IO0 low so the chip enters download mode
        """
        self._require_connected()
        self.session.synced = False
        self.session.stub_running = False
        self.console.reset()
        set_signals = self.stream.set_signals

        if self.session.usb_jtag:
            await set_signals(dtr=False, rts=False)
            await asyncio.sleep(0.1)
            if bootloader:
                await set_signals(dtr=True, rts=False)
                await asyncio.sleep(0.1)
                await set_signals(rts=True)
                await set_signals(dtr=False)
                await set_signals(rts=True)
                await asyncio.sleep(0.1)
            await set_signals(dtr=False, rts=False)
        else:
            # RTS drives EN, DTR drives IO0; both active low
            await set_signals(dtr=False, rts=False)
            await set_signals(dtr=True, rts=True)
            await set_signals(dtr=False, rts=True)
            await asyncio.sleep(0.05)
            await set_signals(dtr=bootloader, rts=False)
            await asyncio.sleep(0.1)
            await set_signals(dtr=False, rts=False)
        logger.debug(f"Reset ({'bootloader' if bootloader else 'run'}, usb_jtag={self.session.usb_jtag})")

    # ------------------------------------------------------------------
    # Command engine
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self._connected:
            raise LoaderNotConnectedError("Port is not open")

    @property
    def status_length(self) -> int:
        """ESP32 ROM appends 4 status bytes; other ROMs and the stub use 2."""
        if self.session.chip == ChipFamily.ESP32 and not self.session.stub_running:
            return 4
        return 2

    async def _write_frame(self, payload: bytes) -> None:
        frame = slip_encode(payload)
        async with self._write_lock:
            logger.debug(f">>> {frame.hex().upper()}")
            await self.stream.write(frame)

    def _drain_frames(self) -> None:
        while not self._frames.empty():
            self._frames.get_nowait()

    async def execute_command(
        self,
        packet: CommandPacket,
        timeout: Optional[float] = None,
        raw_handler: Optional[RawHandler] = None,
        check_timeout: Optional[Callable[[], bool]] = None,
    ):
        """
        Send a command and wait for its outcome.

        Without ``raw_handler`` the matching reply packet is returned. With
        one, replies are only status-checked and every other frame is given
        to the handler; the first non-None value it returns (awaited if
        needed) is the result.

        Args:
            timeout: Seconds to wait; defaults to ``config.command_timeout``
            check_timeout: Called when the timeout expires; returning False
                restarts the timeout instead of failing

        Raises:
            LoaderTimeoutError: No outcome in time
            LoaderProtocolError: Reply carries a failure status
            LoaderNotConnectedError: Link lost while waiting
        """
        timeout = self.config.command_timeout if timeout is None else timeout
        name = command_name(packet.command)
        loop = asyncio.get_running_loop()

        async with self._command_lock:
            self._require_connected()
            self._drain_frames()
            await self._write_frame(packet.payload)

            deadline = loop.time() + timeout
            while True:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    frame = await asyncio.wait_for(self._frames.get(), remaining)
                except asyncio.TimeoutError:
                    if check_timeout is not None and not check_timeout():
                        deadline = loop.time() + timeout
                        continue
                    raise LoaderTimeoutError(f"Timeout after {timeout:.2f}s waiting for {name}")

                if frame is None:
                    raise LoaderNotConnectedError(f"Disconnected while waiting for {name}")

                response = parse_response(frame)
                if response is not None and response.direction == 1 and response.command == packet.command:
                    self._check_status(response)
                    if raw_handler is None:
                        return response
                    continue

                if raw_handler is None:
                    logger.debug(f"Ignoring frame while waiting for {name}: {frame[:16].hex()}")
                    continue
                result = raw_handler(frame)
                if inspect.isawaitable(result):
                    result = await result
                if result is not None:
                    return result

    def _check_status(self, response: ResponsePacket) -> None:
        if response.failed(self.status_length):
            code = response.error_code(self.status_length)
            raise LoaderProtocolError(
                f"{command_name(response.command)} failed with status 0x{code:02X}"
            )

    async def command_u32(self, command: Command, *values, timeout: Optional[float] = None) -> ResponsePacket:
        return await self.execute_command(build_command_u32(command, *values), timeout=timeout)

    # ------------------------------------------------------------------
    # Sync and identification
    # ------------------------------------------------------------------

    async def sync(self) -> Optional[ChipFamily]:
        """
        Synchronize with the ROM bootloader, then identify the chip.

        Raises:
            LoaderTimeoutError: If every attempt times out
        """
        packet = build_command(Command.SYNC, SYNC_PAYLOAD)
        attempts = self.config.sync_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self.execute_command(packet, timeout=self.config.sync_timeout)
                break
            except LoaderTimeoutError:
                if attempt == attempts:
                    raise LoaderTimeoutError(f"Failed to synchronize with device after {attempts} attempts")
                logger.warning(f"Sync attempt {attempt}/{attempts} failed, retrying")
                await asyncio.sleep(self.config.sync_retry_delay)

        self.session.synced = True
        logger.info("Synchronized with bootloader")
        return await self.detect_chip()

    async def get_security_info(self) -> SecurityInfo:
        response = await self.execute_command(
            build_command_u32(Command.GET_SECURITY_INFO, 0),
            timeout=self.config.security_info_timeout,
        )
        return parse_security_info(response.data)

    async def detect_chip(self) -> Optional[ChipFamily]:
        """
        Identify the chip via GET_SECURITY_INFO, falling back to the ROM
        magic register (the original ESP32 lacks the security command).
        """
        try:
            info = await self.get_security_info()
        except LoaderError as e:
            logger.debug(f"GET_SECURITY_INFO unavailable: {e}")
            info = None

        if info is not None:
            self.session.security_info = info
            self.session.chip = chip_from_id(info.chip_id)
            if info.flag_names:
                logger.info(f"Security flags: {', '.join(info.flag_names)}")
            if info.secure_boot:
                mode = "secure download" if info.secure_download else "secure boot"
                logger.warning(f"Device has {mode} enabled")
            if self.session.chip is not None:
                logger.info(f"Detected {self.session.chip_name} (chip id 0x{info.chip_id:X})")
                return self.session.chip

        value = await self.read_reg(CHIP_MAGIC_REG)
        self.session.chip = chip_from_magic(value)
        if self.session.chip is None:
            logger.error(f"Synced, but chip magic value 0x{value:08X} is unknown")
        else:
            logger.info(f"Detected {self.session.chip_name} (magic 0x{value:08X})")
        return self.session.chip

    async def read_reg(self, address: int) -> int:
        response = await self.command_u32(Command.READ_REG, address)
        return response.value

    async def write_reg(self, address: int, value: int, mask: int = 0xFFFFFFFF, delay_us: int = 0) -> None:
        await self.command_u32(Command.WRITE_REG, address, value, mask, delay_us)

    async def read_mac(self) -> str:
        """
        Factory MAC address from eFuse.

        Raises:
            LoaderError: If the chip is unknown or has no MAC register entry
        """
        if self.session.chip is None:
            raise LoaderError("Chip not identified; sync first")
        reg = get_chip(self.session.chip).mac_efuse_reg
        if reg is None:
            raise LoaderError(f"MAC eFuse register not defined for {self.session.chip_name}")
        low = await self.read_reg(reg)
        high = await self.read_reg(reg + 4)
        self.session.mac = format_mac(low, high)
        return self.session.mac

    async def is_stub_running(self) -> bool:
        """The stub answers READ_REG with 2 status bytes, the ROM with 4."""
        response = await self.command_u32(Command.READ_REG, CHIP_MAGIC_REG)
        if len(response.data) == 2:
            running = True
        elif len(response.data) == 4:
            running = False
        else:
            raise LoaderProtocolError(f"Unexpected READ_REG reply length {len(response.data)}")
        self.session.stub_running = running
        return running

    # ------------------------------------------------------------------
    # Stub loader
    # ------------------------------------------------------------------

    async def _download_mem(self, address: int, payload: bytes) -> None:
        block = self.config.ram_block_size
        blocks = -(-len(payload) // block)
        await self.command_u32(Command.MEM_BEGIN, len(payload), blocks, block, address)
        for seq in range(blocks):
            chunk = payload[seq * block:(seq + 1) * block]
            await self.command_u32(Command.MEM_DATA, len(chunk), seq, 0, 0, chunk)

    async def load_stub(self, stub: StubImage) -> None:
        """
        Upload and start the stub loader, then set SPI flash parameters.

        Raises:
            StubLoaderError: If the stub does not greet with ``OHAI``
        """
        if stub.data:
            await self._download_mem(stub.data_start, stub.data)
        await self._download_mem(stub.text_start, stub.text)

        def greeting(frame: bytes):
            if frame == b"OHAI":
                return True
            raise StubLoaderError(f"Unexpected response from stub: {frame[:32]!r}")

        try:
            await self.execute_command(
                build_command_u32(Command.MEM_END, 0, stub.entry),
                timeout=self.config.stub_timeout,
                raw_handler=greeting,
            )
        except LoaderTimeoutError:
            raise StubLoaderError("Failed to execute stub (is the device locked?)")

        self.session.stub_running = True
        logger.info("Stub loader running")
        await self.command_u32(
            Command.SPI_SET_PARAMS, 0, self.config.flash_size, 64 * 1024, 4 * 1024, 256, 0xFFFF
        )

    # ------------------------------------------------------------------
    # Flash
    # ------------------------------------------------------------------

    async def flash_write_plain(self, address: int, data: bytes, progress: Optional[ProgressCallback] = None) -> None:
        """FLASH_BEGIN followed by FLASH_DATA blocks. Requires the stub."""
        block = self.config.flash_write_block
        packets = -(-len(data) // block)
        await self.command_u32(
            Command.FLASH_BEGIN, len(data), packets, min(block, len(data)), address,
            timeout=self.config.flash_begin_timeout,
        )
        for seq in range(packets):
            chunk = data[seq * block:(seq + 1) * block]
            await self.command_u32(
                Command.FLASH_DATA, len(chunk), seq, 0, 0, chunk,
                timeout=self.config.flash_data_timeout,
            )
            if progress:
                progress(min((seq + 1) * block, len(data)), len(data))

    async def flash_read_plain(self, address: int, length: int, progress: Optional[ProgressCallback] = None) -> bytes:
        """
        READ_FLASH pipeline.

        The device streams data frames; the host acknowledges the received
        length every ``max_in_flight`` bytes. A final 16-byte frame carries
        the MD5 of the data.

        Raises:
            IntegrityError: If the trailing MD5 does not match
        """
        packet_size = min(length, self.config.flash_read_packet)
        max_in_flight = min(length, packet_size * 2)
        loop = asyncio.get_running_loop()
        data = bytearray()
        state = {"acked": 0, "last": loop.time()}

        async def on_frame(frame: bytes):
            state["last"] = loop.time()
            if len(data) >= length:
                if len(frame) != 16:
                    raise LoaderProtocolError(f"Unknown response length for MD5: {len(frame)}")
                expected = frame.hex()
                actual = Checksums.md5_hex(bytes(data))
                if expected != actual:
                    raise IntegrityError(f"MD5 mismatch at 0x{address:X}: device {expected}, received {actual}")
                return bytes(data)

            data.extend(frame)
            if len(data) >= state["acked"] + max_in_flight or len(data) >= length:
                await self._write_frame(struct.pack("<I", len(data)))
                state["acked"] = min(state["acked"] + max_in_flight, length)
            if progress:
                progress(min(len(data), length), length)
            return None

        def stalled() -> bool:
            return loop.time() - state["last"] > self.config.read_stall_timeout

        return await self.execute_command(
            build_command_u32(Command.READ_FLASH, address, length, packet_size, max_in_flight),
            raw_handler=on_frame,
            check_timeout=stalled,
        )

    async def flash_md5(self, address: int, length: int) -> str:
        """Device-side MD5 of a flash region, as lowercase hex."""
        response = await self.command_u32(
            Command.SPI_FLASH_MD5, address, length, 0, 0,
            timeout=1.0 + length / 500_000,
        )
        body = response.body(self.status_length)
        if len(body) >= 32:
            return body[:32].decode("ascii").lower()
        if len(body) >= 16:
            return body[:16].hex()
        raise LoaderProtocolError(f"MD5 command returned unexpected result: {body!r}")

    async def read_flash(
        self,
        address: int,
        length: int,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """
        Read a flash region in blocks, then compare against the device MD5.

        Raises:
            IntegrityError: If the MD5 of the whole read does not match
        """
        block = self.config.flash_read_block
        out = bytearray()
        while len(out) < length:
            base = len(out)
            size = min(block, length - base)

            def block_progress(done: int, _total: int, base: int = base) -> None:
                if progress:
                    progress(base + done, length)

            out += await self.flash_read_plain(address + base, size, block_progress)

        actual = Checksums.md5_hex(bytes(out))
        expected = await self.flash_md5(address, length)
        if expected != actual:
            raise IntegrityError(f"MD5 verification failed: expected {expected}, got {actual}")
        logger.info(f"Read 0x{length:X} bytes at 0x{address:X} (MD5 {actual})")
        return bytes(out)

    async def write_flash(
        self,
        address: int,
        data: bytes,
        progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Write and verify a flash region.

        Returns:
            MD5 hex digest of the written data

        Raises:
            IntegrityError: If the device MD5 differs after writing
        """
        await self.flash_write_plain(address, data, progress)
        expected = Checksums.md5_hex(data)
        actual = await self.flash_md5(address, len(data))
        if expected != actual:
            raise IntegrityError(f"MD5 verification failed after write: expected {expected}, got {actual}")
        logger.info(f"Wrote 0x{len(data):X} bytes at 0x{address:X} (MD5 {expected})")
        return expected

    async def erase_region(self, address: int, length: int) -> None:
        """
        Erase a sector-aligned region. Requires the stub.

        Raises:
            LoaderError: On misalignment or without the stub
        """
        if not self.session.stub_running:
            raise LoaderError("Erasing a region requires the stub loader")
        if address % FLASH_SECTOR_SIZE or length % FLASH_SECTOR_SIZE:
            raise LoaderError("Erase offset and size must be multiples of 4096")
        timeout = max(self.config.command_timeout, self.config.erase_timeout_per_mb * length / MB)
        await self.command_u32(Command.ERASE_REGION, address, length, timeout=timeout)

    async def blank_check(self, address: int, length: int) -> bool:
        """True when the region reads as all 0xFF (compared by MD5)."""
        return await self.flash_md5(address, length) == Checksums.md5_hex(b"\xff" * length)

    async def change_baud(self, baudrate: int) -> None:
        """Switch both ends of the link to ``baudrate``."""
        previous = self.stream.baudrate if self.session.stub_running else 0
        await self.command_u32(Command.CHANGE_BAUDRATE, baudrate, previous)
        await self.stream.set_baudrate(baudrate)
        await asyncio.sleep(0.05)
        self._drain_frames()
        logger.info(f"Changed baud rate to {baudrate}")
