"""
Core workflow actions.

Each action is a plain synchronous function returning an OperationResult;
the async codecs and loader run inside asyncio.run(). File mutations and
device writes go through the safety context for gating.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from esp32_firmware_editor.analyzer import analyze_image, fix_all_checksums
from esp32_firmware_editor.filesystems import FatVolume, parse_spiffs
from esp32_firmware_editor.flash_image import FlashImage
from esp32_firmware_editor.models import StubImage, load_stub_json
from esp32_firmware_editor.nvs import NvsPartition, coerce_value, parse_nvs_type
from esp32_firmware_editor.otadata import parse_otadata, set_boot_slot
from esp32_firmware_editor.partitions import (
    SUBTYPE_DATA_FAT,
    SUBTYPE_DATA_NVS,
    SUBTYPE_DATA_OTA,
    SUBTYPE_DATA_SPIFFS,
    PartitionEntry,
    detect_partition_table_offset,
    find_partition,
    parse_partitions,
)
from esp32_firmware_editor.protocol.device_image import create_device_image
from esp32_firmware_editor.protocol.errors import LoaderError
from esp32_firmware_editor.protocol.loader import ESPLoader, LoaderConfig
from esp32_firmware_editor.protocol.serial_stream import DEFAULT_BAUD, SerialStream
from esp32_firmware_editor.utils import Checksums

from .results import OperationResult
from .safety import SafetyContext, WritePermissionError, require_write_permission

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records: List[str] = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "esp32_firmware_editor"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


# ----------------------------------------------------------------------
# Image files
# ----------------------------------------------------------------------

def load_image(path: str) -> FlashImage:
    """
    Read a flash dump into a fully cached FlashImage.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is empty
    """
    data = Path(path).read_bytes()
    if not data:
        raise ValueError(f"Image file is empty: {path}")
    return FlashImage.from_bytes(data)


async def _save_image(image: FlashImage, output: str) -> None:
    await image.flush()
    Path(output).write_bytes(image.to_bytes())
    logger.info(f"Saved {image.size:,} bytes to {output}")


async def _finish_edit(
    result: OperationResult,
    image: FlashImage,
    path: str,
    output: Optional[str],
    safety_ctx: SafetyContext,
) -> None:
    """Gate and save a modified image; dry runs only report."""
    target = output or path
    changed = sum(len(s.data) for s in image.write_segments)
    result.metadata["changed_bytes"] = changed
    result.metadata["output"] = target

    if not image.has_pending_writes:
        result.add_warning("No changes to save")
        return

    require_write_permission(safety_ctx, target_region=target, bytes_length=changed)
    if safety_ctx.dry_run:
        result.metadata["dry_run"] = True
        result.add_warning("Dry run - no changes saved. Add --write to save.")
        return

    await _save_image(image, target)
    result.hashes["sha256"] = Checksums.sha256(image.to_bytes()).hex()


async def _partition_table(image: FlashImage) -> List[PartitionEntry]:
    offset = await detect_partition_table_offset(image, None)
    if offset is None:
        raise ValueError("No partition table found in image")
    return await parse_partitions(image, offset)


async def _resolve_partition(image: FlashImage, label: Optional[str], subtype: int, kind: str) -> PartitionEntry:
    """Partition by label, or the first data partition of ``subtype``."""
    partitions = await _partition_table(image)
    if label:
        entry = find_partition(partitions, label)
        if entry is None:
            raise ValueError(f"Partition '{label}' not found")
        return entry
    for entry in partitions:
        if entry.is_data(subtype):
            return entry
    raise ValueError(f"No {kind} partition found in partition table")


def _run(operation: str, coro_factory) -> OperationResult:
    """Run an async action body with log capture, mapping errors to a failed result."""
    with _capture_logs() as logs:
        try:
            result = asyncio.run(coro_factory())
        except WritePermissionError:
            raise
        except Exception as e:
            logger.debug(f"{operation} failed", exc_info=True)
            result = OperationResult.failure(operation=operation, error=str(e))
        result.logs = logs
        return result


# ----------------------------------------------------------------------
# Offline actions
# ----------------------------------------------------------------------

def inspect_image(path: str) -> OperationResult:
    """
    Analyze a flash dump.

    Returns:
        OperationResult with metadata["report"] holding the ImageReport
    """
    async def body() -> OperationResult:
        image = load_image(path)
        report = await analyze_image(image)
        chip = report.bootloader.chip_name if report.bootloader else ""
        result = OperationResult.success(operation="inspect_image", chip=chip, bytes_len=image.size)
        result.metadata["report"] = report
        result.hashes["md5"] = Checksums.md5_hex(image.to_bytes())

        if report.bootloader is None:
            result.add_warning("No bootloader found at 0x0 or 0x1000")
        if report.partition_table_offset is None:
            result.add_warning("No partition table found")
        if report.partitions and not report.otadata_valid:
            result.add_warning("otadata has no valid entry")
        if report.boot_partition is not None and not report.boot_partition_valid:
            result.add_warning(f"Boot partition '{report.boot_partition.label}' has an invalid image or SHA-256")
        for label, detail in report.details.items():
            if detail.error and not detail.entry.is_data(SUBTYPE_DATA_OTA):
                result.add_warning(f"{label}: {detail.error}")
        return result

    return _run("inspect_image", body)


def fix_checksums(
    path: str,
    safety_ctx: SafetyContext,
    output: Optional[str] = None,
    target: Optional[str] = None,
    ota_offset: Optional[int] = None,
    ota_length: Optional[int] = None,
) -> OperationResult:
    """
    Recompute image checksums and SHA-256 digests of the bootloader and/or
    the boot app, then save.

    Args:
        target: "bootloader", "ota", or None for both
    """
    async def body() -> OperationResult:
        image = load_image(path)
        fixes = await fix_all_checksums(image, target, ota_offset, ota_length)
        result = OperationResult.success(operation="fix_checksums", bytes_len=image.size)
        result.metadata["fixes"] = fixes
        for err in fixes.errors:
            result.add_warning(err)
        if fixes.bootloader is None and fixes.ota_app is None:
            result.add_error("Nothing could be fixed")
            return result
        await _finish_edit(result, image, path, output, safety_ctx)
        return result

    return _run("fix_checksums", body)


def nvs_list(path: str, partition: Optional[str] = None) -> OperationResult:
    """List NVS items; metadata["items"] holds the NvsItem list."""
    async def body() -> OperationResult:
        image = load_image(path)
        entry = await _resolve_partition(image, partition, SUBTYPE_DATA_NVS, "NVS")
        nvs = NvsPartition(image, entry.offset, entry.length)
        items = [i for i in await nvs.items() if not i.is_namespace]
        result = OperationResult.success(
            operation="nvs_list",
            region=f"{entry.label} @ 0x{entry.offset:X}",
            bytes_len=entry.length,
        )
        result.metadata["items"] = items
        result.metadata["namespaces"] = await nvs.namespaces()
        bad = [i for i in items if not i.header_crc_valid or i.data_crc_valid is False]
        if bad:
            result.add_warning(f"{len(bad)} NVS item(s) with CRC errors")
        return result

    return _run("nvs_list", body)


def nvs_set(
    path: str,
    namespace: str,
    key: str,
    type_name: str,
    value: str,
    safety_ctx: SafetyContext,
    output: Optional[str] = None,
    partition: Optional[str] = None,
    create_namespace: bool = True,
) -> OperationResult:
    """
    Add or replace an NVS item.

    Args:
        type_name: u8..i64, string, blob (see nvs.TYPE_ALIASES)
        value: Command-line text; integers accept 0x, blobs are hex
        create_namespace: Create the namespace if it does not exist
    """
    async def body() -> OperationResult:
        datatype = parse_nvs_type(type_name)
        converted = coerce_value(datatype, value)
        image = load_image(path)
        entry = await _resolve_partition(image, partition, SUBTYPE_DATA_NVS, "NVS")
        nvs = NvsPartition(image, entry.offset, entry.length)

        if namespace not in await nvs.namespaces():
            if not create_namespace:
                raise ValueError(f"NVS namespace '{namespace}' not found")
            await nvs.add_namespace(namespace)
        await nvs.update_item(namespace, key, datatype, converted)

        result = OperationResult.success(
            operation="nvs_set",
            region=f"{entry.label} @ 0x{entry.offset:X}",
        )
        result.metadata["item"] = f"{namespace}.{key}"
        await _finish_edit(result, image, path, output, safety_ctx)
        return result

    return _run("nvs_set", body)


def nvs_delete(
    path: str,
    namespace: str,
    key: str,
    safety_ctx: SafetyContext,
    output: Optional[str] = None,
    partition: Optional[str] = None,
) -> OperationResult:
    async def body() -> OperationResult:
        image = load_image(path)
        entry = await _resolve_partition(image, partition, SUBTYPE_DATA_NVS, "NVS")
        erased = await NvsPartition(image, entry.offset, entry.length).delete_item(namespace, key)
        result = OperationResult.success(
            operation="nvs_delete",
            region=f"{entry.label} @ 0x{entry.offset:X}",
        )
        result.metadata["entries_erased"] = erased
        await _finish_edit(result, image, path, output, safety_ctx)
        return result

    return _run("nvs_delete", body)


def ota_status(path: str) -> OperationResult:
    """otadata entries plus the resolved boot partition."""
    async def body() -> OperationResult:
        image = load_image(path)
        report = await analyze_image(image)
        ota_part = next((p for p in report.partitions if p.is_data(SUBTYPE_DATA_OTA)), None)
        if ota_part is None:
            raise ValueError("No otadata partition found in partition table")
        otadata = report.details[ota_part.label].otadata
        result = OperationResult.success(operation="ota_status", region=f"otadata @ 0x{ota_part.offset:X}")
        result.metadata["otadata"] = otadata
        result.metadata["boot_partition"] = report.boot_partition
        result.metadata["ota_apps"] = [p for p in report.partitions if p.is_ota_app]
        if otadata is not None and otadata.error:
            result.add_warning(otadata.error)
        elif not report.otadata_valid:
            result.add_warning("otadata has no valid entry; factory app boots")
        return result

    return _run("ota_status", body)


def ota_select(
    path: str,
    slot: int,
    safety_ctx: SafetyContext,
    output: Optional[str] = None,
) -> OperationResult:
    """Make OTA app ``slot`` the next boot partition."""
    async def body() -> OperationResult:
        image = load_image(path)
        partitions = await _partition_table(image)
        ota_apps = [p for p in partitions if p.is_ota_app]
        ota_part = next((p for p in partitions if p.is_data(SUBTYPE_DATA_OTA)), None)
        if ota_part is None or not ota_apps:
            raise ValueError("Image has no otadata partition or no OTA app partitions")
        new_entry = await set_boot_slot(image, ota_part.offset, slot, len(ota_apps))
        check = await parse_otadata(image, ota_part.offset, ota_part.length)
        result = OperationResult.success(operation="ota_select", region=f"otadata @ 0x{ota_part.offset:X}")
        result.metadata["entry"] = new_entry
        result.metadata["otadata"] = check
        await _finish_edit(result, image, path, output, safety_ctx)
        return result

    return _run("ota_select", body)


async def _open_fat(image: FlashImage, partition: Optional[str]) -> Tuple[PartitionEntry, FatVolume]:
    entry = await _resolve_partition(image, partition, SUBTYPE_DATA_FAT, "FAT")
    volume = await FatVolume.open(image, entry.offset, entry.length)
    if volume.boot is None:
        raise ValueError(f"FAT volume in '{entry.label}' could not be opened: {volume.error}")
    await volume.list_files()
    return entry, volume


def fat_list(path: str, partition: Optional[str] = None) -> OperationResult:
    """metadata["files"] holds the FatEntry tree; metadata["volume"] the FatVolume."""
    async def body() -> OperationResult:
        image = load_image(path)
        entry, volume = await _open_fat(image, partition)
        result = OperationResult.success(
            operation="fat_list",
            region=f"{entry.label} @ 0x{entry.offset:X}",
            bytes_len=entry.length,
        )
        result.metadata["volume"] = volume
        result.metadata["files"] = volume.files
        if volume.error:
            result.add_warning(volume.error)
        return result

    return _run("fat_list", body)


def fat_extract(path: str, file_path: str, destination: str, partition: Optional[str] = None) -> OperationResult:
    async def body() -> OperationResult:
        image = load_image(path)
        _, volume = await _open_fat(image, partition)
        entry = volume.find_file(file_path)
        if entry is None:
            raise ValueError(f"FAT file '{file_path}' not found")
        if entry.is_directory:
            raise ValueError(f"'{file_path}' is a directory")
        data = await volume.extract_file(entry)
        Path(destination).write_bytes(data)
        result = OperationResult.success(operation="fat_extract", region=entry.path, bytes_len=len(data))
        result.hashes["md5"] = Checksums.md5_hex(data)
        result.metadata["output"] = destination
        return result

    return _run("fat_extract", body)


def fat_add(
    path: str,
    source: str,
    file_path: str,
    safety_ctx: SafetyContext,
    output: Optional[str] = None,
    partition: Optional[str] = None,
) -> OperationResult:
    """Copy a host file into the FAT volume at ``file_path`` (8.3 names)."""
    async def body() -> OperationResult:
        data = Path(source).read_bytes()
        image = load_image(path)
        _, volume = await _open_fat(image, partition)
        entry = await volume.add_file(file_path, data)
        result = OperationResult.success(operation="fat_add", region=entry.path, bytes_len=len(data))
        result.hashes["md5"] = Checksums.md5_hex(data)
        await _finish_edit(result, image, path, output, safety_ctx)
        return result

    return _run("fat_add", body)


def fat_delete(
    path: str,
    file_path: str,
    safety_ctx: SafetyContext,
    output: Optional[str] = None,
    partition: Optional[str] = None,
) -> OperationResult:
    async def body() -> OperationResult:
        image = load_image(path)
        _, volume = await _open_fat(image, partition)
        entry = volume.find_file(file_path)
        if entry is None:
            raise ValueError(f"FAT file '{file_path}' not found")
        freed = await volume.delete_file(entry)
        result = OperationResult.success(operation="fat_delete", region=entry.path, bytes_len=entry.size)
        result.metadata["clusters_freed"] = freed
        await _finish_edit(result, image, path, output, safety_ctx)
        return result

    return _run("fat_delete", body)


def spiffs_list(path: str, partition: Optional[str] = None) -> OperationResult:
    async def body() -> OperationResult:
        image = load_image(path)
        entry = await _resolve_partition(image, partition, SUBTYPE_DATA_SPIFFS, "SPIFFS")
        volume = await parse_spiffs(image, entry.offset, entry.length)
        result = OperationResult.success(
            operation="spiffs_list",
            region=f"{entry.label} @ 0x{entry.offset:X}",
            bytes_len=entry.length,
        )
        result.metadata["volume"] = volume
        result.metadata["files"] = volume.files
        if volume.error:
            result.add_warning(volume.error)
        return result

    return _run("spiffs_list", body)


def spiffs_extract(path: str, file_path: str, destination: str, partition: Optional[str] = None) -> OperationResult:
    async def body() -> OperationResult:
        image = load_image(path)
        entry = await _resolve_partition(image, partition, SUBTYPE_DATA_SPIFFS, "SPIFFS")
        volume = await parse_spiffs(image, entry.offset, entry.length)
        file = volume.find_file(file_path)
        if file is None:
            raise ValueError(f"SPIFFS file '{file_path}' not found")
        data = await volume.read_file(file)
        Path(destination).write_bytes(data)
        result = OperationResult.success(operation="spiffs_extract", region=file.name, bytes_len=len(data))
        result.hashes["md5"] = Checksums.md5_hex(data)
        result.metadata["output"] = destination
        return result

    return _run("spiffs_extract", body)


# ----------------------------------------------------------------------
# Device actions
# ----------------------------------------------------------------------

@asynccontextmanager
async def device_session(
    port: str,
    baud: int = DEFAULT_BAUD,
    stub: Optional[StubImage] = None,
    config: Optional[LoaderConfig] = None,
    stream_factory=SerialStream,
):
    """
    Connect, reset into the bootloader, sync, and optionally start the stub
    and switch baud rate. The link is closed on exit.

    Example:
        async with device_session("/dev/ttyUSB0") as loader:
            mac = await loader.read_mac()
    """
    loader = ESPLoader(stream_factory(port, DEFAULT_BAUD), config)
    await loader.connect()
    try:
        await loader.reset(bootloader=True)
        await loader.sync()
        if stub is not None:
            await loader.load_stub(stub)
        if baud != DEFAULT_BAUD:
            await loader.change_baud(baud)
        yield loader
    finally:
        await loader.disconnect()


def _load_stub(stub_path: Optional[str]) -> Optional[StubImage]:
    return load_stub_json(Path(stub_path)) if stub_path else None


def device_info(
    port: str,
    baud: int = DEFAULT_BAUD,
    stub_path: Optional[str] = None,
    stream_factory=SerialStream,
) -> OperationResult:
    """Sync with the device and report chip, MAC and security state."""
    async def body() -> OperationResult:
        async with device_session(port, baud, _load_stub(stub_path), stream_factory=stream_factory) as loader:
            session = loader.session
            result = OperationResult.success(operation="device_info", chip=session.chip_name)
            try:
                result.metadata["mac"] = await loader.read_mac()
            except LoaderError as e:
                result.add_warning(f"Could not read MAC: {e}")
            result.metadata["session"] = session
            result.metadata["stub_running"] = session.stub_running
            if session.chip is None:
                result.add_warning("Chip could not be identified")
            if session.security_info is not None and session.security_info.secure_download:
                result.add_warning("Device is in secure download mode")
            return result

    return _run("device_info", body)


def read_device_flash(
    port: str,
    output: str,
    address: int = 0,
    size: int = 0x400000,
    baud: int = DEFAULT_BAUD,
    stub_path: Optional[str] = None,
    progress_cb: Optional[ProgressCallback] = None,
    stream_factory=SerialStream,
) -> OperationResult:
    """Dump a flash region to a file, MD5-verified against the device."""
    region = f"0x{address:06X}-0x{address + size:06X}"

    async def body() -> OperationResult:
        async with device_session(port, baud, _load_stub(stub_path), stream_factory=stream_factory) as loader:
            if not loader.session.stub_running:
                logger.warning("Reading flash without the stub loader; ROM READ_FLASH may be unsupported")
            data = await loader.read_flash(address, size, progress_cb)
            chip = loader.session.chip_name
        Path(output).write_bytes(data)
        result = OperationResult.success(operation="read_device_flash", chip=chip, region=region, bytes_len=len(data))
        result.hashes["md5"] = Checksums.md5_hex(data)
        result.metadata["output"] = output
        return result

    return _run("read_device_flash", body)


def write_device_flash(
    port: str,
    path: str,
    address: int,
    safety_ctx: SafetyContext,
    baud: int = DEFAULT_BAUD,
    stub_path: Optional[str] = None,
    progress_cb: Optional[ProgressCallback] = None,
    stream_factory=SerialStream,
) -> OperationResult:
    """
    Write a file to flash at ``address`` and MD5-verify it.

    The permission check runs after sync, once the chip is known.

    Raises:
        WritePermissionError: If the safety gate denies the write
    """
    if address % 0x1000:
        return OperationResult.failure("write_device_flash", f"Address 0x{address:X} is not 4 KiB aligned")
    data = Path(path).read_bytes()
    if len(data) % 4:
        data += b"\xff" * (4 - len(data) % 4)
    region = f"0x{address:06X}-0x{address + len(data):06X}"

    async def body() -> OperationResult:
        async with device_session(port, baud, _load_stub(stub_path), stream_factory=stream_factory) as loader:
            chip = loader.session.chip_name
            safety_ctx.chip_detected = chip if loader.session.chip is not None else ""
            safety_ctx.device_write = True
            require_write_permission(safety_ctx, target_region=region, bytes_length=len(data), offset=address)
            if safety_ctx.dry_run:
                result = OperationResult.success("write_device_flash", chip=chip, region=region, bytes_len=len(data))
                result.add_warning("Dry run - nothing written")
                return result
            md5 = await loader.write_flash(address, data, progress_cb)
        result = OperationResult.success("write_device_flash", chip=chip, region=region, bytes_len=len(data))
        result.hashes["md5"] = md5
        return result

    return _run("write_device_flash", body)


def erase_device_region(
    port: str,
    address: int,
    size: int,
    safety_ctx: SafetyContext,
    baud: int = DEFAULT_BAUD,
    stub_path: Optional[str] = None,
    stream_factory=SerialStream,
) -> OperationResult:
    """
    Erase a sector-aligned flash region. Needs the stub loader.

    Raises:
        WritePermissionError: If the safety gate denies the erase
    """
    if address % 0x1000 or size % 0x1000 or size <= 0:
        return OperationResult.failure(
            "erase_device_region", f"Region 0x{address:X}+0x{size:X} is not 4 KiB aligned",
        )
    if not stub_path:
        return OperationResult.failure("erase_device_region", "Erasing a region requires --stub")
    region = f"0x{address:06X}-0x{address + size:06X}"

    async def body() -> OperationResult:
        async with device_session(port, baud, _load_stub(stub_path), stream_factory=stream_factory) as loader:
            chip = loader.session.chip_name
            safety_ctx.chip_detected = chip if loader.session.chip is not None else ""
            safety_ctx.device_write = True
            require_write_permission(safety_ctx, target_region=region, bytes_length=size, offset=address)
            result = OperationResult.success("erase_device_region", chip=chip, region=region, bytes_len=size)
            if safety_ctx.dry_run:
                result.add_warning("Dry run - nothing erased")
                return result
            await loader.erase_region(address, size)
            result.metadata["blank"] = await loader.blank_check(address, size)
        if not result.metadata["blank"]:
            result.add_warning(f"Region {region} does not read back as erased")
        return result

    return _run("erase_device_region", body)


def blank_check_device(
    port: str,
    address: int,
    size: int,
    baud: int = DEFAULT_BAUD,
    stub_path: Optional[str] = None,
    stream_factory=SerialStream,
) -> OperationResult:
    """Report whether a flash region is all 0xFF, using the device MD5."""
    region = f"0x{address:06X}-0x{address + size:06X}"

    async def body() -> OperationResult:
        async with device_session(port, baud, _load_stub(stub_path), stream_factory=stream_factory) as loader:
            blank = await loader.blank_check(address, size)
            chip = loader.session.chip_name
        result = OperationResult.success("blank_check_device", chip=chip, region=region, bytes_len=size)
        result.metadata["blank"] = blank
        return result

    return _run("blank_check_device", body)


def inspect_device(
    port: str,
    size: int = 0x400000,
    baud: int = DEFAULT_BAUD,
    stub_path: Optional[str] = None,
    stream_factory=SerialStream,
) -> OperationResult:
    """
    Analyze a live device. Only the sectors the analyzer touches are read.
    """
    async def body() -> OperationResult:
        async with device_session(port, baud, _load_stub(stub_path), stream_factory=stream_factory) as loader:
            image = create_device_image(loader, size)
            report = await analyze_image(image)
            chip = loader.session.chip_name
        fetched = sum(len(s.data) for s in image.read_segments)
        result = OperationResult.success(operation="inspect_device", chip=chip, bytes_len=fetched)
        result.metadata["report"] = report
        if report.bootloader is None:
            result.add_warning("No bootloader found at 0x0 or 0x1000")
        return result

    return _run("inspect_device", body)
