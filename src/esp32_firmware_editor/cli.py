"""
ESP32 Firmware Editor CLI

Inspect and edit ESP32 flash dumps, and read or write flash over the serial
bootloader.
"""

import json
import logging
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn
from rich.table import Table

from esp32_firmware_editor import __version__
from esp32_firmware_editor.core import actions
from esp32_firmware_editor.core.messages import MessageLevel, WarningItem, result_to_warnings
from esp32_firmware_editor.core.parsing import parse_offset as _parse_offset_core
from esp32_firmware_editor.core.parsing import parse_size as _parse_size_core
from esp32_firmware_editor.core.results import OperationResult
from esp32_firmware_editor.core.safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
)
from esp32_firmware_editor.filesystems import FatEntry
from esp32_firmware_editor.protocol.serial_stream import DEFAULT_BAUD, list_serial_ports

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("esp32_firmware_editor")

console = Console()

app = typer.Typer(help="🔧 ESP32 Firmware Editor - inspect and edit ESP32 flash images")


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output, including wire traffic"),
) -> None:
    if verbose:
        logger.setLevel(logging.DEBUG)


def print_header(text: str) -> None:
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style, icon = "red", "❌"
    elif warning.level == MessageLevel.WARN:
        style, icon = "yellow", "⚠️"
    else:
        style, icon = "blue", "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def finish(result: OperationResult, success_text: Optional[str] = None, verbose: bool = True) -> None:
    """Print warnings and errors; exit 1 on failure."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)
    if not result.ok:
        sys.exit(1)
    if success_text:
        print_success(success_text)


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_offset that converts ValueError
    to typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_offset_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_size(value: Optional[str]) -> Optional[int]:
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def file_safety_context(write: bool) -> SafetyContext:
    """Without --write, image edits run as a dry run."""
    return SafetyContext(write_enabled=write, dry_run=not write, interactive=False)


def device_safety_context(write: bool, confirm_token: Optional[str]) -> SafetyContext:
    """
    SafetyContext for flash writes: --write plus either --confirm WRITE or
    a typed confirmation on a TTY.
    """
    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Chip:          {details.get('chip', 'Unknown')}\n"
            f"Target:        {details.get('target_region', 'Unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Flash Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    return SafetyContext(
        write_enabled=write,
        confirmation_token=confirm_token,
        interactive=sys.stdin.isatty() and confirm_token is None,
        device_write=True,
        region_known=True,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )


def transfer_progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        DownloadColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    )


# ----------------------------------------------------------------------
# Device commands
# ----------------------------------------------------------------------

@app.command()
def ports(
    show_all: bool = typer.Option(False, "--all", "-a", help="Include ports without a known USB-UART VID"),
) -> None:
    """List serial ports with ESP32 / USB-UART adapters."""
    print_header("Available Serial Ports")

    ports_list = list_serial_ports(filter_known=not show_all)
    if not ports_list:
        print_warning("No serial ports found" + ("" if show_all else " (try --all)"))
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Vendor", style="magenta")
    table.add_column("VID:PID", style="dim")
    table.add_column("Description", style="green")
    for port in ports_list:
        ids = f"{port.vid:04X}:{port.pid or 0:04X}" if port.vid is not None else "-"
        table.add_row(port.device, port.vendor or "-", ids, port.description or "-")
    console.print(table)


@app.command()
def info(
    port: str = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyUSB0)"),
    baud: int = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Baud rate after sync"),
    stub: Optional[str] = typer.Option(None, "--stub", help="esptool stub loader JSON"),
) -> None:
    """Connect to the bootloader and show chip details."""
    print_header("Device Information")
    try:
        result = actions.device_info(port, baud, stub)
    except Exception as e:
        print_error(f"Device query failed: {e}")
        sys.exit(1)

    session = result.metadata.get("session")
    if session is not None:
        table = Table(title="Chip")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Chip", session.chip_name)
        table.add_row("MAC", result.metadata.get("mac") or "-")
        table.add_row("USB-JTAG", "yes" if session.usb_jtag else "no")
        table.add_row("Stub running", "yes" if session.stub_running else "no")
        sec = session.security_info
        if sec is not None:
            table.add_row("Chip ID", f"0x{sec.chip_id:X}")
            table.add_row("ECO", str(sec.eco_version))
            table.add_row("Flash crypt cnt", str(sec.flash_crypt_cnt))
            table.add_row("Security flags", ", ".join(sec.flag_names) or "none")
        if session.reset_info is not None:
            reset = session.reset_info
            mode = "secure download" if reset.secure else ("download" if reset.download_mode else "normal")
            table.add_row("Reset reason", f"{reset.reason} (0x{reset.reason_code:X})")
            table.add_row("Boot mode", f"0x{reset.boot_mode:X} ({mode})")
        console.print(table)
    finish(result)


@app.command("read-flash")
def read_flash(
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    output: str = typer.Option(..., "--output", "-o", help="Output file"),
    address: str = typer.Option("0x0", "--address", "-a", help="Start address"),
    size: str = typer.Option("4M", "--size", "-s", help="Bytes to read (e.g., 0x400000, 4M)"),
    baud: int = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Baud rate after sync"),
    stub: Optional[str] = typer.Option(None, "--stub", help="esptool stub loader JSON"),
) -> None:
    """Dump flash to a file (MD5-verified)."""
    print_header("Read Flash")
    start = parse_offset(address) or 0
    length = parse_size(size)
    console.print(f"Port: {port}  Region: 0x{start:X}+0x{length:X}")

    try:
        with transfer_progress() as progress:
            task = progress.add_task("Reading...", total=length)
            result = actions.read_device_flash(
                port, output, start, length, baud, stub,
                progress_cb=lambda done, total: progress.update(task, completed=done),
            )
    except Exception as e:
        print_error(f"Read failed: {e}")
        sys.exit(1)

    if result.ok:
        console.print(f"MD5: {result.hashes.get('md5')}")
    finish(result, f"Saved {result.bytes_len:,} bytes to {output}")


@app.command("write-flash")
def write_flash(
    image: str = typer.Argument(..., help="Binary to write"),
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    address: str = typer.Option(..., "--address", "-a", help="Flash address (4 KiB aligned)"),
    baud: int = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Baud rate after sync"),
    stub: Optional[str] = typer.Option(None, "--stub", help="esptool stub loader JSON"),
    write: bool = typer.Option(False, "--write", help="Required flag to enable actual write to flash"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE')",
    ),
) -> None:
    """Write a binary to flash and verify it by MD5."""
    print_header("Write Flash")
    start = parse_offset(address)

    if not write:
        print_error("Write operation requires --write flag.")
        console.print(f"  Example: esp32-firmware-editor write-flash {image} -p PORT -a {address} --write --confirm WRITE")
        sys.exit(1)
    if confirm is None and not sys.stdin.isatty():
        print_error("Non-interactive environment detected but no confirmation token provided.")
        console.print("  Provide: --write --confirm WRITE")
        sys.exit(1)

    ctx = device_safety_context(write, confirm)
    try:
        with transfer_progress() as progress:
            task = progress.add_task("Writing...", total=None)
            result = actions.write_device_flash(
                port, image, start, ctx, baud, stub,
                progress_cb=lambda done, total: progress.update(task, completed=done, total=total),
            )
    except WritePermissionError as e:
        print_error(str(e))
        sys.exit(1)
    except Exception as e:
        print_error(f"Write failed: {e}")
        sys.exit(1)

    finish(result, f"Wrote and verified {result.bytes_len:,} bytes at 0x{start:X}")


@app.command("erase-region")
def erase_region(
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    address: str = typer.Option(..., "--address", "-a", help="Start address (4 KiB aligned)"),
    size: str = typer.Option(..., "--size", "-s", help="Bytes to erase (multiple of 4K)"),
    stub: Optional[str] = typer.Option(None, "--stub", help="esptool stub loader JSON (required)"),
    baud: int = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Baud rate after sync"),
    write: bool = typer.Option(False, "--write", help="Required flag to enable erasing flash"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE')",
    ),
) -> None:
    """Erase a flash region through the stub loader."""
    print_header("Erase Region")
    start = parse_offset(address)
    length = parse_size(size)

    if not write:
        print_error("Erase operation requires --write flag.")
        console.print(f"  Example: esp32-firmware-editor erase-region -p PORT -a {address} -s {size} --stub STUB --write")
        sys.exit(1)
    if confirm is None and not sys.stdin.isatty():
        print_error("Non-interactive environment detected but no confirmation token provided.")
        console.print("  Provide: --write --confirm WRITE")
        sys.exit(1)

    ctx = device_safety_context(write, confirm)
    try:
        with console.status("Erasing..."):
            result = actions.erase_device_region(port, start, length, ctx, baud, stub)
    except WritePermissionError as e:
        print_error(str(e))
        sys.exit(1)
    except Exception as e:
        print_error(f"Erase failed: {e}")
        sys.exit(1)

    finish(result, f"Erased 0x{length:X} bytes at 0x{start:X}")


@app.command("blank-check")
def blank_check(
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    address: str = typer.Option("0x0", "--address", "-a", help="Start address"),
    size: str = typer.Option(..., "--size", "-s", help="Bytes to check (e.g., 0x1000, 64K)"),
    baud: int = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Baud rate after sync"),
    stub: Optional[str] = typer.Option(None, "--stub", help="esptool stub loader JSON"),
) -> None:
    """Check whether a flash region is erased (all 0xFF)."""
    print_header("Blank Check")
    start = parse_offset(address) or 0
    length = parse_size(size)

    try:
        with console.status("Hashing region..."):
            result = actions.blank_check_device(port, start, length, baud, stub)
    except Exception as e:
        print_error(f"Blank check failed: {e}")
        sys.exit(1)

    if result.ok:
        state = "[green]blank[/green]" if result.metadata["blank"] else "[yellow]not blank[/yellow]"
        console.print(f"Region {result.region}: {state}")
    finish(result)


# ----------------------------------------------------------------------
# Image commands
# ----------------------------------------------------------------------

def _image_table(title: str, info) -> Table:
    table = Table(title=title)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Offset", f"0x{info.offset:X}")
    table.add_row("Chip", info.chip_name)
    table.add_row("Segments", str(info.segment_count))
    table.add_row("Entry point", f"0x{info.entry_point:08X}")
    table.add_row("Flash", f"{info.flash_size_name}, {info.spi_mode_name} @ {info.spi_speed_name}")
    table.add_row("Chip revision", f"{info.min_chip_rev_text} - {info.max_chip_rev_text}")
    if info.checksum is not None:
        state = "valid" if info.checksum_valid else f"INVALID (expected 0x{info.calculated_checksum:02X})"
        table.add_row("Checksum", f"0x{info.checksum:02X} {state}")
    if info.sha256:
        table.add_row("SHA-256", info.sha256)
    desc = info.app_description
    if desc is not None:
        table.add_row("Project", desc.project_name)
        table.add_row("Version", desc.version)
        table.add_row("Built", f"{desc.date} {desc.time}")
        table.add_row("IDF", desc.idf_version)
    if info.error:
        table.add_row("Error", f"[red]{info.error}[/red]")
    return table


def _partition_table(partitions) -> Table:
    table = Table(title="Partition Table")
    table.add_column("#", style="dim")
    table.add_column("Label", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Offset", style="green")
    table.add_column("Size", style="yellow")
    for p in partitions:
        table.add_row(str(p.index), p.label, p.type_name, f"0x{p.offset:06X}", f"0x{p.length:X} ({p.length // 1024} KB)")
    return table


@app.command()
def inspect(
    image: Optional[str] = typer.Argument(None, help="Flash dump file"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Inspect a live device instead of a file"),
    size: str = typer.Option("4M", "--size", "-s", help="Flash size for live inspection"),
    baud: int = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Baud rate after sync"),
    stub: Optional[str] = typer.Option(None, "--stub", help="esptool stub loader JSON"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output summary as JSON"),
) -> None:
    """Analyze a flash image: bootloader, partitions, apps, NVS, OTA, filesystems."""
    if image is None and port is None:
        raise typer.BadParameter("Provide an image file or --port")

    try:
        if image is not None:
            result = actions.inspect_image(image)
        else:
            result = actions.inspect_device(port, parse_size(size), baud, stub)
    except Exception as e:
        print_error(f"Inspect failed: {e}")
        sys.exit(1)

    report = result.metadata.get("report")
    if output_json:
        summary = result.to_dict()
        summary["metadata"] = {}
        if report is not None:
            summary["metadata"] = {
                "bootloader_offset": report.bootloader_offset,
                "partition_table_offset": report.partition_table_offset,
                "partitions": [
                    {"label": p.label, "type": p.type_name, "offset": p.offset, "size": p.length}
                    for p in report.partitions
                ],
                "boot_partition": report.boot_partition.label if report.boot_partition else None,
                "all_valid": report.all_valid,
            }
        console.print_json(json.dumps(summary))
        sys.exit(0 if result.ok else 1)

    print_header("Flash Image Analysis")
    if report is not None:
        console.print(f"Size: {report.size:,} bytes  MD5: {result.hashes.get('md5', '-')}")
        if report.bootloader is not None:
            console.print(_image_table("Bootloader", report.bootloader))
        if report.partitions:
            console.print(f"Partition table at 0x{report.partition_table_offset:X}")
            console.print(_partition_table(report.partitions))
        if report.boot_partition is not None:
            detail = report.details.get(report.boot_partition.label)
            if detail is not None and detail.app_image is not None:
                console.print(_image_table(f"Boot app: {report.boot_partition.label}", detail.app_image))
        state = "[green]all valid[/green]" if report.all_valid else "[yellow]issues found[/yellow]"
        console.print(f"Overall: {state}")
    finish(result)


@app.command()
def partitions(image: str = typer.Argument(..., help="Flash dump file")) -> None:
    """Show the partition table."""
    result = actions.inspect_image(image)
    report = result.metadata.get("report")
    if report is not None and report.partitions:
        console.print(_partition_table(report.partitions))
    elif result.ok:
        print_warning("No partition table found")
    finish(result)


@app.command("fix-checksums")
def fix_checksums(
    image: str = typer.Argument(..., help="Flash dump file"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="bootloader or ota (default: both)"),
    ota_offset: Optional[str] = typer.Option(None, "--ota-offset", help="Explicit app offset"),
    ota_length: Optional[str] = typer.Option(None, "--ota-length", help="Explicit app length"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (default: in place)"),
    write: bool = typer.Option(False, "--write", help="Save changes (otherwise dry run)"),
) -> None:
    """Recompute bootloader and app checksums and SHA-256 digests."""
    print_header("Fix Checksums")
    if target not in (None, "bootloader", "ota"):
        raise typer.BadParameter("--target must be 'bootloader' or 'ota'")

    result = actions.fix_checksums(
        image, file_safety_context(write), output, target,
        parse_offset(ota_offset), parse_size(ota_length),
    )
    fixes = result.metadata.get("fixes")
    if fixes is not None:
        table = Table(title="Checksums")
        table.add_column("Image", style="cyan")
        table.add_column("Checksum", style="green")
        table.add_column("SHA-256", style="green")
        for fix in (fixes.bootloader, fixes.ota_app):
            if fix is None:
                continue
            checksum = f"0x{fix.old_checksum:02X} → 0x{fix.new_checksum:02X}" if fix.checksum_fixed else "ok"
            sha = "updated" if fix.sha256_fixed else ("ok" if fix.new_sha256 else "-")
            table.add_row(f"{fix.target} @ 0x{fix.offset:X}", checksum, sha)
        console.print(table)
    finish(result, "Checksums saved" if write and result.metadata.get("changed_bytes") else None)


# ----------------------------------------------------------------------
# NVS
# ----------------------------------------------------------------------

@app.command("nvs-list")
def nvs_list(
    image: str = typer.Argument(..., help="Flash dump file"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first NVS)"),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n", help="Only this namespace"),
) -> None:
    """List NVS key/value items."""
    result = actions.nvs_list(image, partition)
    items = result.metadata.get("items", [])
    if result.ok:
        table = Table(title=f"NVS {result.region}")
        table.add_column("Namespace", style="cyan")
        table.add_column("Key", style="magenta")
        table.add_column("Type", style="yellow")
        table.add_column("Value", style="green")
        table.add_column("CRC", style="dim")
        for item in items:
            if namespace and item.namespace != namespace:
                continue
            crc_ok = item.header_crc_valid and item.data_crc_valid is not False
            table.add_row(item.namespace, item.key, item.type_name, item.display_value(), "ok" if crc_ok else "[red]bad[/red]")
        console.print(table)
    finish(result)


@app.command("nvs-set")
def nvs_set(
    image: str = typer.Argument(..., help="Flash dump file"),
    namespace: str = typer.Argument(..., help="Namespace"),
    key: str = typer.Argument(..., help="Key (max 15 chars)"),
    value: str = typer.Argument(..., help="Value; integers accept 0x, blobs are hex"),
    type_name: str = typer.Option("string", "--type", "-t", help="u8, i8, u16, i16, u32, i32, u64, i64, string, blob"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first NVS)"),
    no_create: bool = typer.Option(False, "--no-create", help="Fail if the namespace does not exist"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (default: in place)"),
    write: bool = typer.Option(False, "--write", help="Save changes (otherwise dry run)"),
) -> None:
    """Add or replace an NVS item."""
    result = actions.nvs_set(
        image, namespace, key, type_name, value, file_safety_context(write),
        output, partition, create_namespace=not no_create,
    )
    finish(result, f"Set {namespace}.{key}" + ("" if write else " (dry run)"))


@app.command("nvs-delete")
def nvs_delete(
    image: str = typer.Argument(..., help="Flash dump file"),
    namespace: str = typer.Argument(..., help="Namespace"),
    key: str = typer.Argument(..., help="Key"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first NVS)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (default: in place)"),
    write: bool = typer.Option(False, "--write", help="Save changes (otherwise dry run)"),
) -> None:
    """Delete an NVS item."""
    result = actions.nvs_delete(image, namespace, key, file_safety_context(write), output, partition)
    finish(result, f"Deleted {namespace}.{key}" + ("" if write else " (dry run)"))


# ----------------------------------------------------------------------
# OTA
# ----------------------------------------------------------------------

def _print_otadata(otadata, boot_partition) -> None:
    table = Table(title="OTA Data")
    table.add_column("Entry", style="cyan")
    table.add_column("Sequence", style="magenta")
    table.add_column("State", style="yellow")
    table.add_column("CRC", style="green")
    table.add_column("Active", style="bold")
    for entry in otadata.entries:
        seq = "erased" if entry.is_empty else str(entry.sequence)
        table.add_row(
            str(entry.index),
            seq,
            entry.state_name,
            "ok" if entry.crc_valid else "[red]bad[/red]",
            "●" if otadata.active_index == entry.index else "",
        )
    console.print(table)
    if boot_partition is not None:
        console.print(f"Boot partition: [bold]{boot_partition.label}[/bold] @ 0x{boot_partition.offset:X}")


@app.command()
def ota(image: str = typer.Argument(..., help="Flash dump file")) -> None:
    """Show otadata entries and the partition that will boot."""
    result = actions.ota_status(image)
    otadata = result.metadata.get("otadata")
    if otadata is not None:
        _print_otadata(otadata, result.metadata.get("boot_partition"))
    finish(result)


@app.command("ota-select")
def ota_select(
    image: str = typer.Argument(..., help="Flash dump file"),
    slot: int = typer.Argument(..., help="OTA slot to boot (0 = ota_0)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (default: in place)"),
    write: bool = typer.Option(False, "--write", help="Save changes (otherwise dry run)"),
) -> None:
    """Select the OTA app partition to boot next."""
    result = actions.ota_select(image, slot, file_safety_context(write), output)
    otadata = result.metadata.get("otadata")
    if otadata is not None:
        _print_otadata(otadata, None)
    finish(result, f"ota_{slot} selected" + ("" if write else " (dry run)"))


# ----------------------------------------------------------------------
# FAT
# ----------------------------------------------------------------------

def _fat_rows(entries: List[FatEntry], table: Table) -> None:
    for entry in entries:
        kind = "<DIR>" if entry.is_directory else f"{entry.size:,}"
        table.add_row(entry.path, kind, entry.timestamp, ",".join(entry.attributes))
        _fat_rows(entry.children, table)


@app.command("fat-list")
def fat_list(
    image: str = typer.Argument(..., help="Flash dump file"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first FAT)"),
) -> None:
    """List files in a FAT partition."""
    result = actions.fat_list(image, partition)
    volume = result.metadata.get("volume")
    if volume is not None:
        boot = volume.boot
        wl = "wear leveling" if volume.wear_leveling is not None else "raw"
        console.print(f"{boot.fat_type} '{boot.volume_label}' ({wl}), cluster {boot.cluster_size} bytes")
        table = Table(title=f"FAT {result.region}")
        table.add_column("Path", style="cyan")
        table.add_column("Size", style="green")
        table.add_column("Modified", style="yellow")
        table.add_column("Attr", style="dim")
        _fat_rows(result.metadata["files"], table)
        console.print(table)
    finish(result)


@app.command("fat-extract")
def fat_extract(
    image: str = typer.Argument(..., help="Flash dump file"),
    path: str = typer.Argument(..., help="File path inside the volume"),
    destination: str = typer.Argument(..., help="Host output file"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first FAT)"),
) -> None:
    """Copy a file out of a FAT partition."""
    result = actions.fat_extract(image, path, destination, partition)
    finish(result, f"Extracted {result.bytes_len:,} bytes to {destination}")


@app.command("fat-add")
def fat_add(
    image: str = typer.Argument(..., help="Flash dump file"),
    source: str = typer.Argument(..., help="Host file to add"),
    path: str = typer.Argument(..., help="Destination path inside the volume (8.3 names)"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first FAT)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (default: in place)"),
    write: bool = typer.Option(False, "--write", help="Save changes (otherwise dry run)"),
) -> None:
    """Add a file to a FAT partition."""
    result = actions.fat_add(image, source, path, file_safety_context(write), output, partition)
    finish(result, f"Added {path}" + ("" if write else " (dry run)"))


@app.command("fat-delete")
def fat_delete(
    image: str = typer.Argument(..., help="Flash dump file"),
    path: str = typer.Argument(..., help="File path inside the volume"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first FAT)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file (default: in place)"),
    write: bool = typer.Option(False, "--write", help="Save changes (otherwise dry run)"),
) -> None:
    """Delete a file from a FAT partition."""
    result = actions.fat_delete(image, path, file_safety_context(write), output, partition)
    finish(result, f"Deleted {path}" + ("" if write else " (dry run)"))


# ----------------------------------------------------------------------
# SPIFFS
# ----------------------------------------------------------------------

@app.command("spiffs-list")
def spiffs_list(
    image: str = typer.Argument(..., help="Flash dump file"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first SPIFFS)"),
    show_deleted: bool = typer.Option(False, "--deleted", help="Include deleted files"),
) -> None:
    """List files in a SPIFFS partition."""
    result = actions.spiffs_list(image, partition)
    volume = result.metadata.get("volume")
    if volume is not None:
        console.print(f"Page {volume.page_size} bytes, block {volume.block_size} bytes, magic {'yes' if volume.magic_found else 'no'}")
        table = Table(title=f"SPIFFS {result.region}")
        table.add_column("Name", style="cyan")
        table.add_column("Size", style="green")
        table.add_column("Object", style="dim")
        table.add_column("State", style="yellow")
        for f in volume.files:
            if f.deleted and not show_deleted:
                continue
            table.add_row(f.name, f"{f.size:,}", f"0x{f.data_obj_id:04X}", "deleted" if f.deleted else "")
        console.print(table)
    finish(result)


@app.command("spiffs-extract")
def spiffs_extract(
    image: str = typer.Argument(..., help="Flash dump file"),
    path: str = typer.Argument(..., help="File name inside the volume"),
    destination: str = typer.Argument(..., help="Host output file"),
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition label (default: first SPIFFS)"),
) -> None:
    """Copy a file out of a SPIFFS partition."""
    result = actions.spiffs_extract(image, path, destination, partition)
    finish(result, f"Extracted {result.bytes_len:,} bytes to {destination}")


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"esp32-firmware-editor {__version__}")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
