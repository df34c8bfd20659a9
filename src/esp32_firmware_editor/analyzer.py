"""
Whole-image analysis: locate the bootloader and partition table, decode
every partition, resolve the boot partition and fix checksums.

Detection order:
- Bootloader at 0x0, then 0x1000 (ESP32 classic)
- Partition table scanned after the bootloader
- otadata decides the boot OTA slot; its app image is validated
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from esp32_firmware_editor.filesystems.fat import FatVolume
from esp32_firmware_editor.filesystems.spiffs import SpiffsVolume, parse_spiffs
from esp32_firmware_editor.firmware_image import (
    FirmwareImageError,
    FirmwareImageInfo,
    fix_image_checksum,
    fix_image_sha256,
    parse_firmware_image,
    validate_image_sha256,
)
from esp32_firmware_editor.flash_image import FlashImage
from esp32_firmware_editor.nvs import NvsPage, NvsPartition
from esp32_firmware_editor.otadata import OtaData, boot_slot, parse_otadata
from esp32_firmware_editor.partitions import (
    SUBTYPE_DATA_FAT,
    SUBTYPE_DATA_NVS,
    SUBTYPE_DATA_OTA,
    SUBTYPE_DATA_SPIFFS,
    SUBTYPE_FACTORY,
    SUBTYPE_OTA_0,
    TYPE_APP,
    PartitionEntry,
    detect_partition_table_offset,
    parse_partitions,
)

logger = logging.getLogger(__name__)

BOOTLOADER_OFFSETS = (0x0, 0x1000)
BOOTLOADER_MAX_LENGTH = 0x10000


@dataclass
class PartitionReport:
    """Decoded contents of one partition."""
    entry: PartitionEntry
    app_image: Optional[FirmwareImageInfo] = None
    sha256_valid: Optional[bool] = None
    nvs_pages: Optional[List[NvsPage]] = None
    otadata: Optional[OtaData] = None
    fat: Optional[FatVolume] = None
    spiffs: Optional[SpiffsVolume] = None
    error: Optional[str] = None


@dataclass
class ImageReport:
    """Result of analyze_image()."""
    size: int
    bootloader: Optional[FirmwareImageInfo] = None
    bootloader_offset: Optional[int] = None
    partition_table_offset: Optional[int] = None
    partitions: List[PartitionEntry] = field(default_factory=list)
    details: Dict[str, PartitionReport] = field(default_factory=dict)
    otadata_valid: bool = False
    otadata_crcs_valid: bool = False
    boot_partition: Optional[PartitionEntry] = None
    boot_partition_valid: bool = False
    nvs_valid: bool = False

    @property
    def success(self) -> bool:
        return self.bootloader is not None and bool(self.partitions)

    @property
    def all_valid(self) -> bool:
        return (
            self.success
            and self.otadata_valid
            and self.otadata_crcs_valid
            and self.boot_partition_valid
        )

    @property
    def app_description(self):
        if self.boot_partition is None:
            return None
        report = self.details.get(self.boot_partition.label)
        if report is None or report.app_image is None:
            return None
        return report.app_image.app_description


@dataclass
class ChecksumFix:
    """Outcome of fixing one image."""
    target: str
    offset: int
    old_checksum: Optional[int] = None
    new_checksum: Optional[int] = None
    checksum_fixed: bool = False
    old_sha256: Optional[str] = None
    new_sha256: Optional[str] = None
    sha256_fixed: bool = False

    @property
    def fixed(self) -> bool:
        return self.checksum_fixed or self.sha256_fixed


@dataclass
class ChecksumFixResult:
    bootloader: Optional[ChecksumFix] = None
    ota_app: Optional[ChecksumFix] = None
    errors: List[str] = field(default_factory=list)


async def find_bootloader(image: FlashImage) -> Optional[FirmwareImageInfo]:
    """Parsed second-stage bootloader at 0x0 or 0x1000, or None."""
    for offset in BOOTLOADER_OFFSETS:
        if offset >= image.size:
            break
        info = await parse_firmware_image(image, offset, BOOTLOADER_MAX_LENGTH)
        if info.valid:
            return info
    return None


def ota_app_partitions(partitions: List[PartitionEntry]) -> List[PartitionEntry]:
    return [p for p in partitions if p.is_ota_app]


def resolve_boot_partition(
    partitions: List[PartitionEntry],
    otadata: Optional[OtaData],
) -> Optional[PartitionEntry]:
    """
    Partition the bootloader would start.

    The active otadata sequence selects an OTA slot; without a valid
    otadata entry the factory app is used.
    """
    ota_apps = ota_app_partitions(partitions)
    if otadata is not None and otadata.active is not None and ota_apps:
        slot = boot_slot(otadata.active.sequence, len(ota_apps))
        for part in partitions:
            if part.type == TYPE_APP and part.subtype == SUBTYPE_OTA_0 + slot:
                return part
        return None
    for part in partitions:
        if part.type == TYPE_APP and part.subtype == SUBTYPE_FACTORY:
            return part
    return None


async def _describe_partition(image: FlashImage, entry: PartitionEntry) -> PartitionReport:
    report = PartitionReport(entry=entry)
    if entry.offset >= image.size:
        report.error = "Partition beyond end of flash"
        return report

    if entry.is_app:
        report.app_image = await parse_firmware_image(image, entry.offset, entry.length)
        if report.app_image.valid and report.app_image.sha256 is not None:
            report.sha256_valid, _ = await validate_image_sha256(image, report.app_image)
    elif entry.is_data(SUBTYPE_DATA_NVS):
        report.nvs_pages = await NvsPartition(image, entry.offset, entry.length).parse()
    elif entry.is_data(SUBTYPE_DATA_OTA):
        report.otadata = await parse_otadata(image, entry.offset, entry.length)
        report.error = report.otadata.error
    elif entry.is_data(SUBTYPE_DATA_FAT):
        report.fat = await FatVolume.open(image, entry.offset, entry.length)
        if report.fat.boot is not None:
            await report.fat.list_files()
        report.error = report.fat.error
    elif entry.is_data(SUBTYPE_DATA_SPIFFS):
        report.spiffs = await parse_spiffs(image, entry.offset, entry.length)
        report.error = report.spiffs.error
    return report


async def analyze_image(image: FlashImage) -> ImageReport:
    """
    Decode everything that can be found in a flash image.

    Never raises for format problems; check the report fields.
    """
    report = ImageReport(size=image.size)

    report.bootloader = await find_bootloader(image)
    if report.bootloader is not None:
        report.bootloader_offset = report.bootloader.offset
        logger.info(f"Bootloader at 0x{report.bootloader_offset:X} ({report.bootloader.chip_name})")
    else:
        logger.warning("No bootloader found at 0x0 or 0x1000")

    report.partition_table_offset = await detect_partition_table_offset(image, report.bootloader)
    if report.partition_table_offset is not None:
        report.partitions = await parse_partitions(image, report.partition_table_offset)
        logger.info(
            f"Partition table at 0x{report.partition_table_offset:X}: "
            f"{len(report.partitions)} entries"
        )

    for entry in report.partitions:
        report.details[entry.label] = await _describe_partition(image, entry)

    otadata = next(
        (d.otadata for d in report.details.values() if d.otadata is not None),
        None,
    )
    if otadata is not None and otadata.error is None:
        report.otadata_valid = otadata.any_valid
        report.otadata_crcs_valid = all(e.crc_valid for e in otadata.entries)

    report.boot_partition = resolve_boot_partition(report.partitions, otadata)
    if report.boot_partition is not None:
        boot = report.details.get(report.boot_partition.label)
        if boot is not None and boot.app_image is not None and boot.app_image.valid:
            report.boot_partition_valid = boot.sha256_valid is not False

    report.nvs_valid = any(
        d.nvs_pages and any(not i.is_namespace for p in d.nvs_pages for i in p.items)
        for d in report.details.values()
    )
    return report


async def _fix_one(image: FlashImage, target: str, offset: int, length: int) -> ChecksumFix:
    fix = ChecksumFix(target=target, offset=offset)
    fix.old_checksum, fix.new_checksum, fix.checksum_fixed = await fix_image_checksum(image, offset, length)
    try:
        sha = await fix_image_sha256(image, offset, length)
    except FirmwareImageError as exc:
        logger.warning(f"{target}: SHA-256 not fixed: {exc}")
        sha = None
    if sha is not None:
        fix.old_sha256, fix.new_sha256, fix.sha256_fixed = sha
    return fix


async def fix_all_checksums(
    image: FlashImage,
    target: Optional[str] = None,
    ota_offset: Optional[int] = None,
    ota_length: Optional[int] = None,
) -> ChecksumFixResult:
    """
    Recompute checksum and SHA-256 of the bootloader and/or boot app.

    Args:
        target: "bootloader", "ota", or None for both
        ota_offset/ota_length: Explicit app location; otherwise the boot
            partition is resolved from the partition table

    Changes are staged on the image.
    """
    result = ChecksumFixResult()

    if target in (None, "bootloader"):
        bootloader = await find_bootloader(image)
        if bootloader is None:
            result.errors.append("No bootloader found at 0x0 or 0x1000")
        else:
            try:
                result.bootloader = await _fix_one(
                    image, "bootloader", bootloader.offset, BOOTLOADER_MAX_LENGTH
                )
            except FirmwareImageError as exc:
                result.errors.append(f"Could not fix bootloader: {exc}")

    if target in (None, "ota"):
        if ota_offset is not None and ota_length is not None:
            label, offset, length = "OTA app", ota_offset, ota_length
        else:
            report = await analyze_image(image)
            if report.boot_partition is None:
                result.errors.append("OTA partition not found in partition table")
                return result
            label = report.boot_partition.label
            offset, length = report.boot_partition.offset, report.boot_partition.length

        app = await parse_firmware_image(image, offset, length)
        if not app.valid:
            result.errors.append(f"Could not fix OTA app: {app.error or 'invalid image'}")
        else:
            try:
                result.ota_app = await _fix_one(image, label, offset, length)
            except FirmwareImageError as exc:
                result.errors.append(f"Could not fix OTA app: {exc}")

    return result
