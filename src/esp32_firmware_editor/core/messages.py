"""
Standardized warning and message system.

Structured warning items with stable codes, so scripted callers can react
to known conditions without matching on message text.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device
    W_CHIP_UNKNOWN = "W_CHIP_UNKNOWN"
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_SYNC_FAILED = "W_SYNC_FAILED"
    W_STUB_REQUIRED = "W_STUB_REQUIRED"
    W_SECURE_DOWNLOAD = "W_SECURE_DOWNLOAD"

    # Image structure
    W_BOOTLOADER_MISSING = "W_BOOTLOADER_MISSING"
    W_PARTITION_TABLE_MISSING = "W_PARTITION_TABLE_MISSING"
    W_PARTITION_NOT_FOUND = "W_PARTITION_NOT_FOUND"
    W_CHECKSUM_INVALID = "W_CHECKSUM_INVALID"
    W_OTADATA_INVALID = "W_OTADATA_INVALID"
    W_FILESYSTEM_ERROR = "W_FILESYSTEM_ERROR"

    # Safety
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_WRITE_DISABLED = "W_WRITE_DISABLED"
    W_CONFIRMATION_REQUIRED = "W_CONFIRMATION_REQUIRED"

    # Connection
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"

    # Operation
    W_DRY_RUN = "W_DRY_RUN"
    W_PARTIAL_SUCCESS = "W_PARTIAL_SUCCESS"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_CHIP_UNKNOWN:
        "The chip answered but is not in the chip table. Check the chip family.",
    WarningCode.W_DEVICE_NOT_FOUND:
        "Check the USB cable and run the 'ports' command to list serial ports.",
    WarningCode.W_SYNC_FAILED:
        "Hold BOOT while pressing RESET to enter download mode, then retry.",
    WarningCode.W_STUB_REQUIRED:
        "Pass --stub with an esptool stub JSON file for flash reads and writes.",
    WarningCode.W_SECURE_DOWNLOAD:
        "Secure download mode blocks flash reads. Only signed writes are possible.",
    WarningCode.W_BOOTLOADER_MISSING:
        "The image may not be a full flash dump. Check the dump offset and size.",
    WarningCode.W_PARTITION_TABLE_MISSING:
        "No partition table was found after the bootloader.",
    WarningCode.W_PARTITION_NOT_FOUND:
        "Run the 'partitions' command to list partition labels.",
    WarningCode.W_CHECKSUM_INVALID:
        "Run 'fix-checksums' to recompute the image checksum and SHA-256.",
    WarningCode.W_OTADATA_INVALID:
        "Use 'ota-select' to write a valid otadata entry.",
    WarningCode.W_FILESYSTEM_ERROR:
        "The filesystem structures are damaged or use an unsupported layout.",
    WarningCode.W_VERIFY_MISMATCH:
        "Data on the device does not match what was written. Check connection stability.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write to perform the change.",
    WarningCode.W_CONFIRMATION_REQUIRED:
        "Type 'WRITE' to confirm the operation.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check the cable. Try a lower baud rate.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial monitors (Arduino IDE, idf.py monitor). Check the USB driver.",
    WarningCode.W_DRY_RUN:
        "Dry run complete. Add --write to perform the actual operation.",
    WarningCode.W_PARTIAL_SUCCESS:
        "Some operations failed. Check individual errors below.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details (--verbose).",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


# Checked in order; first match wins
_PATTERNS = [
    (("timeout", "timed out"), WarningCode.W_SERIAL_TIMEOUT),
    (("synchronize",), WarningCode.W_SYNC_FAILED),
    (("md5", "verification", "mismatch"), WarningCode.W_VERIFY_MISMATCH),
    (("checksum", "sha-256", "sha256"), WarningCode.W_CHECKSUM_INVALID),
    (("otadata",), WarningCode.W_OTADATA_INVALID),
    (("no bootloader",), WarningCode.W_BOOTLOADER_MISSING),
    (("partition table",), WarningCode.W_PARTITION_TABLE_MISSING),
    (("partition",), WarningCode.W_PARTITION_NOT_FOUND),
    (("fat", "spiffs"), WarningCode.W_FILESYSTEM_ERROR),
    (("stub",), WarningCode.W_STUB_REQUIRED),
    (("secure download",), WarningCode.W_SECURE_DOWNLOAD),
    (("chip",), WarningCode.W_CHIP_UNKNOWN),
    (("cannot open port", "not open", "disconnected"), WarningCode.W_SERIAL_ERROR),
    (("dry run",), WarningCode.W_DRY_RUN),
    (("--write", "permission"), WarningCode.W_WRITE_DISABLED),
    (("confirmation",), WarningCode.W_CONFIRMATION_REQUIRED),
]


def classify_message(message: str) -> WarningCode:
    lower = message.lower()
    for needles, code in _PATTERNS:
        if any(n in lower for n in needles):
            return code
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """
    Convert plain warning strings to WarningItem list.

    Known patterns get their stable code; everything else is W_UNKNOWN.
    """
    return [
        WarningItem(level=default_level, code=classify_message(msg), title=msg)
        for msg in warning_strings
    ]


def result_to_warnings(result) -> List[WarningItem]:
    """
    Convert an OperationResult's warnings and errors to WarningItems.

    Args:
        result: OperationResult from core operations
    """
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
