"""
Core module for ESP32 Firmware Editor.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Offset and size parsing (parsing.py)
- Result objects (results.py)
- Image and device workflows (actions.py)
- Standardized warnings/messages (messages.py)

The CLI calls into this module rather than implementing its own logic.
"""

from .safety import SafetyContext, require_write_permission, WritePermissionError, CONFIRMATION_TOKEN
from .parsing import parse_offset, parse_size
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warnings_from_strings,
    result_to_warnings,
)
from .actions import (
    device_info,
    device_session,
    fat_add,
    fat_delete,
    fat_extract,
    fat_list,
    fix_checksums,
    inspect_device,
    inspect_image,
    load_image,
    nvs_delete,
    nvs_list,
    nvs_set,
    ota_select,
    ota_status,
    read_device_flash,
    spiffs_extract,
    spiffs_list,
    write_device_flash,
)

__all__ = [
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    "CONFIRMATION_TOKEN",
    # Parsing
    "parse_offset",
    "parse_size",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warnings_from_strings",
    "result_to_warnings",
    # Actions
    "device_info",
    "device_session",
    "fat_add",
    "fat_delete",
    "fat_extract",
    "fat_list",
    "fix_checksums",
    "inspect_device",
    "inspect_image",
    "load_image",
    "nvs_delete",
    "nvs_list",
    "nvs_set",
    "ota_select",
    "ota_status",
    "read_device_flash",
    "spiffs_extract",
    "spiffs_list",
    "write_device_flash",
]
