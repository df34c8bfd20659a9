"""Filesystem codecs for FAT and SPIFFS data partitions."""

from esp32_firmware_editor.filesystems.fat import (
    FatEntry,
    FatError,
    FatVolume,
    WearLevelingInfo,
    parse_wear_leveling,
)
from esp32_firmware_editor.filesystems.spiffs import (
    SpiffsFile,
    SpiffsVolume,
    parse_spiffs,
)

__all__ = [
    "FatEntry",
    "FatError",
    "FatVolume",
    "WearLevelingInfo",
    "parse_wear_leveling",
    "SpiffsFile",
    "SpiffsVolume",
    "parse_spiffs",
]
