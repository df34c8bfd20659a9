"""
Centralized parsing helpers for offsets and sizes.

The CLI imports these helpers rather than re-implementing them.
"""

from typing import Optional

SIZE_SUFFIXES = {
    "K": 1024,
    "KB": 1024,
    "M": 1024 * 1024,
    "MB": 1024 * 1024,
}


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse offset value from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None for auto-detection

    Returns:
        Parsed integer offset, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            result = int(value, 16)
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid offset '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )
    if result < 0:
        raise ValueError(f"Offset must not be negative: '{value}'")
    return result


def parse_size(value: Optional[str]) -> Optional[int]:
    """
    Parse a byte count.

    Accepts everything parse_offset does, plus a K/KB/M/MB suffix on a
    decimal or hex number: "4M", "0x40KB", "512K".

    Raises:
        ValueError: If value cannot be parsed
    """
    if value is None:
        return None

    text = value.strip().upper()
    if not text:
        return None

    for suffix in sorted(SIZE_SUFFIXES, key=len, reverse=True):
        if text.endswith(suffix) and len(text) > len(suffix):
            number = text[:-len(suffix)].strip()
            try:
                base = int(number, 16) if number.startswith("0X") else int(number)
            except ValueError:
                raise ValueError(f"Invalid size '{value}'. Use e.g. 4096, 0x1000, 64K or 4MB.")
            return base * SIZE_SUFFIXES[suffix]

    try:
        return parse_offset(value)
    except ValueError:
        raise ValueError(f"Invalid size '{value}'. Use e.g. 4096, 0x1000, 64K or 4MB.")
