"""
ROM console output seen before sync.

After a reset the ROM prints lines such as:

    rst:0x15 (USB_UART_CHIP_RESET),boot:0x5 (DOWNLOAD(USB/UART0/1))
    wait uart download(secure mode)

The ``rst:`` line gives the reset reason and boot mode; one of the
following lines tells whether the chip waits for download and whether it
runs in secure download mode.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from esp32_firmware_editor.models import RESET_REASONS

RST_RE = re.compile(r"rst:0x([0-9a-f]+)", re.IGNORECASE)
BOOT_RE = re.compile(r"boot:0x([0-9a-f]+)", re.IGNORECASE)


@dataclass
class ResetInfo:
    reason_code: int
    reason: str
    boot_mode: int
    secure: bool = False
    download_mode: bool = False


def reset_reason_name(code: int) -> str:
    return RESET_REASONS.get(code, f"UNKNOWN (0x{code:X})")


def parse_reset_output(lines: Iterable[str]) -> Optional[ResetInfo]:
    """
    Decode the last reset banner found in ``lines``.

    Returns None when no ``rst:``/``boot:`` line is present.
    """
    info: Optional[ResetInfo] = None
    awaiting_mode = False
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        rst = RST_RE.search(line)
        boot = BOOT_RE.search(line)
        if rst and boot:
            code = int(rst.group(1), 16)
            info = ResetInfo(
                reason_code=code,
                reason=reset_reason_name(code),
                boot_mode=int(boot.group(1), 16),
            )
            awaiting_mode = True
            continue
        if awaiting_mode and info is not None:
            lower = line.lower()
            if "(secure mode)" in lower:
                info.secure = True
                info.download_mode = True
                awaiting_mode = False
            elif "waiting for download" in lower or "wait uart download" in lower:
                info.download_mode = True
                awaiting_mode = False
    return info


class ConsoleMonitor:
    """
    Collects printable console lines from raw serial chunks.

    Example:
        monitor = ConsoleMonitor()
        monitor.feed(chunk)
        if monitor.reset_info and monitor.reset_info.secure:
            ...
    """

    def __init__(self, max_lines: int = 64):
        self.max_lines = max_lines
        self.lines: List[str] = []
        self._partial = ""

    def reset(self) -> None:
        self.lines.clear()
        self._partial = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Add a chunk; returns the lines completed by it."""
        text = "".join(
            "\n" if b in (0x0A, 0x0D) else chr(b)
            for b in chunk
            if b in (0x0A, 0x0D) or 0x20 <= b <= 0x7E
        )
        if not text:
            return []
        self._partial += text
        *complete, self._partial = self._partial.split("\n")
        new_lines = [line.strip() for line in complete if line.strip()]
        self.lines.extend(new_lines)
        del self.lines[:-self.max_lines]
        return new_lines

    @property
    def reset_info(self) -> Optional[ResetInfo]:
        return parse_reset_output(self.lines)
