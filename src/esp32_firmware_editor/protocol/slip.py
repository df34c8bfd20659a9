"""
SLIP framing (RFC 1055) as used by the ESP serial bootloader.

Every packet is wrapped in 0xC0 delimiters; 0xC0 and 0xDB inside the
payload are escaped as DB DC and DB DD.
"""

import logging
from typing import List

logger = logging.getLogger(__name__)

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD


def slip_encode(packet: bytes) -> bytes:
    """Frame ``packet`` with delimiters and escapes."""
    frame = bytearray([SLIP_END])
    for b in packet:
        if b == SLIP_END:
            frame += bytes([SLIP_ESC, SLIP_ESC_END])
        elif b == SLIP_ESC:
            frame += bytes([SLIP_ESC, SLIP_ESC_ESC])
        else:
            frame.append(b)
    frame.append(SLIP_END)
    return bytes(frame)


class SlipDecoder:
    """
    Incremental SLIP decoder.

    Bytes may arrive in arbitrary chunks; complete frames are returned as
    soon as their closing delimiter is seen. Empty frames are dropped.

    Example:
        decoder = SlipDecoder()
        for frame in decoder.feed(chunk):
            handle(frame)
    """

    def __init__(self):
        self._buffer = bytearray()
        self._escaping = False

    def reset(self) -> None:
        self._buffer.clear()
        self._escaping = False

    def feed(self, chunk: bytes) -> List[bytes]:
        frames: List[bytes] = []
        for b in chunk:
            if b == SLIP_END:
                if self._buffer:
                    frames.append(bytes(self._buffer))
                    self._buffer.clear()
                self._escaping = False
            elif self._escaping:
                if b == SLIP_ESC_END:
                    self._buffer.append(SLIP_END)
                elif b == SLIP_ESC_ESC:
                    self._buffer.append(SLIP_ESC)
                else:
                    logger.debug(f"SLIP: invalid escape 0x{b:02X} dropped")
                self._escaping = False
            elif b == SLIP_ESC:
                self._escaping = True
            else:
                self._buffer.append(b)
        return frames
