"""
Safety context and write gating.

Every device write and every save of a modified image goes through
require_write_permission(), so the confirmation rules live in one place.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# Confirmation token required for non-interactive device writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (chip, region, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a write may proceed.

    Attributes:
        write_enabled: Whether --write was given
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the caller can prompt for confirmation
        device_write: True for flash writes over serial; file saves only
            need write_enabled
        chip_detected: Chip name reported by the device
        region_known: Whether the target region is definitively known
        dry_run: Validate only; nothing is written
        warnings: Warning messages accumulated during the operation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    device_write: bool = False
    chip_detected: str = ""
    region_known: bool = False
    dry_run: bool = False
    warnings: List[str] = field(default_factory=list)

    # CLI sets these to rich/typer prompt functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def is_chip_unknown(self) -> bool:
        return not self.chip_detected or self.chip_detected.lower() == "unknown"

    def to_details_dict(
        self,
        target_region: str = "",
        bytes_length: int = 0,
        offset: Optional[int] = None,
    ) -> dict:
        details = {
            "chip": self.chip_detected or "Unknown",
            "target_region": target_region,
            "bytes_length": bytes_length,
        }
        if offset is not None:
            details["offset"] = f"0x{offset:06X}"
        if self.warnings:
            details["warnings"] = self.warnings
        return details


def require_write_permission(
    ctx: SafetyContext,
    target_region: str = "",
    bytes_length: int = 0,
    offset: Optional[int] = None,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Dry run: always allowed (nothing is written)
    2. Write not enabled: denied with instructions
    3. File saves: allowed once write is enabled
    4. Device writes to an unidentified chip or unknown region: denied
    5. Confirmation token present: must match exactly
    6. Interactive: prompt the user for the token

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(target_region, bytes_length, offset)

    if ctx.dry_run:
        return

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Write operation requires explicit permission. Use the --write flag.",
            details=details,
        )

    if not ctx.device_write:
        return

    if ctx.is_chip_unknown:
        raise WritePermissionError(
            "Cannot write to a device whose chip could not be identified.",
            details=details,
        )

    if not ctx.region_known and not target_region:
        raise WritePermissionError(
            "Target region is unknown. Provide an explicit address.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires a confirmation token (--confirm WRITE).",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)
    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide a confirmation token for non-interactive mode.",
            details=details,
        )
    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    write_flag: bool,
    device_write: bool = False,
    chip: str = "",
    dry_run: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """
    SafetyContext for CLI use.

    Interactive prompting is only enabled on a TTY without a token.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        device_write=device_write,
        chip_detected=chip,
        region_known=True,
        dry_run=dry_run,
    )
