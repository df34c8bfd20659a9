"""
Result objects for core operations.

Every action in core.actions returns an OperationResult so the CLI can
report outcomes the same way for offline image edits and device transfers.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "inspect_image", "read_device_flash")
        chip: Detected or image-declared chip name
        region: Target region description (e.g., "0x9000-0xF000")
        bytes_len: Number of bytes processed
        hashes: Dict of hash values (md5, sha256, before/after)
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    chip: str = ""
    region: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def to_summary(self) -> str:
        """Human-readable multi-line summary."""
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.chip:
            lines.append(f"  Chip: {self.chip}")
        if self.region:
            lines.append(f"  Region: {self.region}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")
        for name, value in self.hashes.items():
            lines.append(f"  {name}: {value}")

        if self.warnings:
            lines.append("  Warnings:")
            lines.extend(f"    - {warn}" for warn in self.warnings)
        if self.errors:
            lines.append("  Errors:")
            lines.extend(f"    - {err}" for err in self.errors)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output. Binary metadata is dropped."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "chip": self.chip,
            "region": self.region,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {
                k: v for k, v in self.metadata.items()
                if not isinstance(v, (bytes, bytearray))
            },
        }

    @classmethod
    def success(
        cls,
        operation: str,
        chip: str = "",
        region: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        return cls(
            ok=True,
            operation=operation,
            chip=chip,
            region=region,
            bytes_len=bytes_len,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        chip: str = "",
        **kwargs,
    ) -> "OperationResult":
        result = cls(ok=False, operation=operation, chip=chip, **kwargs)
        result.errors.append(error)
        return result
