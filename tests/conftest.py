"""Shared fixtures: synthetic flash dumps and a fake bootloader."""

import base64
import json

import pytest

from esp32_firmware_editor.core.safety import SafetyContext
from esp32_firmware_editor.protocol.loader import LoaderConfig

from fake_device import FakeDevice
from flash_builders import build_flash


@pytest.fixture(scope="session")
def flash_bytes() -> bytes:
    return build_flash()


@pytest.fixture
def flash_file(tmp_path, flash_bytes):
    path = tmp_path / "flash.bin"
    path.write_bytes(flash_bytes)
    return path


@pytest.fixture
def fast_config() -> LoaderConfig:
    return LoaderConfig(
        command_timeout=0.2,
        sync_attempts=3,
        sync_retry_delay=0.0,
        sync_timeout=0.05,
        security_info_timeout=0.1,
        stub_timeout=0.2,
        read_stall_timeout=0.1,
    )


@pytest.fixture
def device(flash_bytes) -> FakeDevice:
    return FakeDevice(flash=flash_bytes + b"\xff" * (0x100000 - len(flash_bytes)))


@pytest.fixture
def write_ctx() -> SafetyContext:
    """File edits saved for real."""
    return SafetyContext(write_enabled=True, interactive=False)


@pytest.fixture
def dry_run_ctx() -> SafetyContext:
    return SafetyContext(write_enabled=False, dry_run=True, interactive=False)


@pytest.fixture
def stub_file(tmp_path):
    """esptool-style stub JSON accepted by FakeDevice."""
    path = tmp_path / "stub.json"
    path.write_text(json.dumps({
        "entry": 0x40380000,
        "text": base64.b64encode(bytes(0x100)).decode(),
        "text_start": 0x40380000,
        "data": base64.b64encode(bytes(16)).decode(),
        "data_start": 0x3FC90000,
    }))
    return path
