"""
Pytest configuration and shared fixtures for ubmsc tests.

This file imports and exposes fixtures from the support package to make them
available to all test files.
"""

import os
from collections.abc import Iterator

import pytest

from tests.support.fixtures.sample_frames import (
    EMULATED_ADDRESS,
    cell_data_frame,
    device_info_frame,
    expected_cell_data,
    expected_device_info,
)
from ubmsc_driver.jk.emulator import EmulatedBus, EmulatedDevice


@pytest.fixture
def bus() -> EmulatedBus:
    """A bus with one emulated JK device answering without delay."""
    return EmulatedBus([EmulatedDevice(EMULATED_ADDRESS)], response_delay=0)


@pytest.fixture(autouse=True)
def clear_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Clear UBMSC_ env vars before each test."""
    for k in list(os.environ):
        if k.startswith("UBMSC_"):
            monkeypatch.delenv(k, raising=False)
    yield


# Re-export all fixtures to make them available to all test files
__all__ = [
    "bus",
    "cell_data_frame",
    "clear_env",
    "device_info_frame",
    "expected_cell_data",
    "expected_device_info",
]
