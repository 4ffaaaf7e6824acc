# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Pytest configuration for integration tests."""

from pathlib import Path

import pytest


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--device",
        action="store",
        default=None,
        help="Serial port of a device in listening mode (e.g., /dev/ttyACM0)",
    )
    parser.addoption(
        "--firmware",
        action="store",
        default=None,
        help="Firmware binary to flash during integration tests",
    )


def pytest_collection_modifyitems(config, items):
    """Skip device tests unless a port was given."""
    if config.getoption("--device"):
        return
    skip = pytest.mark.skip(reason="needs --device")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def device_port(request):
    """Get the device port from command line."""
    return request.config.getoption("--device")


@pytest.fixture(scope="session")
def firmware_path(request):
    """Firmware binary given on the command line, if any."""
    path = request.config.getoption("--firmware")
    if path is None:
        pytest.skip("Firmware binary not given. Pass --firmware.")
    path = Path(path)
    if not path.is_file():
        pytest.fail(f"Firmware binary not found: {path}")
    return path
