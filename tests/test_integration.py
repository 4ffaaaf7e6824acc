# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
BDD-style integration tests against a real device.

These tests require a device in listening mode connected via USB.
Run with: pytest tests/test_integration.py -v --device /dev/ttyACM0 --firmware app.bin

Features tested:
- Device identification over the serial console
- YMODEM firmware transfer
"""

import pytest

from devserial import SerialPort, YModemTransfer, issue_command

pytestmark = pytest.mark.integration


class TestIdentify:
    """Feature: Query the device over the serial console."""

    @pytest.mark.asyncio
    async def test_device_id(self, device_port):
        """Scenario: The device reports its id."""
        # Given the device is in listening mode
        # When I send the identify command
        reply = await issue_command(SerialPort(device_port), "i")

        # Then it answers with some text
        assert reply.strip(), "Empty reply"
        print(f"Device says: {reply.strip()}")


class TestFlash:
    """Feature: Flash firmware over YMODEM."""

    @pytest.mark.asyncio
    async def test_flash_firmware(self, device_port, firmware_path):
        """Scenario: Transfer a firmware binary."""
        progress = []
        port = SerialPort(device_port, baudrate=28800)

        await YModemTransfer(port).send(
            str(firmware_path), progress_callback=lambda sent, total: progress.append(sent)
        )

        assert progress[-1] == firmware_path.stat().st_size
        assert port.is_open is False


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--device", "/dev/ttyACM0"])
