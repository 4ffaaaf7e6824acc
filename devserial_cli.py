#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Serial provisioning tool for devices in listening mode.

Usage:
    python devserial_cli.py --port /dev/ttyACM0 flash firmware.bin
    python devserial_cli.py --port /dev/ttyACM0 wifi --ssid home --security WPA2_AES
    python devserial_cli.py --port /dev/ttyACM0 claim <claim-code>
    python devserial_cli.py --port /dev/ttyACM0 command i
    python devserial_cli.py --port /dev/ttyACM0 identify

Requirements:
    pip install pyserial pyserial-asyncio-fast
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from devserial import (
    SerialPort,
    WifiOptions,
    YModemTransfer,
    ask_device_id,
    ask_system_firmware_version,
    configure_wifi,
    describe_modules,
    get_mac_address,
    get_system_information,
    issue_command,
    send_claim_code,
)
from devserial.transport import (
    StreamClosedEarlyError,
    TimeoutError,
    TransferCancelledError,
    TransportError,
)

FLASH_BAUDRATE = 28800
DIALOG_BAUDRATE = 9600

KNOWN_PLATFORMS = {
    0: "Core",
    6: "Photon",
    8: "P1",
    10: "Electron",
    88: "Duo",
    103: "Bluz",
}


async def cmd_flash(args) -> bool:
    """Flash firmware files with YMODEM."""
    for path in args.files:
        if not path.is_file():
            print(f"Error: File not found: {path}")
            return False

    def progress(sent: int, total: int):
        pct = sent * 100 // total
        print(f"\rUploading: {pct:3d}% ({sent}/{total} bytes)", end="", flush=True)

    port = SerialPort(args.port, baudrate=args.baudrate)
    transfer = YModemTransfer(port, block_length=args.block_length)
    await transfer.send([str(path) for path in args.files], progress_callback=progress)

    print("\nFlash success!")
    return True


async def cmd_wifi(args) -> bool:
    """Configure Wi-Fi credentials."""
    options = WifiOptions(
        network=args.ssid,
        security=args.security,
        eap=args.eap,
        username=args.username,
        password=args.password,
    )
    await configure_wifi(SerialPort(args.port, baudrate=DIALOG_BAUDRATE), options)
    print("Done! Your device should now restart.")
    return True


async def cmd_claim(args) -> bool:
    """Store a claim code on the device."""
    await send_claim_code(SerialPort(args.port, baudrate=DIALOG_BAUDRATE), args.code)
    print("Claim code set.")
    return True


async def cmd_command(args) -> bool:
    """Send a single command and print the reply."""
    reply = await issue_command(
        SerialPort(args.port, baudrate=DIALOG_BAUDRATE), args.text, timeout=args.timeout
    )
    print(reply)
    return True


async def cmd_identify(args) -> bool:
    """Print the device id and system firmware version."""
    port = SerialPort(args.port, baudrate=DIALOG_BAUDRATE)
    identity = await ask_device_id(port)
    print(f"Your device id is {identity.id}")
    if identity.imei:
        print(f"Your IMEI is {identity.imei}")
    if identity.iccid:
        print(f"Your ICCID is {identity.iccid}")

    try:
        version = await ask_system_firmware_version(port)
    except TransportError:
        version = None
    if version:
        print(f"Your system firmware version is {version}")
    else:
        print("Unable to determine system firmware version")
    return True


async def cmd_mac(args) -> bool:
    """Print the device MAC address."""
    mac = await get_mac_address(SerialPort(args.port, baudrate=DIALOG_BAUDRATE))
    print(f"Your device MAC address is {mac}")
    return True


async def cmd_inspect(args) -> bool:
    """Print the platform and firmware modules."""
    info = await get_system_information(SerialPort(args.port, baudrate=DIALOG_BAUDRATE))
    if "p" in info:
        name = KNOWN_PLATFORMS.get(info["p"])
        print(f"Platform: {info['p']}" + (f" - {name}" if name else ""))
    lines = describe_modules(info)
    if lines:
        print("Modules")
        for line in lines:
            print(f"  {line}")
    return True


COMMANDS = {
    "flash": cmd_flash,
    "wifi": cmd_wifi,
    "claim": cmd_claim,
    "command": cmd_command,
    "identify": cmd_identify,
    "mac": cmd_mac,
    "inspect": cmd_inspect,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Serial provisioning tool for devices in listening mode"
    )
    parser.add_argument(
        "--port", "-p",
        required=True,
        help="Serial port (e.g., /dev/ttyACM0)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log serial traffic"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # flash command
    flash_parser = subparsers.add_parser("flash", help="Flash firmware with YMODEM")
    flash_parser.add_argument("files", type=Path, nargs="+", help="Firmware binary files")
    flash_parser.add_argument("--block-length", "-b", type=int, default=128,
                              choices=[128, 1024], help="YMODEM block length")
    flash_parser.add_argument("--baudrate", type=int, default=FLASH_BAUDRATE,
                              help="Baud rate used for the transfer")

    # wifi command
    wifi_parser = subparsers.add_parser("wifi", help="Configure Wi-Fi credentials")
    wifi_parser.add_argument("--ssid", help="Network name")
    wifi_parser.add_argument("--security",
                             help="Security type (e.g., WPA2_AES, WPA_TKIP, WEP, NONE, WPA2_802.1x)")
    wifi_parser.add_argument("--eap", help="EAP type for enterprise networks (PEAP or TLS)")
    wifi_parser.add_argument("--username", help="Enterprise username")
    wifi_parser.add_argument("--password", help="Network password")

    # claim command
    claim_parser = subparsers.add_parser("claim", help="Store a claim code")
    claim_parser.add_argument("code", help="Claim code")

    # command command
    command_parser = subparsers.add_parser("command", help="Send a raw command")
    command_parser.add_argument("text", help="Command text (e.g., i)")
    command_parser.add_argument("--timeout", "-t", type=float, default=5.0,
                                help="Seconds to wait for a reply")

    subparsers.add_parser("identify", help="Show the device id and firmware version")
    subparsers.add_parser("mac", help="Show the device MAC address")
    subparsers.add_parser("inspect", help="Show the firmware modules on the device")

    return parser


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        ok = asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)
    except TransferCancelledError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    except (TimeoutError, StreamClosedEarlyError) as e:
        print(f"\nError: {e}")
        print("Serial problems, please reconnect the device.")
        sys.exit(1)
    except TransportError as e:
        print(f"\nError: {e}")
        sys.exit(1)

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
