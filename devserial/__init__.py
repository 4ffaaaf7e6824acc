# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
devserial - serial provisioning and flashing for IoT devices.

This package drives devices over a USB serial link: YMODEM firmware
transfers, and prompt-driven configuration dialogues (Wi-Fi credentials,
claim codes) on top of idle-batched device output.

Example usage:
    import asyncio
    from devserial import SerialPort, YModemTransfer, send_claim_code

    async def main():
        port = SerialPort("/dev/ttyACM0", baudrate=28800)
        await YModemTransfer(port, block_length=1024).send("firmware.bin")

        await send_claim_code(SerialPort("/dev/ttyACM0"), "abc123")

    asyncio.run(main())
"""

from .batcher import StreamBatcher
from .interaction import (
    DeviceIdentity,
    Interaction,
    Question,
    SerialDialog,
    WifiOptions,
    ask_device_id,
    ask_system_firmware_version,
    configure_wifi,
    describe_modules,
    get_mac_address,
    get_system_information,
    issue_command,
    run_interaction,
    send_claim_code,
    supports_claim_code,
)
from .protocol import (
    ControlByte,
    ResponseKind,
    classify_response,
    encode_batch_end,
    encode_eot,
    encode_file_header,
    encode_packet,
)
from .transport import (
    SerialPort,
    TransportError,
    TimeoutError,
    OpenTimeoutError,
    PacketTimeoutError,
    SerialTimeoutError,
    ProtocolError,
    TransferCancelledError,
    UnknownResponseError,
    ConfigurationError,
    StreamClosedEarlyError,
)
from .trigger import PromptTrigger
from .ymodem import YModemTransfer

__version__ = "0.1.0"

__all__ = [
    # Engine
    "StreamBatcher",
    "PromptTrigger",
    "YModemTransfer",
    # Wire format
    "ControlByte",
    "ResponseKind",
    "classify_response",
    "encode_packet",
    "encode_file_header",
    "encode_batch_end",
    "encode_eot",
    # Dialogues
    "Interaction",
    "Question",
    "SerialDialog",
    "WifiOptions",
    "configure_wifi",
    "issue_command",
    "run_interaction",
    "send_claim_code",
    # Device queries
    "DeviceIdentity",
    "ask_device_id",
    "ask_system_firmware_version",
    "get_mac_address",
    "get_system_information",
    "supports_claim_code",
    "describe_modules",
    # Transport
    "SerialPort",
    "TransportError",
    "TimeoutError",
    "OpenTimeoutError",
    "PacketTimeoutError",
    "SerialTimeoutError",
    "ProtocolError",
    "TransferCancelledError",
    "UnknownResponseError",
    "ConfigurationError",
    "StreamClosedEarlyError",
]
