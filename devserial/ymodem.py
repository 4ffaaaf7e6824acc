# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
YMODEM sender.

Transfers one or more files to a device in fixed-size blocks. Each packet is
written, drained and acknowledged before the next one goes out; there is no
pipelining and no automatic retry.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .protocol import (
    BLOCK_MARKS,
    LISTENING_BANNER,
    TRANSFER_REQUEST,
    ControlByte,
    ResponseKind,
    classify_response,
    describe,
    encode_batch_end,
    encode_cancel,
    encode_eot,
    encode_file_header,
    encode_packet,
)
from .transport import (
    ConfigurationError,
    OpenTimeoutError,
    PacketTimeoutError,
    SerialPort,
    StreamClosedEarlyError,
    TransferCancelledError,
    UnknownResponseError,
)

logger = logging.getLogger(__name__)

OPEN_TIMEOUT = 10.0
PACKET_TIMEOUT = 10.0
INTER_BLOCK_DELAY = 0.001

PathLike = Union[str, os.PathLike]
ProgressCallback = Callable[[int, int], None]


class YModemTransfer:
    """
    Send files to a device with YMODEM.

    The transfer closes the port when it finishes, successfully or not.

    Example:
        port = SerialPort("/dev/ttyACM0", baudrate=28800)
        await YModemTransfer(port, block_length=1024).send("firmware.bin")
    """

    def __init__(
        self,
        port: SerialPort,
        block_length: int = 128,
        open_timeout: float = OPEN_TIMEOUT,
        packet_timeout: float = PACKET_TIMEOUT,
    ):
        """
        Args:
            port: Serial port, opened by the transfer if necessary
            block_length: Payload size per packet, 128 or 1024
            open_timeout: Seconds to wait for the device to accept the transfer
            packet_timeout: Seconds to wait for each acknowledgement

        Raises:
            ConfigurationError: If block_length is not 128 or 1024
        """
        if block_length not in BLOCK_MARKS:
            raise ConfigurationError(
                f"Invalid block length: {block_length} (expected 128 or 1024)"
            )
        self.port = port
        self.block_length = block_length
        self.open_timeout = open_timeout
        self.packet_timeout = packet_timeout

        self.seq = 0
        self.errored = False
        self.closed = False
        self._ending = False
        self._response: Optional[asyncio.Future] = None

        port.add_close_listener(self._on_port_close)

    async def send(
        self,
        filenames: Union[PathLike, Iterable[PathLike]],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Send one file or a list of files, then end the batch.

        Args:
            filenames: A path or a list of paths, sent in order
            progress_callback: Optional callback(bytes_sent, total_bytes)
                called after each acknowledged data block

        Raises:
            OpenTimeoutError: The device never accepted the transfer
            PacketTimeoutError: A packet was not acknowledged in time
            TransferCancelledError: The device sent NAK or cancelled
            UnknownResponseError: The device answered with an unexpected byte
            StreamClosedEarlyError: The port closed during the transfer
        """
        if isinstance(filenames, (str, os.PathLike)):
            filenames = [filenames]

        try:
            await self._open()
            for filename in filenames:
                logger.info("Sending file: %s", filename)
                data = Path(filename).read_bytes()
                await self._send_file(os.path.basename(filename), data, progress_callback)
            await self._end_transfer()
        except BaseException:
            self.errored = True
            raise
        finally:
            await self._close()

    async def _open(self) -> None:
        try:
            await asyncio.wait_for(self._request_transfer(), self.open_timeout)
        except asyncio.TimeoutError:
            raise OpenTimeoutError(
                "Timed out waiting for initial response from device"
            ) from None

    async def _request_transfer(self) -> None:
        await self.port.open()
        ready = asyncio.get_running_loop().create_future()
        text = ""

        def on_data(data: bytes) -> None:
            nonlocal text
            logger.debug("recv %s", describe(data))
            text += data.decode("latin-1")
            # CRC16 means the device already expects packets; the banner means
            # it is in listening mode and about to.
            if data[:1] == bytes([ControlByte.CRC16]) or _has_line(text, LISTENING_BANNER):
                if not ready.done():
                    ready.set_result(None)

        self._response = ready
        self.port.add_listener(on_data)
        try:
            self.port.write(TRANSFER_REQUEST)
            await self.port.drain()
            await ready
        finally:
            self.port.remove_listener(on_data)
            self._response = None

    async def _send_file(
        self,
        name: str,
        data: bytes,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.seq = 0
        self._ending = False
        total = len(data)

        logger.debug("send file header")
        await self._exchange(encode_file_header(name, total, self.block_length, self.seq))

        for offset in range(0, total, self.block_length):
            block = data[offset:offset + self.block_length]
            await self._exchange(encode_packet(self.seq, block, self.block_length))
            if progress_callback:
                progress_callback(min(offset + self.block_length, total), total)
            await asyncio.sleep(INTER_BLOCK_DELAY)

        await self._exchange(encode_eot())

    async def _end_transfer(self) -> None:
        self.seq = 0
        self._ending = True
        await self._exchange(encode_batch_end(self.block_length))

    async def _exchange(self, packet: bytes) -> None:
        """Write one packet and wait until the response is conclusive."""
        loop = asyncio.get_running_loop()
        response = bytearray()
        result = loop.create_future()
        self._response = result
        expect_crc_mode = self.seq == 0 and not self._ending

        def on_data(data: bytes) -> None:
            logger.debug("recv %s", describe(data))
            if result.done():
                return
            response.extend(data)
            kind = classify_response(bytes(response), expect_crc_mode)
            if kind is ResponseKind.PENDING:
                return
            if kind is ResponseKind.ACK:
                self.seq += 1
                result.set_result(response[0])
            elif kind is ResponseKind.CANCELLED:
                result.set_exception(TransferCancelledError("Transfer cancelled"))
            else:
                result.set_exception(
                    UnknownResponseError(f"Unknown response: {describe(bytes(response))}")
                )

        async def write_and_wait() -> None:
            self.port.write(packet)
            await self.port.drain()
            await result

        logger.debug("write seq=%d %d bytes", self.seq, len(packet))
        self.port.add_listener(on_data)
        try:
            await asyncio.wait_for(write_and_wait(), self.packet_timeout)
        except asyncio.TimeoutError:
            raise PacketTimeoutError(
                f"No response to packet {self.seq} within {self.packet_timeout}s"
            ) from None
        finally:
            self.port.remove_listener(on_data)
            self._response = None

    def _on_port_close(self, exc: Optional[BaseException]) -> None:
        if self._response is not None and not self._response.done():
            self._response.set_exception(
                StreamClosedEarlyError(f"Serial port closed early: {exc or 'closed'}")
            )

    async def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.port.remove_close_listener(self._on_port_close)
        if not self.port.is_open:
            return
        if self.errored:
            # Not drained: close() flushes what it can.
            try:
                self.port.write(encode_cancel())
            except Exception as e:
                logger.debug("Ignoring error while cancelling transfer: %s", e)
        await self.port.close()


def _has_line(text: str, line: str) -> bool:
    return any(candidate.strip() == line for candidate in text.splitlines())
