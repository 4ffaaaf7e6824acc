# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Serial port abstraction shared by the batcher, the prompt trigger and the
YMODEM sender.

The port is an asyncio protocol running on top of pyserial through
pyserial-asyncio-fast. Incoming bytes are pushed to data listeners as they
arrive; if nobody is listening they are buffered for ``read()``.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import serial
import serial_asyncio_fast

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT = 1.0
# Output nobody listened for; only the most recent bytes are kept.
MAX_UNREAD = 64 * 1024

DataListener = Callable[[bytes], None]
CloseListener = Callable[[Optional[BaseException]], None]


class TransportError(Exception):
    """Base exception for transport errors."""
    pass


class TimeoutError(TransportError):
    """Timeout waiting for the device."""
    pass


class OpenTimeoutError(TimeoutError):
    """The device never answered the transfer request."""
    pass


class PacketTimeoutError(TimeoutError):
    """No conclusive answer to a packet within the per-packet timeout."""
    pass


class SerialTimeoutError(TimeoutError):
    """A prompt did not arrive before its deadline."""
    pass


class ProtocolError(TransportError):
    """Protocol-level error (unexpected response, etc.)."""
    pass


class TransferCancelledError(ProtocolError):
    """The receiver refused a packet or cancelled the transfer."""
    pass


class UnknownResponseError(ProtocolError):
    """The receiver answered with a byte the sender does not understand."""
    pass


class ConfigurationError(TransportError):
    """Invalid engine configuration."""
    pass


class StreamClosedEarlyError(TransportError):
    """The port closed before the operation completed."""
    pass


class DataSource:
    """
    Listener registry plus a read buffer.

    Chunks emitted while at least one data listener is attached go to the
    listeners only; otherwise they accumulate until ``read()`` is called.
    """

    def __init__(self):
        self._listeners: List[DataListener] = []
        self._unread = bytearray()

    def add_listener(self, listener: DataListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: DataListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def read(self) -> Optional[bytes]:
        """Return and clear buffered data, or None if there is none."""
        if not self._unread:
            return None
        data = bytes(self._unread)
        self._unread.clear()
        return data

    def _emit(self, data: bytes) -> None:
        if not self._listeners:
            self._unread.extend(data)
            del self._unread[:-MAX_UNREAD]
            return
        # Listeners may detach themselves while handling the chunk.
        for listener in list(self._listeners):
            listener(data)


class SerialPort(DataSource, asyncio.Protocol):
    """
    Duplex serial port with data and close events.

    Usage:
        port = SerialPort("/dev/ttyACM0", baudrate=28800)
        await port.open()
        port.write(b"f")
        await port.drain()
        await port.close()
    """

    def __init__(self, port: str, baudrate: int = 9600):
        """
        Args:
            port: Serial port path (e.g., "/dev/ttyACM0")
            baudrate: Baud rate (default 9600)
        """
        super().__init__()
        self._device = port
        self._baudrate = baudrate
        self._transport: Optional[asyncio.Transport] = None
        self._close_listeners: List[CloseListener] = []
        self._paused = False
        self._drain_waiters: List[asyncio.Future] = []
        self._closed: Optional[asyncio.Future] = None

    @property
    def port(self) -> str:
        """Return the serial port name."""
        return self._device

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    async def open(self) -> None:
        """Open the underlying serial device."""
        if self.is_open:
            return
        loop = asyncio.get_running_loop()
        try:
            await serial_asyncio_fast.create_serial_connection(
                loop, lambda: self, self._device, baudrate=self._baudrate
            )
        except serial.SerialException as e:
            raise TransportError(f"Error opening {self._device}: {e}") from e

    def add_close_listener(self, listener: CloseListener) -> None:
        self._close_listeners.append(listener)

    def remove_close_listener(self, listener: CloseListener) -> None:
        if listener in self._close_listeners:
            self._close_listeners.remove(listener)

    def write(self, data: bytes) -> None:
        """Queue bytes for transmission; use drain() to wait until sent."""
        if not self.is_open:
            raise StreamClosedEarlyError("Serial port is not open")
        self._transport.write(bytes(data))

    async def drain(self) -> None:
        """Wait until every queued byte has been handed to the device."""
        if self._transport is None:
            raise StreamClosedEarlyError("Serial port is not open")
        if not self._paused:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._drain_waiters.append(waiter)
        await waiter

    async def close(self) -> None:
        """
        Close the port and wait for the close event.

        Queued bytes get CLOSE_TIMEOUT seconds to flush before the port is
        aborted.
        """
        if not self.is_open:
            return
        self._transport.close()
        if self._closed is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._closed), CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("Aborting %s, write buffer did not flush", self._device)
            self._transport.abort()
            await self._closed

    # asyncio.Protocol callbacks

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport
        self._closed = asyncio.get_running_loop().create_future()
        self._unread.clear()
        # Pause as soon as anything is buffered so drain() waits for an
        # empty write buffer.
        transport.set_write_buffer_limits(high=0)
        logger.debug("Opened %s at %d baud", self._device, self._baudrate)

    def data_received(self, data: bytes) -> None:
        self._emit(data)

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        self._wake_drain_waiters(None)

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        logger.debug("Closed %s (%s)", self._device, exc or "no error")
        self._paused = False
        self._unread.clear()
        self._wake_drain_waiters(exc)
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)
        for listener in list(self._close_listeners):
            listener(exc)

    def _wake_drain_waiters(self, exc: Optional[BaseException]) -> None:
        waiters, self._drain_waiters = self._drain_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if exc is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(exc)
