# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for SerialPort and DataSource."""

import asyncio
from unittest.mock import Mock, patch

import pytest
import serial

from devserial.transport import (
    ConfigurationError,
    DataSource,
    OpenTimeoutError,
    PacketTimeoutError,
    ProtocolError,
    SerialPort,
    SerialTimeoutError,
    StreamClosedEarlyError,
    TimeoutError,
    TransferCancelledError,
    TransportError,
    UnknownResponseError,
)


def make_transport(port: SerialPort) -> Mock:
    """asyncio transport stand-in that reports its close back to the port."""
    transport = Mock()
    transport.is_closing.return_value = False

    def close():
        transport.is_closing.return_value = True
        asyncio.get_running_loop().call_soon(port.connection_lost, None)

    transport.close.side_effect = close
    return transport


def fake_connection(transport_factory=make_transport):
    """Replacement for create_serial_connection."""
    calls = []

    async def create_serial_connection(loop, protocol_factory, url, **kwargs):
        protocol = protocol_factory()
        calls.append((url, kwargs))
        transport = transport_factory(protocol)
        protocol.connection_made(transport)
        return transport, protocol

    create_serial_connection.calls = calls
    return create_serial_connection


class TestDataSource:
    """Tests for listener dispatch and buffering."""

    def test_buffers_without_listeners(self):
        source = DataSource()
        source._emit(b"ab")
        source._emit(b"cd")

        assert source.read() == b"abcd"
        assert source.read() is None

    def test_listeners_receive_chunks(self):
        source = DataSource()
        received = []
        source.add_listener(received.append)

        source._emit(b"ab")

        assert received == [b"ab"]
        assert source.read() is None

    def test_remove_listener(self):
        source = DataSource()
        received = []
        source.add_listener(received.append)
        source.remove_listener(received.append)

        source._emit(b"ab")

        assert received == []
        assert source.read() == b"ab"

    def test_remove_unknown_listener(self):
        DataSource().remove_listener(lambda data: None)  # Should not raise

    def test_unread_is_capped(self, monkeypatch):
        """Only the most recent unread bytes are kept."""
        monkeypatch.setattr("devserial.transport.MAX_UNREAD", 4)
        source = DataSource()
        source._emit(b"abc")
        source._emit(b"def")

        assert source.read() == b"cdef"

    def test_listener_detaching_itself(self):
        source = DataSource()
        received = []

        def once(data):
            received.append(data)
            source.remove_listener(once)

        source.add_listener(once)
        source.add_listener(received.append)
        source._emit(b"x")

        assert received == [b"x", b"x"]
        assert source.listener_count == 1


class TestSerialPortInit:
    """Tests for SerialPort initialization."""

    def test_not_open_until_opened(self):
        port = SerialPort("/dev/ttyACM0")
        assert port.port == "/dev/ttyACM0"
        assert port.is_open is False

    def test_write_before_open(self):
        port = SerialPort("/dev/ttyACM0")
        with pytest.raises(StreamClosedEarlyError):
            port.write(b"f")


class TestSerialPortOpen:
    """Tests for open/close."""

    @pytest.mark.asyncio
    async def test_open_uses_baudrate(self):
        connect = fake_connection()
        port = SerialPort("/dev/ttyACM0", baudrate=28800)

        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection", connect):
            await port.open()

        assert port.is_open is True
        assert connect.calls == [("/dev/ttyACM0", {"baudrate": 28800})]

    @pytest.mark.asyncio
    async def test_open_twice(self):
        connect = fake_connection()
        port = SerialPort("/dev/ttyACM0")

        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection", connect):
            await port.open()
            await port.open()

        assert len(connect.calls) == 1

    @pytest.mark.asyncio
    async def test_open_failure(self):
        async def fail(*args, **kwargs):
            raise serial.SerialException("could not open port")

        port = SerialPort("/dev/ttyMISSING")

        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection", fail):
            with pytest.raises(TransportError, match="Error opening /dev/ttyMISSING"):
                await port.open()

    @pytest.mark.asyncio
    async def test_write_buffer_limits(self):
        transports = []

        def factory(port):
            transport = make_transport(port)
            transports.append(transport)
            return transport

        port = SerialPort("/dev/ttyACM0")
        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection",
                   fake_connection(factory)):
            await port.open()

        transports[0].set_write_buffer_limits.assert_called_once_with(high=0)

    @pytest.mark.asyncio
    async def test_close_notifies_listeners(self):
        port = SerialPort("/dev/ttyACM0")
        closed = []
        port.add_close_listener(closed.append)

        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection",
                   fake_connection()):
            await port.open()
        await port.close()

        assert closed == [None]
        assert port.is_open is False

    @pytest.mark.asyncio
    async def test_close_when_not_open(self):
        await SerialPort("/dev/ttyACM0").close()  # Should not raise

    @pytest.mark.asyncio
    async def test_remove_close_listener(self):
        port = SerialPort("/dev/ttyACM0")
        closed = []
        port.add_close_listener(closed.append)
        port.remove_close_listener(closed.append)

        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection",
                   fake_connection()):
            await port.open()
        await port.close()

        assert closed == []

    @pytest.mark.asyncio
    async def test_close_aborts_stuck_write_buffer(self, monkeypatch):
        """close() gives up flushing after CLOSE_TIMEOUT."""
        monkeypatch.setattr("devserial.transport.CLOSE_TIMEOUT", 0.01)
        transports = []

        def factory(port):
            transport = Mock()
            transport.is_closing.return_value = False

            def close():
                transport.is_closing.return_value = True

            transport.close.side_effect = close
            transport.abort.side_effect = lambda: port.connection_lost(None)
            transports.append(transport)
            return transport

        port = SerialPort("/dev/ttyACM0")
        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection",
                   fake_connection(factory)):
            await port.open()

        await asyncio.wait_for(port.close(), 1.0)

        transports[0].abort.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_unread_cleared_on_close(self):
        port = SerialPort("/dev/ttyACM0")
        with patch("devserial.transport.serial_asyncio_fast.create_serial_connection",
                   fake_connection()):
            await port.open()
        port.data_received(b"CCC")
        await port.close()

        assert port.read() is None


class TestSerialPortIO:
    """Tests for reads, writes and flow control."""

    @pytest.fixture
    def transport(self):
        transport = Mock()
        transport.is_closing.return_value = False
        return transport

    @pytest.mark.asyncio
    async def test_data_received(self, transport):
        port = SerialPort("/dev/ttyACM0")
        port.connection_made(transport)
        received = []
        port.add_listener(received.append)

        port.data_received(b"\x06C")

        assert received == [b"\x06C"]

    @pytest.mark.asyncio
    async def test_write(self, transport):
        port = SerialPort("/dev/ttyACM0")
        port.connection_made(transport)

        port.write(bytearray(b"f"))

        transport.write.assert_called_once_with(b"f")

    @pytest.mark.asyncio
    async def test_drain_not_paused(self, transport):
        port = SerialPort("/dev/ttyACM0")
        port.connection_made(transport)

        await asyncio.wait_for(port.drain(), 0.1)

    @pytest.mark.asyncio
    async def test_drain_waits_for_resume(self, transport):
        port = SerialPort("/dev/ttyACM0")
        port.connection_made(transport)
        port.pause_writing()

        drain = asyncio.ensure_future(port.drain())
        await asyncio.sleep(0.01)
        assert not drain.done()

        port.resume_writing()
        await asyncio.wait_for(drain, 0.1)

    @pytest.mark.asyncio
    async def test_drain_fails_on_connection_lost(self, transport):
        port = SerialPort("/dev/ttyACM0")
        port.connection_made(transport)
        port.pause_writing()

        drain = asyncio.ensure_future(port.drain())
        await asyncio.sleep(0)
        port.connection_lost(serial.SerialException("device disconnected"))

        with pytest.raises(serial.SerialException):
            await drain

    @pytest.mark.asyncio
    async def test_connection_lost_reports_error(self, transport):
        port = SerialPort("/dev/ttyACM0")
        port.connection_made(transport)
        closed = []
        port.add_close_listener(closed.append)
        error = OSError("device disconnected")

        port.connection_lost(error)

        assert closed == [error]

    @pytest.mark.asyncio
    async def test_drain_before_open(self):
        with pytest.raises(StreamClosedEarlyError):
            await SerialPort("/dev/ttyACM0").drain()


class TestExceptions:
    """Tests for exception classes."""

    def test_transport_error_is_exception(self):
        """TransportError is an Exception."""
        assert issubclass(TransportError, Exception)

    @pytest.mark.parametrize("cls", [OpenTimeoutError, PacketTimeoutError, SerialTimeoutError])
    def test_timeouts(self, cls):
        assert issubclass(cls, TimeoutError)
        assert issubclass(cls, TransportError)

    @pytest.mark.parametrize("cls", [TransferCancelledError, UnknownResponseError])
    def test_protocol_errors(self, cls):
        assert issubclass(cls, ProtocolError)
        assert issubclass(cls, TransportError)

    def test_other_errors(self):
        assert issubclass(ConfigurationError, TransportError)
        assert issubclass(StreamClosedEarlyError, TransportError)
        assert not issubclass(StreamClosedEarlyError, TimeoutError)

    def test_timeout_shadows_builtin(self):
        """The package TimeoutError is not the builtin one."""
        assert not issubclass(TimeoutError, OSError)
