# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Idle-delimited batching of serial output.

The serial driver delivers device output in arbitrary fragments. The
batcher holds everything back until the line has been quiet for the idle
period, then emits the whole burst as one chunk.
"""

import asyncio
from typing import Any, Callable, Optional

from .transport import DataSource

# schedule(delay, callback) -> handle
Schedule = Callable[[float, Callable[[], None]], Any]
# cancel(handle); handle may be None
Cancel = Callable[[Any], None]

DEFAULT_BATCH_TIMEOUT = 0.25


def _call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


def _cancel_timer(handle: Optional[asyncio.TimerHandle]) -> None:
    if handle is not None:
        handle.cancel()


class StreamBatcher(DataSource):
    """
    Emit accumulated bytes once no new data arrived for ``timeout`` seconds.

    Example:
        batcher = StreamBatcher(timeout=0.25)
        batcher.attach(port)
        batcher.add_listener(lambda chunk: print(chunk))
    """

    def __init__(
        self,
        timeout: float = DEFAULT_BATCH_TIMEOUT,
        schedule: Optional[Schedule] = None,
        cancel: Optional[Cancel] = None,
    ):
        """
        Args:
            timeout: Idle period in seconds (default 0.25)
            schedule: Timer factory, defaults to the running loop's call_later
            cancel: Timer cancellation, defaults to TimerHandle.cancel
        """
        super().__init__()
        self.timeout = timeout
        self._schedule = schedule or _call_later
        self._cancel = cancel or _cancel_timer
        self._buffer = bytearray()
        self._timer = None
        self._source: Optional[DataSource] = None

    def attach(self, source: DataSource) -> None:
        """Start batching everything ``source`` emits."""
        self.detach()
        source.add_listener(self.feed)
        self._source = source

    def detach(self) -> None:
        if self._source is not None:
            self._source.remove_listener(self.feed)
            self._source = None

    def feed(self, chunk: bytes) -> None:
        """Accumulate a chunk and restart the idle timer."""
        self._buffer.extend(chunk)
        self._cancel(self._timer)
        self._timer = self._schedule(self.timeout, self._flush)

    def end(self) -> None:
        """Flush whatever is pending without waiting for the idle period."""
        self._cancel(self._timer)
        self._timer = None
        if self._buffer:
            self._flush()

    def _flush(self) -> None:
        self._timer = None
        batch = bytes(self._buffer)
        self._buffer.clear()
        self._emit(batch)
