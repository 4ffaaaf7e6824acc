# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Prompt-driven serial dialogues.

Device firmware asks questions by printing known prompt strings. Each
registered prompt has a handler that answers through ``respond``; the
answer is written to the port and drained before the handler's follow-up
runs.

Matching is anchored: a prompt matches only when it starts at the current
scan position. Bytes that cannot start any prompt (echo, noise) are skipped
one character at a time. When two prompts share a prefix, the one registered
first wins.
"""

import asyncio
import codecs
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .transport import DataSource, SerialPort

logger = logging.getLogger(__name__)

AfterSent = Callable[[], None]
Respond = Callable[..., Awaitable[None]]
Handler = Callable[[Respond], Optional[Awaitable[None]]]
ErrorHandler = Callable[[BaseException], None]


class PromptTrigger:
    """Answer device prompts seen on a batched stream."""

    def __init__(
        self,
        port: SerialPort,
        stream: DataSource,
        on_error: Optional[ErrorHandler] = None,
    ):
        """
        Args:
            port: Writable port the answers go to
            stream: Source of device output, usually a StreamBatcher
            on_error: Receives exceptions raised by asynchronous handlers
        """
        self.port = port
        self.stream = stream
        self.on_error = on_error
        self.pending = ""
        self._triggers: Dict[str, Handler] = {}
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._listener = None
        self._quiet = False
        self._tasks = set()

    @property
    def prompts(self) -> Tuple[str, ...]:
        return tuple(self._triggers)

    def add_trigger(self, prompt: str, handler: Handler) -> None:
        """
        Register a handler for a prompt.

        Raises:
            ValueError: If prompt is empty
        """
        if not prompt:
            raise ValueError("prompt must be specified")
        self._triggers[prompt] = handler

    def start(self, quiet: bool = False) -> None:
        """Start listening for prompts."""
        self.stop()
        self._quiet = quiet
        self._listener = self._on_data
        self.stream.add_listener(self._listener)

    def stop(self) -> None:
        """Stop listening. Safe to call at any time."""
        if self._listener is not None:
            self.stream.remove_listener(self._listener)
            self._listener = None

    def respond(self, text: str, after_sent: Optional[AfterSent] = None) -> Awaitable[None]:
        """
        Write an answer to the device.

        Empty text writes nothing and skips ``after_sent``. The returned
        awaitable completes once the answer has been drained.
        """
        loop = asyncio.get_running_loop()
        if not text:
            done = loop.create_future()
            done.set_result(None)
            return done
        self.port.write(text.encode("utf-8"))
        return self._track(loop.create_task(self._finish_response(text, after_sent)))

    async def _finish_response(self, text: str, after_sent: Optional[AfterSent]) -> None:
        await self.port.drain()
        if not self._quiet:
            logger.info("Serial input: %r", text)
        if after_sent is not None:
            after_sent()

    def _on_data(self, chunk: bytes) -> None:
        buffer = self.pending + self._decoder.decode(chunk)
        position, prompt = self._scan(buffer)

        if prompt is None:
            self.pending = buffer[position:]
            return

        self.pending = buffer[position + len(prompt):]
        logger.debug("Matched prompt %r", prompt)
        try:
            result = self._triggers[prompt](self.respond)
        except Exception as e:
            self._report_error(e)
            return
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

    def _scan(self, buffer: str) -> Tuple[int, Optional[str]]:
        """
        Find the first position where a prompt starts.

        Returns (position, prompt) for a full match, (position, None) when
        the rest of the buffer is a partial prompt, and (len(buffer), None)
        when nothing can match.
        """
        position = 0
        while position < len(buffer):
            for prompt in self._triggers:
                if buffer.startswith(prompt, position):
                    return position, prompt

            remaining = len(buffer) - position
            for prompt in self._triggers:
                if remaining < len(prompt) and buffer.startswith(prompt[:remaining], position):
                    return position, None

            position += 1
        return position, None

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._report_error(exc, task)

    def _report_error(self, exc: BaseException, task: Optional[asyncio.Future] = None) -> None:
        if self.on_error is not None:
            self.on_error(exc)
            return
        context = {"message": "Unhandled exception in prompt handler", "exception": exc}
        if task is not None:
            context["future"] = task
        asyncio.get_running_loop().call_exception_handler(context)
