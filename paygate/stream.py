"""
Progress stream - push transport between one producer and one consumer.

The producer runs as its own task and hands events over a queue of size one,
waiting until the reader has taken each event before it moves on. Cancelling
the stream cancels the producer task, which interrupts whatever it is
awaiting (an HTTP request, a wallet prompt) on the next scheduling step.

A reader that drops the stream without closing it cancels it as well: the
producer side holds no reference back to the stream, so the stream is
collected and its finalizer cancels the token.
"""

from typing import AsyncIterator, Callable, List, Optional, Union
import asyncio
import json
import logging
import weakref

from pydantic import ValidationError

from .errors import ExecutionCancelled
from .models import EventType, ProgressEvent

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in self._callbacks:
            callback()
        self._callbacks.clear()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self.cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelled()

    async def wait(self) -> None:
        await self._event.wait()


Producer = Callable[[CancellationToken], AsyncIterator[ProgressEvent]]

_DONE = object()


class _Run:
    """Producer side of a stream: the pump task, its queue and the close hook."""

    def __init__(
        self,
        producer: Producer,
        token: CancellationToken,
        on_close: Optional[Callable[[], None]],
    ) -> None:
        self.producer = producer
        self.token = token
        self.on_close = on_close
        self.queue: "asyncio.Queue[Union[ProgressEvent, object]]" = asyncio.Queue(maxsize=1)
        self.task: Optional[asyncio.Task] = None
        self.finished = False

    def start(self) -> None:
        if self.task is None:
            self.task = asyncio.ensure_future(self.pump())
            self.task.add_done_callback(lambda _: self.finish())

    async def pump(self) -> None:
        terminal = False
        try:
            async for event in self.producer(self.token):
                if self.token.cancelled:
                    break
                await self.queue.put(event)
                # lockstep: resume only once the reader has taken the event
                await self.queue.join()
                if event.terminal:
                    terminal = True
                    return
        except ExecutionCancelled:
            logger.debug("Producer stopped after cancellation")
        except asyncio.CancelledError:
            logger.debug("Producer task torn down")
            raise
        except Exception:
            logger.exception("Progress producer failed")
            if not self.token.cancelled:
                terminal = True
                self.hand_off(error_event("Unexpected error during execution"))
        finally:
            if not self.token.cancelled and not terminal:
                self.hand_off(_DONE)

    def hand_off(self, item) -> None:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            # the reader never took the previous event; it sees the task end instead
            logger.debug("Reader gone, dropping end-of-stream marker")

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.finish()

    def finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        if self.on_close is not None:
            self.on_close()


def _abandon(run: _Run) -> None:
    if run.finished or run.token.cancelled:
        return
    logger.debug("Progress stream dropped by its reader, cancelling")
    try:
        run.token.cancel()
    except RuntimeError:
        # event loop already closed
        run.finish()


class ProgressStream:
    def __init__(
        self,
        producer: Producer,
        token: Optional[CancellationToken] = None,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self.token = token or CancellationToken()
        self._on_event = on_event
        self._run = _Run(producer, self.token, on_close)
        self._exhausted = False
        self.token.on_cancel(self._run.cancel)
        weakref.finalize(self, _abandon, self._run)

    @classmethod
    def of(cls, *events: ProgressEvent) -> "ProgressStream":
        """A stream that replays fixed events, used for immediate rejections."""

        async def replay(token: CancellationToken) -> AsyncIterator[ProgressEvent]:
            for event in events:
                yield event

        return cls(replay)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def __aiter__(self) -> "ProgressStream":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._exhausted:
            raise StopAsyncIteration
        if self.token.cancelled:
            self._close()
            raise StopAsyncIteration
        self._run.start()

        item = await self._next_item()
        if item is _DONE:
            self._close()
            raise StopAsyncIteration

        if self._on_event is not None:
            self._on_event(item)
        if item.terminal:
            self._close()
        return item

    async def collect(self) -> List[ProgressEvent]:
        return [event async for event in self]

    def cancel(self) -> None:
        self.token.cancel()
        self._close()

    async def aclose(self) -> None:
        self.cancel()
        if self._run.task is not None:
            await asyncio.gather(self._run.task, return_exceptions=True)

    async def __aenter__(self) -> "ProgressStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _next_item(self):
        run = self._run
        getter = asyncio.ensure_future(run.queue.get())
        waiter = asyncio.ensure_future(self.token.wait())
        try:
            await asyncio.wait({getter, waiter, run.task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if self.token.cancelled or not getter.done():
            # cancelled, or the pump ended with nothing left to hand over
            getter.cancel()
            return _DONE
        run.queue.task_done()
        return getter.result()

    def _close(self) -> None:
        self._exhausted = True
        self._run.finish()


def encode_frame(event: ProgressEvent) -> bytes:
    return (event.model_dump_json(exclude_none=True) + "\n").encode("utf-8")


def decode_frame(line: Union[str, bytes]) -> Optional[ProgressEvent]:
    """Parse one NDJSON line. Blank or unparseable lines return None."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        return ProgressEvent.model_validate(json.loads(line))
    except (ValueError, ValidationError):
        logger.debug("Ignoring unparseable progress frame: %r", line[:200])
        return None


def error_event(message: str, payload: Optional[dict] = None) -> ProgressEvent:
    return ProgressEvent(type=EventType.ERROR, message=message, payload=payload)
