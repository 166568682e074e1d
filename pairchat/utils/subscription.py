import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from pairchat.exceptions import StoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")

_INITIAL = "initial"


class Subscription(Generic[T]):
    """
    A live view over one store record or range.

    Every bus notification triggers a fresh read through ``loader`` and one call
    of ``on_change`` with the result. Calls are made one at a time from a single
    consumer task, so callbacks of the same subscription never overlap. The
    current value is delivered first, right after ``start``.

    The owner must ``cancel()`` it (or use ``async with``); once ``cancel()``
    returns no further callback runs and the bus registration is released.
    """

    def __init__(
        self,
        channel: str,
        loader: Callable[[], Awaitable[T]],
        on_change: Callable[[T], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> None:
        self.channel = channel
        self._loader = loader
        self._on_change = on_change
        self._on_error = on_error
        self._queue: asyncio.Queue = asyncio.Queue()
        self._bus_sub = None
        self._listener: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    async def start(cls, bus, channel: str, loader, on_change, on_error=None) -> "Subscription":
        sub = cls(channel, loader, on_change, on_error)
        sub._bus_sub = await bus.subscribe(channel, sub._notify)
        sub._listener = asyncio.create_task(sub._bus_sub.run())
        sub._queue.put_nowait(_INITIAL)
        sub._consumer = asyncio.create_task(sub._drain())
        return sub

    @property
    def closed(self) -> bool:
        return self._closed

    async def _notify(self, message: str) -> None:
        if not self._closed:
            self._queue.put_nowait(message)

    async def _drain(self) -> None:
        while not self._closed:
            await self._queue.get()
            # each delivery is a full re-read, so queued notifications collapse into one
            while not self._queue.empty():
                self._queue.get_nowait()
            try:
                snapshot = await self._loader()
            except asyncio.CancelledError:
                raise
            except StoreError as exc:
                logger.warning("Reload of %s failed: %s", self.channel, exc)
                await self._report(exc)
                continue
            except Exception as exc:
                # e.g. a stored document that no longer validates; keep listening
                logger.exception("Reload of %s raised", self.channel)
                await self._report(exc)
                continue
            if self._closed:
                break
            await self._call(self._on_change, snapshot)

    async def _report(self, exc: Exception) -> None:
        if self._on_error is not None and not self._closed:
            await self._call(self._on_error, exc)

    async def _call(self, callback, value) -> None:
        try:
            result = callback(value)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Subscriber callback on %s raised", self.channel)

    async def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._bus_sub is not None:
            await self._bus_sub.cancel()
        current = asyncio.current_task()
        pending = [t for t in (self._listener, self._consumer) if t is not None and t is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()
