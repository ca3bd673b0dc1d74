"""Async concurrency primitives used by the orchestrator."""

from __future__ import annotations

import asyncio
import signal
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Iterator

T = TypeVar("T")
R = TypeVar("R")

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True, slots=True)
class _Delivery(Generic[T, R]):
    item: T
    value: R | None
    error: BaseException | None


@dataclass(frozen=True, slots=True)
class PoolOutcome(Generic[T]):
    """What a pool run did: items whose results were delivered, and items never launched."""

    delivered: tuple[T, ...]
    not_started: tuple[T, ...]


@dataclass(slots=True)
class WorkerPool(Generic[T, R]):
    """
    Fixed-size pool of workers draining a queue of items.

    Each worker takes one item at a time and runs ``handler`` to completion. Results
    flow through a single channel consumed by one ``on_result`` callback, so result
    handling is never concurrent with itself. Cancelling the token stops workers
    from taking new items; items already being handled always run to completion.

    A handler error cancels the token; results of items still in flight are
    delivered anyway and the error is raised once the workers drain. After
    ``on_result`` itself fails, nothing more is delivered.
    """

    size: int
    cancel_token: CancellationToken | None = None
    _token: CancellationToken = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ValueError("size must be > 0")
        self._token = self.cancel_token or CancellationToken()

    @property
    def token(self) -> CancellationToken:
        return self._token

    async def run(
        self,
        items: Iterable[T],
        handler: Callable[[T], Awaitable[R]],
        on_result: Callable[[T, R], Awaitable[None]],
    ) -> PoolOutcome[T]:
        pending: asyncio.Queue[T] = asyncio.Queue()
        for item in items:
            pending.put_nowait(item)

        channel: asyncio.Queue[_Delivery[T, R] | None] = asyncio.Queue()
        worker_count = min(self.size, max(pending.qsize(), 1))
        workers = [
            asyncio.create_task(self._worker(pending, handler, channel))
            for _ in range(worker_count)
        ]

        delivered: list[T] = []
        failure: BaseException | None = None
        sink_broken = False
        active = worker_count
        try:
            while active:
                delivery = await channel.get()
                if delivery is None:
                    active -= 1
                    continue
                if delivery.error is not None:
                    if failure is None:
                        failure = delivery.error
                        self._token.cancel("worker failure")
                    continue
                if sink_broken:
                    continue
                try:
                    await on_result(delivery.item, delivery.value)  # type: ignore[arg-type]
                except Exception as exc:  # noqa: BLE001 - surfaced after in-flight work drains.
                    sink_broken = True
                    if failure is None:
                        failure = exc
                    self._token.cancel("result handler failure")
                    continue
                delivered.append(delivery.item)
        except asyncio.CancelledError:
            for worker in workers:
                worker.cancel()
            with suppress(Exception):
                await asyncio.gather(*workers, return_exceptions=True)
            raise

        await asyncio.gather(*workers)

        not_started: list[T] = []
        while not pending.empty():
            not_started.append(pending.get_nowait())

        if failure is not None:
            raise failure
        return PoolOutcome(delivered=tuple(delivered), not_started=tuple(not_started))

    async def _worker(
        self,
        pending: asyncio.Queue[T],
        handler: Callable[[T], Awaitable[R]],
        channel: asyncio.Queue[_Delivery[T, R] | None],
    ) -> None:
        try:
            while not self._token.is_cancelled:
                try:
                    item = pending.get_nowait()
                except asyncio.QueueEmpty:
                    break
                try:
                    value = await handler(item)
                except Exception as exc:  # noqa: BLE001 - forwarded to the result channel.
                    channel.put_nowait(_Delivery(item=item, value=None, error=exc))
                    continue
                channel.put_nowait(_Delivery(item=item, value=value, error=None))
        finally:
            channel.put_nowait(None)


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    """Cancel ``token`` on SIGINT/SIGTERM while the scope is active."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


__all__ = [
    "CancellationToken",
    "PoolOutcome",
    "WorkerPool",
    "cancel_on_signals",
]
