"""Broadcast of typed events to independent subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable

from bluezctl.core.errors import BluezctlError
from bluezctl.core.events import BluetoothEvent, StreamOverflowed

DEFAULT_BACKLOG = 256
LOGGER = logging.getLogger(__name__)


class EventSubscription:
    """Async iterator over the events published after it was created.

    Each subscription keeps its own bounded backlog. When a slow consumer lets
    the backlog fill up, the queued events are discarded and the next item
    yielded is a `StreamOverflowed` marker counting what was lost.
    """

    def __init__(
        self,
        owner: EventMultiplexer | None,
        *,
        backlog: int,
        predicate: Callable[[BluetoothEvent], bool] | None = None,
    ) -> None:
        if backlog < 1:
            raise ValueError("backlog must be at least 1")
        self._owner = owner
        self._backlog = backlog
        self._predicate = predicate
        self._queue: deque[BluetoothEvent] = deque()
        self._missed = 0
        self._wakeup = asyncio.Event()
        self._finished = False
        self.error: BluezctlError | None = None

    @property
    def closed(self) -> bool:
        return self._finished

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> BluetoothEvent:
        while True:
            if self._missed:
                missed, self._missed = self._missed, 0
                return StreamOverflowed(missed=missed)
            if self._queue:
                return self._queue.popleft()
            if self._finished:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owner is not None:
            self._owner._detach(self)
            self._owner = None
        self._queue.clear()
        self._missed = 0
        self._finish(None)

    def _offer(self, event: BluetoothEvent) -> None:
        if self._finished:
            return
        if self._predicate is not None and not self._predicate(event):
            return
        if len(self._queue) >= self._backlog:
            self._missed += len(self._queue)
            self._queue.clear()
            LOGGER.warning("Event subscriber fell behind; dropped %d events", self._missed)
        self._queue.append(event)
        self._wakeup.set()

    def _finish(self, error: BluezctlError | None) -> None:
        if self._finished:
            return
        self._finished = True
        self.error = error
        self._wakeup.set()


class EventMultiplexer:
    def __init__(self, *, backlog: int = DEFAULT_BACKLOG) -> None:
        self._backlog = backlog
        self._subscriptions: list[EventSubscription] = []
        self._closed = False
        self._error: BluezctlError | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(
        self,
        *,
        backlog: int | None = None,
        predicate: Callable[[BluetoothEvent], bool] | None = None,
    ) -> EventSubscription:
        subscription = EventSubscription(
            None if self._closed else self,
            backlog=self._backlog if backlog is None else backlog,
            predicate=predicate,
        )
        if self._closed:
            subscription._finish(self._error)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: BluetoothEvent) -> None:
        if self._closed:
            return
        for subscription in list(self._subscriptions):
            subscription._offer(event)

    def close(self, error: BluezctlError | None = None) -> None:
        """End every subscription after it drains what is already queued."""
        if self._closed:
            return
        self._closed = True
        self._error = error
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._owner = None
            subscription._finish(error)

    def _detach(self, subscription: EventSubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
