"""In-process change channel fed by the bundled SQL store.

Each subscription owns a queue drained by its own task so handlers always run
asynchronously relative to the mutation that published the event.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from parley.services.errors import SubscriptionFault
from parley.services.store import ChangeEvent, ChangeFilter, EventHandler

logger = logging.getLogger(__name__)

_CLOSE = object()


class LocalSubscription:
    """Subscription delivering matching events to one handler in order."""

    def __init__(
        self,
        feed: LocalChangeFeed,
        name: str,
        filters: Sequence[ChangeFilter],
        handler: EventHandler,
    ) -> None:
        self.name = name
        self.filters = tuple(filters)
        self._feed = feed
        self._handler = handler
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._fault: SubscriptionFault | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"local-feed:{self.name}")

    @property
    def closed(self) -> bool:
        return self._task is not None and self._task.done()

    def offer(self, event: ChangeEvent) -> None:
        """Queue ``event`` if any filter accepts it."""
        if self.closed:
            return
        if any(change_filter.matches(event) for change_filter in self.filters):
            self._queue.put_nowait(event)

    def fault(self, exc: Exception | None = None) -> None:
        """Terminate the subscription as if the transport had failed."""
        if exc is None:
            exc = SubscriptionFault(f"Channel {self.name} errored")
        elif not isinstance(exc, SubscriptionFault):
            exc = SubscriptionFault(str(exc))
        self._fault = exc
        self._queue.put_nowait(_CLOSE)

    async def _run(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    return
                assert isinstance(item, ChangeEvent)
                try:
                    await self._handler(item)
                except Exception:
                    logger.error(
                        "Handler for channel %s failed on %s event",
                        self.name,
                        item.kind.value,
                        exc_info=True,
                    )
        finally:
            self._feed.discard(self)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task
        if self._fault is not None:
            raise self._fault

    async def close(self) -> None:
        if self._task is None or self._task.done():
            return
        self._queue.put_nowait(_CLOSE)
        await self._task


class LocalChangeFeed:
    """Fan-out of change events to in-process subscribers."""

    def __init__(self) -> None:
        self._subscriptions: set[LocalSubscription] = set()
        self.available = True

    async def subscribe(
        self,
        name: str,
        filters: Sequence[ChangeFilter],
        handler: EventHandler,
    ) -> LocalSubscription:
        if not self.available:
            raise SubscriptionFault(f"Channel {name} could not be joined")
        subscription = LocalSubscription(self, name, filters, handler)
        subscription.start()
        self._subscriptions.add(subscription)
        logger.debug("Subscribed %s with %d filter(s)", name, len(subscription.filters))
        return subscription

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription.offer(event)

    def publish_all(self, events: Sequence[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)

    def discard(self, subscription: LocalSubscription) -> None:
        self._subscriptions.discard(subscription)

    @property
    def subscriptions(self) -> tuple[LocalSubscription, ...]:
        return tuple(self._subscriptions)

    def fault_all(self, exc: Exception | None = None) -> None:
        """Fault every open subscription (transport loss)."""
        for subscription in list(self._subscriptions):
            subscription.fault(exc)
