"""
Fans job events out to any number of observers.

Publishing never waits on a subscriber. Each subscription keeps at most one
pending event per job; a newer event for the same job replaces the older one,
so a slow reader only ever falls behind to the latest snapshot.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Optional, Set

from .jobs import JobEvent

ALL = 'all'


class Subscription:
    """
    An async iterator over the events matching one scope.

    A job-scoped subscription finishes after delivering that job's terminal
    (or removal) event. An 'all' subscription runs until it is closed or the
    broadcaster shuts down.
    """
    def __init__(self, broadcaster: 'EventBroadcaster', scope: str):
        self.scope = scope
        self._broadcaster = broadcaster
        self._pending: 'OrderedDict[str, JobEvent]' = OrderedDict()
        self._wakeup = asyncio.Event()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: JobEvent) -> bool:
        return self.scope == ALL or self.scope == event.job_id

    def offer(self, event: JobEvent):
        """Buffers an event, replacing any undelivered event for the same job."""
        if self._closed or self._finished:
            return
        self._pending.pop(event.job_id, None)
        self._pending[event.job_id] = event
        self._wakeup.set()

    def close(self):
        """Stops the stream once the buffered events have been delivered."""
        if not self._closed:
            self._closed = True
            self._broadcaster._discard(self)
            self._wakeup.set()

    def __aiter__(self) -> 'Subscription':
        return self

    async def __anext__(self) -> JobEvent:
        while not self._pending:
            if self._closed or self._finished:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

        _, event = self._pending.popitem(last=False)
        if self.scope != ALL and event.ends_stream:
            self._finished = True
            self._pending.clear()
            self.close()
        return event

    async def __aenter__(self) -> 'Subscription':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        self._pending.clear()


class EventBroadcaster:
    """Delivers published job events to every matching subscription."""
    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._subscriptions: Set[Subscription] = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, scope: str = ALL, initial: Optional[JobEvent] = None) -> Subscription:
        """
        Opens a new subscription for a job id or for all jobs.

        Args:
            scope: A job id, or ALL to observe every job.
            initial: An event to deliver before anything published later.
        """
        subscription = Subscription(self, scope)
        if self._closed:
            if initial is not None:
                subscription.offer(initial)
            subscription.close()
            return subscription

        self._subscriptions.add(subscription)
        if initial is not None:
            subscription.offer(initial)
        self.logger.debug(f"New subscription for scope '{scope}' ({len(self._subscriptions)} active).")
        return subscription

    async def publish(self, event: JobEvent):
        """Offers an event to every matching subscription without waiting."""
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)

    def close(self):
        """Ends every open subscription after its buffered events drain."""
        self._closed = True
        for subscription in list(self._subscriptions):
            subscription.close()

    def _discard(self, subscription: Subscription):
        self._subscriptions.discard(subscription)
