import asyncio
import itertools
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger("agrinet.registry")

SUBSCRIBER_QUEUE_SIZE = 16
KEEPALIVE_COMMENT = ": keep-alive\n\n"

_ids = itertools.count(1)


def format_event(snapshot: Dict[str, Any]) -> str:
    return f"data: {json.dumps(snapshot, separators=(',', ':'))}\n\n"


class Subscriber:
    """One event-stream connection: a bounded queue of pending payloads."""

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.id = next(_ids)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, payload: Optional[str]) -> None:
        """Enqueue without waiting. Raises asyncio.QueueFull for a stalled reader."""
        if self.closed:
            raise ConnectionError(f"subscriber {self.id} is closed")
        self.queue.put_nowait(payload)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # None tells the stream generator to stop
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class SubscriberHub:
    """
    The set of live event-stream subscribers.

    Every subscriber gets the full snapshot on subscribe and again after each
    successful write. Broadcasting never waits on a socket: payloads are
    queued per subscriber and written by that subscriber's own stream. A
    subscriber whose queue is full or that has gone away is dropped without
    affecting the others.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Set[Subscriber] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, snapshot: Dict[str, Any]) -> Subscriber:
        subscriber = Subscriber(self.queue_size)
        subscriber.push(format_event(snapshot))
        self._subscribers.add(subscriber)
        logger.debug("[stream] subscriber %d connected (%d total)", subscriber.id, len(self._subscribers))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.close()
        if subscriber in self._subscribers:
            self._subscribers.discard(subscriber)
            logger.debug("[stream] subscriber %d disconnected (%d total)", subscriber.id, len(self._subscribers))

    def broadcast(self, snapshot: Dict[str, Any]) -> int:
        """Queue `snapshot` for every subscriber. Returns how many received it."""
        payload = format_event(snapshot)
        delivered = 0
        # iterate a copy: failing subscribers are removed as we go
        for subscriber in list(self._subscribers):
            try:
                subscriber.push(payload)
                delivered += 1
            except (asyncio.QueueFull, ConnectionError) as e:
                logger.warning("[stream] dropping subscriber %d: %s", subscriber.id, str(e) or "queue full")
                self.unsubscribe(subscriber)
        return delivered

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            self.unsubscribe(subscriber)


async def event_stream(
    hub: SubscriberHub,
    subscriber: Subscriber,
    keepalive_seconds: Optional[float],
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one subscriber until it is closed or the client leaves.

    A comment-only keep-alive line is sent whenever nothing else was sent for
    `keepalive_seconds`; before each one `is_disconnected` is polled. Server
    side cancellation on disconnect also ends the generator. The subscriber is
    always removed from the hub on the way out.
    """
    try:
        while not subscriber.closed:
            try:
                payload = await asyncio.wait_for(subscriber.queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    break
                yield KEEPALIVE_COMMENT
                continue
            if payload is None:
                break
            yield payload
    finally:
        hub.unsubscribe(subscriber)


async def open_stream(
    hub: SubscriberHub,
    snapshot: Callable[[], Dict[str, Any]],
    keepalive_seconds: Optional[float],
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Subscribe on first iteration, then stream as `event_stream` does.

    A response that is never iterated leaves nothing registered in the hub.
    """
    subscriber = hub.subscribe(snapshot())
    try:
        async for frame in event_stream(hub, subscriber, keepalive_seconds, is_disconnected):
            yield frame
    finally:
        hub.unsubscribe(subscriber)
