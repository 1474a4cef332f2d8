"""Live fan-out of operation events to subscribers."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Event names
LOG = 'log'
STATUS = 'status'
DONE = 'done'

Sink = Callable[['Event'], None]


@dataclass
class Event:
    """One streamed event: log text, a status change, or the final done marker."""
    event: str
    data: dict[str, Any]

    def to_sse(self) -> str:
        """Server-sent-events wire form."""
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


class OutputBroadcaster:
    """Pub/sub keyed by operation id.

    A sink that raises is dropped so one broken consumer cannot affect
    others or the publisher.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Sink]] = {}

    def subscribe(self, op_id: str, sink: Sink) -> Callable[[], None]:
        """Register a sink. Returns a callable that unsubscribes it."""
        self._subscribers.setdefault(op_id, []).append(sink)

        def unsubscribe() -> None:
            self._remove(op_id, sink)

        return unsubscribe

    def _remove(self, op_id: str, sink: Sink) -> None:
        sinks = self._subscribers.get(op_id)
        if not sinks:
            return
        if sink in sinks:
            sinks.remove(sink)
        if not sinks:
            del self._subscribers[op_id]

    def subscriber_count(self, op_id: str) -> int:
        return len(self._subscribers.get(op_id, ()))

    def publish(self, op_id: str, event: Event) -> None:
        for sink in list(self._subscribers.get(op_id, ())):
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"Dropping subscriber for {op_id}: {e}")
                self._remove(op_id, sink)

    def log(self, op_id: str, text: str) -> None:
        self.publish(op_id, Event(LOG, {'text': text}))

    def status(self, op_id: str, status: str) -> None:
        self.publish(op_id, Event(STATUS, {'status': status}))

    def done(self, op_id: str, status: str, error: str | None = None) -> None:
        data = {'status': status}
        if error:
            data['error'] = error
        self.publish(op_id, Event(DONE, data))


class QueueSink:
    """Sink that buffers events in an asyncio.Queue for an async consumer."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, event: Event) -> None:
        # QueueFull propagates so the broadcaster drops a stalled consumer
        self.queue.put_nowait(event)

    async def get(self) -> Event:
        return await self.queue.get()
