"""Async event queue decoupling the conversation flow from memory extraction."""

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from nanomem.bus.events import ConversationEvent

EventHandler = Callable[[ConversationEvent], Awaitable[None]]


class MemoryEventBus:
    """
    Async bus between the conversation loop and the memory pipeline.

    Producers publish immutable events and return immediately; a single
    dispatcher task hands each event to the subscribed handlers. A failing
    handler never reaches the producer.
    """

    def __init__(self):
        # Unbounded: publishing never waits on a slow extraction pipeline.
        self.events: asyncio.Queue[ConversationEvent] = asyncio.Queue()
        self._subscribers: list[EventHandler] = []
        self._running = False

    # Producer side

    async def publish(self, event: ConversationEvent) -> None:
        """Publish a conversation event (never blocks on the unbounded queue)."""
        await self.events.put(event)

    def publish_nowait(self, event: ConversationEvent) -> None:
        """Publish from synchronous code."""
        self.events.put_nowait(event)

    # Consumer side

    def subscribe(self, handler: EventHandler) -> None:
        """Register a handler invoked for every dispatched event."""
        self._subscribers.append(handler)

    async def dispatch(self) -> None:
        """
        Dispatch events to subscribers.
        Run this as a background task.
        """
        self._running = True
        while self._running:
            # The timeout lets the loop notice stop() while the queue is empty.
            try:
                event = await asyncio.wait_for(self.events.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            # Handlers run in subscription order; one failure does not skip the rest.
            for handler in self._subscribers:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Error handling event {event.message_id} from {event.conversation_id}: {e}")
            self.events.task_done()

    async def drain(self) -> None:
        """Wait until every published event has been dispatched."""
        await self.events.join()

    def stop(self) -> None:
        """Stop the dispatcher loop after the event in hand."""
        self._running = False

    @property
    def pending(self) -> int:
        """Number of events waiting to be dispatched."""
        return self.events.qsize()
