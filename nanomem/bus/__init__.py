"""Message bus carrying conversation events to the memory pipeline."""

from nanomem.bus.events import ConversationEvent
from nanomem.bus.queue import MemoryEventBus

__all__ = ["ConversationEvent", "MemoryEventBus"]
