"""Event types for the memory bus."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal


@dataclass(frozen=True)
class ConversationEvent:
    """A message observed in a conversation (user or assistant)."""

    role: Literal["user", "assistant"]
    content: str
    conversation_id: str
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_type(self) -> str:
        """Provenance tag for memories extracted from this event."""
        return "user_message" if self.role == "user" else "assistant_message"
