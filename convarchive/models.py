"""
Canonical records produced by the ingestion engine.

Every source format (tree exports, flat JSON, transcripts) ends up as a list of
Conversation objects holding Message objects. Both are immutable once built.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Sequence

import pendulum

# ===| ENUMS |===

class Role(StrEnum):
    """The two-valued speaker axis every label collapses into."""
    HUMAN = "human"
    ASSISTANT = "assistant"

class FormatVariant(StrEnum):
    """Closed set of source formats the engine understands."""
    TREE_MAPPING = "tree_mapping"
    FLAT_MESSAGES = "flat_messages"
    TRANSCRIPT_TEXT = "transcript_text"

UNKNOWN_PLATFORM = "Unknown"
DEFAULT_TITLE = "Untitled Conversation"

ISO_UTC_MILLIS = "YYYY-MM-DD[T]HH:mm:ss.SSS[Z]"

# ===| ERRORS |===

class TreeStructureError(ValueError):
    """A node mapping has no resolvable canonical path (cycle, dangling parent, no root)."""

class ArchiveError(ValueError):
    """A bundle could not be read as an archive."""

class UnrecognizedShapeError(ValueError):
    """Parsed JSON does not look like any supported conversation export."""

# ===| RECORDS |===

@dataclass(frozen=True)
class Message:
    """
    One conversational turn.

    - id: unique within the owning conversation
    - timestamp: UTC instant; the batch ingestion time when the source had none
    - role: Role.HUMAN or Role.ASSISTANT
    - content: trimmed, never empty
    - platform: copied from the owning conversation
    - metadata: platform-specific extras (model slug, node id, ...)
    """

    id: str
    timestamp: pendulum.DateTime
    role: Role
    content: str
    platform: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.in_timezone("UTC").format(ISO_UTC_MILLIS),
            "role": str(self.role),
            "content": self.content,
            "platform": self.platform,
            "metadata": dict(self.metadata),
        }

@dataclass(frozen=True)
class Conversation:
    """
    An ordered sequence of messages plus provenance.

    start_date / end_date are derived from the messages; use Conversation.build()
    rather than the constructor so they can never disagree with the messages.
    """

    id: str
    title: str
    platform: str
    start_date: pendulum.DateTime
    end_date: pendulum.DateTime
    messages: tuple[Message, ...]
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        conversation_id: str,
        title: str | None,
        platform: str,
        messages: Sequence[Message],
        metadata: dict[str, Any] | None = None,
    ) -> "Conversation":
        """Create a conversation, deriving its date bounds from the messages."""
        if not messages:
            raise ValueError(f"Conversation {conversation_id} has no messages")

        timestamps = [m.timestamp for m in messages]
        return cls(
            id=conversation_id,
            title=title or DEFAULT_TITLE,
            platform=platform,
            start_date=min(timestamps),
            end_date=max(timestamps),
            messages=tuple(messages),
            metadata=dict(metadata or {}),
        )

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "platform": self.platform,
            "startDate": self.start_date.in_timezone("UTC").format(ISO_UTC_MILLIS),
            "endDate": self.end_date.in_timezone("UTC").format(ISO_UTC_MILLIS),
            "messages": [m.to_dict() for m in self.messages],
            "metadata": dict(self.metadata),
        }
