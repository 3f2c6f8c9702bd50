"""
WebSocket event schema for conversation updates.

Events are sent through the Channels layer to the conversation's group and
forwarded to every socket the owner has open on that conversation.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List


class EventType(str, Enum):
    """Types of WebSocket events."""
    CITATIONS_READY = "citations.ready"


@dataclass
class CitationsReadyEvent:
    """
    Sent when citations have been attached to an assistant message.

    Schema:
    {
        "conversationId": "uuid-string",
        "messageId": "uuid-string",
        "citations": [{"documentName": ..., "chunkText": ...}, ...]
    }
    """
    conversationId: str
    messageId: str
    citations: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversationId,
            "messageId": self.messageId,
            "citations": self.citations,
        }


GROUP_PREFIX = "conversation"


def get_group_name(conversation_id: str) -> str:
    """Channels group for one conversation."""
    return f"{GROUP_PREFIX}_{conversation_id}"
