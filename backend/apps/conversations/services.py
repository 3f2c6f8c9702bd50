"""
Conversation persistence used by the chat pipeline.

Includes the write path for citations recovered after a reply was streamed
and the notification sent to open WebSocket connections.
"""
import logging
import uuid
from typing import List, Optional

from asgiref.sync import sync_to_async
from channels.layers import get_channel_layer
from django.db import transaction
from django.utils import timezone

from .events import CitationsReadyEvent, EventType, get_group_name
from .models import Conversation, Message, MessageRole

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 80


def parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def title_from_message(content: str) -> str:
    title = " ".join(content.split())
    if len(title) > TITLE_MAX_LENGTH:
        title = title[:TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return title


async def get_owned_conversation(conversation_id, user_id: str) -> Optional[Conversation]:
    """Fetch a conversation if it exists and belongs to the user."""
    conversation_uuid = parse_uuid(conversation_id)
    if conversation_uuid is None or not user_id:
        return None
    return await Conversation.objects.filter(id=conversation_uuid, user_id=user_id).afirst()


def _save_exchange(conversation: Conversation, user_content: str, reply: str) -> Message:
    with transaction.atomic():
        Message.objects.create(
            conversation=conversation,
            role=MessageRole.USER,
            content=user_content,
        )
        assistant = Message.objects.create(
            conversation=conversation,
            role=MessageRole.ASSISTANT,
            content=reply,
        )

        updates = {'updated_at': timezone.now()}
        if not conversation.title and user_content.strip():
            updates['title'] = title_from_message(user_content)
        Conversation.objects.filter(id=conversation.id).update(**updates)

    return assistant


async def save_exchange(conversation: Conversation, user_content: str, reply: str) -> Message:
    """
    Persist the user's turn and the assistant reply in one transaction.

    Returns:
        The assistant message, which later receives citations
    """
    assistant = await sync_to_async(_save_exchange)(conversation, user_content, reply)
    logger.debug(f"Saved exchange in conversation {conversation.id}: assistant message {assistant.id}")
    return assistant


async def attach_citations(message_id, citations: List) -> bool:
    """
    Store citations on a message row.

    Args:
        message_id: Assistant message id
        citations: Citation objects (anything with ``to_dict()``)

    Returns:
        True if the message exists and was updated
    """
    updated = await Message.objects.filter(id=message_id).aupdate(
        citations=[citation.to_dict() for citation in citations]
    )
    if not updated:
        logger.warning(f"Cannot attach citations: message {message_id} not found")
    return bool(updated)


async def publish_citations_ready(conversation_id, message_id, citations: List) -> None:
    """Notify WebSocket clients watching the conversation."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("Channel layer not available, cannot send event")
        return

    event = CitationsReadyEvent(
        conversationId=str(conversation_id),
        messageId=str(message_id),
        citations=[citation.to_dict() for citation in citations],
    )
    group_name = get_group_name(str(conversation_id))

    try:
        await channel_layer.group_send(
            group_name,
            {
                "type": EventType.CITATIONS_READY.value,
                "data": event.to_dict(),
            }
        )
        logger.debug(f"Published {EventType.CITATIONS_READY.value} to {group_name}")
    except Exception as e:
        # Citations are already stored; clients pick them up on the next fetch
        logger.warning(f"Failed to publish event: {e}")
