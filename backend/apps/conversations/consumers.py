"""
WebSocket consumer for conversation updates.

Clients connect to /ws/conversations/<id> to be told when citations for an
assistant message become available.
"""
import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from .events import EventType, get_group_name
from .services import get_owned_conversation

logger = logging.getLogger(__name__)


class ConversationConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer that:
    1. Identifies the caller (from CallerIdentityWebSocketMiddleware)
    2. Checks the conversation belongs to the caller
    3. Joins the conversation's channel group and forwards its events
    """

    async def connect(self):
        """Handle new WebSocket connection."""
        self.user_id = self.scope.get("user_id")
        conversation_id = self.scope["url_route"]["kwargs"]["conversation_id"]

        if not self.user_id:
            logger.warning("Rejecting unauthenticated WebSocket connection")
            await self.close(code=4001)
            return

        conversation = await get_owned_conversation(conversation_id, self.user_id)
        if conversation is None:
            logger.warning(f"Rejecting WebSocket for conversation {conversation_id}: not found for user {self.user_id}")
            await self.close(code=4004)
            return

        self.conversation_id = str(conversation.id)
        self.group_name = get_group_name(self.conversation_id)

        await self.channel_layer.group_add(
            self.group_name,
            self.channel_name
        )
        await self.accept()

        logger.info(f"WebSocket connected for conversation {self.conversation_id}")

        await self.send_json({
            "type": "connected",
            "conversationId": self.conversation_id,
        })

    async def disconnect(self, close_code):
        """Handle WebSocket disconnect."""
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(
                self.group_name,
                self.channel_name
            )
            logger.info(f"WebSocket disconnected for conversation {self.conversation_id} (code={close_code})")

    async def receive_json(self, content):
        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def citations_ready(self, event):
        """Handle citations.ready events from channel layer."""
        await self.send_json({
            "type": EventType.CITATIONS_READY.value,
            "data": event["data"]
        })
