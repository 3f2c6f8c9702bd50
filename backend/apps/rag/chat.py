"""
Chat pipeline for grounded agents.

Streams the answer from Gemini with the agent's File Search store attached,
persists the exchange, then recovers citations in the background and
attaches them to the stored assistant message.
"""
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from django.conf import settings
from django.db import DatabaseError

from apps.authn.audit import audit_citations_attached
from apps.conversations import services as conversations
from apps.filesearch.cache import StoreHandle
from apps.filesearch.resolver import StoreResolutionError, StoreResolver, get_resolver
from .agents import get_system_prompt
from .background import spawn
from .citations import CitationExtractor
from .llm_client import GeminiClient, LLMError, LLMMessage, file_search_tool, get_llm_client

logger = logging.getLogger(__name__)

MAX_TURNS = 100
MAX_TURN_LENGTH = 32000


class ChatValidationError(Exception):
    """Raised when the submitted conversation is malformed."""
    pass


def parse_turns(raw: Any) -> List[LLMMessage]:
    """
    Validate client-supplied turns.

    The list must be non-empty, end with a user turn and contain only
    ``user`` or ``assistant`` roles with string content.
    """
    if not isinstance(raw, list) or not raw:
        raise ChatValidationError("messages must be a non-empty list")
    if len(raw) > MAX_TURNS:
        raise ChatValidationError(f"at most {MAX_TURNS} messages are allowed")

    turns = []
    for item in raw:
        if not isinstance(item, dict):
            raise ChatValidationError("each message must be an object")
        role = item.get("role")
        content = item.get("content")
        if role not in ("user", "assistant"):
            raise ChatValidationError('message role must be "user" or "assistant"')
        if not isinstance(content, str) or not content.strip():
            raise ChatValidationError("message content must be a non-empty string")
        if len(content) > MAX_TURN_LENGTH:
            raise ChatValidationError(f"message content exceeds {MAX_TURN_LENGTH} characters")
        turns.append(LLMMessage(role=role, content=content))

    if turns[-1].role != "user":
        raise ChatValidationError("the last message must be from the user")
    return turns


class ChatPipeline:
    """Streams one chat turn and schedules citation recovery for it."""

    def __init__(
        self,
        llm_client: Optional[GeminiClient] = None,
        resolver: Optional[StoreResolver] = None,
        extractor: Optional[CitationExtractor] = None,
        allow_ungrounded: Optional[bool] = None,
    ):
        self._llm_client = llm_client
        self._resolver = resolver
        self._extractor = extractor
        if allow_ungrounded is None:
            allow_ungrounded = getattr(settings, 'CHAT_ALLOW_UNGROUNDED', False)
        self.allow_ungrounded = allow_ungrounded

    @property
    def llm_client(self) -> GeminiClient:
        if self._llm_client is None:
            self._llm_client = get_llm_client()
        return self._llm_client

    @property
    def resolver(self) -> StoreResolver:
        if self._resolver is None:
            self._resolver = get_resolver()
        return self._resolver

    @property
    def extractor(self) -> CitationExtractor:
        if self._extractor is None:
            self._extractor = CitationExtractor(llm_client=self.llm_client, resolver=self.resolver)
        return self._extractor

    async def resolve_store(self, agent_id: str) -> Optional[StoreHandle]:
        """
        Resolve the agent's store before the response starts.

        Returns None only when ungrounded chat is allowed.

        Raises:
            StoreResolutionError: If the store is unavailable
        """
        try:
            return await self.resolver.resolve(agent_id)
        except StoreResolutionError as e:
            if not self.allow_ungrounded:
                raise
            logger.warning(f"Continuing without File Search for {agent_id}: {e}")
            return None

    async def stream(
        self,
        agent_id: str,
        turns: List[LLMMessage],
        store: Optional[StoreHandle],
        conversation=None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield stream events for one turn.

        Events:
            {"type": "text", "delta": "..."}
            {"type": "error", "message": "..."}   (stream aborted)
            {"type": "done", "messageId": "<uuid>" | None}
        """
        tools = [file_search_tool([store.store_id])] if store else None
        deltas = []

        try:
            async for delta in self.llm_client.stream_chat(
                turns,
                system_instruction=get_system_prompt(agent_id),
                tools=tools,
            ):
                deltas.append(delta)
                yield {"type": "text", "delta": delta}
        except LLMError as e:
            logger.error(f"Chat stream failed for {agent_id}: {e}")
            yield {"type": "error", "message": "The model could not complete the answer. Please retry."}
            return

        reply = "".join(deltas)
        message_id = None

        if conversation is not None and reply:
            try:
                assistant = await conversations.save_exchange(conversation, turns[-1].content, reply)
                message_id = str(assistant.id)
            except DatabaseError as e:
                logger.error(f"Could not save exchange for conversation {conversation.id}: {e}")

        if message_id and store:
            spawn(
                self.attach_citations(
                    message_id,
                    str(conversation.id),
                    turns,
                    agent_id,
                    store.store_id,
                ),
                name=f"citations-{message_id}",
            )

        yield {"type": "done", "messageId": message_id}

    async def attach_citations(
        self,
        message_id: str,
        conversation_id: str,
        turns: List[LLMMessage],
        agent_id: str,
        store_id: str,
    ) -> int:
        """
        Extract citations for a stored reply and write them to the message.

        Returns:
            Number of citations attached
        """
        started = time.monotonic()
        citations = await self.extractor.extract(
            turns,
            agent_id,
            self.llm_client.model_name,
            store_id=store_id,
        )
        if not citations:
            return 0

        try:
            attached = await conversations.attach_citations(message_id, citations)
        except DatabaseError as e:
            logger.error(f"Could not attach citations to message {message_id}: {e}")
            return 0
        if not attached:
            return 0

        await conversations.publish_citations_ready(conversation_id, message_id, citations)

        duration_ms = int((time.monotonic() - started) * 1000)
        audit_citations_attached(message_id, len(citations), duration_ms)
        logger.info(f"Attached {len(citations)} citations to message {message_id}")
        return len(citations)


_pipeline: Optional[ChatPipeline] = None


def get_pipeline() -> ChatPipeline:
    """Get the process-wide chat pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ChatPipeline()
    return _pipeline


def reset_pipeline():
    global _pipeline
    _pipeline = None
