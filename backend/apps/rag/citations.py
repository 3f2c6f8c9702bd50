"""
Citation extraction from Gemini grounding metadata.

The streaming chat call does not expose grounding metadata, so once the
answer has been delivered the conversation is sent again with the File
Search tool enabled and the grounding chunks of that response are turned
into citations.

Extraction is best effort: every failure is logged and yields an empty list.
"""
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .llm_client import GeminiClient, LLMMessage, file_search_tool, get_llm_client

logger = logging.getLogger(__name__)

UNKNOWN_DOCUMENT = "Unknown Document"


@dataclass(frozen=True)
class Citation:
    """A source chunk backing part of an assistant answer."""
    document_name: str
    chunk_text: str
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    confidence: Optional[float] = None

    @property
    def key(self) -> tuple:
        return (self.document_name, self.chunk_text)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "documentName": self.document_name,
            "chunkText": self.chunk_text,
        }
        if self.start_index is not None:
            data["startIndex"] = self.start_index
        if self.end_index is not None:
            data["endIndex"] = self.end_index
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Citation':
        return cls(
            document_name=data["documentName"],
            chunk_text=data["chunkText"],
            start_index=data.get("startIndex"),
            end_index=data.get("endIndex"),
            confidence=data.get("confidence"),
        )


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class WebSource:
    uri: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional['WebSource']:
        if not isinstance(data, dict):
            return None
        return cls(uri=_text(data.get("uri")), title=_text(data.get("title")))


@dataclass(frozen=True)
class RetrievedContext:
    uri: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional['RetrievedContext']:
        if not isinstance(data, dict):
            return None
        return cls(
            uri=_text(data.get("uri")),
            title=_text(data.get("title")),
            text=_text(data.get("text")),
        )


@dataclass(frozen=True)
class GroundingChunk:
    """One entry of ``groundingMetadata.groundingChunks``; every field is optional."""
    web: Optional[WebSource] = None
    retrieved_context: Optional[RetrievedContext] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'GroundingChunk':
        if not isinstance(data, dict):
            return cls()
        return cls(
            web=WebSource.from_dict(data.get("web")),
            retrieved_context=RetrievedContext.from_dict(data.get("retrievedContext")),
        )


def chunk_to_citation(chunk: GroundingChunk) -> Optional[Citation]:
    """
    Map a grounding chunk to a citation, or None when it carries no text.

    Name preference: context title, web title, context uri, web uri.
    Text preference: context text, then web uri.
    """
    web = chunk.web or WebSource()
    context = chunk.retrieved_context or RetrievedContext()

    document_name = context.title or web.title or context.uri or web.uri or UNKNOWN_DOCUMENT
    chunk_text = context.text or web.uri or ""

    if not chunk_text.strip():
        return None
    return Citation(document_name=document_name, chunk_text=chunk_text)


def deduplicate_citations(citations: List[Citation]) -> List[Citation]:
    """Drop repeated (document_name, chunk_text) pairs, keeping first-seen order."""
    seen = set()
    unique = []
    for citation in citations:
        if citation.key in seen:
            continue
        seen.add(citation.key)
        unique.append(citation)
    return unique


def grounding_chunks(response: Dict[str, Any]) -> List[GroundingChunk]:
    """Grounding chunks of the first candidate, tolerating missing levels."""
    candidates = response.get("candidates") if isinstance(response, dict) else None
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return []

    metadata = candidates[0].get("groundingMetadata")
    if not isinstance(metadata, dict):
        return []

    chunks = metadata.get("groundingChunks")
    if not isinstance(chunks, list):
        return []
    return [GroundingChunk.from_dict(chunk) for chunk in chunks]


def parse_citations(response: Dict[str, Any]) -> List[Citation]:
    """Turn a generateContent response into a deduplicated citation list."""
    citations = []
    for chunk in grounding_chunks(response):
        citation = chunk_to_citation(chunk)
        if citation is not None:
            citations.append(citation)
    return deduplicate_citations(citations)


class ExtractionStage(str, enum.Enum):
    PENDING = "pending"
    STORE_RESOLVED = "store_resolved"
    QUERIED = "queried"
    PARSED = "parsed"
    DONE = "done"


class CitationExtractor:
    """
    Recover citations for a finished turn.

    ``store_id`` may be passed when the caller already resolved the agent's
    store; otherwise the resolver is consulted.
    """

    def __init__(self, llm_client: Optional[GeminiClient] = None, resolver=None):
        self._llm_client = llm_client
        self._resolver = resolver

    @property
    def llm_client(self) -> GeminiClient:
        if self._llm_client is None:
            self._llm_client = get_llm_client()
        return self._llm_client

    @property
    def resolver(self):
        if self._resolver is None:
            from apps.filesearch.resolver import get_resolver
            self._resolver = get_resolver()
        return self._resolver

    async def extract(
        self,
        turns: List[LLMMessage],
        agent_id: str,
        model_name: str,
        store_id: Optional[str] = None,
    ) -> List[Citation]:
        """Return deduplicated citations for the conversation, or [] on any failure."""
        started = time.monotonic()
        stage = ExtractionStage.PENDING
        citations: List[Citation] = []

        try:
            if not store_id:
                store_id = (await self.resolver.resolve(agent_id)).store_id
            stage = ExtractionStage.STORE_RESOLVED

            response = await self.llm_client.generate_content(
                turns,
                tools=[file_search_tool([store_id])],
                model=model_name,
            )
            stage = ExtractionStage.QUERIED

            citations = parse_citations(response)
            stage = ExtractionStage.PARSED

        except Exception as e:
            logger.warning(f"Citation extraction failed for {agent_id} after stage {stage.value}: {e}")
            citations = []
        stage = ExtractionStage.DONE

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Citation extraction for {agent_id}: {len(citations)} citations, "
            f"stage={stage.value}, {duration_ms}ms"
        )
        return citations


async def extract_citations(
    turns: List[LLMMessage],
    agent_id: str,
    model_name: str,
    store_id: Optional[str] = None,
) -> List[Citation]:
    """Extract citations with the default client and resolver."""
    return await CitationExtractor().extract(turns, agent_id, model_name, store_id=store_id)
