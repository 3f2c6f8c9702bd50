"""
Gemini API client.

Async wrapper around the Generative Language REST API with two entry points:
- stream_chat: token stream for the user-facing answer
- generate_content: single JSON response, which carries grounding metadata

The streaming endpoint does not surface grounding metadata, which is why
citations are recovered with a second, non-streaming call.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

API_VERSION = "v1beta"


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str


class LLMError(Exception):
    """Raised when LLM call fails."""
    pass


def file_search_tool(store_names: List[str]) -> Dict[str, Any]:
    """Build the File Search retrieval tool for the given stores."""
    return {"fileSearch": {"fileSearchStoreNames": list(store_names)}}


def to_gemini_contents(messages: List[LLMMessage]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """
    Convert chat messages to Gemini "contents".

    System messages become the system instruction; user stays user and
    every other role is sent as "model".
    """
    system_instruction = None
    contents = []

    for msg in messages:
        if msg.role == "system":
            system_instruction = msg.content
            continue
        contents.append({
            "role": "user" if msg.role == "user" else "model",
            "parts": [{"text": msg.content}]
        })

    return system_instruction, contents


def candidate_texts(data: Dict[str, Any]) -> List[str]:
    """Text parts of the first candidate in a response (or stream chunk)."""
    candidates = data.get("candidates") or []
    if not candidates:
        return []
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return [part["text"] for part in parts if part.get("text") and not part.get("thought")]


def _error_message(error: httpx.HTTPStatusError) -> str:
    try:
        return error.response.json().get("error", {}).get("message", str(error))
    except ValueError:
        return str(error)


class GeminiClient:
    """LLM client for Google Gemini API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, 'GEMINI_API_KEY', '')
        self.model = model or getattr(settings, 'GEMINI_MODEL', 'gemini-2.5-flash')
        self.base_url = (base_url or getattr(settings, 'GEMINI_BASE_URL', 'https://generativelanguage.googleapis.com')).rstrip('/')
        self.timeout = timeout or getattr(settings, 'GEMINI_TIMEOUT', 120)
        self._transport = transport

        if not self.api_key:
            raise LLMError("GEMINI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=float(self.timeout),
            transport=self._transport,
            headers={"x-goog-api-key": self.api_key},
        )

    def _build_request(
        self,
        messages: List[LLMMessage],
        system_instruction: Optional[str],
        tools: Optional[List[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        inline_system, contents = to_gemini_contents(messages)
        system_instruction = system_instruction or inline_system

        request_body: Dict[str, Any] = {"contents": contents}
        if system_instruction:
            request_body["systemInstruction"] = {
                "parts": [{"text": system_instruction}]
            }
        if tools:
            request_body["tools"] = tools
        return request_body

    async def generate_content(
        self,
        messages: List[LLMMessage],
        system_instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a non-streaming generateContent request.

        Returns:
            The raw response JSON, including any groundingMetadata

        Raises:
            LLMError: If the request fails
        """
        model = model or self.model
        logger.info(f"Calling Gemini API: model={model}, tools={len(tools or [])}")

        url = f"{self.base_url}/{API_VERSION}/models/{model}:generateContent"
        request_body = self._build_request(messages, system_instruction, tools)

        try:
            async with self._client() as client:
                response = await client.post(url, json=request_body)
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            logger.error(f"Gemini HTTP error: {e}")
            raise LLMError(f"Gemini API error: {_error_message(e)}") from e
        except httpx.TimeoutException as e:
            logger.error("Gemini request timed out")
            raise LLMError("Gemini API timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Gemini connection error: {e}")
            raise LLMError("Could not connect to Gemini API") from e
        except ValueError as e:
            raise LLMError("Invalid JSON from Gemini API") from e

        if not data.get("candidates"):
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            if reason:
                raise LLMError(f"Request blocked by Gemini: {reason}")
            raise LLMError("No response from Gemini API")

        return data

    async def stream_chat(
        self,
        messages: List[LLMMessage],
        system_instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Stream the model's answer as text deltas.

        Raises:
            LLMError: If the request fails before or during the stream
        """
        model = model or self.model
        logger.info(f"Streaming from Gemini API: model={model}, turns={len(messages)}")

        url = f"{self.base_url}/{API_VERSION}/models/{model}:streamGenerateContent"
        request_body = self._build_request(messages, system_instruction, tools)
        total_chars = 0

        try:
            async with self._client() as client:
                async with client.stream("POST", url, params={"alt": "sse"}, json=request_body) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if not payload:
                            continue
                        for text in candidate_texts(json.loads(payload)):
                            total_chars += len(text)
                            yield text

        except httpx.HTTPStatusError as e:
            logger.error(f"Gemini HTTP error: {e}")
            raise LLMError(f"Gemini API error: {_error_message(e)}") from e
        except httpx.TimeoutException as e:
            logger.error("Gemini stream timed out")
            raise LLMError("Gemini API timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Gemini connection error: {e}")
            raise LLMError("Could not connect to Gemini API") from e
        except json.JSONDecodeError as e:
            logger.error(f"Malformed Gemini stream chunk: {e}")
            raise LLMError("Invalid stream from Gemini API") from e

        logger.info(f"Gemini stream finished: {total_chars} chars")


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[GeminiClient] = None


def get_llm_client() -> GeminiClient:
    """Get the configured Gemini client instance."""
    global _client_instance
    if _client_instance is None:
        _client_instance = GeminiClient()
    return _client_instance


def reset_llm_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None
