"""
Shared fixtures.

Process-wide singletons (limiter, resolver, Gemini client, chat pipeline)
are dropped after every test so state never leaks between tests.
"""
import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from apps.authn.ratelimit import reset_limiter
from apps.filesearch.cache import StoreHandle
from apps.filesearch.resolver import reset_resolver
from apps.rag.chat import reset_pipeline
from apps.rag.llm_client import GeminiClient, reset_llm_client


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch, settings):
    monkeypatch.delenv('DISABLE_RATE_LIMITING', raising=False)
    settings.RATE_LIMIT_REDIS_URL = ''
    yield
    reset_limiter()
    reset_resolver()
    reset_llm_client()
    reset_pipeline()


@pytest.fixture
def store_handle():
    return StoreHandle(
        id=str(uuid.uuid4()),
        agent_id='research-assistant',
        store_id='fileSearchStores/research-assistant-store-abc123',
        name='research-assistant-store',
        description='File Search store for research-assistant agent',
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def sse_body(*texts: str) -> bytes:
    """A Gemini streamGenerateContent?alt=sse body yielding the given texts."""
    lines = []
    for text in texts:
        chunk = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
        lines.append(f"data: {json.dumps(chunk)}\r\n\r\n")
    return "".join(lines).encode()


def grounded_response(*chunks: dict, text: str = "answer") -> dict:
    """A Gemini generateContent response carrying grounding chunks."""
    return {
        "candidates": [{
            "content": {"role": "model", "parts": [{"text": text}]},
            "groundingMetadata": {"groundingChunks": list(chunks)},
        }]
    }


class GeminiStub:
    """
    httpx handler faking the Gemini REST API.

    Records every request; streaming and non-streaming responses can be
    replaced per test.
    """

    def __init__(self, stream_texts=("Hello", " world"), grounding=None):
        self.stream_texts = stream_texts
        self.grounding = grounding if grounding is not None else grounded_response()
        self.requests = []
        self.fail_generate = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith(':streamGenerateContent'):
            return httpx.Response(
                200,
                content=sse_body(*self.stream_texts),
                headers={'content-type': 'text/event-stream'},
            )
        if path.endswith(':generateContent'):
            if self.fail_generate:
                return httpx.Response(500, json={"error": {"message": "internal"}})
            return httpx.Response(200, json=self.grounding)
        return httpx.Response(404, json={"error": {"message": f"unexpected {path}"}})

    def bodies(self, suffix: str):
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(suffix)]


@pytest.fixture
def gemini_stub():
    return GeminiStub()


@pytest.fixture
def grounded():
    """Builder for generateContent responses with grounding chunks."""
    return grounded_response


@pytest.fixture
def caller():
    """Headers identifying the caller the way the upstream auth layer does."""
    return {'X-User-Id': 'user-1'}


async def read_sse(response) -> list:
    """Decoded ``data:`` events of a streamed text/event-stream response."""
    body = b''.join([chunk async for chunk in response.streaming_content]).decode()
    return [
        json.loads(line[len('data: '):])
        for line in body.splitlines()
        if line.startswith('data: ')
    ]


@pytest.fixture
def sse_events():
    return read_sse


def make_gemini_client(handler) -> GeminiClient:
    return GeminiClient(
        api_key='test-key',
        model='gemini-2.5-flash',
        base_url='https://gemini.test',
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def gemini(gemini_stub):
    """GeminiClient talking to ``gemini_stub``."""
    return make_gemini_client(gemini_stub)
