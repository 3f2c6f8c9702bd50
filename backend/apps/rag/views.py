"""
Chat API views.

Provides endpoints for:
- POST /api/chat - Stream an agent's answer as Server-Sent Events
- GET /api/chat/agents - List the configured agents
"""
import json
import logging

from django.http import JsonResponse, StreamingHttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.authn.middleware import auth_required
from apps.authn.ratelimit import rate_limited
from apps.conversations.services import get_owned_conversation
from apps.filesearch.resolver import StoreResolutionError
from .agents import is_valid_agent_id, list_agents
from .chat import ChatValidationError, get_pipeline, parse_turns

logger = logging.getLogger(__name__)


def sse_event(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
@rate_limited('chat')
async def chat(request):
    """
    POST /api/chat

    Request body:
        {
            "agentId": "research-assistant",
            "messages": [{"role": "user", "content": "..."}],
            "conversationId": "optional uuid"
        }

    Response: text/event-stream of
        data: {"type": "text", "delta": "..."}
        data: {"type": "done", "messageId": "uuid" | null}

    Citations for the stored reply arrive later through
    GET /api/conversations/<id>/messages/<mid>/citations or the
    conversation WebSocket.
    """
    try:
        body = json.loads(request.body or b'{}')
    except (ValueError, UnicodeDecodeError):
        return JsonResponse({'error': 'Invalid JSON body', 'code': 'INVALID_JSON'}, status=400)
    if not isinstance(body, dict):
        return JsonResponse({'error': 'Invalid JSON body', 'code': 'INVALID_JSON'}, status=400)

    agent_id = body.get('agentId')
    if not is_valid_agent_id(agent_id):
        return JsonResponse({'error': 'agentId is required', 'code': 'INVALID_AGENT'}, status=400)

    try:
        turns = parse_turns(body.get('messages'))
    except ChatValidationError as e:
        return JsonResponse({'error': str(e), 'code': 'INVALID_MESSAGES'}, status=400)

    conversation = None
    conversation_id = body.get('conversationId')
    if conversation_id:
        conversation = await get_owned_conversation(conversation_id, request.user_id)
        if conversation is None or conversation.agent_id != agent_id:
            return JsonResponse({'error': 'Conversation not found', 'code': 'NOT_FOUND'}, status=404)

    pipeline = get_pipeline()

    try:
        store = await pipeline.resolve_store(agent_id)
    except StoreResolutionError as e:
        logger.error(f"Store unavailable for {agent_id}: {e}")
        return JsonResponse(
            {
                'error': 'The document store for this agent is unavailable. Please retry.',
                'code': 'STORE_UNAVAILABLE',
                'retryable': True,
            },
            status=503
        )

    logger.info(
        f"Chat request: agent={agent_id}, turns={len(turns)}, "
        f"conversation={conversation.id if conversation else None}, grounded={store is not None}"
    )

    async def event_stream():
        async for event in pipeline.stream(agent_id, turns, store, conversation=conversation):
            yield sse_event(event)

    response = StreamingHttpResponse(event_stream(), content_type='text/event-stream')
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response


@require_http_methods(["GET"])
@auth_required
def agents(request):
    """GET /api/chat/agents"""
    return JsonResponse({
        'agents': [
            {'id': profile.agent_id, 'persona': profile.persona}
            for profile in list_agents()
        ]
    })
