"""
Conversation API views.

Provides endpoints for:
- GET/POST /api/conversations - List or create conversations
- GET/PATCH/DELETE /api/conversations/<id> - Read, rename or delete one
- GET/POST /api/conversations/<id>/messages - List or append messages
- GET /api/conversations/<id>/messages/<mid>/citations - Citations of a message

Conversations owned by other users answer 404, never 403.
"""
import json
import logging

from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.authn.middleware import auth_required
from apps.authn.ratelimit import rate_limited
from apps.rag.agents import is_valid_agent_id
from .models import Conversation, Message, MessageRole
from .services import get_owned_conversation

logger = logging.getLogger(__name__)


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        'id': str(conversation.id),
        'agentId': conversation.agent_id,
        'title': conversation.title,
        'createdAt': conversation.created_at.isoformat(),
        'updatedAt': conversation.updated_at.isoformat(),
    }


def serialize_message(message: Message) -> dict:
    return {
        'id': str(message.id),
        'conversationId': str(message.conversation_id),
        'role': message.role,
        'content': message.content,
        'parts': message.parts,
        'citations': message.citations,
        'createdAt': message.created_at.isoformat(),
    }


def error_response(message: str, code: str, status: int) -> JsonResponse:
    return JsonResponse({'error': message, 'code': code}, status=status)


def not_found(what: str = 'Conversation') -> JsonResponse:
    return error_response(f'{what} not found', 'NOT_FOUND', 404)


def parse_json_body(request):
    """Decoded JSON object from the request body, or None if invalid."""
    try:
        body = json.loads(request.body or b'{}')
    except (ValueError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def validate_title(title):
    if title is None:
        return None
    if not isinstance(title, str) or len(title) > 255:
        raise ValueError('title must be a string of at most 255 characters')
    return title.strip() or None


@csrf_exempt
@require_http_methods(["GET", "POST"])
@auth_required
async def conversation_collection(request):
    """GET lists the caller's conversations, POST creates one."""
    if request.method == 'POST':
        return await create_conversation(request)
    return await list_conversations(request)


@rate_limited('api')
async def list_conversations(request):
    """
    GET /api/conversations?agentId=<agent>

    Response:
        {"conversations": [...], "count": N}
    """
    queryset = Conversation.objects.filter(user_id=request.user_id)
    agent_id = request.GET.get('agentId')
    if agent_id:
        queryset = queryset.filter(agent_id=agent_id)

    conversations = [serialize_conversation(c) async for c in queryset]
    return JsonResponse({'conversations': conversations, 'count': len(conversations)})


@rate_limited('conversation-create')
async def create_conversation(request):
    """
    POST /api/conversations

    Request body:
        {"agentId": "research-assistant", "title": "optional"}
    """
    body = parse_json_body(request)
    if body is None:
        return error_response('Invalid JSON body', 'INVALID_JSON', 400)

    agent_id = body.get('agentId')
    if not is_valid_agent_id(agent_id):
        return error_response('agentId is required', 'INVALID_AGENT', 400)

    try:
        title = validate_title(body.get('title'))
    except ValueError as e:
        return error_response(str(e), 'INVALID_TITLE', 400)

    conversation = await Conversation.objects.acreate(
        user_id=request.user_id,
        agent_id=agent_id,
        title=title,
    )
    logger.info(f"Conversation created: {conversation.id} for agent {agent_id}")
    return JsonResponse({'conversation': serialize_conversation(conversation)}, status=201)


@csrf_exempt
@require_http_methods(["GET", "PATCH", "DELETE"])
@auth_required
@rate_limited('api')
async def conversation_detail(request, conversation_id):
    """
    GET /api/conversations/<id> - conversation with its messages
    PATCH /api/conversations/<id> - {"title": "..."}
    DELETE /api/conversations/<id>
    """
    conversation = await get_owned_conversation(conversation_id, request.user_id)
    if conversation is None:
        return not_found()

    if request.method == 'DELETE':
        await conversation.adelete()
        logger.info(f"Conversation deleted: {conversation_id}")
        return JsonResponse({'deleted': True, 'id': str(conversation_id)})

    if request.method == 'PATCH':
        body = parse_json_body(request)
        if body is None:
            return error_response('Invalid JSON body', 'INVALID_JSON', 400)
        try:
            conversation.title = validate_title(body.get('title'))
        except ValueError as e:
            return error_response(str(e), 'INVALID_TITLE', 400)
        await conversation.asave(update_fields=['title', 'updated_at'])
        return JsonResponse({'conversation': serialize_conversation(conversation)})

    messages = [serialize_message(m) async for m in conversation.messages.all()]
    data = serialize_conversation(conversation)
    data['messages'] = messages
    return JsonResponse({'conversation': data})


@csrf_exempt
@require_http_methods(["GET", "POST"])
@auth_required
@rate_limited('api')
async def conversation_messages(request, conversation_id):
    """
    GET /api/conversations/<id>/messages
    POST /api/conversations/<id>/messages - {"role", "content", "parts"?}
    """
    conversation = await get_owned_conversation(conversation_id, request.user_id)
    if conversation is None:
        return not_found()

    if request.method == 'GET':
        messages = [serialize_message(m) async for m in conversation.messages.all()]
        return JsonResponse({'messages': messages, 'count': len(messages)})

    body = parse_json_body(request)
    if body is None:
        return error_response('Invalid JSON body', 'INVALID_JSON', 400)

    role = body.get('role')
    content = body.get('content')
    parts = body.get('parts')

    if role not in MessageRole.values:
        return error_response('role must be "user" or "assistant"', 'INVALID_ROLE', 400)
    if not isinstance(content, str) or not content.strip():
        return error_response('content is required', 'INVALID_CONTENT', 400)
    if parts is not None and not isinstance(parts, list):
        return error_response('parts must be a list', 'INVALID_PARTS', 400)

    message = await Message.objects.acreate(
        conversation=conversation,
        role=role,
        content=content,
        parts=parts,
    )
    await Conversation.objects.filter(id=conversation.id).aupdate(updated_at=timezone.now())

    return JsonResponse({'message': serialize_message(message)}, status=201)


@require_http_methods(["GET"])
@auth_required
@rate_limited('api')
async def message_citations(request, conversation_id, message_id):
    """
    GET /api/conversations/<id>/messages/<mid>/citations

    ``ready`` is false until extraction has written to the message.
    """
    conversation = await get_owned_conversation(conversation_id, request.user_id)
    if conversation is None:
        return not_found()

    message = await Message.objects.filter(id=message_id, conversation=conversation).afirst()
    if message is None:
        return not_found('Message')

    return JsonResponse({
        'messageId': str(message.id),
        'citations': message.citations or [],
        'ready': message.citations is not None,
    })
