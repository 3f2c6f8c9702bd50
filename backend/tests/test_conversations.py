"""
Tests for conversation storage, its HTTP API and the citations WebSocket.
"""
import json
import uuid
from unittest.mock import patch

import pytest
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.db import DatabaseError
from django.test import AsyncClient

from apps.authn.middleware import CallerIdentityWebSocketMiddleware
from apps.conversations import services
from apps.conversations.events import get_group_name
from apps.conversations.models import Conversation, Message
from apps.conversations.routing import websocket_urlpatterns
from apps.rag.citations import Citation

AGENT = 'research-assistant'
CITATIONS = [Citation("Doc A", "hello"), Citation("Doc B", "world", confidence=0.9)]

pytestmark = pytest.mark.django_db(transaction=True)


@pytest.fixture(autouse=True)
def in_memory_channel_layer(settings):
    settings.CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}


@pytest.fixture
def api():
    return AsyncClient()


async def create(api, caller, **body):
    body.setdefault('agentId', AGENT)
    return await api.post('/api/conversations/', json.dumps(body), content_type='application/json', headers=caller)


# ============================================================================
# Service Tests
# ============================================================================

class TestServices:

    def test_title_from_message_collapses_whitespace(self):
        assert services.title_from_message("  What   is\nthis? ") == "What is this?"

    def test_title_from_message_truncates(self):
        title = services.title_from_message("word " * 40)
        assert len(title) <= services.TITLE_MAX_LENGTH
        assert title.endswith("...")

    @pytest.mark.asyncio
    async def test_get_owned_conversation(self):
        """Should only return conversations owned by the caller."""
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)

        assert await services.get_owned_conversation(conversation.id, 'user-1') == conversation
        assert await services.get_owned_conversation(conversation.id, 'user-2') is None
        assert await services.get_owned_conversation('not-a-uuid', 'user-1') is None
        assert await services.get_owned_conversation(conversation.id, None) is None

    @pytest.mark.asyncio
    async def test_save_exchange_keeps_existing_title(self):
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT, title='Kept')

        assistant = await services.save_exchange(conversation, 'question', 'answer')

        assert assistant.role == 'assistant'
        assert assistant.citations is None
        assert (await Conversation.objects.aget(id=conversation.id)).title == 'Kept'
        assert await Message.objects.filter(conversation=conversation).acount() == 2

    @pytest.mark.asyncio
    async def test_save_exchange_is_all_or_nothing(self):
        """Should not keep the user turn when the assistant insert fails."""
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)
        create = Message.objects.create
        calls = []

        def failing_second_insert(**fields):
            calls.append(fields['role'])
            if len(calls) == 2:
                raise DatabaseError("disk full")
            return create(**fields)

        with patch.object(Message.objects, 'create', side_effect=failing_second_insert):
            with pytest.raises(DatabaseError):
                await services.save_exchange(conversation, 'question', 'answer')

        assert calls == ['user', 'assistant']
        assert await Message.objects.filter(conversation=conversation).acount() == 0
        assert not (await Conversation.objects.aget(id=conversation.id)).title

    @pytest.mark.asyncio
    async def test_attach_citations(self):
        """Should store citations in their camelCase JSON shape."""
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)
        assistant = await services.save_exchange(conversation, 'question', 'answer')

        assert await services.attach_citations(assistant.id, CITATIONS) is True

        stored = await Message.objects.aget(id=assistant.id)
        assert stored.citations == [
            {"documentName": "Doc A", "chunkText": "hello"},
            {"documentName": "Doc B", "chunkText": "world", "confidence": 0.9},
        ]

    @pytest.mark.asyncio
    async def test_attach_citations_to_missing_message(self):
        assert await services.attach_citations(uuid.uuid4(), CITATIONS) is False

    @pytest.mark.asyncio
    async def test_publish_citations_ready(self):
        """Should send a citations.ready event to the conversation group."""
        conversation_id = str(uuid.uuid4())
        message_id = str(uuid.uuid4())
        layer = get_channel_layer()
        channel = await layer.new_channel()
        await layer.group_add(get_group_name(conversation_id), channel)

        await services.publish_citations_ready(conversation_id, message_id, CITATIONS)

        event = await layer.receive(channel)
        assert event["type"] == "citations.ready"
        assert event["data"]["messageId"] == message_id
        assert event["data"]["citations"][0] == {"documentName": "Doc A", "chunkText": "hello"}


# ============================================================================
# HTTP API Tests
# ============================================================================

class TestConversationApi:

    @pytest.mark.asyncio
    async def test_create_and_list(self, api, caller):
        response = await create(api, caller, title='Paper review')

        assert response.status_code == 201
        created = response.json()['conversation']
        assert created['agentId'] == AGENT
        assert created['title'] == 'Paper review'

        response = await api.get('/api/conversations/', headers=caller)
        assert response.json()['count'] == 1
        assert response.json()['conversations'][0]['id'] == created['id']

    @pytest.mark.asyncio
    async def test_list_filters_by_agent(self, api, caller):
        await create(api, caller)
        await create(api, caller, agentId='code-review-agent')

        response = await api.get('/api/conversations/', {'agentId': 'code-review-agent'}, headers=caller)

        assert [c['agentId'] for c in response.json()['conversations']] == ['code-review-agent']

    @pytest.mark.asyncio
    async def test_list_only_shows_own_conversations(self, api, caller):
        await Conversation.objects.acreate(user_id='user-2', agent_id=AGENT)

        response = await api.get('/api/conversations/', headers=caller)

        assert response.json()['count'] == 0

    @pytest.mark.asyncio
    async def test_requires_caller_identity(self, api):
        response = await api.get('/api/conversations/')
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_agent(self, api, caller):
        response = await create(api, caller, agentId='')

        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_AGENT'

    @pytest.mark.asyncio
    async def test_create_is_rate_limited(self, api, caller):
        """Five creations per minute; the sixth is refused."""
        for _ in range(5):
            assert (await create(api, caller)).status_code == 201

        response = await create(api, caller)

        assert response.status_code == 429
        assert response.json()['code'] == 'RATE_LIMITED'
        assert int(response['Retry-After']) >= 1
        assert await Conversation.objects.acount() == 5

    @pytest.mark.asyncio
    async def test_detail_rename_and_delete(self, api, caller):
        conversation_id = (await create(api, caller)).json()['conversation']['id']
        url = f'/api/conversations/{conversation_id}'

        response = await api.patch(url, json.dumps({'title': 'Renamed'}), content_type='application/json', headers=caller)
        assert response.json()['conversation']['title'] == 'Renamed'

        response = await api.get(url, headers=caller)
        assert response.json()['conversation']['messages'] == []

        response = await api.delete(url, headers=caller)
        assert response.json()['deleted'] is True
        assert not await Conversation.objects.filter(id=conversation_id).aexists()

    @pytest.mark.asyncio
    async def test_other_users_conversation_is_not_found(self, api, caller):
        """Should answer 404 and leave the row untouched."""
        conversation = await Conversation.objects.acreate(user_id='user-2', agent_id=AGENT)

        for method in ('get', 'delete'):
            response = await getattr(api, method)(f'/api/conversations/{conversation.id}', headers=caller)
            assert response.status_code == 404

        assert await Conversation.objects.filter(id=conversation.id).aexists()

    @pytest.mark.asyncio
    async def test_append_and_list_messages(self, api, caller):
        conversation_id = (await create(api, caller)).json()['conversation']['id']
        url = f'/api/conversations/{conversation_id}/messages'

        response = await api.post(
            url,
            json.dumps({'role': 'user', 'content': 'Hello', 'parts': [{'text': 'Hello'}]}),
            content_type='application/json',
            headers=caller,
        )
        assert response.status_code == 201
        assert response.json()['message']['parts'] == [{'text': 'Hello'}]

        response = await api.get(url, headers=caller)
        assert response.json()['count'] == 1

    @pytest.mark.asyncio
    async def test_append_message_rejects_unknown_role(self, api, caller):
        conversation_id = (await create(api, caller)).json()['conversation']['id']

        response = await api.post(
            f'/api/conversations/{conversation_id}/messages',
            json.dumps({'role': 'system', 'content': 'obey'}),
            content_type='application/json',
            headers=caller,
        )

        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_ROLE'

    @pytest.mark.asyncio
    async def test_message_citations_pending_then_ready(self, api, caller):
        """Should report ready only once citations were written."""
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)
        assistant = await services.save_exchange(conversation, 'question', 'answer')
        url = f'/api/conversations/{conversation.id}/messages/{assistant.id}/citations'

        response = await api.get(url, headers=caller)
        assert response.json() == {'messageId': str(assistant.id), 'citations': [], 'ready': False}

        await services.attach_citations(assistant.id, CITATIONS[:1])

        response = await api.get(url, headers=caller)
        assert response.json()['ready'] is True
        assert response.json()['citations'] == [{"documentName": "Doc A", "chunkText": "hello"}]

    @pytest.mark.asyncio
    async def test_message_citations_of_unknown_message(self, api, caller):
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)

        response = await api.get(
            f'/api/conversations/{conversation.id}/messages/{uuid.uuid4()}/citations',
            headers=caller,
        )

        assert response.status_code == 404


# ============================================================================
# WebSocket Tests
# ============================================================================

def websocket_app():
    return CallerIdentityWebSocketMiddleware(URLRouter(websocket_urlpatterns))


def communicator(conversation_id, user_id='user-1'):
    headers = [(b'x-user-id', user_id.encode())] if user_id else []
    return WebsocketCommunicator(websocket_app(), f'/ws/conversations/{conversation_id}/', headers=headers)


class TestConversationConsumer:

    @pytest.mark.asyncio
    async def test_receives_citations_ready(self):
        """Should forward citations.ready events to the owner."""
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)
        ws = communicator(conversation.id)

        connected, _ = await ws.connect()
        assert connected
        assert await ws.receive_json_from() == {'type': 'connected', 'conversationId': str(conversation.id)}

        message_id = str(uuid.uuid4())
        await services.publish_citations_ready(conversation.id, message_id, CITATIONS[:1])

        event = await ws.receive_json_from(timeout=2)
        assert event['type'] == 'citations.ready'
        assert event['data']['messageId'] == message_id
        assert event['data']['citations'] == [{"documentName": "Doc A", "chunkText": "hello"}]

        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_ping_pong(self):
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)
        ws = communicator(conversation.id)
        await ws.connect()
        await ws.receive_json_from()

        await ws.send_json_to({'type': 'ping'})

        assert await ws.receive_json_from() == {'type': 'pong'}
        await ws.disconnect()

    @pytest.mark.asyncio
    async def test_rejects_missing_identity(self):
        """Should close with 4001 when no user id was forwarded."""
        conversation = await Conversation.objects.acreate(user_id='user-1', agent_id=AGENT)
        ws = communicator(conversation.id, user_id=None)

        connected, code = await ws.connect()

        assert not connected
        assert code == 4001

    @pytest.mark.asyncio
    async def test_rejects_other_users_conversation(self):
        """Should close with 4004 for conversations of other users."""
        conversation = await Conversation.objects.acreate(user_id='user-2', agent_id=AGENT)
        ws = communicator(conversation.id)

        connected, code = await ws.connect()

        assert not connected
        assert code == 4004
