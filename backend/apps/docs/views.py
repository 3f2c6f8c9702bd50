"""
Document upload and management views.

Provides endpoints for:
- POST /api/docs/upload - Upload a file into an agent's File Search store
- GET /api/docs?agentId=<agent> - List the user's documents for an agent
- GET /api/docs/<id> - Get document details
- DELETE /api/docs/<id> - Delete a document
"""
import json
import logging
from pathlib import Path

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.authn.audit import audit_document_deleted, audit_document_uploaded
from apps.authn.middleware import auth_required
from apps.authn.ratelimit import rate_limited
from apps.filesearch.client import FileSearchError
from apps.filesearch.models import FileSearchStore
from apps.filesearch.resolver import StoreResolutionError, get_resolver
from apps.rag.agents import is_valid_agent_id
from .models import Document, DocumentStatus

logger = logging.getLogger(__name__)

GENERIC_CONTENT_TYPES = ('application/octet-stream', 'binary/octet-stream', '')


def get_extension(filename: str) -> str:
    """Extract file extension from filename."""
    return Path(filename).suffix.lower()


def is_file_type_supported(content_type: str, filename: str) -> bool:
    """Allowed by MIME type, or by extension for code files."""
    if content_type in settings.ALLOWED_CONTENT_TYPES:
        return True
    return get_extension(filename) in settings.ALLOWED_CODE_EXTENSIONS


def normalize_content_type(content_type: str, filename: str) -> str:
    """
    Code files often arrive as application/octet-stream; send them as text.
    """
    if content_type in GENERIC_CONTENT_TYPES and get_extension(filename) in settings.ALLOWED_CODE_EXTENSIONS:
        return 'text/plain'
    return content_type


def parse_metadata(raw) -> dict:
    """
    Decode the optional ``metadata`` form field.

    Invalid JSON is ignored; values are stored as strings.
    """
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring invalid upload metadata")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(key): str(value) for key, value in data.items() if value is not None}


def serialize_document(document: Document, agent_id: str = None) -> dict:
    data = {
        'id': str(document.id),
        'filename': document.filename,
        'fileId': document.file_id or None,
        'mimeType': document.mime_type,
        'sizeBytes': document.size_bytes,
        'status': document.status,
        'uploadedAt': document.uploaded_at.isoformat(),
    }
    if agent_id:
        data['agentId'] = agent_id
    return data


def not_found() -> JsonResponse:
    return JsonResponse({'error': 'Document not found', 'code': 'NOT_FOUND'}, status=404)


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
@rate_limited('file-upload')
async def upload_document(request):
    """
    Upload a document into the agent's File Search store.

    POST /api/docs/upload

    Accepts multipart/form-data with fields:
        file: the document
        agentId: agent whose store receives the file
        metadata: optional JSON object of string values

    Returns:
        {
            "success": true,
            "document": {"id": "uuid", "status": "ready", ...}
        }
    """
    user_id = request.user_id

    if 'file' not in request.FILES:
        return JsonResponse(
            {'error': 'No file provided', 'code': 'MISSING_FILE'},
            status=400
        )

    agent_id = request.POST.get('agentId')
    if not is_valid_agent_id(agent_id):
        return JsonResponse(
            {'error': 'agentId is required', 'code': 'INVALID_AGENT'},
            status=400
        )

    uploaded_file = request.FILES['file']
    filename = uploaded_file.name
    content_type = uploaded_file.content_type or ''
    size_bytes = uploaded_file.size

    logger.info(f"Upload request: {filename}, {content_type}, {size_bytes} bytes for agent {agent_id} from user {user_id}")

    if size_bytes > settings.MAX_UPLOAD_SIZE:
        max_mb = settings.MAX_UPLOAD_SIZE // (1024 * 1024)
        return JsonResponse(
            {
                'error': f'File too large. Maximum size is {max_mb}MB',
                'code': 'FILE_TOO_LARGE',
                'maxSize': settings.MAX_UPLOAD_SIZE
            },
            status=400
        )

    if not is_file_type_supported(content_type, filename):
        return JsonResponse(
            {
                'error': f"File type '{content_type}' is not supported",
                'code': 'INVALID_FILE_TYPE',
                'allowedTypes': settings.ALLOWED_CONTENT_TYPES,
                'allowedExtensions': settings.ALLOWED_CODE_EXTENSIONS,
            },
            status=400
        )

    mime_type = normalize_content_type(content_type, filename)
    metadata = parse_metadata(request.POST.get('metadata'))

    resolver = get_resolver()
    try:
        store = await resolver.resolve(agent_id)
    except StoreResolutionError as e:
        logger.error(f"Store unavailable for upload to {agent_id}: {e}")
        return JsonResponse(
            {
                'error': "Failed to access the agent's document storage. Please try again later.",
                'code': 'STORE_UNAVAILABLE',
                'retryable': True,
            },
            status=503
        )

    document = await Document.objects.acreate(
        store_id=store.id,
        owner_user_id=user_id,
        filename=filename,
        mime_type=mime_type,
        size_bytes=size_bytes,
        status=DocumentStatus.UPLOADING,
    )

    try:
        content = b''.join(uploaded_file.chunks())
        operation = await resolver.client.upload_document(
            store.store_id, filename, content, mime_type, metadata=metadata
        )
        operation = await resolver.client.wait_for_operation(
            operation,
            timeout=getattr(settings, 'FILE_SEARCH_IMPORT_TIMEOUT', 60),
        )
    except FileSearchError as e:
        logger.error(f"Upload of {filename} to {store.store_id} failed: {e}")
        document.status = DocumentStatus.FAILED
        await document.asave(update_fields=['status'])
        return JsonResponse(
            {
                'error': 'Failed to upload file. Please try again.',
                'code': 'UPLOAD_FAILED',
                'documentId': str(document.id),
            },
            status=502
        )

    if operation.get('done'):
        document.file_id = (operation.get('response') or {}).get('documentName', '')
        document.status = DocumentStatus.READY
    else:
        document.status = DocumentStatus.PROCESSING
    await document.asave(update_fields=['file_id', 'status'])

    logger.info(f"Document {document.id} uploaded to {store.store_id}: {document.status}")
    audit_document_uploaded(
        request,
        document_id=str(document.id),
        agent_id=agent_id,
        filename=filename,
        size_bytes=size_bytes,
    )

    return JsonResponse(
        {'success': True, 'document': serialize_document(document, agent_id)},
        status=201
    )


@require_http_methods(["GET"])
@auth_required
@rate_limited('api')
async def list_documents(request):
    """
    List the user's documents for an agent.

    GET /api/docs?agentId=<agent>

    Returns:
        {"documents": [...], "count": N}
    """
    agent_id = request.GET.get('agentId')
    if not is_valid_agent_id(agent_id):
        return JsonResponse(
            {'error': 'agentId is required', 'code': 'INVALID_AGENT'},
            status=400
        )

    # Listing never provisions a store
    store = await FileSearchStore.objects.filter(agent_id=agent_id).afirst()
    if store is None:
        return JsonResponse({'documents': [], 'count': 0})

    documents = [
        serialize_document(document, agent_id)
        async for document in Document.objects.filter(store=store, owner_user_id=request.user_id)
    ]
    return JsonResponse({'documents': documents, 'count': len(documents)})


@csrf_exempt
@require_http_methods(["GET", "DELETE"])
@auth_required
@rate_limited('api')
async def document_detail(request, document_id):
    """
    GET /api/docs/<document_id>
    DELETE /api/docs/<document_id>

    The File Search copy is removed best effort; the row is always deleted.
    """
    document = await Document.objects.select_related('store').filter(
        id=document_id,
        owner_user_id=request.user_id,
    ).afirst()
    if document is None:
        return not_found()

    if request.method == 'GET':
        return JsonResponse({'document': serialize_document(document, document.store.agent_id)})

    if document.file_id:
        try:
            await get_resolver().client.delete_document(document.file_id)
        except FileSearchError as e:
            logger.error(f"Error deleting {document.file_id} from File Search: {e}")

    await document.adelete()
    logger.info(f"Document deleted: {document_id}")
    audit_document_deleted(request, str(document_id))

    return JsonResponse({'success': True, 'id': str(document_id)})
