"""
Audit logging for admission and provenance events.

Provides structured JSON logging for key events without exposing message content.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Rate limiting events
    RATELIMIT_EXCEEDED = 'ratelimit.exceeded'
    RATELIMIT_DEGRADED = 'ratelimit.degraded'

    # Retrieval store events
    STORE_PROVISIONED = 'store.provisioned'
    STORE_DELETED = 'store.deleted'

    # Provenance events
    CITATIONS_ATTACHED = 'citations.attached'

    # Document events
    DOCUMENT_UPLOADED = 'document.uploaded'
    DOCUMENT_DELETED = 'document.deleted'


def get_client_ip(request) -> str:
    """Extract client IP from request, handling proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        # First IP in the chain is the client
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
    return request_id


def log_audit(
    event_type: str,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        user_id: Caller user id, when known
        request_id: Correlation ID for request tracing
        client_ip: Client IP address
        outcome: 'success', 'failure' or 'degraded'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'user_id': user_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """Log an audit event with request context auto-populated."""
    log_audit(
        event_type=event_type,
        user_id=getattr(request, 'user_id', None),
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_ratelimit_exceeded(request, scope: str, limit: int, window_ms: int):
    """Log rate limit exceeded."""
    log_audit_from_request(
        request,
        AuditEvent.RATELIMIT_EXCEEDED,
        outcome='failure',
        metadata={
            'scope': scope,
            'limit': limit,
            'window_ms': window_ms,
        }
    )


def audit_ratelimit_degraded(identifier: str, error: str):
    """Log a check answered by the local fallback because the shared store failed."""
    log_audit(
        AuditEvent.RATELIMIT_DEGRADED,
        outcome='degraded',
        metadata={
            'key': identifier.split(':', 1)[0],
            'error': error[:200],
        }
    )


def audit_store_provisioned(agent_id: str, store_id: str):
    """Log creation of a new external retrieval store."""
    log_audit(
        AuditEvent.STORE_PROVISIONED,
        metadata={
            'agent_id': agent_id,
            'store_id': store_id,
        }
    )


def audit_store_deleted(agent_id: str, store_id: str):
    """Log deletion of a retrieval store."""
    log_audit(
        AuditEvent.STORE_DELETED,
        metadata={
            'agent_id': agent_id,
            'store_id': store_id,
        }
    )


def audit_citations_attached(message_id: str, citation_count: int, duration_ms: int):
    """Log citations written to a message (counts only, never chunk text)."""
    log_audit(
        AuditEvent.CITATIONS_ATTACHED,
        metadata={
            'message_id': message_id,
            'citation_count': citation_count,
            'duration_ms': duration_ms,
        }
    )


def audit_document_uploaded(request, document_id: str, agent_id: str, filename: str, size_bytes: int):
    """Log successful document upload."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_UPLOADED,
        metadata={
            'document_id': document_id,
            'agent_id': agent_id,
            'filename': filename,
            'size_bytes': size_bytes,
        }
    )


def audit_document_deleted(request, document_id: str):
    """Log document deletion."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_DELETED,
        metadata={
            'document_id': document_id,
        }
    )
