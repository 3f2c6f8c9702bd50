"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import httpx
import redis
from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_database() -> tuple[str, bool]:
    """Check database connectivity."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except DatabaseError as e:
        logger.error(f"Database health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis() -> tuple[str, bool]:
    """
    Check the shared rate limit backend.

    Without a configured URL the local limiter is used and there is
    nothing to check.
    """
    redis_url = getattr(settings, 'RATE_LIMIT_REDIS_URL', '')
    if not redis_url:
        return 'disabled', True

    try:
        client = redis.from_url(redis_url, socket_timeout=3)
        client.ping()
        return 'ok', True
    except (redis.RedisError, OSError) as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_gemini() -> tuple[str, bool]:
    """
    Check Gemini API reachability (optional, degrades gracefully).

    Chat fails without it, but conversation history can still be served.
    """
    api_key = getattr(settings, 'GEMINI_API_KEY', '')
    if not api_key:
        return 'degraded: not configured', True

    base_url = getattr(settings, 'GEMINI_BASE_URL', 'https://generativelanguage.googleapis.com').rstrip('/')
    model = getattr(settings, 'GEMINI_MODEL', 'gemini-2.5-flash')
    try:
        with httpx.Client(timeout=5.0, headers={'x-goog-api-key': api_key}) as client:
            response = client.get(f'{base_url}/v1beta/models/{model}')
            if response.status_code == 200:
                return 'ok', True
            return f'status: {response.status_code}', True
    except httpx.HTTPError as e:
        logger.warning(f"Gemini health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if all critical dependencies are reachable.
    """
    checks = {}
    all_ok = True

    # Database (critical)
    status, ok = check_database()
    checks['database'] = status
    if not ok:
        all_ok = False

    # Redis (critical when configured; the limiter fails open but Channels does not)
    status, ok = check_redis()
    checks['redis'] = status
    if not ok:
        all_ok = False

    # Gemini (optional - doesn't block readiness)
    status, _ = check_gemini()
    checks['gemini'] = status

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)
