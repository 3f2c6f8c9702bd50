"""
Identity views.
"""
import logging

from django.http import JsonResponse, HttpRequest
from django.views.decorators.http import require_http_methods

from .middleware import auth_required
from .ratelimit import rate_limited

logger = logging.getLogger(__name__)


@require_http_methods(["GET"])
@rate_limited('api')
@auth_required
def me(request: HttpRequest) -> JsonResponse:
    """
    GET /api/me

    Returns the caller identity forwarded by the upstream auth layer.

    Response:
        {
            "id": "<user id>"
        }
    """
    return JsonResponse({'id': request.user_id})


@require_http_methods(["GET"])
def health(request: HttpRequest) -> JsonResponse:
    """
    GET /api/health

    Health check endpoint (no auth required).
    """
    return JsonResponse({'status': 'ok'})
