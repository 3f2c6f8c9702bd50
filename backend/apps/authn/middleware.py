"""
Caller identity for HTTP views and WebSocket consumers.

Sessions are issued by the upstream auth layer, which forwards the
authenticated user id in a trusted header (settings.TRUSTED_USER_HEADER).
This module only reads that header; it never validates credentials.
"""
import logging
from typing import Optional, Callable
from functools import wraps

from asgiref.sync import iscoroutinefunction, markcoroutinefunction
from channels.middleware import BaseMiddleware
from django.conf import settings
from django.http import JsonResponse, HttpRequest

from .audit import get_client_ip

logger = logging.getLogger(__name__)

MAX_USER_ID_LENGTH = 255


def _header_meta_key(header_name: str) -> str:
    """Convert 'X-User-Id' into Django's META key 'HTTP_X_USER_ID'."""
    return 'HTTP_' + header_name.upper().replace('-', '_')


def _clean_user_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if not value or len(value) > MAX_USER_ID_LENGTH:
        return None
    return value


def get_user_id_from_request(request: HttpRequest) -> Optional[str]:
    """
    Read the authenticated user id forwarded by the upstream auth layer.

    Returns:
        The user id if present and well-formed, None otherwise
    """
    header = getattr(settings, 'TRUSTED_USER_HEADER', 'X-User-Id')
    return _clean_user_id(request.META.get(_header_meta_key(header)))


def get_caller_identity(request: HttpRequest) -> str:
    """
    Identity used for rate limiting: the user id, or the client IP for
    anonymous callers.
    """
    user_id = getattr(request, 'user_id', None) or get_user_id_from_request(request)
    if user_id:
        return user_id
    return get_client_ip(request)


def attach_identity(request: HttpRequest) -> None:
    request.user_id = get_user_id_from_request(request)


class CallerIdentityMiddleware:
    """
    Attach ``request.user_id`` (or None) to every request.

    Works under both WSGI and ASGI without forcing a thread hop.
    """
    sync_capable = True
    async_capable = True

    def __init__(self, get_response):
        self.get_response = get_response
        if iscoroutinefunction(self.get_response):
            markcoroutinefunction(self)

    def __call__(self, request):
        if iscoroutinefunction(self):
            return self.__acall__(request)
        attach_identity(request)
        return self.get_response(request)

    async def __acall__(self, request):
        attach_identity(request)
        return await self.get_response(request)


def _unauthorized() -> JsonResponse:
    return JsonResponse(
        {'error': 'Unauthorized', 'code': 'UNAUTHORIZED'},
        status=401
    )


def auth_required(view_func: Callable) -> Callable:
    """
    Decorator that requires an authenticated caller.

    Accepts both sync and async views.

    Usage:
        @auth_required
        async def my_view(request):
            user_id = request.user_id
            ...
    """
    if iscoroutinefunction(view_func):
        @wraps(view_func)
        async def async_wrapper(request: HttpRequest, *args, **kwargs):
            if not getattr(request, 'user_id', None):
                attach_identity(request)
            if not request.user_id:
                return _unauthorized()
            return await view_func(request, *args, **kwargs)
        return async_wrapper

    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        if not getattr(request, 'user_id', None):
            attach_identity(request)
        if not request.user_id:
            return _unauthorized()
        return view_func(request, *args, **kwargs)

    return wrapper


class CallerIdentityWebSocketMiddleware(BaseMiddleware):
    """
    Channels middleware that adds ``scope['user_id']`` from the trusted header.

    WebSocket upgrades pass through the same upstream proxy as HTTP requests,
    so the header is available in the handshake.
    """

    async def __call__(self, scope, receive, send):
        header = getattr(settings, 'TRUSTED_USER_HEADER', 'X-User-Id').lower().encode()
        user_id = None
        for name, value in scope.get('headers', []):
            if name.lower() == header:
                user_id = _clean_user_id(value.decode('latin-1'))
                break

        if user_id is None:
            logger.warning("WebSocket handshake without caller identity")

        scope = dict(scope, user_id=user_id)
        return await super().__call__(scope, receive, send)
