"""
ASGI config for the agent chat backend.

Handles both HTTP and WebSocket connections.
"""
import os

from channels.routing import ProtocolTypeRouter, URLRouter
from channels.security.websocket import AllowedHostsOriginValidator
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

# Initialize Django ASGI application early to ensure the AppRegistry
# is populated before importing code that may import ORM models.
django_asgi_app = get_asgi_application()

# Import after Django setup
from apps.authn.middleware import CallerIdentityWebSocketMiddleware  # noqa: E402
from apps.conversations.routing import websocket_urlpatterns  # noqa: E402

application = ProtocolTypeRouter({
    # HTTP requests go to Django
    "http": django_asgi_app,

    # WebSocket connections pick up the forwarded user id, then reach the consumers
    "websocket": AllowedHostsOriginValidator(
        CallerIdentityWebSocketMiddleware(
            URLRouter(websocket_urlpatterns)
        )
    ),
})
