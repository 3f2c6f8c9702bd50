"""
URL configuration for the agent chat backend.
"""
from django.urls import path, include

from apps.health import healthz, readyz

urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/', include('apps.authn.urls')),
    path('api/', include('apps.rag.urls')),
    path('api/conversations/', include('apps.conversations.urls')),
    path('api/docs/', include('apps.docs.urls')),
]
