"""
Chat URL routing.
"""
from django.urls import path

from . import views

urlpatterns = [
    path('chat', views.chat, name='chat'),
    path('chat/agents', views.agents, name='chat-agents'),
]
