"""
URL configuration for the conversations app.
"""
from django.urls import path
from . import views

app_name = 'conversations'

urlpatterns = [
    path('', views.conversation_collection, name='list'),
    path('<uuid:conversation_id>', views.conversation_detail, name='detail'),
    path('<uuid:conversation_id>/messages', views.conversation_messages, name='messages'),
    path('<uuid:conversation_id>/messages/<uuid:message_id>/citations', views.message_citations, name='citations'),
]
