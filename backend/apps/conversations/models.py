"""
Conversation and Message models.

A conversation belongs to one user and one agent. Assistant messages carry
the citations recovered after the answer was streamed.
"""
import uuid
from django.db import models


class MessageRole(models.TextChoices):
    USER = 'user', 'User'
    ASSISTANT = 'assistant', 'Assistant'


class Conversation(models.Model):
    """A chat thread between a user and an agent."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Owner is the user id forwarded by the upstream auth layer
    user_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Owning user id"
    )
    agent_id = models.CharField(
        max_length=255,
        help_text="Agent the conversation is held with"
    )
    title = models.CharField(
        max_length=255,
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'conversations'
        ordering = ['-updated_at']
        indexes = [
            models.Index(fields=['user_id', 'updated_at'], name='conversations_user_updated_idx'),
        ]

    def __str__(self):
        return f"{self.title or 'Untitled'} ({self.agent_id})"


class Message(models.Model):
    """
    One turn of a conversation.

    ``parts`` holds structured content sent by the client; ``citations`` is
    filled in asynchronously and stays null until extraction finds sources.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name='messages',
    )
    role = models.CharField(
        max_length=20,
        choices=MessageRole.choices,
    )
    content = models.TextField()
    parts = models.JSONField(null=True, blank=True)
    citations = models.JSONField(
        null=True,
        blank=True,
        help_text="List of {documentName, chunkText, ...}"
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'messages'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['conversation', 'created_at'], name='messages_conv_created_idx'),
        ]

    def __str__(self):
        return f"{self.role}: {self.content[:50]}"
