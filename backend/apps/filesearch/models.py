"""
File Search store model.

One row per agent: the handle of the Gemini File Search store that holds
that agent's retrieval corpus.
"""
import uuid
from django.db import models


class FileSearchStore(models.Model):
    """
    A provisioned Gemini File Search store for one agent.

    Created lazily on first access and only removed together with the
    external store.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    agent_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Agent identifier"
    )
    store_id = models.CharField(
        max_length=255,
        help_text="Gemini File Search store name (fileSearchStores/...)"
    )
    name = models.CharField(
        max_length=255,
        help_text="Display name given to the store"
    )
    description = models.TextField(
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'file_search_stores'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.agent_id} -> {self.store_id}"
