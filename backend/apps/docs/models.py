"""
Document model for files uploaded into an agent's File Search store.
"""
import uuid
from django.db import models

from apps.filesearch.models import FileSearchStore


class DocumentStatus(models.TextChoices):
    """Status of a document in the File Search import."""
    UPLOADING = 'uploading', 'Uploading'
    PROCESSING = 'processing', 'Processing'
    READY = 'ready', 'Ready'
    FAILED = 'failed', 'Failed'


class Document(models.Model):
    """
    A file uploaded by a user into an agent's File Search store.

    The row is created before the upload starts so failed uploads stay
    visible with status ``failed``.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    store = models.ForeignKey(
        FileSearchStore,
        on_delete=models.CASCADE,
        related_name='documents',
        help_text="Store the document was imported into"
    )

    # Owner is the user id forwarded by the upstream auth layer
    owner_user_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Uploading user id"
    )

    # File metadata
    filename = models.CharField(
        max_length=255,
        help_text="Original filename"
    )
    file_id = models.CharField(
        max_length=500,
        blank=True,
        default='',
        help_text="File Search document name, empty until the import finishes"
    )
    mime_type = models.CharField(
        max_length=255,
        help_text="MIME type of the file"
    )
    size_bytes = models.PositiveBigIntegerField(
        help_text="File size in bytes"
    )

    status = models.CharField(
        max_length=20,
        choices=DocumentStatus.choices,
        default=DocumentStatus.UPLOADING,
        db_index=True,
    )

    uploaded_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'documents'
        ordering = ['-uploaded_at']
        indexes = [
            models.Index(fields=['store', 'owner_user_id'], name='documents_store_owner_idx'),
        ]

    def __str__(self):
        return f"{self.filename} ({self.status})"
