# Generated migration for Document model

from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('filesearch', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('owner_user_id', models.CharField(db_index=True, help_text='Uploading user id', max_length=255)),
                ('filename', models.CharField(help_text='Original filename', max_length=255)),
                ('file_id', models.CharField(blank=True, default='', help_text='File Search document name, empty until the import finishes', max_length=500)),
                ('mime_type', models.CharField(help_text='MIME type of the file', max_length=255)),
                ('size_bytes', models.PositiveBigIntegerField(help_text='File size in bytes')),
                ('status', models.CharField(choices=[('uploading', 'Uploading'), ('processing', 'Processing'), ('ready', 'Ready'), ('failed', 'Failed')], db_index=True, default='uploading', max_length=20)),
                ('uploaded_at', models.DateTimeField(auto_now_add=True)),
                ('store', models.ForeignKey(help_text='Store the document was imported into', on_delete=django.db.models.deletion.CASCADE, related_name='documents', to='filesearch.filesearchstore')),
            ],
            options={
                'db_table': 'documents',
                'ordering': ['-uploaded_at'],
                'indexes': [models.Index(fields=['store', 'owner_user_id'], name='documents_store_owner_idx')],
            },
        ),
    ]
