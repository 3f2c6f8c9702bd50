# Generated migration for FileSearchStore model

from django.db import migrations, models
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='FileSearchStore',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('agent_id', models.CharField(help_text='Agent identifier', max_length=255, unique=True)),
                ('store_id', models.CharField(help_text='Gemini File Search store name (fileSearchStores/...)', max_length=255)),
                ('name', models.CharField(help_text='Display name given to the store', max_length=255)),
                ('description', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'file_search_stores',
                'ordering': ['-created_at'],
            },
        ),
    ]
