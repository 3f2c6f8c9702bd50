from django.apps import AppConfig


class FileSearchConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.filesearch'
    verbose_name = 'File Search Stores'
