"""
Django management command to inspect File Search stores.

Usage:
    python manage.py check_file_search_stores
    python manage.py check_file_search_stores --verify
"""
from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand

from apps.filesearch.client import FileSearchError
from apps.filesearch.resolver import get_resolver


class Command(BaseCommand):
    help = 'List File Search stores registered for agents'

    def add_arguments(self, parser):
        parser.add_argument(
            '--verify',
            action='store_true',
            help='Also fetch each store from the Gemini API',
        )

    def handle(self, *args, **options):
        resolver = get_resolver()
        stores = async_to_sync(resolver.list_stores)()

        if not stores:
            self.stdout.write('No File Search stores registered')
            return

        missing = 0
        for store in stores:
            self.stdout.write(f'{store.agent_id}: {store.store_id} ({store.name})')

            if options['verify']:
                try:
                    remote = async_to_sync(resolver.client.get_store)(store.store_id)
                    documents = remote.get('activeDocumentsCount', 0)
                    self.stdout.write(self.style.SUCCESS(f'  ok, {documents} active documents'))
                except FileSearchError as e:
                    missing += 1
                    self.stdout.write(self.style.ERROR(f'  unreachable: {e}'))

        self.stdout.write(f'{len(stores)} stores')
        if missing:
            self.stdout.write(self.style.WARNING(f'{missing} stores could not be verified'))
