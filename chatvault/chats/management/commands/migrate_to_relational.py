"""
Management command to move chat data from data.json into the relational store.
The flat file is kept and copied to data.json.bak.
"""

from getpass import getpass

from django.core.management.base import BaseCommand, CommandError

from chats.backends import FlatFileStore, RelationalStore
from chats.migration import MigrationService
from core.files import get_file_store
from vault.exceptions import AuthenticationError, NotFoundError, VaultError


class Command(BaseCommand):
    help = 'Migrate the encrypted data.json document into the relational store'

    def add_arguments(self, parser):
        parser.add_argument('--password', type=str, help='Vault password (prompted when omitted)')
        parser.add_argument('--dry-run', action='store_true', help='Report what would be migrated without writing')

    def handle(self, *args, **options):
        files = get_file_store()
        service = MigrationService(FlatFileStore(files), RelationalStore(), files)

        password = options.get('password') or getpass('Vault password: ')
        if not password:
            raise CommandError('A password is required')

        try:
            if options['dry_run']:
                plan = service.plan(password)
                self.stdout.write('Dry run, nothing written.')
                self.stdout.write(f'Threads: {plan.threads}')
                self.stdout.write(f'Messages: {plan.messages}')
                self.stdout.write(f'API keys: {plan.api_keys}')
                self.stdout.write(f'Models: {plan.model_ids}')
                self.stdout.write(f'Custom prompt: {"yes" if plan.has_custom_prompt else "no"}')
                return

            self.stdout.write('Starting migration to relational store...')
            service.migrate(password)
        except AuthenticationError as exc:
            raise CommandError('Incorrect password') from exc
        except NotFoundError as exc:
            raise CommandError(f'Nothing to migrate: {exc}') from exc
        except VaultError as exc:
            raise CommandError(str(exc)) from exc

        self.stdout.write(self.style.SUCCESS('Migration completed. data.json backed up to data.json.bak'))
