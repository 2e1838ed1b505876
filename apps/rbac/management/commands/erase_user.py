"""
Management command to erase a user's personal data.

Deactivates all memberships, scrubs the profile and redacts the user's PII
from the audit trail. The identity provider account is not touched.
"""
from django.core.management.base import BaseCommand, CommandError

from apps.core.authentication import parse_uuid
from apps.core.exceptions import NotFoundError
from apps.rbac.services import MembershipService


class Command(BaseCommand):
    help = "Erase a user's personal data and anonymize their audit entries"

    def add_arguments(self, parser):
        parser.add_argument('user_id', help='Id of the user to erase')
        parser.add_argument('--actor', default=None, help='Id of the operator performing the erasure')

    def handle(self, *args, **options):
        user_id = parse_uuid(options['user_id'])
        if user_id is None:
            raise CommandError('user_id must be a UUID')

        actor_id = parse_uuid(options['actor']) if options['actor'] else None

        try:
            MembershipService.erase_user(user_id, actor_user_id=actor_id)
        except NotFoundError as e:
            raise CommandError(e.message)

        self.stdout.write(self.style.SUCCESS(f'✓ Erased user {user_id}'))
