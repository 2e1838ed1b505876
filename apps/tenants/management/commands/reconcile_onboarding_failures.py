"""
Management command for operators to review and clean up onboarding
attempts whose rollback did not complete.

Without options it lists unresolved ledger entries. ``--retry`` re-runs
the recorded compensations and marks an entry resolved when all of them
succeed. ``--resolve`` marks an entry resolved after manual cleanup.
Entries are never deleted.
"""
import getpass

from django.core.management.base import BaseCommand, CommandError

from apps.tenants.models import OnboardingFailure
from apps.tenants.services.onboarding_service import retry_compensation


class Command(BaseCommand):
    help = 'List, retry or resolve onboarding failures with incomplete rollback'

    def add_arguments(self, parser):
        parser.add_argument('--retry', metavar='FAILURE_ID', help='Re-run compensations for one entry')
        parser.add_argument('--retry-all', action='store_true', help='Re-run compensations for every unresolved entry')
        parser.add_argument('--resolve', metavar='FAILURE_ID', help='Mark an entry resolved after manual cleanup')
        parser.add_argument('--notes', default='', help='Resolution notes')
        parser.add_argument('--operator', default=None, help='Operator name recorded on resolution')

    def handle(self, *args, **options):
        operator = options['operator'] or getpass.getuser()

        if options['resolve']:
            entry = self._get_entry(options['resolve'])
            entry.mark_resolved(operator, options['notes'])
            self.stdout.write(self.style.SUCCESS(f'✓ Marked {entry.id} resolved'))
            return

        if options['retry'] or options['retry_all']:
            from apps.integrations.services.identity_provider_service import IdentityProviderGateway

            gateway = IdentityProviderGateway()
            entries = (
                [self._get_entry(options['retry'])]
                if options['retry']
                else list(OnboardingFailure.objects.unresolved())
            )
            for entry in entries:
                self._retry(gateway, entry, operator, options['notes'])
            return

        self._list()

    def _get_entry(self, failure_id):
        entry = OnboardingFailure.objects.filter(id=failure_id).first()
        if entry is None:
            raise CommandError(f'No onboarding failure with id {failure_id}')
        return entry

    def _retry(self, gateway, entry, operator, notes):
        if entry.resolved_at:
            self.stdout.write(self.style.HTTP_INFO(f'  Already resolved: {entry.id}'))
            return

        outcomes = retry_compensation(gateway, entry)
        failed = [outcome for outcome in outcomes if not outcome.succeeded]
        if failed:
            entry.uncompensated = [outcome.as_dict() for outcome in failed]
            entry.save(update_fields=['uncompensated', 'updated_at'])
            self.stdout.write(
                self.style.ERROR(f'✗ {entry.id}: {len(failed)} compensation(s) still failing')
            )
            return

        entry.uncompensated = []
        entry.save(update_fields=['uncompensated', 'updated_at'])
        entry.mark_resolved(operator, notes or 'Compensations retried successfully')
        self.stdout.write(self.style.SUCCESS(f'✓ {entry.id}: rollback completed'))

    def _list(self):
        entries = OnboardingFailure.objects.unresolved()
        if not entries.exists():
            self.stdout.write(self.style.SUCCESS('No unresolved onboarding failures'))
            return

        for entry in entries:
            actions = ', '.join(item.get('action', '?') for item in entry.uncompensated or [])
            self.stdout.write(
                f'{entry.id}  {entry.failed_at:%Y-%m-%d %H:%M}  {entry.domain}  '
                f'step={entry.failed_step}  org={entry.external_org_id or "-"}  '
                f'user={entry.external_user_id or "-"}  pending=[{actions}]'
            )
