"""
Tests for the reconcile_onboarding_failures command.
"""
from io import StringIO
from unittest.mock import patch

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from apps.tenants.models import OnboardingFailure

GATEWAY_PATH = 'apps.integrations.services.identity_provider_service.IdentityProviderGateway'


@pytest.fixture
def failure(db):
    return OnboardingFailure.objects.create(
        external_org_id='org-1',
        external_user_id='user-1',
        tenant_name='Initech',
        domain='initech.test',
        email='peter@initech.test',
        failed_step='persist_internal',
        error_message='boom',
        uncompensated=[
            {'action': 'delete_user', 'identifiers': {'user_id': 'user-1'}, 'error': 'timeout'},
            {'action': 'delete_org', 'identifiers': {'org_id': 'org-1'}, 'error': 'timeout'},
        ],
    )


@pytest.mark.django_db
class TestReconcileOnboardingFailures:
    def test_lists_unresolved(self, failure):
        out = StringIO()

        call_command('reconcile_onboarding_failures', stdout=out)

        output = out.getvalue()
        assert str(failure.id) in output
        assert 'pending=[delete_user, delete_org]' in output

    def test_nothing_to_list(self, db):
        out = StringIO()

        call_command('reconcile_onboarding_failures', stdout=out)

        assert 'No unresolved' in out.getvalue()

    def test_retry_resolves_entry(self, failure, fake_gateway):
        with patch(GATEWAY_PATH, return_value=fake_gateway):
            call_command(
                'reconcile_onboarding_failures', '--retry', str(failure.id),
                '--operator', 'ops', stdout=StringIO(),
            )

        failure.refresh_from_db()
        assert failure.resolved_at is not None
        assert failure.resolved_by == 'ops'
        assert failure.uncompensated == []
        fake_gateway.delete_user.assert_called_once_with('user-1')
        fake_gateway.delete_org.assert_called_once_with('org-1')

    def test_retry_keeps_still_failing_actions(self, failure, fake_gateway):
        fake_gateway.delete_org.side_effect = RuntimeError('still down')

        with patch(GATEWAY_PATH, return_value=fake_gateway):
            call_command('reconcile_onboarding_failures', '--retry-all', '--operator', 'ops', stdout=StringIO())

        failure.refresh_from_db()
        assert failure.resolved_at is None
        assert failure.uncompensated == [
            {'action': 'delete_org', 'identifiers': {'org_id': 'org-1'}, 'error': 'still down'},
        ]

    def test_resolve_by_hand(self, failure):
        call_command(
            'reconcile_onboarding_failures', '--resolve', str(failure.id),
            '--operator', 'ops', '--notes', 'deleted in console', stdout=StringIO(),
        )

        failure.refresh_from_db()
        assert failure.resolution_notes == 'deleted in console'
        assert OnboardingFailure.objects.count() == 1

    def test_unknown_entry(self, db):
        with pytest.raises(CommandError):
            call_command(
                'reconcile_onboarding_failures', '--resolve', '00000000-0000-0000-0000-000000000000',
                '--operator', 'ops', stdout=StringIO(),
            )
