"""
Tests for POST /v1/onboarding.
"""
from unittest.mock import patch

import pytest

from apps.core.exceptions import IdentityProviderRequestError
from apps.rbac.models import User
from apps.tenants.models import OnboardingFailure, Tenant
from apps.tenants.services.onboarding_service import OnboardingService

PAYLOAD = {
    'tenant_name': 'Initech',
    'domain': 'initech.test',
    'email': 'peter@initech.test',
    'first_name': 'Peter',
    'last_name': 'Gibbons',
}


@pytest.fixture
def onboard(api_client, fake_gateway):
    """POST to the onboarding endpoint with the provider replaced by ``fake_gateway``."""

    def _onboard(data=None):
        with patch(
            'apps.tenants.views.OnboardingService',
            side_effect=lambda: OnboardingService(gateway=fake_gateway),
        ):
            return api_client.post('/v1/onboarding', data or PAYLOAD, format='json')

    return _onboard


@pytest.mark.django_db
class TestOnboardingAPI:
    def test_creates_tenant(self, seeded, onboard):
        response = onboard()

        assert response.status_code == 201
        assert response.data['state'] == 'completed'
        tenant = Tenant.objects.get(id=response.data['tenant_id'])
        assert tenant.name == 'Initech'
        assert User.objects.filter(id=response.data['user_id']).exists()

    def test_no_credentials_needed(self, seeded, onboard, api_client):
        api_client.credentials(HTTP_AUTHORIZATION='Bearer not-a-token')

        assert onboard().status_code == 201

    def test_invalid_domain(self, seeded, onboard, fake_gateway):
        response = onboard({**PAYLOAD, 'domain': 'not a domain'})

        assert response.status_code == 400
        assert 'domain' in response.data['error']['details']
        fake_gateway.create_org.assert_not_called()

    def test_short_password(self, seeded, onboard):
        response = onboard({**PAYLOAD, 'password': 'short'})

        assert response.status_code == 400
        assert 'password' in response.data['error']['details']

    def test_existing_domain_is_409(self, seeded, tenant, onboard, fake_gateway):
        response = onboard({**PAYLOAD, 'domain': 'acme.test'})

        assert response.status_code == 409
        assert response.data['error']['code'] == 'CONFLICT'
        fake_gateway.create_org.assert_not_called()

    def test_failure_reports_step_and_rollback(self, seeded, onboard, fake_gateway):
        fake_gateway.add_membership.side_effect = IdentityProviderRequestError("rejected", provider_status=400)

        response = onboard()

        assert response.status_code == 502
        error = response.data['error']
        assert error['code'] == 'IDENTITY_PROVIDER_REJECTED'
        assert error['details']['step'] == 'link_membership'
        assert error['details']['rollback_succeeded'] is True
        assert error['details']['failure_id'] is None
        assert response.data['request_id'] == response['X-Request-ID']

    def test_incomplete_rollback_references_ledger(self, seeded, onboard, fake_gateway):
        fake_gateway.add_membership.side_effect = IdentityProviderRequestError("rejected", provider_status=400)
        fake_gateway.delete_org.side_effect = IdentityProviderRequestError("down", provider_status=503)

        response = onboard()

        details = response.data['error']['details']
        assert details['rollback_succeeded'] is False
        assert details['failure_id'] == str(OnboardingFailure.objects.get().id)
