"""
Tests for the exception taxonomy and the API error envelope.
"""
import pytest
from rest_framework import exceptions as drf_exceptions

from apps.core.exceptions import (
    ConflictError, ExternalProviderError, IdentityProviderRequestError,
    NotAMemberError, OnboardingError, PermissionDeniedError,
    PrivilegeEscalationError, custom_exception_handler,
)


class TestExceptionHandler:
    """Error responses share one envelope: error.code, error.message, request_id."""

    def test_conflict_includes_details(self):
        exc = ConflictError("Organization or user already exists", {'domain': 'acme.test'})

        response = custom_exception_handler(exc, {})

        assert response.status_code == 409
        assert response.data['error']['code'] == 'CONFLICT'
        assert response.data['error']['details'] == {'domain': 'acme.test'}
        assert response.data['request_id'] is None

    def test_permission_denied_hides_details(self):
        exc = PrivilegeEscalationError(
            "You cannot grant permissions you do not hold",
            {'missing_permissions': ['delete-users']},
        )

        response = custom_exception_handler(exc, {})

        assert response.status_code == 403
        assert response.data['error']['code'] == 'PRIVILEGE_ESCALATION'
        assert 'details' not in response.data['error']

    def test_not_a_member_is_401_without_details(self):
        exc = NotAMemberError("User is not an active member", {'tenant_id': 'x'})

        response = custom_exception_handler(exc, {})

        assert response.status_code == 401
        assert response.data['error']['code'] == 'NOT_A_MEMBER'
        assert 'details' not in response.data['error']

    def test_onboarding_error_takes_status_from_cause(self):
        cause = IdentityProviderRequestError("rejected", provider_status=409)
        exc = OnboardingError("failed", step='create_org', cause=cause, rollback_succeeded=True)

        response = custom_exception_handler(exc, {})

        assert response.status_code == 502
        assert response.data['error']['code'] == 'IDENTITY_PROVIDER_REJECTED'
        assert response.data['error']['details']['step'] == 'create_org'
        assert response.data['error']['details']['rollback_succeeded'] is True
        assert response.data['error']['details']['failure_id'] is None

    def test_onboarding_error_with_plain_cause(self):
        exc = OnboardingError("failed", step='audit', cause=RuntimeError('boom'), rollback_succeeded=False,
                              failure_id='abc')

        response = custom_exception_handler(exc, {})

        assert response.status_code == 422
        assert response.data['error']['code'] == 'ONBOARDING_FAILED'
        assert response.data['error']['details']['failure_id'] == 'abc'

    def test_drf_validation_error_keeps_field_errors(self):
        exc = drf_exceptions.ValidationError({'domain': ['Enter a valid domain name.']})

        response = custom_exception_handler(exc, {})

        assert response.status_code == 400
        assert response.data['error']['message'] == 'Invalid request'
        assert response.data['error']['details'] == {'domain': ['Enter a valid domain name.']}

    def test_drf_not_authenticated(self):
        response = custom_exception_handler(drf_exceptions.NotAuthenticated(), {})

        assert response.status_code == 401
        assert response.data['error']['code'] == 'NOT_AUTHENTICATED'

    def test_unhandled_exception_becomes_500(self):
        response = custom_exception_handler(RuntimeError('database exploded'), {})

        assert response.status_code == 500
        assert response.data['error']['code'] == 'INTERNAL_ERROR'
        assert 'database exploded' not in str(response.data)


class TestExternalProviderError:
    @pytest.mark.parametrize('provider_status, transient', [
        (None, True),
        (500, True),
        (503, True),
        (400, False),
        (404, False),
        (409, False),
    ])
    def test_is_transient(self, provider_status, transient):
        error = ExternalProviderError("failed", provider_status=provider_status)
        assert error.is_transient is transient

    def test_provider_status_recorded_in_details(self):
        error = ExternalProviderError("failed", provider_status=409, provider_body='{"errorMessage":"exists"}')

        assert error.details == {'provider_status': 409}
        assert error.provider_body == '{"errorMessage":"exists"}'

    def test_privilege_escalation_is_a_permission_error(self):
        assert issubclass(PrivilegeEscalationError, PermissionDeniedError)
