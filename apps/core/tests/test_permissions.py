"""
Tests for the tenant authorization gate.

Covers:
- 401 when actor or tenant is missing, or the actor is not an active member
- 403 when the requirement is not met, without leaking permission names
- any-of vs all-of requirements
- Method-level requirements
"""
import uuid

import pytest
from rest_framework.response import Response
from rest_framework.test import APIRequestFactory
from rest_framework.views import APIView

from apps.core.permissions import HasTenantPermissions, get_requirement, requires_permissions
from apps.rbac.models import TenantUser


@requires_permissions('delete-users', 'view-users')
class AnyOfView(APIView):
    permission_classes = [HasTenantPermissions]

    def get(self, request):
        return Response({'ok': True})


@requires_permissions('invite-users', 'delete-users', require_all=True)
class AllOfView(APIView):
    permission_classes = [HasTenantPermissions]

    def get(self, request):
        return Response({'ok': True})


class MixedView(APIView):
    permission_classes = [HasTenantPermissions]

    def get(self, request):
        return Response({'ok': True})

    @requires_permissions('update-org-settings')
    def put(self, request):
        return Response({'ok': True})


@pytest.fixture
def factory():
    return APIRequestFactory()


@pytest.fixture
def call(factory, make_token):
    def _call(view_class, method='get', user_id=None, tenant_id=None, **extra):
        if user_id is not None:
            extra['HTTP_AUTHORIZATION'] = f'Bearer {make_token(user_id, tenant_id)}'
        request = getattr(factory, method)('/resource', **extra)
        return view_class.as_view()(request)
    return _call


@pytest.mark.django_db
class TestAuthenticationOutcomes:
    def test_no_credentials_is_401(self, call):
        response = call(AnyOfView)

        assert response.status_code == 401
        assert response['WWW-Authenticate'].startswith('Bearer')

    def test_missing_tenant_is_401(self, call, user):
        response = call(AnyOfView, user_id=user.id)

        assert response.status_code == 401

    def test_non_member_is_401(self, call, seeded, user, other_tenant):
        response = call(AnyOfView, user_id=user.id, tenant_id=other_tenant.id)

        assert response.status_code == 401

    def test_inactive_member_is_401(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-admin'], status=TenantUser.STATUS_INACTIVE)

        response = call(AnyOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 401

    def test_membership_in_other_tenant_does_not_count(self, call, seeded, tenant, other_tenant, user, make_member):
        make_member(other_tenant, user, roles=['org-admin'])

        response = call(AnyOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 401


@pytest.mark.django_db
class TestRequirementOutcomes:
    def test_member_without_permission_is_403(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-user'])

        response = call(AnyOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 403
        assert 'delete-users' not in str(response.data)
        assert 'view-users' not in str(response.data)

    def test_any_of_passes_with_one_permission(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])

        response = call(AnyOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 200

    def test_direct_grant_satisfies_requirement(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, permissions=['delete-users'])

        response = call(AnyOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 200

    def test_all_of_needs_every_permission(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])

        response = call(AllOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 403

    def test_all_of_from_role_and_direct_grant(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'], permissions=['delete-users'])

        response = call(AllOfView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 200

    def test_tenant_from_header(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])

        response = call(AnyOfView, user_id=user.id, HTTP_X_TENANT_ID=str(tenant.id))

        assert response.status_code == 200


@pytest.mark.django_db
class TestMethodRequirements:
    def test_undecorated_method_needs_membership_only(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-user'])

        response = call(MixedView, user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 200

    def test_decorated_method_is_enforced(self, call, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])

        response = call(MixedView, method='put', user_id=user.id, tenant_id=tenant.id)

        assert response.status_code == 403

    def test_get_requirement_prefers_method(self):
        request = APIRequestFactory().put('/resource')

        names, require_all = get_requirement(MixedView(), request)

        assert names == frozenset({'update-org-settings'})
        assert require_all is False

    def test_get_requirement_for_class(self):
        names, require_all = get_requirement(AllOfView(), APIRequestFactory().get('/resource'))

        assert names == frozenset({'invite-users', 'delete-users'})
        assert require_all is True


@pytest.mark.django_db
class TestResolverMemo:
    def test_resolver_attached_to_request(self, factory, make_token, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])
        captured = {}

        class CaptureView(AnyOfView):
            def get(self, request):
                captured['resolver'] = request.permission_resolver
                return Response({'ok': True})

        request = factory.get('/resource', HTTP_AUTHORIZATION=f'Bearer {make_token(user.id, tenant.id)}')
        response = CaptureView.as_view()(request)

        assert response.status_code == 200
        assert captured['resolver'].resolve(tenant.id, user.id) >= {'view-users'}

    def test_random_user_id_is_401(self, call, seeded, tenant):
        response = call(AnyOfView, user_id=uuid.uuid4(), tenant_id=tenant.id)

        assert response.status_code == 401
