"""
Tests for effective permission resolution.

The effective set of a member is the union of the permissions of every
assigned role and the member's direct grants.
"""
import uuid
from unittest.mock import patch

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from apps.core.exceptions import NotAMemberError
from apps.rbac.management.commands.seed_permissions import CANONICAL_PERMISSIONS
from apps.rbac.models import (
    Permission, Role, RolePermission, TenantUser, TenantUserRole, UserPermission,
)
from apps.rbac.services import PermissionResolver, PermissionStore

PERMISSION_NAMES = [p['name'] for p in CANONICAL_PERMISSIONS]

permission_sets = st.sets(st.sampled_from(PERMISSION_NAMES))


@pytest.mark.django_db
class TestResolveUnion:
    def test_role_permissions(self, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])

        resolved = PermissionResolver().resolve(tenant.id, user.id)

        assert resolved == {'invite-users', 'view-users', 'update-users'}

    def test_direct_grant_added_to_roles(self, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'], permissions=['delete-users'])

        resolved = PermissionResolver().resolve(tenant.id, user.id)

        assert resolved == {'invite-users', 'view-users', 'update-users', 'delete-users'}

    def test_member_without_grants_has_empty_set(self, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-user'])

        assert PermissionResolver().resolve(tenant.id, user.id) == frozenset()

    def test_role_template_change_applies_to_existing_members(self, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-user'])
        RolePermission.objects.create(
            role=Role.objects.get(name='org-user'),
            permission=Permission.objects.get(name='view-users'),
        )

        assert PermissionResolver().resolve(tenant.id, user.id) == {'view-users'}

    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(role_sets=st.lists(permission_sets, max_size=3), direct=permission_sets)
    def test_effective_set_is_union_of_sources(self, seeded, tenant, make_user, role_sets, direct):
        user = make_user()
        membership = TenantUser.objects.create(tenant=tenant, user=user)

        expected = set(direct)
        for names in role_sets:
            role = Role.objects.create(name=f'role-{uuid.uuid4().hex[:12]}')
            for name in names:
                RolePermission.objects.create(role=role, permission=Permission.objects.get(name=name))
            TenantUserRole.objects.create(tenant_user=membership, role=role)
            expected |= names
        for name in direct:
            UserPermission.objects.create(tenant_user=membership, permission=Permission.objects.get(name=name))

        assert PermissionResolver().resolve(tenant.id, user.id) == expected
        for name in PERMISSION_NAMES:
            assert PermissionResolver().has_any(tenant.id, user.id, [name]) is (name in expected)
        assert PermissionResolver().has_all(tenant.id, user.id, expected) is True


@pytest.mark.django_db
class TestMembership:
    def test_non_member_raises(self, seeded, tenant, user):
        with pytest.raises(NotAMemberError):
            PermissionResolver().resolve(tenant.id, user.id)

    def test_inactive_member_raises(self, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-admin'], status=TenantUser.STATUS_INACTIVE)

        with pytest.raises(NotAMemberError):
            PermissionResolver().resolve(tenant.id, user.id)

    def test_other_tenant_grants_do_not_leak(self, seeded, tenant, other_tenant, user, make_member):
        make_member(other_tenant, user, roles=['org-admin'])
        make_member(tenant, user, roles=['org-user'])

        assert PermissionResolver().resolve(tenant.id, user.id) == frozenset()

    def test_has_any_raises_for_non_member(self, seeded, tenant, user):
        with pytest.raises(NotAMemberError):
            PermissionResolver().has_any(tenant.id, user.id, ['view-users'])


@pytest.mark.django_db
class TestRequirementChecks:
    @pytest.fixture
    def manager(self, seeded, tenant, user, make_member):
        make_member(tenant, user, roles=['org-manager'])
        return user

    def test_empty_requirements(self, tenant, manager):
        resolver = PermissionResolver()

        assert resolver.has_all(tenant.id, manager.id, []) is True
        assert resolver.has_any(tenant.id, manager.id, []) is False

    def test_has_any(self, tenant, manager):
        resolver = PermissionResolver()

        assert resolver.has_any(tenant.id, manager.id, ['delete-users', 'view-users']) is True
        assert resolver.has_any(tenant.id, manager.id, ['delete-users']) is False

    def test_has_all(self, tenant, manager):
        resolver = PermissionResolver()

        assert resolver.has_all(tenant.id, manager.id, ['invite-users', 'view-users']) is True
        assert resolver.has_all(tenant.id, manager.id, ['invite-users', 'delete-users']) is False

    def test_has_any_stops_at_first_match(self, tenant, manager):
        store = PermissionStore()
        consumed = []

        def names(membership):
            for name in ['view-users', 'invite-users', 'update-users']:
                consumed.append(name)
                yield name

        with patch.object(store, 'iter_permission_names', side_effect=names):
            assert PermissionResolver(store).has_any(tenant.id, manager.id, ['view-users']) is True

        assert consumed == ['view-users']

    def test_has_all_stops_once_satisfied(self, tenant, manager):
        store = PermissionStore()
        consumed = []

        def names(membership):
            for name in ['invite-users', 'view-users', 'update-users']:
                consumed.append(name)
                yield name

        with patch.object(store, 'iter_permission_names', side_effect=names):
            assert PermissionResolver(store).has_all(tenant.id, manager.id, ['invite-users', 'view-users']) is True

        assert consumed == ['invite-users', 'view-users']

    def test_resolution_memoized_per_instance(self, tenant, manager):
        store = PermissionStore()
        resolver = PermissionResolver(store)

        with patch.object(store, 'load_membership', wraps=store.load_membership) as load:
            resolver.resolve(tenant.id, manager.id)
            resolver.resolve(str(tenant.id), str(manager.id))
            resolver.has_all(tenant.id, manager.id, ['view-users'])

        assert load.call_count == 1
