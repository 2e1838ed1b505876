"""
Pytest configuration and fixtures.
"""
import uuid
from unittest.mock import MagicMock

import jwt
import pytest
from django.conf import settings
import django
from django.core.management import call_command

TEST_JWT_KEY = 'warden-test-signing-key-0123456789-abcdefghijklmnopqrstuvwxyz'


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    settings.SECURE_SSL_REDIRECT = False
    settings.JWT_VERIFYING_KEY = TEST_JWT_KEY
    settings.JWT_ALGORITHM = 'HS256'
    settings.JWT_AUDIENCE = None
    settings.AUTH_TRUST_ACTOR_HEADERS = False
    settings.SENTRY_DSN = None
    settings.IDENTITY_PROVIDER_BASE_URL = 'https://idp.test'
    settings.IDENTITY_PROVIDER_REALM = 'warden'
    settings.IDENTITY_PROVIDER_CLIENT_ID = 'warden-service'
    settings.IDENTITY_PROVIDER_CLIENT_SECRET = 'test-secret'
    django.setup()


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database with migrations."""
    with django_db_blocker.unblock():
        call_command('migrate', verbosity=0)


@pytest.fixture(autouse=True)
def _reset_identity_provider_tokens():
    from apps.integrations.services.identity_provider_service import reset_token_caches

    reset_token_caches()
    yield
    reset_token_caches()


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def seeded(db):
    """Seed canonical permissions, role templates and global settings."""
    call_command('seed_permissions', verbosity=0)


@pytest.fixture
def tenant(db):
    """Create a test tenant."""
    from apps.tenants.models import Tenant, TenantDomain
    tenant = Tenant.objects.create(name='Acme Corp')
    TenantDomain.objects.create(tenant=tenant, domain='acme.test', is_primary=True)
    return tenant


@pytest.fixture
def other_tenant(db):
    """Create another test tenant for isolation tests."""
    from apps.tenants.models import Tenant
    return Tenant.objects.create(name='Globex')


@pytest.fixture
def make_user(db):
    """Factory creating users with unique emails."""
    from apps.rbac.models import User

    def _make_user(email=None, **kwargs):
        email = email or f'user-{uuid.uuid4().hex[:8]}@example.com'
        kwargs.setdefault('username', email)
        kwargs.setdefault('first_name', 'Test')
        kwargs.setdefault('last_name', 'User')
        return User.objects.create(email=email, **kwargs)

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user(email='test@example.com')


@pytest.fixture
def make_member(db):
    """
    Factory adding a user to a tenant with the given role templates and
    direct permissions. Roles and permissions must already exist.
    """
    from apps.rbac.models import (
        Permission, Role, TenantUser, TenantUserRole, UserPermission,
    )

    def _make_member(tenant, user, roles=(), permissions=(), status=TenantUser.STATUS_ACTIVE):
        membership = TenantUser.objects.create(tenant=tenant, user=user, status=status)
        for role_name in roles:
            TenantUserRole.objects.create(tenant_user=membership, role=Role.objects.get(name=role_name))
        for permission_name in permissions:
            UserPermission.objects.create(
                tenant_user=membership,
                permission=Permission.objects.get(name=permission_name),
            )
        return membership

    return _make_member


@pytest.fixture
def admin_member(seeded, tenant, make_user, make_member):
    """An org-admin of ``tenant``."""
    admin = make_user(email='admin@acme.test', first_name='Ada', last_name='Admin')
    make_member(tenant, admin, roles=['org-admin'])
    return admin


@pytest.fixture
def make_token():
    """Issue bearer tokens signed with the test verifying key."""

    def _make_token(user_id, tenant_id=None, **claims):
        payload = {'sub': str(user_id)}
        if tenant_id is not None:
            payload['tenant_id'] = str(tenant_id)
        payload.update(claims)
        return jwt.encode(payload, TEST_JWT_KEY, algorithm='HS256')

    return _make_token


@pytest.fixture
def authenticate(api_client, make_token):
    """Authenticate ``api_client`` as a user acting in a tenant."""

    def _authenticate(user, tenant):
        api_client.credentials(HTTP_AUTHORIZATION=f'Bearer {make_token(user.id, tenant.id)}')
        return api_client

    return _authenticate


@pytest.fixture
def fake_gateway():
    """
    Identity provider gateway double whose calls succeed and return fresh
    UUID ids.
    """
    gateway = MagicMock()
    gateway.create_org.side_effect = lambda *args, **kwargs: str(uuid.uuid4())
    gateway.create_user.side_effect = lambda *args, **kwargs: str(uuid.uuid4())
    gateway.add_membership.return_value = None
    gateway.delete_org.return_value = True
    gateway.delete_user.return_value = True
    gateway.remove_membership.return_value = True
    return gateway
