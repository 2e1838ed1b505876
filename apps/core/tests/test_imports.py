"""
Cold-start import order tests.

Each case runs in a fresh interpreter so no module is already imported
by the test session.
"""
import os
import subprocess
import sys

import pytest
from django.conf import settings

SCRIPT = """
import importlib
import django
django.setup()
importlib.import_module({module!r})
from django.test import Client
print(Client().get('/v1/health').status_code)
"""


def fresh_environment():
    env = {key: value for key, value in os.environ.items() if not key.startswith(('IDENTITY_PROVIDER_', 'JWT_'))}
    env.update({
        'DJANGO_SETTINGS_MODULE': 'config.settings',
        'DEBUG': 'true',
        'ALLOWED_HOSTS': 'testserver',
        'DATABASE_URL': 'sqlite://:memory:',
        'SENTRY_DSN': '',
        'JWT_VERIFYING_KEY': 'cold-start-key',
        'IDENTITY_PROVIDER_BASE_URL': 'https://idp.test',
        'IDENTITY_PROVIDER_REALM': 'warden',
        'IDENTITY_PROVIDER_CLIENT_ID': 'warden-service',
        'IDENTITY_PROVIDER_CLIENT_SECRET': 'test-secret',
    })
    return env


@pytest.mark.parametrize('module', [
    'apps.core.exceptions',
    'apps.core.permissions',
    'rest_framework.views',
    'apps.rbac.services',
    'apps.rbac.views',
])
def test_health_after_cold_import(module):
    result = subprocess.run(
        [sys.executable, '-c', SCRIPT.format(module=module)],
        cwd=str(settings.BASE_DIR),
        env=fresh_environment(),
        capture_output=True,
        text=True,
        timeout=120,
    )

    assert result.returncode == 0, result.stderr
    assert result.stdout.strip().splitlines()[-1] == '200'
