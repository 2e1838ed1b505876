"""
Schema migrations must match the models.
"""
from io import StringIO

import pytest
from django.core.management import call_command
from django.db import connection


@pytest.mark.django_db
def test_no_missing_migrations():
    out = StringIO()

    call_command('makemigrations', '--check', '--dry-run', stdout=out)

    assert 'No changes detected' in out.getvalue()


@pytest.mark.django_db
@pytest.mark.parametrize('table', ['tenants', 'tenant_domains', 'onboarding_failures', 'users', 'tenant_users', 'audit_logs'])
def test_tables_created_by_migrations(table):
    assert table in connection.introspection.table_names()
