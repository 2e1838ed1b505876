"""
Tests for BaseModel soft delete behavior.
"""
import pytest

from apps.tenants.models import Tenant


@pytest.mark.django_db
class TestSoftDelete:
    def test_delete_hides_row(self, tenant):
        tenant.delete()

        assert tenant.is_deleted
        assert not Tenant.objects.filter(id=tenant.id).exists()
        assert Tenant.objects_with_deleted.filter(id=tenant.id).exists()

    def test_queryset_delete_is_soft(self, tenant, other_tenant):
        Tenant.objects.all().delete()

        assert Tenant.objects.count() == 0
        assert Tenant.objects_with_deleted.count() == 2

    def test_hard_delete_removes_row(self, other_tenant):
        other_tenant.hard_delete()

        assert not Tenant.objects_with_deleted.filter(id=other_tenant.id).exists()

    def test_queryset_hard_delete(self, other_tenant):
        Tenant.objects.filter(id=other_tenant.id).hard_delete()

        assert not Tenant.objects_with_deleted.filter(id=other_tenant.id).exists()

    def test_restore(self, tenant):
        tenant.delete()

        tenant.restore()

        assert Tenant.objects.filter(id=tenant.id).exists()

    def test_uniqueness_checks_see_deleted_rows(self, tenant):
        tenant.delete()

        assert Tenant.objects.name_exists('Acme Corp')
        assert Tenant.objects.including_deleted().filter(id=tenant.id).exists()
        assert list(Tenant.objects_with_deleted.dead()) == [tenant]
