"""
Tenant models: organizations, their domains and the onboarding failure ledger.
"""
from django.db import models
from django.utils import timezone

from apps.core.models import BaseModel, SoftDeleteManager


class TenantManager(SoftDeleteManager):
    """Manager for Tenant queries."""

    def active(self):
        return self.filter(status=Tenant.STATUS_ACTIVE)

    def name_exists(self, name):
        return self.including_deleted().filter(name__iexact=name.strip()).exists()


class Tenant(BaseModel):
    """
    An organization on the platform.

    The primary key is the identity provider's organization id.
    """

    STATUS_ACTIVE = 'active'
    STATUS_SUSPENDED = 'suspended'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_SUSPENDED, 'Suspended'),
    ]

    name = models.CharField(
        max_length=255,
        unique=True,
        help_text="Organization name"
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        db_index=True,
        help_text="Current tenant status"
    )

    objects = TenantManager()

    class Meta:
        db_table = 'tenants'
        ordering = ['name']

    def __str__(self):
        return self.name

    @property
    def primary_domain(self):
        domain = self.domains.filter(is_primary=True).first()
        return domain.domain if domain else None


class TenantDomainManager(SoftDeleteManager):
    def domain_exists(self, domain):
        return self.including_deleted().filter(domain=normalize_domain(domain)).exists()


def normalize_domain(domain):
    return (domain or '').strip().lower().rstrip('.')


class TenantDomain(BaseModel):
    """
    A domain owned by a tenant. Domains are unique system-wide.
    """

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name='domains',
        help_text="Owning tenant"
    )
    domain = models.CharField(
        max_length=253,
        unique=True,
        help_text="Domain name, lowercase"
    )
    is_primary = models.BooleanField(
        default=False,
        help_text="Primary domain of the tenant"
    )
    is_verified = models.BooleanField(
        default=False,
        help_text="Whether domain ownership has been verified"
    )

    objects = TenantDomainManager()

    class Meta:
        db_table = 'tenant_domains'
        ordering = ['-is_primary', 'domain']

    def __str__(self):
        return self.domain


class OnboardingFailureManager(SoftDeleteManager):
    def unresolved(self):
        return self.filter(resolved_at__isnull=True)


class OnboardingFailure(BaseModel):
    """
    Ledger entry for an onboarding attempt whose rollback did not complete.

    Holds everything an operator needs to clean up the identity provider by
    hand. Entries are never deleted automatically; resolving one only stamps
    ``resolved_at``.
    """

    external_org_id = models.CharField(
        max_length=64,
        blank=True,
        help_text="Organization id at the identity provider, if one was created"
    )
    external_user_id = models.CharField(
        max_length=64,
        blank=True,
        help_text="User id at the identity provider, if one was created"
    )
    tenant_name = models.CharField(max_length=255, help_text="Requested organization name")
    domain = models.CharField(max_length=253, help_text="Requested domain")
    email = models.EmailField(help_text="Requested admin email")
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)
    failed_step = models.CharField(
        max_length=50,
        help_text="Saga step that failed"
    )
    error_code = models.CharField(max_length=64, blank=True, help_text="Stable error code")
    error_message = models.TextField(help_text="Original failure message")
    error_details = models.TextField(blank=True, help_text="Provider response body or traceback")
    rollback_succeeded = models.BooleanField(
        default=False,
        help_text="Whether every compensating action succeeded"
    )
    uncompensated = models.JSONField(
        default=list,
        help_text="Compensating actions that failed, with identifiers and errors"
    )
    failed_at = models.DateTimeField(default=timezone.now, db_index=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.CharField(max_length=255, blank=True, help_text="Operator who resolved it")
    resolution_notes = models.TextField(blank=True)

    objects = OnboardingFailureManager()

    class Meta:
        db_table = 'onboarding_failures'
        ordering = ['-failed_at']

    def __str__(self):
        return f"{self.domain} failed at {self.failed_step}"

    def delete(self, *args, **kwargs):
        raise ValueError("Onboarding failure entries are kept for reconciliation")

    def mark_resolved(self, operator, notes=''):
        self.resolved_at = timezone.now()
        self.resolved_by = operator
        self.resolution_notes = notes
        self.save(update_fields=['resolved_at', 'resolved_by', 'resolution_notes', 'updated_at'])
