"""
RBAC models for tenant-scoped access control.

Implements:
- Global User identity (can belong to multiple tenants)
- TenantUser membership, the anchor for every grant
- PermissionGroup / Permission (global canonical permissions)
- Role (global templates shared by all tenants)
- RolePermission, TenantUserRole and UserPermission grant tables
- GlobalSetting (platform-wide policy switches)
- AuditLog (append-only audit trail)
"""
import json
import logging
import uuid

from django.db import models, transaction
from django.utils import timezone

from apps.core.models import BaseModel, SoftDeleteManager

logger = logging.getLogger(__name__)


class UserManager(SoftDeleteManager):
    """Manager for User queries."""

    def active(self):
        return self.filter(status=User.STATUS_ACTIVE, deleted_at__isnull=True)

    def by_email(self, email):
        return self.filter(email=self.normalize_email(email)).first()

    def email_exists(self, email):
        return self.including_deleted().filter(email=self.normalize_email(email)).exists()

    @staticmethod
    def normalize_email(email):
        """Lowercase the whole address; the provider treats emails case-insensitively."""
        return (email or '').strip().lower()


class User(BaseModel):
    """
    Global user identity.

    The primary key is the identity provider's user id, so tokens issued
    by the provider map straight onto rows here.
    """

    STATUS_ACTIVE = 'active'
    STATUS_INACTIVE = 'inactive'
    STATUS_SUSPENDED = 'suspended'
    STATUS_PENDING = 'pending'
    STATUS_ERASED = 'erased'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_INACTIVE, 'Inactive'),
        (STATUS_SUSPENDED, 'Suspended'),
        (STATUS_PENDING, 'Pending'),
        (STATUS_ERASED, 'Erased'),
    ]

    email = models.EmailField(
        unique=True,
        db_index=True,
        help_text="Email address, unique across the platform"
    )
    username = models.CharField(
        max_length=150,
        help_text="Username registered with the identity provider"
    )
    first_name = models.CharField(max_length=100, blank=True, help_text="First name")
    last_name = models.CharField(max_length=100, blank=True, help_text="Last name")
    phone = models.CharField(max_length=32, blank=True, help_text="Phone number")
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        db_index=True,
        help_text="Account lifecycle status"
    )
    is_platform_admin = models.BooleanField(
        default=False,
        help_text="May edit the global role templates"
    )

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['email']

    def __str__(self):
        return self.email

    @property
    def display_name(self):
        full_name = f"{self.first_name} {self.last_name}".strip()
        return full_name or self.username or self.email


class TenantUserManager(SoftDeleteManager):
    """Manager for TenantUser queries."""

    def get_membership(self, tenant_id, user_id, active_only=True):
        qs = self.filter(tenant_id=tenant_id, user_id=user_id, deleted_at__isnull=True)
        if active_only:
            qs = qs.filter(status=TenantUser.STATUS_ACTIVE)
        return qs.first()

    def for_tenant(self, tenant_id):
        return self.filter(tenant_id=tenant_id, status=TenantUser.STATUS_ACTIVE)

    def for_user(self, user_id):
        return self.filter(user_id=user_id)


class TenantUser(BaseModel):
    """
    A user's membership in one tenant.

    Every role assignment and direct grant hangs off this row. Memberships
    are deactivated, never deleted.
    """

    STATUS_ACTIVE = 'active'
    STATUS_INACTIVE = 'inactive'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_INACTIVE, 'Inactive'),
    ]

    tenant = models.ForeignKey(
        'tenants.Tenant',
        on_delete=models.CASCADE,
        related_name='memberships',
        help_text="Tenant this membership belongs to"
    )
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='memberships',
        help_text="Member user"
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        db_index=True,
        help_text="Inactive memberships resolve as non-members"
    )
    joined_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the user joined the tenant"
    )

    objects = TenantUserManager()

    class Meta:
        db_table = 'tenant_users'
        unique_together = [('tenant', 'user')]
        ordering = ['-joined_at']
        indexes = [
            models.Index(fields=['tenant', 'status'], name='tenant_users_tenant_status_idx'),
            models.Index(fields=['user', 'status'], name='tenant_users_user_status_idx'),
        ]

    def __str__(self):
        return f"{self.user_id} @ {self.tenant_id}"

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE


class PermissionGroup(BaseModel):
    """Presentation grouping for permissions (e.g. SystemAdministration)."""

    name = models.CharField(max_length=100, unique=True, help_text="Group name")
    description = models.TextField(blank=True, help_text="Group description")

    class Meta:
        db_table = 'permission_groups'
        ordering = ['name']

    def __str__(self):
        return self.name


class PermissionManager(SoftDeleteManager):
    """Manager for Permission queries."""

    def by_name(self, name):
        return self.filter(name=name).first()

    def by_names(self, names):
        return self.filter(name__in=list(names))


class Permission(BaseModel):
    """
    Global canonical permission identified by a stable name.

    Examples: invite-users, view-users, assign-permissions.
    """

    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Stable permission name (e.g., 'invite-users')"
    )
    display_name = models.CharField(max_length=255, blank=True, help_text="Human-readable name")
    description = models.TextField(blank=True, help_text="What the permission allows")
    group = models.ForeignKey(
        PermissionGroup,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='permissions',
        help_text="Presentation group"
    )

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        ordering = ['name']

    def __str__(self):
        return self.name


class RoleManager(SoftDeleteManager):
    def by_name(self, name):
        return self.filter(name=name).first()


class Role(BaseModel):
    """
    Global role template.

    The same row is attached to memberships in every tenant, so changing
    its permission bundle changes it everywhere.
    """

    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Stable role name (e.g., 'org-admin')"
    )
    display_name = models.CharField(max_length=255, blank=True, help_text="Human-readable name")
    description = models.TextField(blank=True, help_text="Role description")
    is_system = models.BooleanField(
        default=False,
        help_text="Seeded role that must not be deleted"
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        ordering = ['name']

    def __str__(self):
        return self.name

    def permission_names(self):
        return set(
            self.role_permissions.values_list('permission__name', flat=True)
        )


class RolePermissionManager(SoftDeleteManager):
    def grant_permission(self, role, permission):
        """Attach permission to role (idempotent)."""
        role_permission, _ = self.get_or_create(role=role, permission=permission)
        return role_permission


class RolePermission(BaseModel):
    """Maps a permission into a role's bundle."""

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Role"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        help_text="Permission included in the role"
    )

    objects = RolePermissionManager()

    class Meta:
        db_table = 'role_permissions'
        unique_together = [('role', 'permission')]

    def __str__(self):
        return f"{self.role_id}:{self.permission_id}"


class TenantUserRole(BaseModel):
    """Assignment of a role to a membership."""

    tenant_user = models.ForeignKey(
        TenantUser,
        on_delete=models.CASCADE,
        related_name='user_roles',
        help_text="Membership receiving the role"
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='assignments',
        help_text="Assigned role"
    )
    assigned_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='role_assignments_made',
        help_text="User who made the assignment (null for system)"
    )
    assigned_at = models.DateTimeField(default=timezone.now, help_text="Assignment time")

    class Meta:
        db_table = 'tenant_user_roles'
        unique_together = [('tenant_user', 'role')]


class UserPermission(BaseModel):
    """Direct permission grant on a membership, in addition to its roles."""

    tenant_user = models.ForeignKey(
        TenantUser,
        on_delete=models.CASCADE,
        related_name='user_permissions',
        help_text="Membership receiving the grant"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='user_grants',
        help_text="Granted permission"
    )
    reason = models.TextField(blank=True, help_text="Why the grant was made")
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='permission_grants_made',
        help_text="User who made the grant (null for system)"
    )

    class Meta:
        db_table = 'user_permissions'
        unique_together = [('tenant_user', 'permission')]


TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


def parse_bool(value):
    """Map a stored setting to True/False, or None when it is not a boolean."""
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


class GlobalSettingManager(SoftDeleteManager):
    def get_value(self, key, default=None):
        setting = self.filter(key=key).first()
        return setting.value if setting else default

    def get_bool(self, key, default=False):
        """Unrecognised values fall back to ``default`` rather than False."""
        value = self.get_value(key)
        if value is None:
            return default
        parsed = parse_bool(value)
        if parsed is None:
            logger.warning(
                "Global setting is not a boolean, using default",
                extra={'key': key, 'default': default}
            )
            return default
        return parsed

    def upsert(self, key, value, description=None):
        """Create or update a setting; returns (setting, previous_value)."""
        setting = self.select_for_update().filter(key=key).first()
        if setting is None:
            setting = self.create(key=key, value=value, description=description or '')
            return setting, None

        previous = setting.value
        setting.value = value
        if description is not None:
            setting.description = description
        setting.save(update_fields=['value', 'description', 'updated_at'])
        return setting, previous


class GlobalSetting(BaseModel):
    """Platform-wide key/value policy setting."""

    REQUIRE_PERMISSION_TO_GRANT = 'RequirePermissionToGrant'
    BOOLEAN_KEYS = (REQUIRE_PERMISSION_TO_GRANT,)

    key = models.CharField(max_length=100, unique=True, help_text="Setting key")
    value = models.TextField(help_text="Setting value")
    description = models.TextField(blank=True, help_text="What the setting controls")

    objects = GlobalSettingManager()

    class Meta:
        db_table = 'global_settings'
        ordering = ['key']

    def __str__(self):
        return f"{self.key}={self.value}"


REDACTED = '[REDACTED]'
PII_SNAPSHOT_KEYS = {
    'first_name', 'firstname', 'last_name', 'lastname', 'full_name',
    'display_name', 'email', 'phone', 'phone_number', 'phonenumber',
}


def redact_snapshot(snapshot):
    """
    Replace PII values in an audit snapshot with ``[REDACTED]``.

    Nested objects and lists are walked, and strings holding a JSON
    object or array are redacted and re-serialized. Anything else is
    returned unchanged.
    """
    if isinstance(snapshot, dict):
        return {
            key: REDACTED if str(key).lower() in PII_SNAPSHOT_KEYS else redact_snapshot(value)
            for key, value in snapshot.items()
        }
    if isinstance(snapshot, list):
        return [redact_snapshot(item) for item in snapshot]
    if isinstance(snapshot, str):
        try:
            parsed = json.loads(snapshot)
        except ValueError:
            return snapshot
        if isinstance(parsed, (dict, list)):
            return json.dumps(redact_snapshot(parsed))
    return snapshot


class AuditLogManager(models.Manager):
    """Manager for AuditLog queries."""

    def for_tenant(self, tenant_id):
        return self.filter(tenant_id=tenant_id)

    def by_action(self, action):
        return self.filter(action=action)

    def by_resource(self, resource_type, resource_id=None):
        qs = self.filter(resource_type=resource_type)
        if resource_id:
            qs = qs.filter(resource_id=str(resource_id))
        return qs

    def anonymize_for_user(self, user_id):
        """
        Redact a user's PII from the audit trail.

        Entries the user performed get the actor name "deleted user";
        entries the user performed or that are about the user get PII keys
        in their snapshots replaced. Returns the number of rows touched.
        """
        user_key = str(user_id)
        rows = self.filter(
            models.Q(actor_user_id=user_id)
            | models.Q(resource_type='user', resource_id=user_key)
        )

        updated = 0
        for entry in rows.iterator():
            changes = {
                'old_values': redact_snapshot(entry.old_values),
                'new_values': redact_snapshot(entry.new_values),
            }
            if entry.actor_user_id == user_id:
                changes['actor_display_name'] = 'deleted user'
            # Bypass AuditLog.save(), which refuses to rewrite entries.
            self.filter(pk=entry.pk).update(**changes)
            updated += 1

        logger.info(
            "Anonymized audit entries",
            extra={'user_id': user_key, 'entries': updated}
        )
        return updated


class AuditLog(models.Model):
    """
    Append-only audit trail of RBAC, onboarding and settings changes.

    Rows are immutable; the only rewrite is the PII redaction performed by
    ``AuditLog.objects.anonymize_for_user``.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    actor_user_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="User who performed the action (null for system actions)"
    )
    actor_display_name = models.CharField(
        max_length=255,
        default='system',
        help_text="Actor name at the time of the action"
    )
    tenant_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Tenant the action belongs to (null for platform-level)"
    )
    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action verb (e.g., 'role.assigned', 'tenant.created')"
    )
    resource_type = models.CharField(max_length=100, help_text="Type of the affected resource")
    resource_id = models.CharField(max_length=255, blank=True, help_text="Id of the affected resource")
    old_values = models.JSONField(null=True, blank=True, help_text="Snapshot before the change")
    new_values = models.JSONField(null=True, blank=True, help_text="Snapshot after the change")
    ip_address = models.GenericIPAddressField(null=True, blank=True, help_text="Client IP")
    user_agent = models.TextField(blank=True, help_text="Client user agent")
    request_id = models.CharField(max_length=64, blank=True, null=True, help_text="Request trace id")
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = AuditLogManager()

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant_id', 'created_at'], name='audit_logs_tenant_created_idx'),
            models.Index(fields=['resource_type', 'resource_id'], name='audit_logs_resource_idx'),
        ]

    def __str__(self):
        return f"{self.action} {self.resource_type}:{self.resource_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Audit log entries are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Audit log entries cannot be deleted")

    @classmethod
    def log_action(cls, action, resource_type, resource_id=None, actor_user_id=None,
                   actor_display_name=None, tenant_id=None, old_values=None,
                   new_values=None, request=None):
        """
        Append an audit entry.

        Never raises: a failed write is logged and reported, and the caller's
        operation carries on. The insert runs in its own savepoint so a
        database error cannot poison an enclosing transaction.

        Returns:
            AuditLog instance, or None when the write failed
        """
        log_data = {
            'action': action,
            'resource_type': resource_type,
            'resource_id': str(resource_id) if resource_id is not None else '',
            'actor_user_id': actor_user_id,
            'actor_display_name': actor_display_name or 'system',
            'tenant_id': tenant_id,
            'old_values': old_values,
            'new_values': new_values,
        }

        if request is not None:
            log_data['ip_address'] = cls._get_client_ip(request)
            log_data['user_agent'] = request.META.get('HTTP_USER_AGENT', '')
            log_data['request_id'] = getattr(request, 'request_id', None)

        try:
            with transaction.atomic():
                return cls.objects.create(**log_data)
        except Exception as e:
            from apps.core.sentry_utils import capture_exception

            logger.error(
                f"Failed to create audit log: {str(e)}",
                extra={'action': action, 'tenant_id': str(tenant_id) if tenant_id else None},
                exc_info=True
            )
            capture_exception(e, audit={'action': action, 'resource_type': resource_type})
            return None

    @staticmethod
    def _get_client_ip(request):
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            return x_forwarded_for.split(',')[0].strip()
        return request.META.get('REMOTE_ADDR')
