"""
RBAC services: permission resolution, grant operations and policy.
"""
import logging
import re
from typing import Iterable, Iterator, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Prefetch

from apps.core.exceptions import (
    ConflictError, NotAMemberError, NotFoundError,
    PermissionDeniedError, PrivilegeEscalationError, ValidationError,
)
from apps.core.logging import SecurityLogger
from apps.rbac.models import (
    AuditLog, GlobalSetting, Permission, Role, RolePermission,
    TenantUser, TenantUserRole, User, UserPermission,
    parse_bool,
)

logger = logging.getLogger(__name__)

ASSIGN_PERMISSIONS = 'assign-permissions'


def admin_role_name():
    return getattr(settings, 'DEFAULT_TENANT_ADMIN_ROLE', 'org-admin')


class PermissionStore:
    """
    Read-only access to memberships and their grant sources.
    """

    def load_membership(self, tenant_id, user_id) -> Optional[TenantUser]:
        """
        Load an active membership with both grant sources prefetched.
        """
        return (
            TenantUser.objects
            .filter(
                tenant_id=tenant_id,
                user_id=user_id,
                status=TenantUser.STATUS_ACTIVE,
                deleted_at__isnull=True,
            )
            .prefetch_related(
                Prefetch(
                    'user_permissions',
                    queryset=UserPermission.objects.select_related('permission'),
                ),
                Prefetch(
                    'user_roles',
                    queryset=TenantUserRole.objects.select_related('role').prefetch_related(
                        Prefetch(
                            'role__role_permissions',
                            queryset=RolePermission.objects.select_related('permission'),
                        )
                    ),
                ),
            )
            .first()
        )

    def iter_permission_names(self, membership: TenantUser) -> Iterator[str]:
        """
        Yield permission names from direct grants, then from each role.

        Names may repeat when several sources grant the same permission.
        """
        for grant in membership.user_permissions.all():
            yield grant.permission.name
        for assignment in membership.user_roles.all():
            for role_permission in assignment.role.role_permissions.all():
                yield role_permission.permission.name


class PermissionResolver:
    """
    Resolve a member's effective permissions within one tenant.

    The effective set is the union of every assigned role's permissions
    and the membership's direct grants. Results are memoized for the life
    of the resolver instance, so create one per request.
    """

    def __init__(self, store: Optional[PermissionStore] = None):
        self.store = store or PermissionStore()
        self._memberships = {}
        self._resolved = {}

    @staticmethod
    def _key(tenant_id, user_id):
        return (str(tenant_id), str(user_id))

    def _membership(self, tenant_id, user_id) -> TenantUser:
        key = self._key(tenant_id, user_id)
        if key not in self._memberships:
            membership = self.store.load_membership(tenant_id, user_id)
            if membership is None:
                raise NotAMemberError(
                    "User is not an active member of this tenant",
                    {'tenant_id': str(tenant_id), 'user_id': str(user_id)},
                )
            self._memberships[key] = membership
        return self._memberships[key]

    def resolve(self, tenant_id, user_id) -> frozenset:
        """
        Return the effective permission names of a member.

        Raises:
            NotAMemberError: no active membership exists for the pair
        """
        key = self._key(tenant_id, user_id)
        if key not in self._resolved:
            membership = self._membership(tenant_id, user_id)
            self._resolved[key] = frozenset(self.store.iter_permission_names(membership))
        return self._resolved[key]

    def has_any(self, tenant_id, user_id, names: Iterable[str]) -> bool:
        """True on the first source granting any of ``names``; False for an empty list."""
        required = set(names)
        if not required:
            return False

        key = self._key(tenant_id, user_id)
        if key in self._resolved:
            return not required.isdisjoint(self._resolved[key])

        membership = self._membership(tenant_id, user_id)
        return any(name in required for name in self.store.iter_permission_names(membership))

    def has_all(self, tenant_id, user_id, names: Iterable[str]) -> bool:
        """True once every name in ``names`` has been seen; vacuously True when empty."""
        remaining = set(names)
        if not remaining:
            return True

        key = self._key(tenant_id, user_id)
        if key in self._resolved:
            return remaining <= self._resolved[key]

        membership = self._membership(tenant_id, user_id)
        for name in self.store.iter_permission_names(membership):
            remaining.discard(name)
            if not remaining:
                return True
        return False


class GlobalPolicySwitch:
    """
    Platform-wide switch controlling grant escalation.

    When enabled, a grantor may only hand out permissions they already
    hold. A missing setting counts as enabled.
    """

    KEY = GlobalSetting.REQUIRE_PERMISSION_TO_GRANT
    DESCRIPTION = (
        "When enabled, users must have a role or permission themselves "
        "before they can grant it to others"
    )

    @classmethod
    def grant_requires_possession(cls) -> bool:
        # Only an explicit false value turns the guard off.
        return GlobalSetting.objects.get_bool(cls.KEY, default=True)

    @staticmethod
    def normalize_value(key, value) -> str:
        """Boolean switches are stored as 'true' or 'false'; others as given."""
        if key not in GlobalSetting.BOOLEAN_KEYS:
            return str(value)
        parsed = value if isinstance(value, bool) else parse_bool(value)
        if parsed is None:
            raise ValidationError(
                f"Setting {key} must be a boolean",
                details={'value': ['Expected one of true, false, 1, 0, yes, no, on, off.']}
            )
        return 'true' if parsed else 'false'

    @classmethod
    def set(cls, key, value, description=None, actor_user_id=None,
            tenant_id=None, request=None) -> GlobalSetting:
        """Create or update a setting and audit the change."""
        value = cls.normalize_value(key, value)
        with transaction.atomic():
            setting, previous = GlobalSetting.objects.upsert(key, value, description)
            AuditLog.log_action(
                'setting.created' if previous is None else 'setting.updated',
                'global_setting',
                setting.key,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                tenant_id=tenant_id,
                old_values={'value': previous} if previous is not None else None,
                new_values={'value': setting.value},
                request=request,
            )

        logger.info(
            "Global setting changed",
            extra={'key': key, 'setting_created': previous is None}
        )
        return setting

    @classmethod
    def set_many(cls, items, actor_user_id=None, tenant_id=None, request=None):
        """
        Apply several settings at once. Either every item is written or none is.

        ``items`` are dicts with ``key``, ``value`` and optional ``description``.
        """
        for item in items:
            cls.normalize_value(item['key'], item['value'])

        with transaction.atomic():
            return [
                cls.set(
                    item['key'],
                    item['value'],
                    description=item.get('description'),
                    actor_user_id=actor_user_id,
                    tenant_id=tenant_id,
                    request=request,
                )
                for item in items
            ]


def _display_name(user_id):
    if user_id is None:
        return 'system'
    user = User.objects.filter(id=user_id).first()
    return user.display_name if user else str(user_id)


def require_platform_admin(user_id):
    if user_id is None or not User.objects.filter(id=user_id, is_platform_admin=True).exists():
        raise PermissionDeniedError("Only platform administrators can perform this action")


def _count_admins(tenant_id) -> int:
    return TenantUserRole.objects.filter(
        tenant_user__tenant_id=tenant_id,
        tenant_user__status=TenantUser.STATUS_ACTIVE,
        role__name=admin_role_name(),
    ).count()


class GrantService:
    """
    Role and permission assignment within a tenant.

    Each operation locks the grantor and target memberships, plus the role
    templates the grantor's authority comes from, then re-resolves the
    grantor's permissions and applies the escalation rule in the same
    transaction that writes the grant.

    Lock order is memberships by primary key, then roles by primary key.
    Every writer to a membership's grants locks that membership first, and
    template edits lock the role row.
    """

    @classmethod
    def _lock_memberships(cls, tenant_id, grantor_id, target_user_id):
        rows = (
            TenantUser.objects
            .select_for_update()
            .filter(tenant_id=tenant_id, user_id__in=[grantor_id, target_user_id])
            .order_by('id')
        )
        by_user = {str(row.user_id): row for row in rows}
        return by_user.get(str(grantor_id)), by_user.get(str(target_user_id))

    @classmethod
    def _lock_roles(cls, grantor, extra_role_ids=()):
        role_ids = set(
            TenantUserRole.objects.filter(tenant_user=grantor).values_list('role_id', flat=True)
        )
        role_ids.update(extra_role_ids)
        if role_ids:
            list(Role.objects.select_for_update().filter(id__in=role_ids).order_by('id'))

    @classmethod
    def _authorize(cls, tenant_id, grantor_id, target_user_id, extra_role_ids=()):
        """
        Lock and check both sides of a grant.

        Returns the grantor's effective permissions and the target membership.
        """
        grantor, target = cls._lock_memberships(tenant_id, grantor_id, target_user_id)
        if grantor is None or not grantor.is_active:
            raise NotAMemberError("Grantor is not an active member of this tenant")

        cls._lock_roles(grantor, extra_role_ids)

        held = PermissionResolver().resolve(tenant_id, grantor_id)
        if ASSIGN_PERMISSIONS not in held:
            raise PermissionDeniedError("You are not allowed to manage access in this tenant")

        if target is None or not target.is_active:
            raise NotFoundError(
                "Target user is not an active member of this tenant",
                {'user_id': str(target_user_id)},
            )
        return held, target

    @classmethod
    def _check_escalation(cls, held, required, tenant_id, grantor_id, target_user_id, subject):
        if not GlobalPolicySwitch.grant_requires_possession():
            return

        missing = set(required) - set(held)
        if missing:
            SecurityLogger.log_privilege_escalation_attempt(
                grantor_id, tenant_id, target_user_id, missing, subject
            )
            raise PrivilegeEscalationError(
                "You cannot grant permissions you do not hold",
                {'missing_permissions': sorted(missing)},
            )

    @classmethod
    def assign_role(cls, tenant_id, grantor_id, target_user_id, role_name, request=None) -> TenantUserRole:
        """
        Assign a role to a member.

        Raises:
            PrivilegeEscalationError: the switch is on and the grantor lacks
                some permission in the role
            ConflictError: the member already has the role
        """
        with transaction.atomic():
            role = Role.objects.by_name(role_name)
            if role is None:
                raise NotFoundError(f"Role '{role_name}' does not exist")
            held, target = cls._authorize(tenant_id, grantor_id, target_user_id, extra_role_ids=[role.id])

            cls._check_escalation(
                held, role.permission_names(), tenant_id, grantor_id,
                target_user_id, subject=f'role:{role.name}',
            )

            if TenantUserRole.objects.filter(tenant_user=target, role=role).exists():
                raise ConflictError(f"User already has the role '{role.name}'")

            assignment = TenantUserRole.objects.create(
                tenant_user=target,
                role=role,
                assigned_by_id=grantor_id,
            )

            AuditLog.log_action(
                'role.assigned',
                'tenant_user',
                target.id,
                actor_user_id=grantor_id,
                actor_display_name=_display_name(grantor_id),
                tenant_id=tenant_id,
                new_values={'user_id': str(target_user_id), 'role': role.name},
                request=request,
            )

        logger.info(
            "Role assigned",
            extra={'tenant_id': str(tenant_id), 'role': role.name, 'target_user_id': str(target_user_id)}
        )
        return assignment

    @classmethod
    def remove_role(cls, tenant_id, grantor_id, target_user_id, role_name, request=None):
        """
        Remove a role from a member.

        The last administrator role in a tenant cannot be removed.
        """
        with transaction.atomic():
            _, target = cls._authorize(tenant_id, grantor_id, target_user_id)

            assignment = (
                TenantUserRole.objects
                .select_related('role')
                .filter(tenant_user=target, role__name=role_name)
                .first()
            )
            if assignment is None:
                raise NotFoundError(f"User does not have the role '{role_name}'")

            if role_name == admin_role_name() and _count_admins(tenant_id) <= 1:
                raise ConflictError("Cannot remove the last administrator of a tenant")

            # Hard delete so the (membership, role) pair can be assigned again.
            assignment.hard_delete()

            AuditLog.log_action(
                'role.removed',
                'tenant_user',
                target.id,
                actor_user_id=grantor_id,
                actor_display_name=_display_name(grantor_id),
                tenant_id=tenant_id,
                old_values={'user_id': str(target_user_id), 'role': role_name},
                request=request,
            )

        logger.info(
            "Role removed",
            extra={'tenant_id': str(tenant_id), 'role': role_name, 'target_user_id': str(target_user_id)}
        )

    @classmethod
    def grant_permission(cls, tenant_id, grantor_id, target_user_id, permission_name,
                         reason='', request=None) -> UserPermission:
        """
        Grant a permission directly to a member.

        Raises:
            PrivilegeEscalationError: the switch is on and the grantor does
                not hold the permission
            ConflictError: the member already has the direct grant
        """
        with transaction.atomic():
            permission = Permission.objects.by_name(permission_name)
            if permission is None:
                raise NotFoundError(f"Permission '{permission_name}' does not exist")
            held, target = cls._authorize(tenant_id, grantor_id, target_user_id)

            cls._check_escalation(
                held, {permission.name}, tenant_id, grantor_id,
                target_user_id, subject=f'permission:{permission.name}',
            )

            if UserPermission.objects.filter(tenant_user=target, permission=permission).exists():
                raise ConflictError(f"User already has the permission '{permission.name}'")

            grant = UserPermission.objects.create(
                tenant_user=target,
                permission=permission,
                reason=reason or '',
                granted_by_id=grantor_id,
            )

            AuditLog.log_action(
                'permission.granted',
                'tenant_user',
                target.id,
                actor_user_id=grantor_id,
                actor_display_name=_display_name(grantor_id),
                tenant_id=tenant_id,
                new_values={'user_id': str(target_user_id), 'permission': permission.name, 'reason': reason},
                request=request,
            )

        logger.info(
            "Permission granted",
            extra={'tenant_id': str(tenant_id), 'permission': permission.name, 'target_user_id': str(target_user_id)}
        )
        return grant

    @classmethod
    def revoke_permission(cls, tenant_id, grantor_id, target_user_id, permission_name, request=None):
        with transaction.atomic():
            _, target = cls._authorize(tenant_id, grantor_id, target_user_id)

            grant = UserPermission.objects.filter(
                tenant_user=target, permission__name=permission_name
            ).first()
            if grant is None:
                raise NotFoundError(f"User has no direct grant of '{permission_name}'")

            grant.hard_delete()

            AuditLog.log_action(
                'permission.revoked',
                'tenant_user',
                target.id,
                actor_user_id=grantor_id,
                actor_display_name=_display_name(grantor_id),
                tenant_id=tenant_id,
                old_values={'user_id': str(target_user_id), 'permission': permission_name},
                request=request,
            )


ROLE_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9-]{1,99}$')


class RoleTemplateService:
    """
    Administrative edits to the global role templates.

    A template change affects every tenant, so only platform admins may
    make one. Edits lock the role row, which grant operations also lock
    for every role the grantor holds.
    """

    @classmethod
    def _lock_role(cls, role_name) -> Role:
        role = Role.objects.select_for_update().filter(name=role_name).first()
        if role is None:
            raise NotFoundError(f"Role '{role_name}' does not exist")
        return role

    @classmethod
    def _lookup_permission(cls, permission_name) -> Permission:
        permission = Permission.objects.by_name(permission_name)
        if permission is None:
            raise NotFoundError(f"Permission '{permission_name}' does not exist")
        return permission

    @classmethod
    def create_role(cls, name, actor_user_id, display_name='', description='',
                    permissions=(), request=None) -> Role:
        """
        Create a new role template with an initial permission bundle.

        Raises:
            ValidationError: the name is not a lowercase slug
            ConflictError: a role with that name exists, deleted or not
        """
        require_platform_admin(actor_user_id)
        name = (name or '').strip()
        if not ROLE_NAME_PATTERN.match(name):
            raise ValidationError(
                "Invalid role name",
                details={'name': ['Use 2-100 lowercase letters, digits or hyphens.']}
            )

        with transaction.atomic():
            if Role.objects.including_deleted().filter(name=name).exists():
                raise ConflictError(f"Role '{name}' already exists")

            bundle = list(Permission.objects.by_names(set(permissions)))
            unknown = set(permissions) - {permission.name for permission in bundle}
            if unknown:
                raise NotFoundError(
                    "Unknown permissions",
                    {'permissions': sorted(unknown)},
                )

            role = Role.objects.create(name=name, display_name=display_name or '', description=description or '')
            for permission in bundle:
                RolePermission.objects.create(role=role, permission=permission)

            AuditLog.log_action(
                'role.created',
                'role',
                role.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                new_values={
                    'name': role.name,
                    'display_name': role.display_name,
                    'permissions': sorted(permission.name for permission in bundle),
                },
                request=request,
            )

        logger.info("Role template created", extra={'role': role.name})
        return role

    @classmethod
    def update_role(cls, role_name, actor_user_id, display_name=None, description=None,
                    request=None) -> Role:
        """Change a template's display name or description. The name is immutable."""
        require_platform_admin(actor_user_id)
        with transaction.atomic():
            role = cls._lock_role(role_name)
            old_values = {'display_name': role.display_name, 'description': role.description}

            if display_name is not None:
                role.display_name = display_name
            if description is not None:
                role.description = description
            role.save(update_fields=['display_name', 'description', 'updated_at'])

            AuditLog.log_action(
                'role.updated',
                'role',
                role.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                old_values=old_values,
                new_values={'display_name': role.display_name, 'description': role.description},
                request=request,
            )
        return role

    @classmethod
    def add_permission(cls, role_name, permission_name, actor_user_id, request=None) -> RolePermission:
        require_platform_admin(actor_user_id)
        with transaction.atomic():
            role = cls._lock_role(role_name)
            permission = cls._lookup_permission(permission_name)
            if RolePermission.objects.filter(role=role, permission=permission).exists():
                raise ConflictError(f"Role '{role_name}' already includes '{permission_name}'")

            role_permission = RolePermission.objects.create(role=role, permission=permission)
            AuditLog.log_action(
                'role.permission_added',
                'role',
                role.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                new_values={'role': role.name, 'permission': permission.name},
                request=request,
            )
        return role_permission

    @classmethod
    def remove_permission(cls, role_name, permission_name, actor_user_id, request=None):
        require_platform_admin(actor_user_id)
        with transaction.atomic():
            role = cls._lock_role(role_name)
            permission = cls._lookup_permission(permission_name)
            deleted, _ = RolePermission.objects.filter(role=role, permission=permission).hard_delete()
            if not deleted:
                raise NotFoundError(f"Role '{role_name}' does not include '{permission_name}'")

            AuditLog.log_action(
                'role.permission_removed',
                'role',
                role.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                old_values={'role': role.name, 'permission': permission.name},
                request=request,
            )


class MembershipService:
    """Membership lifecycle, member listing and user erasure."""

    @staticmethod
    def _members(tenant_id):
        return (
            TenantUser.objects
            .filter(tenant_id=tenant_id, user__deleted_at__isnull=True)
            .select_related('user')
            .prefetch_related(
                Prefetch('user_roles', queryset=TenantUserRole.objects.select_related('role')),
                Prefetch('user_permissions', queryset=UserPermission.objects.select_related('permission')),
            )
        )

    @classmethod
    def list_members(cls, tenant_id, status=None):
        """Members of a tenant ordered by email, optionally filtered by status."""
        members = cls._members(tenant_id)
        if status:
            members = members.filter(status=status)
        return members.order_by('user__email')

    @classmethod
    def get_member(cls, tenant_id, user_id) -> TenantUser:
        membership = cls._members(tenant_id).filter(user_id=user_id).first()
        if membership is None:
            raise NotFoundError("User is not a member of this tenant", {'user_id': str(user_id)})
        return membership

    @classmethod
    def deactivate(cls, tenant_id, actor_user_id, target_user_id, request=None) -> TenantUser:
        with transaction.atomic():
            membership = (
                TenantUser.objects.select_for_update()
                .filter(tenant_id=tenant_id, user_id=target_user_id)
                .first()
            )
            if membership is None:
                raise NotFoundError("User is not a member of this tenant")
            if not membership.is_active:
                raise ConflictError("Membership is already inactive")

            is_admin = membership.user_roles.filter(role__name=admin_role_name()).exists()
            if is_admin and _count_admins(tenant_id) <= 1:
                raise ConflictError("Cannot deactivate the last administrator of a tenant")

            membership.status = TenantUser.STATUS_INACTIVE
            membership.save(update_fields=['status', 'updated_at'])

            AuditLog.log_action(
                'user.deactivated',
                'tenant_user',
                membership.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                tenant_id=tenant_id,
                old_values={'status': TenantUser.STATUS_ACTIVE},
                new_values={'status': TenantUser.STATUS_INACTIVE},
                request=request,
            )
        return membership

    @classmethod
    def reactivate(cls, tenant_id, actor_user_id, target_user_id, request=None) -> TenantUser:
        with transaction.atomic():
            membership = (
                TenantUser.objects.select_for_update()
                .filter(tenant_id=tenant_id, user_id=target_user_id)
                .first()
            )
            if membership is None:
                raise NotFoundError("User is not a member of this tenant")
            if membership.is_active:
                raise ConflictError("Membership is already active")

            membership.status = TenantUser.STATUS_ACTIVE
            membership.save(update_fields=['status', 'updated_at'])

            AuditLog.log_action(
                'user.reactivated',
                'tenant_user',
                membership.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
                tenant_id=tenant_id,
                old_values={'status': TenantUser.STATUS_INACTIVE},
                new_values={'status': TenantUser.STATUS_ACTIVE},
                request=request,
            )
        return membership

    @classmethod
    def erase_user(cls, user_id, actor_user_id=None) -> User:
        """
        Erase a user's personal data.

        Deactivates every membership, scrubs the profile and redacts the
        user's PII from the audit trail. Rows are kept so audit entries stay
        resolvable.
        """
        with transaction.atomic():
            user = User.objects.select_for_update().filter(id=user_id).first()
            if user is None:
                raise NotFoundError("User does not exist")

            TenantUser.objects.filter(user=user).update(status=TenantUser.STATUS_INACTIVE)

            user.email = f"erased-{user.id}@erased.invalid"
            user.username = f"erased-{user.id}"
            user.first_name = ''
            user.last_name = ''
            user.phone = ''
            user.status = User.STATUS_ERASED
            user.save()

            AuditLog.objects.anonymize_for_user(user.id)
            AuditLog.log_action(
                'user.erased',
                'user',
                user.id,
                actor_user_id=actor_user_id,
                actor_display_name=_display_name(actor_user_id),
            )

        logger.info("User erased", extra={'user_id': str(user_id)})
        return user
