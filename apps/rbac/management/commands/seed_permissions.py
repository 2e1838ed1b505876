"""
Management command to seed canonical permissions, role templates and
global settings.

This command is idempotent and safe to re-run. Existing setting values are
never overwritten.
"""
from django.core.management.base import BaseCommand
from django.db import transaction

from apps.rbac.models import (
    GlobalSetting, Permission, PermissionGroup, Role, RolePermission,
)
from apps.rbac.services import GlobalPolicySwitch


SYSTEM_ADMINISTRATION = 'SystemAdministration'

CANONICAL_PERMISSIONS = [
    {
        'name': 'invite-users',
        'display_name': 'Invite Users',
        'description': 'Invite new users to the organization',
    },
    {
        'name': 'view-users',
        'display_name': 'View Users',
        'description': 'View users of the organization',
    },
    {
        'name': 'update-users',
        'display_name': 'Update Users',
        'description': 'Update user profiles and membership status',
    },
    {
        'name': 'delete-users',
        'display_name': 'Delete Users',
        'description': 'Remove users from the organization',
    },
    {
        'name': 'assign-permissions',
        'display_name': 'Assign Permissions',
        'description': 'Assign roles and permissions to users',
    },
    {
        'name': 'update-org-settings',
        'display_name': 'Update Organization Settings',
        'description': 'Change organization-wide settings',
    },
]

ROLE_TEMPLATES = [
    {
        'name': 'org-admin',
        'display_name': 'Organization Admin',
        'description': 'Full control over the organization',
        'permissions': [p['name'] for p in CANONICAL_PERMISSIONS],
    },
    {
        'name': 'org-manager',
        'display_name': 'Organization Manager',
        'description': 'Manages the organization users',
        'permissions': ['invite-users', 'view-users', 'update-users'],
    },
    {
        'name': 'org-user',
        'display_name': 'Organization User',
        'description': 'Regular organization member',
        'permissions': [],
    },
]


class Command(BaseCommand):
    help = 'Seed canonical permissions, role templates and global settings (idempotent)'

    def handle(self, *args, **options):
        with transaction.atomic():
            group, _ = PermissionGroup.objects.get_or_create(
                name=SYSTEM_ADMINISTRATION,
                defaults={'description': 'User and organization administration'},
            )

            created_count = 0
            for perm_data in CANONICAL_PERMISSIONS:
                permission, created = Permission.objects.update_or_create(
                    name=perm_data['name'],
                    defaults={
                        'display_name': perm_data['display_name'],
                        'description': perm_data['description'],
                        'group': group,
                    },
                )
                if created:
                    created_count += 1
                    self.stdout.write(self.style.SUCCESS(f'✓ Created permission: {permission.name}'))

            for role_data in ROLE_TEMPLATES:
                role, created = Role.objects.update_or_create(
                    name=role_data['name'],
                    defaults={
                        'display_name': role_data['display_name'],
                        'description': role_data['description'],
                        'is_system': True,
                    },
                )
                for permission in Permission.objects.by_names(role_data['permissions']):
                    RolePermission.objects.grant_permission(role, permission)
                if created:
                    self.stdout.write(self.style.SUCCESS(f'✓ Created role: {role.name}'))

            _, created = GlobalSetting.objects.get_or_create(
                key=GlobalPolicySwitch.KEY,
                defaults={'value': 'true', 'description': GlobalPolicySwitch.DESCRIPTION},
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f'✓ Created setting: {GlobalPolicySwitch.KEY}'))

        self.stdout.write(
            self.style.SUCCESS(
                f'\n✓ Seeding complete: {created_count} permissions created, '
                f'{len(ROLE_TEMPLATES)} role templates in place'
            )
        )
