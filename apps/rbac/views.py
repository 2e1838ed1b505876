"""
RBAC REST API views.

Implements endpoints for:
- The caller's own effective permissions
- Tenant member listing and per-member access
- Role and direct-permission assignment on memberships
- Membership deactivation / reactivation
- The permission catalogue, global role templates and global settings
"""
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.exceptions import NotFoundError
from apps.core.permissions import (
    HasTenantPermissions, IsAuthenticatedActor,
    get_permission_resolver, requires_permissions,
)
from apps.rbac.models import GlobalSetting, Permission, Role
from apps.rbac.serializers import (
    AssignRoleSerializer, CreateRoleSerializer, GlobalSettingBulkUpdateSerializer,
    GlobalSettingSerializer, GlobalSettingUpdateSerializer, GrantPermissionSerializer,
    MemberAccessSerializer, MemberSerializer, PermissionSerializer,
    RolePermissionSerializer, RoleSerializer, UpdateRoleSerializer,
)
from apps.rbac.services import (
    GlobalPolicySwitch, GrantService, MembershipService,
    RoleTemplateService, require_platform_admin,
)


def _roles():
    return Role.objects.prefetch_related('role_permissions__permission')


class MyPermissionsView(APIView):
    """
    GET /v1/me/permissions

    Effective permissions of the caller in the current tenant. Any active
    member may read their own set.
    """
    permission_classes = [HasTenantPermissions]

    def get(self, request):
        actor = request.user
        permissions = get_permission_resolver(request).resolve(actor.tenant_id, actor.user_id)
        return Response({
            'tenant_id': str(actor.tenant_id),
            'user_id': str(actor.user_id),
            'permissions': sorted(permissions),
        })


class MemberListView(APIView):
    """
    GET /v1/members

    Members of the caller's tenant with their role names. ``?status=``
    filters by membership status.
    """
    permission_classes = [HasTenantPermissions]

    @requires_permissions('view-users')
    def get(self, request):
        members = MembershipService.list_members(
            request.user.tenant_id, status=request.query_params.get('status')
        )
        return Response({'members': MemberSerializer(members, many=True).data})


@requires_permissions('assign-permissions')
class MembershipRoleView(APIView):
    """
    GET /v1/memberships/{user_id}/roles
    POST /v1/memberships/{user_id}/roles

    Read a member's roles and direct grants, or assign a role template.
    """
    permission_classes = [HasTenantPermissions]

    @requires_permissions('view-users')
    def get(self, request, user_id):
        membership = MembershipService.get_member(request.user.tenant_id, user_id)
        return Response(MemberAccessSerializer(membership).data)

    def post(self, request, user_id):
        serializer = AssignRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        actor = request.user
        assignment = GrantService.assign_role(
            actor.tenant_id,
            actor.user_id,
            user_id,
            serializer.validated_data['role'],
            request=request,
        )
        return Response(
            {
                'user_id': str(user_id),
                'role': assignment.role.name,
                'assigned_at': assignment.assigned_at,
            },
            status=status.HTTP_201_CREATED
        )


@requires_permissions('assign-permissions')
class MembershipRoleRemoveView(APIView):
    """DELETE /v1/memberships/{user_id}/roles/{role_name}"""
    permission_classes = [HasTenantPermissions]

    def delete(self, request, user_id, role_name):
        actor = request.user
        GrantService.remove_role(actor.tenant_id, actor.user_id, user_id, role_name, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)


@requires_permissions('assign-permissions')
class MembershipPermissionView(APIView):
    """
    POST /v1/memberships/{user_id}/permissions

    Grant a permission directly to a member.
    """
    permission_classes = [HasTenantPermissions]

    def post(self, request, user_id):
        serializer = GrantPermissionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        actor = request.user
        grant = GrantService.grant_permission(
            actor.tenant_id,
            actor.user_id,
            user_id,
            serializer.validated_data['permission'],
            reason=serializer.validated_data['reason'],
            request=request,
        )
        return Response(
            {'user_id': str(user_id), 'permission': grant.permission.name},
            status=status.HTTP_201_CREATED
        )


@requires_permissions('assign-permissions')
class MembershipPermissionRevokeView(APIView):
    """DELETE /v1/memberships/{user_id}/permissions/{permission_name}"""
    permission_classes = [HasTenantPermissions]

    def delete(self, request, user_id, permission_name):
        actor = request.user
        GrantService.revoke_permission(actor.tenant_id, actor.user_id, user_id, permission_name, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)


class MembershipDeactivateView(APIView):
    """POST /v1/memberships/{user_id}/deactivate"""
    permission_classes = [HasTenantPermissions]

    @requires_permissions('delete-users')
    def post(self, request, user_id):
        actor = request.user
        membership = MembershipService.deactivate(actor.tenant_id, actor.user_id, user_id, request=request)
        return Response({'user_id': str(user_id), 'status': membership.status})


class MembershipReactivateView(APIView):
    """POST /v1/memberships/{user_id}/reactivate"""
    permission_classes = [HasTenantPermissions]

    @requires_permissions('update-users')
    def post(self, request, user_id):
        actor = request.user
        membership = MembershipService.reactivate(actor.tenant_id, actor.user_id, user_id, request=request)
        return Response({'user_id': str(user_id), 'status': membership.status})


class PermissionListView(APIView):
    """GET /v1/permissions: the canonical permission catalogue."""
    permission_classes = [IsAuthenticatedActor]

    def get(self, request):
        permissions = Permission.objects.select_related('group')
        return Response({'permissions': PermissionSerializer(permissions, many=True).data})


class RoleListView(APIView):
    """
    GET /v1/roles
    POST /v1/roles

    Any authenticated caller may list templates; creating one is limited to
    platform administrators.
    """
    permission_classes = [IsAuthenticatedActor]

    def get(self, request):
        return Response({'roles': RoleSerializer(_roles(), many=True).data})

    def post(self, request):
        serializer = CreateRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = RoleTemplateService.create_role(
            serializer.validated_data['name'],
            request.user.user_id,
            display_name=serializer.validated_data['display_name'],
            description=serializer.validated_data['description'],
            permissions=serializer.validated_data['permissions'],
            request=request,
        )
        return Response(RoleSerializer(_roles().get(id=role.id)).data, status=status.HTTP_201_CREATED)


class RoleDetailView(APIView):
    """
    GET /v1/roles/{role_name}
    PUT /v1/roles/{role_name}
    """
    permission_classes = [IsAuthenticatedActor]

    def get(self, request, role_name):
        role = _roles().filter(name=role_name).first()
        if role is None:
            raise NotFoundError(f"Role '{role_name}' does not exist")
        return Response(RoleSerializer(role).data)

    def put(self, request, role_name):
        serializer = UpdateRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = RoleTemplateService.update_role(
            role_name,
            request.user.user_id,
            display_name=serializer.validated_data.get('display_name'),
            description=serializer.validated_data.get('description'),
            request=request,
        )
        return Response(RoleSerializer(_roles().get(id=role.id)).data)


class RoleTemplatePermissionView(APIView):
    """
    POST /v1/roles/{role_name}/permissions
    DELETE /v1/roles/{role_name}/permissions/{permission_name}

    Edits a global role template. Platform administrators only.
    """
    permission_classes = [IsAuthenticatedActor]

    def post(self, request, role_name):
        serializer = RolePermissionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        RoleTemplateService.add_permission(
            role_name, serializer.validated_data['permission'], request.user.user_id, request=request
        )
        return Response(status=status.HTTP_201_CREATED)

    def delete(self, request, role_name, permission_name):
        RoleTemplateService.remove_permission(role_name, permission_name, request.user.user_id, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)


class GlobalSettingListView(APIView):
    """
    GET /v1/settings
    PUT /v1/settings

    The bulk update applies every item or none. Like the single-key
    update it needs ``update-org-settings`` and a platform administrator.
    """
    permission_classes = [HasTenantPermissions]

    def get(self, request):
        return Response({'settings': GlobalSettingSerializer(GlobalSetting.objects.all(), many=True).data})

    @requires_permissions('update-org-settings')
    def put(self, request):
        require_platform_admin(request.user.user_id)

        serializer = GlobalSettingBulkUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        settings = GlobalPolicySwitch.set_many(
            serializer.validated_data['settings'],
            actor_user_id=request.user.user_id,
            tenant_id=request.user.tenant_id,
            request=request,
        )
        return Response({'settings': GlobalSettingSerializer(settings, many=True).data})


class GlobalSettingDetailView(APIView):
    """
    GET /v1/settings/{key}
    PUT /v1/settings/{key}

    Settings are platform-wide, so besides ``update-org-settings`` the
    caller must be a platform administrator.
    """
    permission_classes = [HasTenantPermissions]

    def get(self, request, key):
        setting = GlobalSetting.objects.filter(key=key).first()
        if setting is None:
            raise NotFoundError(f"Setting '{key}' does not exist")
        return Response(GlobalSettingSerializer(setting).data)

    @requires_permissions('update-org-settings')
    def put(self, request, key):
        require_platform_admin(request.user.user_id)

        serializer = GlobalSettingUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        setting = GlobalPolicySwitch.set(
            key,
            serializer.validated_data['value'],
            description=serializer.validated_data.get('description'),
            actor_user_id=request.user.user_id,
            tenant_id=request.user.tenant_id,
            request=request,
        )
        return Response(GlobalSettingSerializer(setting).data)
