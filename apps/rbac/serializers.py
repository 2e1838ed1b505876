"""
RBAC serializers for REST API endpoints.
"""
from rest_framework import serializers

from apps.rbac.models import GlobalSetting, Permission, Role, TenantUser


class PermissionSerializer(serializers.ModelSerializer):
    group = serializers.CharField(source='group.name', read_only=True)

    class Meta:
        model = Permission
        fields = ['name', 'display_name', 'description', 'group']


class RoleSerializer(serializers.ModelSerializer):
    permissions = serializers.SerializerMethodField()

    class Meta:
        model = Role
        fields = ['name', 'display_name', 'description', 'is_system', 'permissions']

    def get_permissions(self, obj):
        return sorted(rp.permission.name for rp in obj.role_permissions.all())


class CreateRoleSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    display_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    description = serializers.CharField(required=False, allow_blank=True, default='')
    permissions = serializers.ListField(
        child=serializers.CharField(max_length=100),
        required=False,
        default=list,
    )


class UpdateRoleSerializer(serializers.Serializer):
    display_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide display_name or description.")
        return attrs


class AssignRoleSerializer(serializers.Serializer):
    role = serializers.CharField(max_length=100)


class GrantPermissionSerializer(serializers.Serializer):
    permission = serializers.CharField(max_length=100)
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class RolePermissionSerializer(serializers.Serializer):
    permission = serializers.CharField(max_length=100)


class MemberSerializer(serializers.ModelSerializer):
    """A tenant membership with the user's profile and role names."""

    user_id = serializers.UUIDField(source='user.id', read_only=True)
    email = serializers.EmailField(source='user.email', read_only=True)
    display_name = serializers.CharField(source='user.display_name', read_only=True)
    roles = serializers.SerializerMethodField()

    class Meta:
        model = TenantUser
        fields = ['user_id', 'email', 'display_name', 'status', 'joined_at', 'roles']

    def get_roles(self, obj):
        return sorted(assignment.role.name for assignment in obj.user_roles.all())


class MemberAccessSerializer(MemberSerializer):
    """Roles plus direct grants of one member."""

    permissions = serializers.SerializerMethodField()

    class Meta(MemberSerializer.Meta):
        fields = MemberSerializer.Meta.fields + ['permissions']

    def get_permissions(self, obj):
        return sorted(grant.permission.name for grant in obj.user_permissions.all())


class GlobalSettingSerializer(serializers.ModelSerializer):
    class Meta:
        model = GlobalSetting
        fields = ['key', 'value', 'description', 'updated_at']


class GlobalSettingUpdateSerializer(serializers.Serializer):
    value = serializers.CharField(allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)


class GlobalSettingItemSerializer(GlobalSettingUpdateSerializer):
    key = serializers.CharField(max_length=100)


class GlobalSettingBulkUpdateSerializer(serializers.Serializer):
    settings = GlobalSettingItemSerializer(many=True, allow_empty=False)

    def validate_settings(self, items):
        keys = [item['key'] for item in items]
        if len(keys) != len(set(keys)):
            raise serializers.ValidationError("Each key may appear only once.")
        return items
