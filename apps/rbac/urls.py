"""
RBAC API URLs.
"""
from django.urls import path

from apps.rbac.views import (
    GlobalSettingDetailView,
    GlobalSettingListView,
    MemberListView,
    MembershipDeactivateView,
    MembershipPermissionRevokeView,
    MembershipPermissionView,
    MembershipReactivateView,
    MembershipRoleRemoveView,
    MembershipRoleView,
    MyPermissionsView,
    PermissionListView,
    RoleDetailView,
    RoleListView,
    RoleTemplatePermissionView,
)

app_name = 'rbac'

urlpatterns = [
    path('me/permissions', MyPermissionsView.as_view(), name='my-permissions'),
    path('members', MemberListView.as_view(), name='member-list'),

    path('memberships/<uuid:user_id>/roles', MembershipRoleView.as_view(), name='membership-roles'),
    path('memberships/<uuid:user_id>/roles/<str:role_name>', MembershipRoleRemoveView.as_view(), name='membership-role-remove'),
    path('memberships/<uuid:user_id>/permissions', MembershipPermissionView.as_view(), name='membership-permission-grant'),
    path(
        'memberships/<uuid:user_id>/permissions/<str:permission_name>',
        MembershipPermissionRevokeView.as_view(),
        name='membership-permission-revoke'
    ),
    path('memberships/<uuid:user_id>/deactivate', MembershipDeactivateView.as_view(), name='membership-deactivate'),
    path('memberships/<uuid:user_id>/reactivate', MembershipReactivateView.as_view(), name='membership-reactivate'),

    path('permissions', PermissionListView.as_view(), name='permission-list'),

    path('roles', RoleListView.as_view(), name='role-list'),
    path('roles/<str:role_name>', RoleDetailView.as_view(), name='role-detail'),
    path('roles/<str:role_name>/permissions', RoleTemplatePermissionView.as_view(), name='role-permission-add'),
    path(
        'roles/<str:role_name>/permissions/<str:permission_name>',
        RoleTemplatePermissionView.as_view(),
        name='role-permission-remove'
    ),

    path('settings', GlobalSettingListView.as_view(), name='setting-list'),
    path('settings/<str:key>', GlobalSettingDetailView.as_view(), name='setting-detail'),
]
