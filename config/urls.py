"""
URL configuration for Warden.
"""
from django.urls import path, include

urlpatterns = [
    # Health
    path('v1/', include('apps.core.urls')),

    # Tenant onboarding
    path('v1/', include('apps.tenants.urls')),

    # RBAC endpoints
    path('v1/', include('apps.rbac.urls')),  # Permissions, memberships, roles, settings
]
