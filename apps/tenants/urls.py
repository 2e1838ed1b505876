"""
Tenant API URLs.
"""
from django.urls import path

from apps.tenants.views import OnboardingView

app_name = 'tenants'

urlpatterns = [
    path('onboarding', OnboardingView.as_view(), name='onboarding'),
]
