"""
Serializers for tenant onboarding.
"""
import re

from rest_framework import serializers

DOMAIN_PATTERN = re.compile(
    r'^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$'
)


class OnboardingSerializer(serializers.Serializer):
    """Input for creating an organization and its first administrator."""

    tenant_name = serializers.CharField(max_length=255)
    domain = serializers.CharField(max_length=253)
    email = serializers.EmailField()
    first_name = serializers.CharField(max_length=100)
    last_name = serializers.CharField(max_length=100)
    username = serializers.CharField(max_length=150, required=False, allow_blank=True)
    password = serializers.CharField(
        required=False,
        write_only=True,
        min_length=8,
        style={'input_type': 'password'}
    )

    def validate_domain(self, value):
        value = value.strip().lower().rstrip('.')
        if not DOMAIN_PATTERN.match(value):
            raise serializers.ValidationError('Enter a valid domain name.')
        return value

    def validate_tenant_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError('Organization name cannot be blank.')
        return value


class OnboardingResultSerializer(serializers.Serializer):
    tenant_id = serializers.UUIDField()
    user_id = serializers.UUIDField()
    state = serializers.CharField()
