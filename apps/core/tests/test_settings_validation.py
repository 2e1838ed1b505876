"""
Tests for startup configuration validation.
"""
import pytest
from django.apps import apps
from django.core.exceptions import ImproperlyConfigured


@pytest.fixture
def core_config():
    return apps.get_app_config('core')


class TestIdentitySourceValidation:
    def test_header_trust_refused_without_debug(self, core_config, settings):
        settings.DEBUG = False
        settings.AUTH_TRUST_ACTOR_HEADERS = True

        with pytest.raises(ImproperlyConfigured):
            core_config._validate_identity_sources()

    def test_header_trust_allowed_in_debug(self, core_config, settings):
        settings.DEBUG = True
        settings.AUTH_TRUST_ACTOR_HEADERS = True

        core_config._validate_identity_sources()

    def test_header_trust_off(self, core_config, settings):
        settings.DEBUG = False
        settings.AUTH_TRUST_ACTOR_HEADERS = False

        core_config._validate_identity_sources()


class TestJWTValidation:
    def test_missing_key(self, core_config, settings):
        settings.JWT_VERIFYING_KEY = ''

        with pytest.raises(ImproperlyConfigured, match='JWT_VERIFYING_KEY'):
            core_config._validate_jwt_configuration()

    def test_none_algorithm(self, core_config, settings):
        settings.JWT_ALGORITHM = 'none'

        with pytest.raises(ImproperlyConfigured):
            core_config._validate_jwt_configuration()


class TestIdentityProviderValidation:
    def test_missing_settings_listed(self, core_config, settings):
        settings.IDENTITY_PROVIDER_CLIENT_SECRET = ''
        settings.IDENTITY_PROVIDER_REALM = ''

        with pytest.raises(ImproperlyConfigured) as exc_info:
            core_config._validate_identity_provider_configuration()

        assert 'IDENTITY_PROVIDER_REALM' in str(exc_info.value)
        assert 'IDENTITY_PROVIDER_CLIENT_SECRET' in str(exc_info.value)

    def test_https_required_in_production(self, core_config, settings):
        settings.DEBUG = False
        settings.IDENTITY_PROVIDER_BASE_URL = 'http://idp.internal'

        with pytest.raises(ImproperlyConfigured, match='HTTPS'):
            core_config._validate_identity_provider_configuration()

    def test_valid_configuration(self, core_config, settings):
        settings.DEBUG = False
        settings.IDENTITY_PROVIDER_BASE_URL = 'https://idp.test'

        core_config._validate_identity_provider_configuration()
