from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging

logger = logging.getLogger(__name__)


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        """
        Perform startup validation checks when Django initializes.

        Header-sourced identity is refused outside DEBUG on every start,
        including management commands. The remaining checks only run when
        serving requests.
        """
        self._validate_identity_sources()

        import sys
        if 'runserver' not in sys.argv and 'gunicorn' not in sys.argv[0]:
            # Skip validation for management commands (except runserver)
            if len(sys.argv) > 1 and sys.argv[1] not in ['runserver']:
                return

        self._validate_jwt_configuration()
        self._validate_identity_provider_configuration()

        logger.info("✓ All startup security validations passed")

    def _validate_identity_sources(self):
        if getattr(settings, 'AUTH_TRUST_ACTOR_HEADERS', False) and not settings.DEBUG:
            raise ImproperlyConfigured(
                "AUTH_TRUST_ACTOR_HEADERS lets any caller choose their identity and "
                "may only be enabled with DEBUG=True."
            )

    def _validate_jwt_configuration(self):
        if not getattr(settings, 'JWT_VERIFYING_KEY', None):
            raise ImproperlyConfigured(
                "JWT_VERIFYING_KEY must be set so bearer tokens can be verified."
            )

        algorithm = getattr(settings, 'JWT_ALGORITHM', '')
        if algorithm.lower() == 'none':
            raise ImproperlyConfigured("JWT_ALGORITHM may not be 'none'.")

        logger.info("✓ JWT configuration validated")

    def _validate_identity_provider_configuration(self):
        missing = [
            name for name in (
                'IDENTITY_PROVIDER_BASE_URL',
                'IDENTITY_PROVIDER_REALM',
                'IDENTITY_PROVIDER_CLIENT_ID',
                'IDENTITY_PROVIDER_CLIENT_SECRET',
            )
            if not getattr(settings, name, None)
        ]
        if missing:
            raise ImproperlyConfigured(
                f"Identity provider settings missing: {', '.join(missing)}"
            )

        if not settings.DEBUG and not settings.IDENTITY_PROVIDER_BASE_URL.startswith('https://'):
            raise ImproperlyConfigured(
                "IDENTITY_PROVIDER_BASE_URL must use HTTPS in production."
            )

        logger.info("✓ Identity provider configuration validated")
