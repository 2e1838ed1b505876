"""
Actor identity resolution and the DRF authentication class built on it.

Identity comes from an ordered list of trusted sources. The verified
bearer token is always consulted first; the ``X-User-Id`` header source is
only active when ``AUTH_TRUST_ACTOR_HEADERS`` is enabled, which startup
validation refuses outside DEBUG.
"""
import logging
import uuid
from typing import Optional

import jwt
from django.conf import settings
from rest_framework import exceptions
from rest_framework.authentication import BaseAuthentication, get_authorization_header

from apps.core.logging import SecurityLogger
from apps.core.sentry_utils import set_actor_context

logger = logging.getLogger(__name__)


def parse_uuid(value) -> Optional[uuid.UUID]:
    """Return ``value`` as a UUID, or None when it is missing or malformed."""
    if value is None or value == '':
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


class Actor:
    """
    The authenticated principal of a request.

    ``tenant_id`` may be None when no tenant could be determined; the
    authorization gate treats that as unauthenticated.
    """

    is_authenticated = True
    is_anonymous = False

    def __init__(self, user_id, tenant_id=None, source='token', claims=None):
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.source = source
        self.claims = claims or {}

    @property
    def pk(self):
        return self.user_id

    def __repr__(self):
        return f"Actor(user_id={self.user_id}, tenant_id={self.tenant_id}, source={self.source})"


class BearerTokenSource:
    """Reads identity from a verified JWT in the Authorization header."""

    name = 'token'

    def read(self, request):
        auth = get_authorization_header(request).split()
        if not auth or auth[0].lower() != b'bearer':
            return None
        if len(auth) != 2:
            raise exceptions.AuthenticationFailed('Invalid authorization header.')

        claims = self.decode(auth[1].decode('utf-8', errors='replace'))
        user_id = claims.get('user_id') or claims.get('sub')
        tenant_id = claims.get('tenant_id')
        return user_id, tenant_id, claims

    @staticmethod
    def decode(token: str) -> dict:
        key = settings.JWT_VERIFYING_KEY
        if not key:
            logger.error("Bearer token received but JWT_VERIFYING_KEY is not configured")
            raise exceptions.AuthenticationFailed('Token verification is not configured.')

        audience = getattr(settings, 'JWT_AUDIENCE', None)
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[settings.JWT_ALGORITHM],
                audience=audience,
                options={'verify_aud': bool(audience)},
            )
        except jwt.ExpiredSignatureError:
            raise exceptions.AuthenticationFailed('Token has expired.')
        except jwt.InvalidTokenError as e:
            logger.info("Rejected bearer token", extra={'reason': str(e)})
            raise exceptions.AuthenticationFailed('Invalid token.')


class HeaderSource:
    """
    Reads identity from ``X-User-Id`` / ``X-Tenant-Id``.

    Only for local development and trusted-gateway deployments.
    """

    name = 'header'

    def read(self, request):
        user_id = request.META.get('HTTP_X_USER_ID')
        if not user_id:
            return None
        return user_id, request.META.get('HTTP_X_TENANT_ID'), {}


class ActorResolver:
    """
    Resolve the request actor from the configured sources, in order.

    The tenant falls back to the ``X-Tenant-Id`` header whatever the source;
    selecting a tenant grants nothing by itself because membership is
    checked on every permission resolution.
    """

    def __init__(self, sources=None):
        if sources is None:
            sources = [BearerTokenSource()]
            if getattr(settings, 'AUTH_TRUST_ACTOR_HEADERS', False):
                sources.append(HeaderSource())
        self.sources = sources

    def resolve(self, request) -> Optional[Actor]:
        for source in self.sources:
            found = source.read(request)
            if found is None:
                continue

            raw_user_id, raw_tenant_id, claims = found
            if not raw_tenant_id:
                raw_tenant_id = request.META.get('HTTP_X_TENANT_ID')

            user_id = parse_uuid(raw_user_id)
            if user_id is None:
                SecurityLogger.log_unauthenticated(
                    reason=f'unparseable user id from {source.name}',
                    path=request.path,
                )
                return None

            tenant_id = parse_uuid(raw_tenant_id)
            if source.name == 'header':
                SecurityLogger.log_header_identity_used(user_id, tenant_id, path=request.path)

            return Actor(user_id, tenant_id, source=source.name, claims=claims)

        return None


class ActorAuthentication(BaseAuthentication):
    """
    DRF authentication class returning an ``Actor`` as ``request.user``.
    """

    www_authenticate_realm = 'api'

    def authenticate(self, request):
        actor = ActorResolver().resolve(request)
        if actor is None:
            return None
        set_actor_context(actor)
        return (actor, None)

    def authenticate_header(self, request):
        # A WWW-Authenticate value makes DRF answer 401 instead of 403.
        return f'Bearer realm="{self.www_authenticate_realm}"'
