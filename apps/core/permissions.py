"""
DRF permission classes and decorators for tenant-scoped authorization.

This module provides:
- HasTenantPermissions: the authorization gate in front of tenant endpoints
- @requires_permissions: Decorator to declare required permissions on views
- IsAuthenticatedActor: identity-only check for non-tenant endpoints
"""
import logging
from functools import wraps

from rest_framework import exceptions
from rest_framework.permissions import BasePermission

from apps.core.authentication import Actor
from apps.core.exceptions import NotAMemberError
from apps.core.logging import SecurityLogger
from apps.core.middleware import set_log_context

logger = logging.getLogger(__name__)


def get_permission_resolver(request):
    """Return the request's resolver, creating it on first use."""
    resolver = getattr(request, 'permission_resolver', None)
    if resolver is None:
        from apps.rbac.services import PermissionResolver

        resolver = PermissionResolver()
        request.permission_resolver = resolver
    return resolver


def _client_ip(request):
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def get_requirement(view, request):
    """
    Return ``(names, require_all)`` for the handler about to run.

    A requirement declared on the handler method wins over one declared on
    the view class.
    """
    handler = getattr(view, request.method.lower(), None)
    for source in (handler, view):
        names = getattr(source, 'required_permissions', None)
        if names is not None:
            return frozenset(names), getattr(source, 'require_all_permissions', False)
    return frozenset(), False


class IsAuthenticatedActor(BasePermission):
    """Allow any request carrying a resolved actor."""

    def has_permission(self, request, view):
        if not isinstance(request.user, Actor):
            raise exceptions.NotAuthenticated()
        return True


class HasTenantPermissions(BasePermission):
    """
    Authorization gate for tenant-scoped endpoints.

    Outcomes:
    1. 401 when the actor or tenant cannot be determined, or the actor is
       not an active member of the tenant
    2. 403 when the actor's permissions do not satisfy the requirement
       (any-of by default, all-of with ``require_all=True``)
    3. Pass-through otherwise

    The response never says which permissions were missing; that goes to
    the security log.

    Usage:
        @requires_permissions('view-users')
        class MemberListView(APIView):
            permission_classes = [HasTenantPermissions]
    """

    message = 'You do not have permission to perform this action.'

    def has_permission(self, request, view):
        actor = request.user
        if not isinstance(actor, Actor) or actor.tenant_id is None:
            SecurityLogger.log_unauthenticated(
                reason='missing actor or tenant identity',
                path=request.path,
                ip_address=_client_ip(request),
            )
            raise exceptions.NotAuthenticated()

        set_log_context(tenant_id=actor.tenant_id)
        names, require_all = get_requirement(view, request)
        resolver = get_permission_resolver(request)

        try:
            if not names:
                resolver.resolve(actor.tenant_id, actor.user_id)
                return True
            if require_all:
                allowed = resolver.has_all(actor.tenant_id, actor.user_id, names)
            else:
                allowed = resolver.has_any(actor.tenant_id, actor.user_id, names)
        except NotAMemberError:
            SecurityLogger.log_unauthenticated(
                reason='not a member of tenant',
                path=request.path,
                ip_address=_client_ip(request),
            )
            raise exceptions.AuthenticationFailed('Not authorized for this tenant.')

        if not allowed:
            SecurityLogger.log_permission_denied(
                actor.user_id,
                actor.tenant_id,
                names,
                require_all,
                path=request.path,
                ip_address=_client_ip(request),
            )
            return False

        logger.debug(
            "Permission granted",
            extra={
                'required_permissions': sorted(names),
                'require_all': require_all,
                'view': view.__class__.__name__,
            }
        )
        return True


def requires_permissions(*names, require_all=False):
    """
    Declare the permissions a view class or handler method requires.

    Checked by HasTenantPermissions before the handler runs.

    Usage:
        @requires_permissions('assign-permissions')
        class MembershipRoleView(APIView):
            permission_classes = [HasTenantPermissions]

    Or on individual methods:
        class SettingsView(APIView):
            permission_classes = [HasTenantPermissions]

            def get(self, request):
                pass

            @requires_permissions('update-org-settings')
            def put(self, request, key):
                pass
    """
    def decorator(view_or_method):
        if isinstance(view_or_method, type):
            view_or_method.required_permissions = frozenset(names)
            view_or_method.require_all_permissions = require_all
            return view_or_method

        @wraps(view_or_method)
        def wrapped(*args, **kwargs):
            return view_or_method(*args, **kwargs)

        wrapped.required_permissions = frozenset(names)
        wrapped.require_all_permissions = require_all
        return wrapped

    return decorator
