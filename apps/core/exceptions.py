"""
Exception taxonomy and the DRF exception handler.

Every domain error derives from WardenException and carries a stable
``code`` plus an HTTP ``status_code`` used by ``custom_exception_handler``.
"""
import logging
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


class WardenException(Exception):
    """Base exception for Warden-specific errors."""

    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(WardenException):
    """Raised when the actor's identity cannot be established."""
    status_code = 401
    code = 'UNAUTHORIZED'


class NotAMemberError(AuthenticationError):
    """Raised when a (tenant, user) pair has no active membership."""
    code = 'NOT_A_MEMBER'


class PermissionDeniedError(WardenException):
    """Raised when the actor lacks the permissions an operation requires."""
    status_code = 403
    code = 'FORBIDDEN'


class PrivilegeEscalationError(PermissionDeniedError):
    """Raised when a grantor tries to hand out permissions they do not hold."""
    code = 'PRIVILEGE_ESCALATION'


class ValidationError(WardenException):
    """Raised when input validation fails."""
    status_code = 400
    code = 'VALIDATION_ERROR'


class NotFoundError(WardenException):
    status_code = 404
    code = 'NOT_FOUND'


class ConflictError(WardenException):
    """Raised when a uniqueness rule would be violated."""
    status_code = 409
    code = 'CONFLICT'


class OperationCancelled(WardenException):
    """Raised when a caller cancels an in-flight operation."""
    status_code = 499
    code = 'CANCELLED'


class ExternalProviderError(WardenException):
    """
    Raised when a call to the identity provider fails.

    The provider's HTTP status and response body are kept verbatim so they
    can be written to the failure ledger.
    """
    status_code = 502
    code = 'IDENTITY_PROVIDER_ERROR'

    def __init__(self, message, provider_status=None, provider_body=None, details=None):
        self.provider_status = provider_status
        self.provider_body = provider_body
        details = dict(details or {})
        if provider_status is not None:
            details.setdefault('provider_status', provider_status)
        super().__init__(message, details)

    @property
    def is_transient(self):
        """Timeouts, connection failures and 5xx responses may succeed on retry."""
        return self.provider_status is None or self.provider_status >= 500


class IdentityProviderAuthError(ExternalProviderError):
    """Raised when the service cannot obtain an access token."""
    code = 'IDENTITY_PROVIDER_AUTH_FAILED'


class IdentityProviderRequestError(ExternalProviderError):
    """Raised when the provider rejects an admin API request."""
    code = 'IDENTITY_PROVIDER_REJECTED'


class CompensationFailure(WardenException):
    """
    A compensating action could not undo its forward step.

    Recorded in the onboarding failure ledger, never raised to API callers.
    """
    code = 'COMPENSATION_FAILED'

    def __init__(self, action, identifiers, cause):
        self.action = action
        self.identifiers = identifiers
        self.cause = cause
        super().__init__(
            f"Compensation '{action}' failed: {cause}",
            {'action': action, 'identifiers': identifiers},
        )


class OnboardingError(WardenException):
    """
    Raised when the onboarding saga fails.

    Wraps the original failure and reports whether rollback fully
    succeeded; ``failure_id`` references the ledger entry when it did not.
    """
    status_code = 422
    code = 'ONBOARDING_FAILED'

    def __init__(self, message, step, cause, rollback_succeeded=True, failure_id=None):
        self.step = step
        self.cause = cause
        self.rollback_succeeded = rollback_succeeded
        self.failure_id = failure_id
        if isinstance(cause, WardenException):
            self.code = cause.code
            self.status_code = cause.status_code
        super().__init__(message, {
            'step': step,
            'rollback_succeeded': rollback_succeeded,
            'failure_id': str(failure_id) if failure_id else None,
        })


def _error_payload(exc, request_id):
    details = exc.details
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        # No permission sets or membership hints leave the service.
        details = {}
    payload = {
        'error': {
            'code': exc.code,
            'message': exc.message,
        },
        'request_id': request_id,
    }
    if details:
        payload['error']['details'] = details
    return payload


def custom_exception_handler(exc, context):
    """
    Custom exception handler that logs errors and returns consistent format.
    """
    # rest_framework.views resolves DEFAULT_PERMISSION_CLASSES at import time,
    # and apps.core.permissions imports this module.
    from rest_framework.views import exception_handler

    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None

    if isinstance(exc, WardenException):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"API error: {exc.__class__.__name__}",
            extra={
                'code': exc.code,
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=exc.status_code >= 500,
        )
        return Response(_error_payload(exc, request_id), status=exc.status_code)

    response = exception_handler(exc, context)

    log = logger.error if response is None else logger.warning
    log(
        f"API Exception: {exc.__class__.__name__}",
        extra={
            'exception': str(exc),
            'request_id': request_id,
            'path': request.path if request else None,
            'method': request.method if request else None,
        },
        exc_info=response is None,
    )

    if response is None:
        return Response(
            {
                'error': {
                    'code': 'INTERNAL_ERROR',
                    'message': 'An unexpected error occurred',
                },
                'request_id': request_id,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    if isinstance(exc, APIException):
        detail = exc.detail
        payload = {
            'error': {
                'code': _drf_code(exc),
                'message': detail if isinstance(detail, str) else 'Invalid request',
            },
            'request_id': request_id,
        }
        if isinstance(detail, (dict, list)):
            payload['error']['details'] = detail
        response.data = payload

    return response


def _drf_code(exc):
    codes = exc.get_codes()
    if isinstance(codes, str):
        return codes.upper()
    return exc.default_code.upper()
