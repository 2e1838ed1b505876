"""
Onboarding saga: create an organization and its first administrator across
the identity provider and the local database.

Forward steps:
    STARTED -> ORG_CREATED -> ADMIN_USER_CREATED -> MEMBERSHIP_LINKED
            -> INTERNAL_PERSISTED -> COMPLETED

Every external step that succeeds pushes a compensating action. When a
later step fails, the stack is unwound in reverse order. Each compensation
is attempted even if an earlier one failed; if any of them fails, the
attempt is written to the onboarding failure ledger for an operator.
"""
import logging
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from django.db import IntegrityError, transaction

from apps.core.exceptions import (
    CompensationFailure, ConflictError, ExternalProviderError,
    OnboardingError, OperationCancelled, ValidationError, WardenException,
)
from apps.core.logging import SecurityLogger
from apps.core.sentry_utils import add_breadcrumb, capture_exception
from apps.rbac.models import AuditLog, Role, TenantUser, TenantUserRole, User
from apps.rbac.services import admin_role_name
from apps.tenants.models import OnboardingFailure, Tenant, TenantDomain, normalize_domain

logger = logging.getLogger(__name__)


class OnboardingState(str, Enum):
    STARTED = 'started'
    ORG_CREATED = 'org_created'
    ADMIN_USER_CREATED = 'admin_user_created'
    MEMBERSHIP_LINKED = 'membership_linked'
    INTERNAL_PERSISTED = 'internal_persisted'
    COMPLETED = 'completed'
    FAILED = 'failed'


_NEXT_STATE = {
    OnboardingState.STARTED: OnboardingState.ORG_CREATED,
    OnboardingState.ORG_CREATED: OnboardingState.ADMIN_USER_CREATED,
    OnboardingState.ADMIN_USER_CREATED: OnboardingState.MEMBERSHIP_LINKED,
    OnboardingState.MEMBERSHIP_LINKED: OnboardingState.INTERNAL_PERSISTED,
    OnboardingState.INTERNAL_PERSISTED: OnboardingState.COMPLETED,
}

# Name of the step that moves the saga out of each state.
STEP_NAMES = {
    OnboardingState.STARTED: 'create_org',
    OnboardingState.ORG_CREATED: 'create_admin_user',
    OnboardingState.ADMIN_USER_CREATED: 'link_membership',
    OnboardingState.MEMBERSHIP_LINKED: 'persist_internal',
    OnboardingState.INTERNAL_PERSISTED: 'audit',
}


@dataclass
class OnboardingRequest:
    tenant_name: str
    domain: str
    email: str
    first_name: str
    last_name: str
    username: Optional[str] = None
    password: Optional[str] = None

    def __post_init__(self):
        self.tenant_name = (self.tenant_name or '').strip()
        self.domain = normalize_domain(self.domain)
        self.email = User.objects.normalize_email(self.email)
        self.first_name = (self.first_name or '').strip()
        self.last_name = (self.last_name or '').strip()
        self.username = (self.username or self.email).strip()

        missing = [
            name for name in ('tenant_name', 'domain', 'email')
            if not getattr(self, name)
        ]
        if missing:
            raise ValidationError("Missing onboarding fields", {'missing': missing})


@dataclass
class OnboardingResult:
    tenant_id: uuid.UUID
    user_id: uuid.UUID
    state: OnboardingState = OnboardingState.COMPLETED


@dataclass
class CompensatingAction:
    name: str
    identifiers: dict
    run: Callable[[], object]


@dataclass
class CompensationOutcome:
    action: str
    identifiers: dict
    succeeded: bool
    error: str = ''

    def as_dict(self):
        return {'action': self.action, 'identifiers': self.identifiers, 'error': self.error}


class CompensationStack:
    """
    LIFO stack of compensating actions.

    ``unwind`` attempts every action and returns one outcome per action;
    it never raises.
    """

    def __init__(self):
        self._actions: List[CompensatingAction] = []

    def push(self, action: CompensatingAction):
        self._actions.append(action)

    def __len__(self):
        return len(self._actions)

    def unwind(self) -> List[CompensationOutcome]:
        outcomes = []
        while self._actions:
            action = self._actions.pop()
            try:
                action.run()
            except Exception as e:
                failure = CompensationFailure(action.name, action.identifiers, e)
                logger.error(
                    failure.message,
                    extra={'compensation': action.name, 'identifiers': action.identifiers},
                    exc_info=True
                )
                outcomes.append(CompensationOutcome(action.name, action.identifiers, False, str(e)))
            else:
                logger.info(
                    f"Compensation '{action.name}' succeeded",
                    extra={'compensation': action.name, 'identifiers': action.identifiers}
                )
                outcomes.append(CompensationOutcome(action.name, action.identifiers, True))
        return outcomes


@dataclass
class OnboardingAttempt:
    """State of one onboarding attempt. A failed attempt is terminal."""

    request: OnboardingRequest
    state: OnboardingState = OnboardingState.STARTED
    org_id: Optional[str] = None
    user_id: Optional[str] = None
    failed_step: Optional[str] = None
    compensations: CompensationStack = field(default_factory=CompensationStack)

    @property
    def current_step(self):
        return STEP_NAMES.get(self.state, self.state.value)

    def advance(self, to: OnboardingState):
        if _NEXT_STATE.get(self.state) != to:
            raise RuntimeError(f"Illegal onboarding transition {self.state.value} -> {to.value}")
        logger.info(
            "Onboarding step completed",
            extra={'from_state': self.state.value, 'to_state': to.value, 'domain': self.request.domain}
        )
        add_breadcrumb('onboarding', f"{self.state.value} -> {to.value}")
        self.state = to

    def fail(self):
        self.failed_step = self.current_step
        self.state = OnboardingState.FAILED


class OnboardingService:
    """
    Orchestrates tenant onboarding across the identity provider and the
    local database.
    """

    def __init__(self, gateway=None):
        if gateway is None:
            from apps.integrations.services.identity_provider_service import IdentityProviderGateway

            gateway = IdentityProviderGateway()
        self.gateway = gateway

    # ------------------------------------------------------------- pre-check

    @staticmethod
    def check_available(request: OnboardingRequest):
        """
        Reject requests that collide with existing tenants or users.

        Raises:
            ConflictError: before anything is created at the provider
        """
        conflicts = {}
        if TenantDomain.objects.domain_exists(request.domain):
            conflicts['domain'] = request.domain
        if Tenant.objects.name_exists(request.tenant_name):
            conflicts['tenant_name'] = request.tenant_name
        if User.objects.email_exists(request.email):
            conflicts['email'] = 'already registered'

        if conflicts:
            logger.info(
                "Onboarding rejected: conflicting organization or user",
                extra={'conflicts': sorted(conflicts)}
            )
            raise ConflictError("Organization or user already exists", conflicts)

    # ------------------------------------------------------------------ saga

    def onboard(self, request: OnboardingRequest, cancel_event=None) -> OnboardingResult:
        """
        Run the onboarding saga.

        Args:
            request: validated onboarding input
            cancel_event: optional ``threading.Event``; when set, the saga
                fails at the next step boundary or provider call and rolls back

        Returns:
            OnboardingResult for the new tenant and administrator

        Raises:
            ConflictError: the organization, domain or email already exists
            OnboardingError: a step failed; carries the failed step, whether
                rollback succeeded, and the ledger entry id when it did not
        """
        self.check_available(request)

        attempt = OnboardingAttempt(request=request)
        gateway = self.gateway

        try:
            self._check_cancelled(cancel_event)
            attempt.org_id = gateway.create_org(request.tenant_name, request.domain, cancel_event=cancel_event)
            org_id = attempt.org_id
            attempt.compensations.push(CompensatingAction(
                'delete_org', {'org_id': org_id},
                lambda: gateway.delete_org(org_id),
            ))
            attempt.advance(OnboardingState.ORG_CREATED)

            self._check_cancelled(cancel_event)
            attempt.user_id = gateway.create_user(
                request.username, request.email, request.first_name, request.last_name,
                password=request.password, cancel_event=cancel_event,
            )
            user_id = attempt.user_id
            attempt.compensations.push(CompensatingAction(
                'delete_user', {'user_id': user_id},
                lambda: gateway.delete_user(user_id),
            ))
            attempt.advance(OnboardingState.ADMIN_USER_CREATED)

            self._check_cancelled(cancel_event)
            gateway.add_membership(org_id, user_id, cancel_event=cancel_event)
            attempt.compensations.push(CompensatingAction(
                'remove_membership', {'org_id': org_id, 'user_id': user_id},
                lambda: gateway.remove_membership(org_id, user_id),
            ))
            attempt.advance(OnboardingState.MEMBERSHIP_LINKED)

            self._check_cancelled(cancel_event)
            tenant, user = self._persist(attempt)
            attempt.advance(OnboardingState.INTERNAL_PERSISTED)
        except Exception as exc:
            self._handle_failure(attempt, exc)

        self._audit_success(tenant, user, request)
        attempt.advance(OnboardingState.COMPLETED)

        logger.info(
            "Onboarding completed",
            extra={'tenant_id': str(tenant.id), 'user_id': str(user.id), 'domain': request.domain}
        )
        return OnboardingResult(tenant_id=tenant.id, user_id=user.id, state=attempt.state)

    @staticmethod
    def _check_cancelled(cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Onboarding cancelled")

    @staticmethod
    def _persist(attempt: OnboardingAttempt):
        request = attempt.request
        try:
            tenant_pk = uuid.UUID(str(attempt.org_id))
            user_pk = uuid.UUID(str(attempt.user_id))
        except ValueError as e:
            raise ExternalProviderError("Identity provider returned an id that is not a UUID") from e

        role = Role.objects.by_name(admin_role_name())
        if role is None:
            raise WardenException(
                f"Default administrator role '{admin_role_name()}' is not seeded"
            )

        try:
            with transaction.atomic():
                tenant = Tenant.objects.create(id=tenant_pk, name=request.tenant_name)
                TenantDomain.objects.create(tenant=tenant, domain=request.domain, is_primary=True)
                user = User.objects.create(
                    id=user_pk,
                    email=request.email,
                    username=request.username,
                    first_name=request.first_name,
                    last_name=request.last_name,
                )
                membership = TenantUser.objects.create(tenant=tenant, user=user)
                TenantUserRole.objects.create(tenant_user=membership, role=role)
        except IntegrityError as e:
            raise ConflictError("Organization, domain or email was registered concurrently") from e

        return tenant, user

    @staticmethod
    def _audit_success(tenant, user, request):
        AuditLog.log_action(
            'tenant.created',
            'tenant',
            tenant.id,
            tenant_id=tenant.id,
            new_values={'name': tenant.name, 'domain': request.domain},
        )
        AuditLog.log_action(
            'user.created',
            'user',
            user.id,
            tenant_id=tenant.id,
            new_values={
                'email': user.email,
                'first_name': user.first_name,
                'last_name': user.last_name,
                'role': admin_role_name(),
            },
        )

    # -------------------------------------------------------------- failure

    def _handle_failure(self, attempt: OnboardingAttempt, exc: Exception):
        attempt.fail()
        logger.warning(
            f"Onboarding failed at {attempt.failed_step}: {exc}",
            extra={
                'failed_step': attempt.failed_step,
                'org_id': attempt.org_id,
                'user_id': attempt.user_id,
                'compensations': len(attempt.compensations),
            },
            exc_info=not isinstance(exc, WardenException),
        )

        outcomes = attempt.compensations.unwind()
        failed = [outcome for outcome in outcomes if not outcome.succeeded]
        rollback_succeeded = not failed

        failure_id = None
        if not rollback_succeeded:
            failure_id = self._record_failure(attempt, exc, failed)
            SecurityLogger.log_onboarding_rollback_incomplete(
                failure_id, attempt.failed_step, [outcome.as_dict() for outcome in failed]
            )

        raise OnboardingError(
            f"Onboarding failed at step '{attempt.failed_step}': {getattr(exc, 'message', str(exc))}",
            step=attempt.failed_step,
            cause=exc,
            rollback_succeeded=rollback_succeeded,
            failure_id=failure_id,
        ) from exc

    @staticmethod
    def _record_failure(attempt: OnboardingAttempt, exc: Exception, failed: List[CompensationOutcome]):
        request = attempt.request
        if isinstance(exc, ExternalProviderError) and exc.provider_body:
            details = exc.provider_body
        else:
            details = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        try:
            entry = OnboardingFailure.objects.create(
                external_org_id=attempt.org_id or '',
                external_user_id=attempt.user_id or '',
                tenant_name=request.tenant_name,
                domain=request.domain,
                email=request.email,
                first_name=request.first_name,
                last_name=request.last_name,
                failed_step=attempt.failed_step,
                error_code=getattr(exc, 'code', exc.__class__.__name__),
                error_message=getattr(exc, 'message', str(exc)),
                error_details=details,
                rollback_succeeded=False,
                uncompensated=[outcome.as_dict() for outcome in failed],
            )
        except Exception as e:
            logger.critical(
                "Could not write onboarding failure ledger entry",
                extra={'org_id': attempt.org_id, 'user_id': attempt.user_id},
                exc_info=True
            )
            capture_exception(e, onboarding={'org_id': attempt.org_id, 'user_id': attempt.user_id})
            return None

        logger.error(
            "Onboarding rollback incomplete; ledger entry recorded",
            extra={'failure_id': str(entry.id), 'failed_step': attempt.failed_step}
        )
        return entry.id


def retry_compensation(gateway, entry: OnboardingFailure) -> List[CompensationOutcome]:
    """
    Re-run the uncompensated actions recorded on a ledger entry.

    Used by the ``reconcile_onboarding_failures`` command.
    """
    runners = {
        'delete_org': lambda ids: gateway.delete_org(ids['org_id']),
        'delete_user': lambda ids: gateway.delete_user(ids['user_id']),
        'remove_membership': lambda ids: gateway.remove_membership(ids['org_id'], ids['user_id']),
    }

    stack = CompensationStack()
    # Push in reverse so unwinding keeps the recorded order.
    for item in reversed(entry.uncompensated or []):
        runner = runners.get(item.get('action'))
        identifiers = item.get('identifiers') or {}
        if runner is None:
            continue
        stack.push(CompensatingAction(
            item['action'], identifiers,
            lambda runner=runner, identifiers=identifiers: runner(identifiers),
        ))
    return stack.unwind()
