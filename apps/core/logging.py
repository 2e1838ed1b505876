"""
Custom logging formatters for structured JSON logging.
"""
import json
import logging
import re
import traceback
from django.utils import timezone


class PIIMasker:
    """
    Utility class to mask sensitive PII data in logs.
    """

    PHONE_PATTERN = re.compile(r'\+?\d{10,15}')
    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b')
    SECRET_PATTERN = re.compile(
        r'(client[_-]?secret|access[_-]?token|token|secret|password|authorization)["\']?\s*[:=]\s*["\']?(?:bearer\s+)?([^"\'\s,}]+)',
        re.IGNORECASE
    )
    BEARER_PATTERN = re.compile(r'Bearer\s+[A-Za-z0-9\-_.=]+', re.IGNORECASE)

    SENSITIVE_FIELDS = {
        'phone', 'phone_number', 'mobile',
        'email', 'email_address',
        'password', 'passwd', 'credentials',
        'access_token', 'refresh_token', 'bearer_token', 'authorization',
        'secret', 'client_secret', 'secret_key',
    }

    @classmethod
    def mask_phone(cls, text):
        if not isinstance(text, str):
            return text
        return cls.PHONE_PATTERN.sub(lambda m: m.group(0)[:3] + '*' * (len(m.group(0)) - 3), text)

    @classmethod
    def mask_email(cls, text):
        """Keep the first character of the local part and the domain."""
        if not isinstance(text, str):
            return text

        def mask_email_match(match):
            local, _, domain = match.group(0).partition('@')
            masked_local = local[0] + '*' * (len(local) - 1) if len(local) > 1 else local
            return f"{masked_local}@{domain}"

        return cls.EMAIL_PATTERN.sub(mask_email_match, text)

    @classmethod
    def mask_secrets(cls, text):
        if not isinstance(text, str):
            return text
        text = cls.BEARER_PATTERN.sub('Bearer ********', text)
        return cls.SECRET_PATTERN.sub(r'\1: ********', text)

    @classmethod
    def mask_text(cls, text):
        """Apply all masking patterns to text."""
        if not isinstance(text, str):
            return text
        text = cls.mask_secrets(text)
        text = cls.mask_phone(text)
        text = cls.mask_email(text)
        return text

    @classmethod
    def mask_dict(cls, data):
        """Recursively mask sensitive data in dictionaries."""
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if any(sensitive in str(key).lower() for sensitive in cls.SENSITIVE_FIELDS):
                if value and not isinstance(value, (dict, list)):
                    masked[key] = '********'
                else:
                    masked[key] = value
            elif isinstance(value, dict):
                masked[key] = cls.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    cls.mask_dict(item) if isinstance(item, dict)
                    else cls.mask_text(item) if isinstance(item, str)
                    else item
                    for item in value
                ]
            elif isinstance(value, str):
                masked[key] = cls.mask_text(value)
            else:
                masked[key] = value

        return masked


_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
    'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'request_id', 'tenant_id',
}


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.
    Includes request_id and tenant_id when the LoggingFilter provided them.
    Sensitive values are masked before serialization.
    """

    def format(self, record):
        log_data = {
            'timestamp': timezone.now().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': PIIMasker.mask_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if hasattr(record, 'request_id'):
            log_data['request_id'] = record.request_id

        if hasattr(record, 'tenant_id') and record.tenant_id:
            log_data['tenant_id'] = str(record.tenant_id)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': PIIMasker.mask_text(str(record.exc_info[1])),
                'traceback': [PIIMasker.mask_text(line) for line in traceback.format_exception(*record.exc_info)],
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            if any(sensitive in key.lower() for sensitive in PIIMasker.SENSITIVE_FIELDS):
                log_data[key] = '********'
                continue
            try:
                if isinstance(value, dict):
                    masked_value = PIIMasker.mask_dict(value)
                elif isinstance(value, str):
                    masked_value = PIIMasker.mask_text(value)
                else:
                    masked_value = value

                json.dumps(masked_value)
                log_data[key] = masked_value
            except (TypeError, ValueError):
                log_data[key] = PIIMasker.mask_text(str(value))

        return json.dumps(log_data)


class SecurityLogger:
    """
    Centralized security event logging.

    Events go to the ``security`` logger with structured context; the
    critical ones are also sent to Sentry for alerting.
    """

    CRITICAL_EVENTS = {
        'privilege_escalation_attempt',
        'onboarding_rollback_incomplete',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Example:
            >>> SecurityLogger.log_event(
            ...     'permission_denied',
            ...     user_id='...',
            ...     tenant_id='...',
            ...     required_permissions=['invite-users'],
            ... )
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'event_timestamp': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = PIIMasker.mask_dict(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(f"Security event: {event_type}", extra=log_data)

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            from apps.core.sentry_utils import capture_message

            capture_message(
                f"Critical security event: {event_type}",
                level='error',
                security_event=log_data,
            )

    @staticmethod
    def log_unauthenticated(reason: str, path: str = None, ip_address: str = None):
        SecurityLogger.log_event(
            'unauthenticated',
            level='info',
            reason=reason,
            path=path,
            ip_address=ip_address,
        )

    @staticmethod
    def log_permission_denied(user_id, tenant_id, required_permissions, require_all: bool,
                              path: str = None, ip_address: str = None):
        """
        Log a permission denial.

        The required set is logged here so the HTTP response can stay free
        of permission details.
        """
        SecurityLogger.log_event(
            'permission_denied',
            level='warning',
            user_id=str(user_id) if user_id else None,
            tenant_id=str(tenant_id) if tenant_id else None,
            required_permissions=sorted(required_permissions),
            require_all=require_all,
            path=path,
            ip_address=ip_address,
        )

    @staticmethod
    def log_privilege_escalation_attempt(grantor_id, tenant_id, target_user_id,
                                         missing_permissions, subject: str):
        SecurityLogger.log_event(
            'privilege_escalation_attempt',
            level='error',
            grantor_id=str(grantor_id),
            tenant_id=str(tenant_id),
            target_user_id=str(target_user_id),
            missing_permissions=sorted(missing_permissions),
            subject=subject,
        )

    @staticmethod
    def log_header_identity_used(user_id, tenant_id, path: str = None):
        SecurityLogger.log_event(
            'actor_identity_from_headers',
            level='warning',
            user_id=str(user_id),
            tenant_id=str(tenant_id) if tenant_id else None,
            path=path,
        )

    @staticmethod
    def log_onboarding_rollback_incomplete(failure_id, failed_step: str, uncompensated: list):
        """
        Log an onboarding attempt that left provider state behind.

        An operator has to reconcile the ledger entry by hand.
        """
        SecurityLogger.log_event(
            'onboarding_rollback_incomplete',
            level='error',
            failure_id=str(failure_id) if failure_id else None,
            failed_step=failed_step,
            uncompensated=uncompensated,
        )
