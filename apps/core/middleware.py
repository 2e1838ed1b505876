"""
Core middleware for request processing.
"""
import threading
import uuid
import logging
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)

_local = threading.local()


def set_log_context(request_id=None, tenant_id=None):
    """Attach identifiers to log records emitted by the current thread."""
    if request_id is not None:
        _local.request_id = request_id
    if tenant_id is not None:
        _local.tenant_id = str(tenant_id)


def clear_log_context():
    for attr in ('request_id', 'tenant_id'):
        if hasattr(_local, attr):
            delattr(_local, attr)


class RequestIDMiddleware(MiddlewareMixin):
    """
    Inject a unique request_id into each request for tracing.
    The request_id is added to the request object and to log records.
    """

    def process_request(self, request):
        request_id = request.META.get('HTTP_X_REQUEST_ID') or str(uuid.uuid4())
        request.request_id = request_id
        clear_log_context()
        set_log_context(request_id=request_id)

    def process_response(self, request, response):
        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id
        clear_log_context()
        return response


class LoggingFilter(logging.Filter):
    """
    Add request_id and tenant_id to log records from thread-local storage.
    """

    def filter(self, record):
        if not hasattr(record, 'request_id') and hasattr(_local, 'request_id'):
            record.request_id = _local.request_id

        if not hasattr(record, 'tenant_id') and hasattr(_local, 'tenant_id'):
            record.tenant_id = _local.tenant_id

        return True
