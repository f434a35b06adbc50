import logging
import time
import uuid
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger("LOGGING")


def describe_user(request):
    user = getattr(request, "user", None)
    if not user or not user.is_authenticated:
        return "anonymous"
    return f"{user.username} (ID: {user.id}, role: {user.role_name or 'none'})"


class RequestResponseLoggingMiddleware(MiddlewareMixin):
    """
    Middleware to log incoming requests and outgoing responses.
    Only method, path, status and user are logged, never bodies, so card
    and webhook payloads stay out of the logs.
    """

    def process_request(self, request):
        """Log the basic info of the incoming request."""
        request.trace_id = str(uuid.uuid4())
        request.started_at = time.monotonic()
        logger.info(
            f"Trace ID: {request.trace_id} | Request: {request.method} {request.path} | User: {describe_user(request)}"
        )
        return None

    def process_response(self, request, response):
        """Log the response status and elapsed time for the same request."""
        trace_id = getattr(request, "trace_id", "N/A")
        started_at = getattr(request, "started_at", None)
        elapsed = f"{(time.monotonic() - started_at) * 1000:.1f}ms" if started_at else "N/A"
        logger.info(
            f"Trace ID: {trace_id} | Response: {response.status_code} | {elapsed} | User: {describe_user(request)}"
        )
        return response
