"""
Request ID Tracking Middleware

Every request gets a unique request ID (or keeps the one the client sent in
X-Request-ID) so log lines and JSON error bodies can be correlated.

- Health checks skip logging
- Public scan endpoints use minimal logging (errors and slow requests only)
- Admin and auth paths keep full logging (audit trail)
"""

import uuid
import logging
import time
from flask import request, g

logger = logging.getLogger(__name__)

# Paths that should NEVER be logged (high-frequency, low-value)
NO_LOG_PATHS = {
    '/health',
    '/ready',
    '/favicon.ico',
}

# High-traffic public paths: errors and slow requests only
MINIMAL_LOG_PATHS_PREFIX = (
    '/api/verify',
    '/api/verify-gram/',
    '/api/qr/',
    '/api/qr-gram/',
    '/assets/',
)

SLOW_REQUEST_MS = 1000


def generate_request_id():
    """Generate a unique request ID (UUID4)."""
    return str(uuid.uuid4())


def get_request_id():
    """
    Get the current request ID from Flask's request context.

    Returns:
        str: The current request ID, or None if not set
    """
    return getattr(g, 'request_id', None)


def _should_log_request(path):
    """Return 'none', 'minimal' or 'full' for a request path."""
    if path in NO_LOG_PATHS:
        return 'none'

    if any(path.startswith(prefix) for prefix in MINIMAL_LOG_PATHS_PREFIX):
        return 'minimal'

    return 'full'


def setup_request_tracking(app):
    """
    Set up request ID tracking middleware for the Flask application.

    Args:
        app: Flask application instance
    """

    @app.before_request
    def track_request_start():
        request_id = request.headers.get('X-Request-ID') or generate_request_id()

        g.request_id = request_id
        g.request_start_time = time.time()
        g.log_level = _should_log_request(request.path)

        if g.log_level == 'full':
            logger.info(
                f"[{request_id}] Request started: {request.method} {request.path}",
                extra={
                    'request_id': request_id,
                    'method': request.method,
                    'path': request.path,
                    'remote_addr': request.remote_addr,
                }
            )

    @app.after_request
    def track_request_end(response):
        request_id = getattr(g, 'request_id', None)
        start_time = getattr(g, 'request_start_time', None)
        log_level = getattr(g, 'log_level', 'full')

        # Always add request ID header, even on error responses
        if request_id:
            response.headers['X-Request-ID'] = request_id

        if not start_time:
            return response

        duration_ms = int((time.time() - start_time) * 1000)
        response.headers['X-Response-Time'] = f"{duration_ms}ms"

        if log_level == 'none':
            return response

        message = (
            f"[{request_id}] {request.method} {request.path} "
            f"- Status: {response.status_code} - Duration: {duration_ms}ms"
        )
        extra = {
            'request_id': request_id,
            'status_code': response.status_code,
            'duration_ms': duration_ms,
        }

        if response.status_code >= 500:
            logger.error(message, extra=extra)
        elif response.status_code >= 400:
            logger.warning(message, extra=extra)
        elif log_level == 'full':
            logger.info(message, extra=extra)

        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(f"[{request_id}] Slow request detected: {request.method} {request.path} "
                           f"took {duration_ms}ms")

        return response
