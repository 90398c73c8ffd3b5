"""
Error taxonomy and JSON error handlers for the SilverSeal application.

Every failure reaches the client as a JSON body with a stable ``error``
field. Stack traces and connection details stay in the server log.
"""

import logging
from datetime import datetime
from flask import request, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""
    status_code = 500
    error = 'Internal server error'

    def __init__(self, message=None, payload=None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.payload = payload or {}

    def to_dict(self):
        body = {
            'success': False,
            'error': self.error,
            'message': self.message,
            'error_code': self.status_code,
        }
        body.update(self.payload)
        return body


class ValidationError(AppError):
    """Malformed input. ``fields`` maps field name to a list of messages."""
    status_code = 400
    error = 'Validation failed'

    def __init__(self, message=None, fields=None, payload=None):
        super().__init__(message, payload)
        self.fields = fields or {}

    def to_dict(self):
        body = super().to_dict()
        if self.fields:
            body['fields'] = self.fields
        return body


class AuthorizationError(AppError):
    status_code = 401
    error = 'Unauthorized'


class NotFoundError(AppError):
    status_code = 404
    error = 'Not found'


class ConflictError(AppError):
    status_code = 409
    error = 'Conflict'


class DependencyError(AppError):
    """A database or object-storage operation failed."""
    status_code = 500
    error = 'Dependency failure'

    def __init__(self, message=None, original=None, payload=None):
        super().__init__(message, payload)
        self.original = original


def _request_id():
    from request_tracking import get_request_id
    return get_request_id()


def _rollback_session():
    try:
        from app import db
        db.session.rollback()
    except Exception as db_error:
        logger.debug(f"DB rollback error during exception handling: {str(db_error)}")


def setup_error_handlers(app):
    """Register JSON error handlers with request ID tracking"""

    @app.errorhandler(AppError)
    def handle_app_error(error):
        request_id = _request_id()

        if isinstance(error, DependencyError):
            _rollback_session()
            app.logger.error(
                f"[{request_id}] Dependency failure on {request.path}: {error.message} "
                f"- original: {error.original!r}",
                exc_info=error.original or error
            )
        elif error.status_code >= 500:
            app.logger.error(f"[{request_id}] {error.error} on {request.path}: {error.message}")
        else:
            app.logger.info(f"[{request_id}] {error.status_code} {error.error}: {request.path} - {error.message}")

        body = error.to_dict()
        body['request_id'] = request_id
        return jsonify(body), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        request_id = _request_id()
        if error.code and error.code >= 500:
            app.logger.error(f"[{request_id}] {error.code} {error.name}: {request.path}")

        return jsonify({
            'success': False,
            'error': error.name,
            'message': error.description,
            'error_code': error.code,
            'request_id': request_id
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """Handle any unexpected errors"""
        request_id = _request_id()
        app.logger.error(f"[{request_id}] Unexpected error: {request.url} - {str(error)}", exc_info=True)

        _rollback_session()

        return jsonify({
            'success': False,
            'error': 'Unexpected error',
            'message': 'An unexpected error occurred. Please try again later.',
            'error_code': 500,
            'request_id': request_id
        }), 500


def setup_health_monitoring(app):
    """Setup health monitoring endpoints"""

    @app.route('/health')
    def health_check():
        """Lightweight liveness check - no DB required"""
        return jsonify({
            'status': 'ok',
            'service': 'silverseal',
            'timestamp': datetime.utcnow().isoformat()
        }), 200

    @app.route('/ready')
    def readiness_check():
        """Readiness check - verifies DB connection is available"""
        from app import db
        from sqlalchemy import text

        try:
            db.session.execute(text('SELECT 1'))
            return jsonify({'status': 'ready', 'database': 'connected'}), 200
        except Exception as e:
            app.logger.error(f"Database readiness check failed: {str(e)}")
            return jsonify({'status': 'not_ready', 'database': 'unavailable'}), 503
