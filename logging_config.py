"""
Logging configuration for the SilverSeal application.
"""
import os
import logging
import logging.handlers
from flask import has_request_context, request, g

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


class RequestFormatter(logging.Formatter):
    """
    Appends method, URL, client IP and request id to records logged inside a request.
    Records logged outside a request keep the plain format.
    """
    request_suffix = ' | %(method)s %(url)s | IP: %(remote_addr)s | Request: %(request_id)s'

    def format(self, record):
        message = super().format(record)
        if not has_request_context():
            return message
        return message + self.request_suffix % {
            'method': request.method,
            'url': request.url,
            'remote_addr': request.remote_addr,
            'request_id': getattr(g, 'request_id', None),
        }


_configured = False


def setup_logging():
    """Configure application logging"""
    global _configured
    if _configured:
        return
    _configured = True

    logger = logging.getLogger()
    logger.handlers = []

    log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    formatter = RequestFormatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Optional rotating file (10 MB per file, max 5 files)
    if os.environ.get('LOG_TO_FILE'):
        os.makedirs('logs', exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            'logs/silverseal.log',
            maxBytes=10*1024*1024,
            backupCount=5
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    # boto3 is chatty at INFO
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('PIL').setLevel(logging.WARNING)

    logger.info("Logging configured")
