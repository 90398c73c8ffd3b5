"""
Configuration module for SilverSeal application.
Centralizes all configuration settings with environment variable support.
"""
import os


def _int_env(name, default):
    return int(os.environ.get(name, str(default)))


def _positive_int_env(name, default):
    """Read a whole number of at least 1, failing at startup instead of on first use"""
    raw = os.environ.get(name, str(default)).strip()
    if not raw.isdigit() or int(raw) < 1:
        raise ValueError(f"{name} must be a positive whole number, got {raw!r}")
    return int(raw)


class Config:
    """Base configuration class with settings common to all environments."""
    # Flask settings
    SECRET_KEY = os.environ.get("SESSION_SECRET") or "development-key-not-for-production"
    DEBUG = False
    TESTING = False

    # SQLAlchemy settings
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or "sqlite:///silverseal.db"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # Connection pool (only applied to PostgreSQL URLs, see app.py)
    DB_POOL_SIZE = _int_env('DB_POOL_SIZE', 10)
    DB_MAX_OVERFLOW = _int_env('DB_MAX_OVERFLOW', 5)
    DB_POOL_RECYCLE = _int_env('DB_POOL_RECYCLE', 300)
    DB_POOL_TIMEOUT = _int_env('DB_POOL_TIMEOUT', 30)

    # Security settings
    SESSION_COOKIE_SECURE = True            # Only send cookies over HTTPS
    SESSION_COOKIE_HTTPONLY = True          # Prevent JavaScript access to session cookie
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_NAME = 'silverseal_session'
    PERMANENT_SESSION_LIFETIME = 3600       # 1 hour
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = None
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024   # Limit upload size to 10MB
    JSON_SORT_KEYS = False

    # Rate limiting settings
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = "memory://"
    RATELIMIT_STRATEGY = "fixed-window"
    RATE_LIMIT_PER_MINUTE = os.environ.get('RATE_LIMIT_PER_MINUTE', '300')
    LOGIN_RATE_LIMIT = os.environ.get('LOGIN_RATE_LIMIT', '10 per minute')

    # Verification links embedded in QR codes
    APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:5000')

    # Code generation
    SERIAL_PREFIX = os.environ.get('SERIAL_PREFIX', 'SK')
    GRAM_UNIQ_PREFIX = os.environ.get('GRAM_UNIQ_PREFIX', 'GK')
    GRAM_SERIAL_PREFIX = os.environ.get('GRAM_SERIAL_PREFIX', 'SKP')
    SERIAL_MAX_ATTEMPTS = _int_env('SERIAL_MAX_ATTEMPTS', 5)

    # Print sheets of labelled QR codes
    QR_SHEET_MAX_CODES = _int_env('QR_SHEET_MAX_CODES', 60)

    # Batch limits
    PRODUCT_BATCH_MAX_QUANTITY = _int_env('PRODUCT_BATCH_MAX_QUANTITY', 10000)
    GRAM_BATCH_MAX_QUANTITY = _int_env('GRAM_BATCH_MAX_QUANTITY', 100000)

    # Deleted product history is purged after this many days
    DELETE_HISTORY_RETENTION_DAYS = _positive_int_env('PRODUCT_DELETE_HISTORY_RETENTION_DAYS', 30)

    # Object storage (Cloudflare R2 / any S3-compatible endpoint)
    R2_ENDPOINT = os.environ.get('R2_ENDPOINT')
    R2_BUCKET = os.environ.get('R2_BUCKET')
    R2_ACCESS_KEY_ID = os.environ.get('R2_ACCESS_KEY_ID')
    R2_SECRET_ACCESS_KEY = os.environ.get('R2_SECRET_ACCESS_KEY')
    R2_PUBLIC_URL = os.environ.get('R2_PUBLIC_URL')

    # Local asset fallback when R2 is not configured
    LOCAL_ASSET_FOLDER = os.environ.get('LOCAL_ASSET_FOLDER', os.path.join(os.getcwd(), 'storage'))
    LOCAL_ASSET_URL_PREFIX = '/assets'

    # Bootstrap admin account (created lazily on first request)
    ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD')


class DevelopmentConfig(Config):
    """Configuration for development environment."""
    DEBUG = True
    SESSION_COOKIE_SECURE = False  # Allow non-HTTPS for development


class TestingConfig(Config):
    """Configuration for testing environment."""
    TESTING = True
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    WTF_CSRF_ENABLED = False  # Disable CSRF for testing
    RATELIMIT_ENABLED = False

    # Use in-memory database for testing
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or "sqlite:///:memory:"
    APP_BASE_URL = 'https://example.com'


class ProductionConfig(Config):
    """Configuration for production environment."""
    SESSION_COOKIE_SECURE = True
    PREFERRED_URL_SCHEME = 'https'

    # Ensure these are set in production
    def __init__(self):
        if not os.environ.get("SESSION_SECRET"):
            raise ValueError("SESSION_SECRET must be set in production")
        if not os.environ.get("DATABASE_URL"):
            raise ValueError("DATABASE_URL must be set in production")


# Create a mapping of environment names to configuration classes
config_by_name = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig
}


def get_config():
    """Return the configuration object for the current environment."""
    if os.environ.get('TESTING', '').lower() in ('1', 'true', 'yes'):
        return TestingConfig()
    config_class = config_by_name.get(os.environ.get('FLASK_ENV', 'development'), DevelopmentConfig)
    return config_class()
