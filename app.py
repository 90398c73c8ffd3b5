import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine
from werkzeug.middleware.proxy_fix import ProxyFix

from config import get_config
from logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


# Define database model base class
class Base(DeclarativeBase):
    pass


# Initialize extensions
db = SQLAlchemy(model_class=Base)
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()

# Create Flask application
app = Flask(__name__)
app.config.from_object(get_config())

# Proxy fix for correct client IPs and URL generation behind the load balancer
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

is_production = os.environ.get('FLASK_ENV') == 'production'
logger.info(f"Environment: {'production' if is_production else 'development'} "
            f"- testing: {app.config.get('TESTING', False)}")

# ==================================================================================
# DATABASE CONNECTION POOL - one pool per process, shared by every request
# ==================================================================================
# Pool sizing only applies to server databases; SQLite picks its own pool class.
# Formula: (pool_size + max_overflow) x workers < postgres_max_connections
# ==================================================================================
database_url = app.config["SQLALCHEMY_DATABASE_URI"]
if database_url.startswith(('postgresql', 'postgres')):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_size": app.config['DB_POOL_SIZE'],
        "max_overflow": app.config['DB_MAX_OVERFLOW'],
        "pool_recycle": app.config['DB_POOL_RECYCLE'],
        "pool_pre_ping": True,
        "pool_timeout": app.config['DB_POOL_TIMEOUT'],
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "silverseal_web"
        }
    }
    logger.info(f"Database pool: {app.config['DB_POOL_SIZE']} base + "
                f"{app.config['DB_MAX_OVERFLOW']} overflow per worker")


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection"""
    if type(dbapi_connection).__module__.startswith('sqlite3'):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# ==================================================================================
# RATE LIMITING - in-memory, per worker
# ==================================================================================
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{app.config['RATE_LIMIT_PER_MINUTE']} per minute"],
    storage_uri=app.config['RATELIMIT_STORAGE_URI'],
    strategy=app.config['RATELIMIT_STRATEGY'],
    swallow_errors=True
)

# Initialize extensions
db.init_app(app)
migrate.init_app(app, db)
login_manager.init_app(app)
csrf.init_app(app)
limiter.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    from models import User
    return db.session.get(User, int(user_id))


# ==================================================================================
# LAZY INITIALIZATION - bootstrap admin on first request, never at import time
# ==================================================================================
_lazy_init_done = False


def _run_lazy_initialization():
    """Create the bootstrap admin account if ADMIN_EMAIL/ADMIN_PASSWORD are set"""
    global _lazy_init_done
    if _lazy_init_done:
        return
    _lazy_init_done = True

    admin_email = app.config.get('ADMIN_EMAIL')
    admin_password = app.config.get('ADMIN_PASSWORD')
    if not admin_email or not admin_password:
        return

    try:
        from auth_utils import ensure_admin
        ensure_admin(admin_email, admin_password)
    except Exception as e:
        db.session.rollback()
        if 'does not exist' in str(e) or 'no such table' in str(e).lower():
            logger.warning("Database tables not found - run migrations first")
        else:
            logger.error(f"Lazy initialization error: {e}")


@app.before_request
def trigger_lazy_init():
    from flask import request
    if request.path in ('/health', '/ready'):
        return None
    _run_lazy_initialization()


# Minimal startup - just import models to register them
with app.app_context():
    import models  # noqa: F401

# Setup error handlers and request tracking
from error_handlers import setup_error_handlers, setup_health_monitoring
from request_tracking import setup_request_tracking

setup_error_handlers(app)
setup_health_monitoring(app)
setup_request_tracking(app)


@app.after_request
def after_request(response):
    """Add basic security headers"""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    return response


@app.teardown_appcontext
def shutdown_session(exception=None):
    """Ensure database session is properly closed after each request"""
    try:
        db.session.remove()
        if exception:
            logger.warning(f"Session cleanup after exception: {exception}")
    except Exception as e:
        logger.error(f"Error during session cleanup: {e}")
