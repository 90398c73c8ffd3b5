"""
Authentication utilities for the admin API.

Sessions are issued by Flask-Login. Every admin route is wrapped in
``admin_required``, which resolves the principal from the session and
rejects anything that is not an ADMIN account with a 401 JSON error.
"""
from functools import wraps
import datetime
import logging
from flask_login import current_user, login_user, logout_user

from app import db
from error_handlers import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)


class Principal:
    """Identity of the caller as seen by the admin API"""

    def __init__(self, user_id, email, role):
        self.user_id = user_id
        self.email = email
        self.role = role

    def is_admin(self):
        from models import UserRole
        return self.role == UserRole.ADMIN.value

    def to_dict(self):
        return {'user_id': self.user_id, 'email': self.email, 'role': self.role}


def get_principal():
    """Return the Principal for the current session, or None when anonymous"""
    if not current_user or not current_user.is_authenticated:
        return None
    return Principal(current_user.id, current_user.email, current_user.role)


def admin_required(f):
    """Decorator to require an authenticated ADMIN principal"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        principal = get_principal()
        if principal is None:
            raise AuthorizationError('Authentication required')
        if not principal.is_admin():
            logger.warning(f"Non-admin access attempt by {principal.email} to {f.__name__}")
            raise AuthorizationError('Admin role required')
        return f(*args, **kwargs)
    return decorated_function


def authenticate(email, password):
    """
    Check credentials and open a session.

    Returns the User on success. Raises AuthorizationError for unknown
    accounts and wrong passwords alike so the response does not reveal
    which emails exist.
    """
    from models import User

    if not email or not password:
        raise ValidationError('Email and password are required', fields={
            'email': [] if email else ['Email is required'],
            'password': [] if password else ['Password is required'],
        })

    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        logger.warning(f"Failed login attempt for {email}")
        raise AuthorizationError('Invalid email or password')

    user.last_login_at = datetime.datetime.utcnow()
    db.session.commit()

    login_user(user)
    logger.info(f"User {user.email} logged in (role: {user.role})")
    return user


def logout():
    principal = get_principal()
    logout_user()
    if principal:
        logger.info(f"User {principal.email} logged out")


def ensure_admin(email, password):
    """Create the bootstrap admin account if it does not exist yet"""
    from models import User, UserRole

    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if user:
        if user.role != UserRole.ADMIN.value:
            user.role = UserRole.ADMIN.value
            db.session.commit()
            logger.info(f"Promoted {email} to admin")
        return user

    user = User(email=email, role=UserRole.ADMIN.value)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    logger.info(f"Created bootstrap admin account {email}")
    return user
