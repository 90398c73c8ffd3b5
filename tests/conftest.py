import os
import sys
import tempfile
import pytest
from flask import g, has_app_context
from flask.testing import FlaskClient

# Set test environment variables BEFORE importing app
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SESSION_SECRET'] = 'test-secret-key-for-testing-only'
os.environ['TESTING'] = 'True'
os.environ['LOCAL_ASSET_FOLDER'] = tempfile.mkdtemp(prefix='silverseal-assets-')
os.environ.pop('ADMIN_EMAIL', None)
os.environ.pop('ADMIN_PASSWORD', None)

# Add parent directory to path so we can import app and models
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app as flask_app, db
from models import (
    User, UserRole, Product, QrRecord, QrScanLog, GramProductBatch, GramProductItem,
    GramQrScanLog, Feedback, ProductDeleteBatch, ProductDeleteHistory
)
from storage_utils import AssetStore

# Import the API to register its routes with the app
import api  # noqa: F401


class SessionClient(FlaskClient):
    """Test client that reloads the logged-in user from the session cookie on every request"""

    def open(self, *args, **kwargs):
        # Requests share the session-wide app context, so drop the cached user
        if has_app_context():
            g.pop('_login_user', None)
        return super().open(*args, **kwargs)


@pytest.fixture(scope='session')
def app():
    """Create and configure a test Flask app instance"""
    flask_app.test_client_class = SessionClient

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create a test client for the app"""
    return app.test_client()


@pytest.fixture(scope='function')
def asset_store(app, tmp_path):
    """Local asset store under a per-test folder, installed as the app-wide store"""
    store = AssetStore(local_folder=str(tmp_path / 'assets'))
    app.extensions['asset_store'] = store
    yield store
    app.extensions.pop('asset_store', None)


@pytest.fixture(scope='function')
def db_session(app, asset_store):
    """Start each test from empty tables"""
    # Children before parents
    for model in (QrScanLog, GramQrScanLog, QrRecord, GramProductItem, Product, GramProductBatch,
                  ProductDeleteHistory, ProductDeleteBatch, Feedback, User):
        db.session.query(model).delete()
    db.session.commit()

    yield db.session

    # Cleanup
    db.session.rollback()


@pytest.fixture
def admin_user(db_session):
    """Create an admin user for testing"""
    user = User()
    user.email = 'admin@test.com'
    user.name = 'Admin'
    user.set_password('admin123')
    user.role = UserRole.ADMIN.value
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def staff_user(db_session):
    """Create a non-admin user for testing"""
    user = User()
    user.email = 'staff@test.com'
    user.name = 'Staff'
    user.set_password('staff123')
    user.role = UserRole.STAFF.value
    db_session.add(user)
    db_session.commit()
    return user


def _log_in(client, user):
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user.id)
        sess['_fresh'] = True
    return client


@pytest.fixture
def admin_client(client, admin_user):
    """Create a client with an admin session"""
    return _log_in(client, admin_user)


@pytest.fixture
def staff_client(client, staff_user):
    """Create a client with a non-admin session"""
    return _log_in(client, staff_user)


@pytest.fixture
def make_product(admin_client):
    """Create products through the API and return the JSON of the first one"""
    def _make(**payload):
        payload.setdefault('name', 'Gold Bar 10g')
        payload.setdefault('weight', 10)
        response = admin_client.post('/api/products', json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()['product']
    return _make


@pytest.fixture
def make_gram_batch(admin_client):
    """Create a gram batch through the API and return the response JSON"""
    def _make(**payload):
        payload.setdefault('name', 'Silver Coin')
        payload.setdefault('weight', 5)
        payload.setdefault('quantity', 2)
        response = admin_client.post('/api/gram-products', json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()
    return _make
