import pytest
from models import User, UserRole
from auth_utils import ensure_admin, Principal


class TestAuthentication:
    def test_login_success(self, client, admin_user):
        """Test successful login opens an admin session"""
        response = client.post('/api/auth/login', json={'email': 'ADMIN@test.com ', 'password': 'admin123'})

        assert response.status_code == 200
        data = response.get_json()
        assert data['user']['email'] == 'admin@test.com'
        assert data['user']['role'] == 'ADMIN'

        me = client.get('/api/admin/me')
        assert me.status_code == 200
        assert me.get_json()['user']['email'] == 'admin@test.com'
        assert me.get_json()['csrf_token']

    def test_login_records_last_login(self, client, admin_user):
        client.post('/api/auth/login', json={'email': 'admin@test.com', 'password': 'admin123'})
        assert User.query.filter_by(email='admin@test.com').one().last_login_at is not None

    def test_login_failure(self, client, admin_user):
        """Test failed login with wrong password"""
        response = client.post('/api/auth/login', json={'email': 'admin@test.com', 'password': 'wrong'})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid email or password'

    def test_unknown_email_same_message(self, client, db_session):
        response = client.post('/api/auth/login', json={'email': 'nobody@test.com', 'password': 'x'})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid email or password'

    def test_missing_credentials(self, client, db_session):
        response = client.post('/api/auth/login', json={'email': 'admin@test.com'})
        assert response.status_code == 400
        assert response.get_json()['fields']['password']

    def test_logout(self, admin_client):
        """Test logout ends the session"""
        assert admin_client.get('/api/admin/me').status_code == 200

        response = admin_client.post('/api/auth/logout')
        assert response.status_code == 200

        assert admin_client.get('/api/admin/me').status_code == 401

    def test_staff_cannot_use_admin_api(self, client, staff_user):
        client.post('/api/auth/login', json={'email': 'staff@test.com', 'password': 'staff123'})
        response = client.get('/api/admin/me')
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Admin role required'

    def test_protected_route_requires_auth(self, client, db_session):
        """Test that protected routes require authentication"""
        for path in ('/api/admin/me', '/api/products', '/api/gram-products', '/api/admin/stats'):
            response = client.get(path)
            assert response.status_code == 401
            assert response.get_json()['success'] is False


class TestAdminBootstrap:
    def test_ensure_admin_creates_account(self, db_session):
        user = ensure_admin(' Owner@Example.com', 'bootstrap-pass')
        assert user.email == 'owner@example.com'
        assert user.is_admin()
        assert user.check_password('bootstrap-pass')

    def test_ensure_admin_promotes_existing(self, staff_user):
        user = ensure_admin('staff@test.com', 'ignored')
        assert user.id == staff_user.id
        assert user.role == UserRole.ADMIN.value
        assert user.check_password('staff123')

    def test_ensure_admin_is_idempotent(self, db_session):
        ensure_admin('owner@example.com', 'pass')
        ensure_admin('owner@example.com', 'pass')
        assert User.query.filter_by(email='owner@example.com').count() == 1


class TestPrincipal:
    def test_principal_roles(self):
        assert Principal(1, 'a@test.com', 'ADMIN').is_admin()
        assert not Principal(2, 'b@test.com', 'STAFF').is_admin()
        assert Principal(1, 'a@test.com', 'ADMIN').to_dict() == {
            'user_id': 1, 'email': 'a@test.com', 'role': 'ADMIN'
        }


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'

    def test_ready(self, client, db_session):
        assert client.get('/ready').get_json()['database'] == 'connected'

    def test_request_id_echoed(self, client, db_session):
        response = client.get('/api/verify/NOPE000001', headers={'X-Request-ID': 'req-123'})
        assert response.headers['X-Request-ID'] == 'req-123'
        assert response.get_json()['request_id'] == 'req-123'

    def test_unknown_route_is_json(self, client):
        response = client.get('/api/does-not-exist')
        assert response.status_code == 404
        assert response.get_json()['success'] is False

    def test_security_headers(self, client):
        response = client.get('/health')
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-Frame-Options'] == 'DENY'
