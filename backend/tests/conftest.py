"""
Pytest fixtures for Rackstock backend tests.

Provides test database setup, two owners for tenant isolation, an item
factory and an authenticated test client.
"""

import pytest
from rackstock import create_app
from rackstock.extensions import db
from rackstock.models import User, InventoryItem, ROLE_ADMIN, ROLE_USER
from rackstock.services.auth_service import hash_password


TEST_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'BCRYPT_ROUNDS': 4,
        'SALE_RESERVATION_STRATEGY': 'sequential',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def _make_user(db_session, email: str, role: str = ROLE_USER) -> User:
    user = User(
        email=email,
        name=email.split("@")[0],
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def owner_a(db_session):
    """First tenant (plain user)."""
    return _make_user(db_session, "owner_a@shop-a.test")


@pytest.fixture(scope='function')
def owner_b(db_session):
    """Second tenant (plain user)."""
    return _make_user(db_session, "owner_b@shop-b.test")


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin@rackstock.test", role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def make_item(db_session):
    """Factory: make_item(owner, quantity=10, price_cents=100, name="Linen Shirt", size="M")."""
    def _make(owner, quantity=10, price_cents=100, name="Linen Shirt", size="M", cost_cents=50):
        item = InventoryItem(
            owner_id=owner.id,
            name=name,
            size=size,
            price_cents=price_cents,
            cost_cents=cost_cents,
            quantity=quantity,
        )
        db_session.add(item)
        db_session.commit()
        return item
    return _make


def get_auth_token(client, email: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
