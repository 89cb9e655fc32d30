"""
NGO Project API - Test Configuration and Fixtures
"""
import os
from datetime import datetime, timedelta, timezone

# Set testing environment before the app reads its configuration
os.environ['JWT_SECRET'] = 'test-jwt-secret-for-testing-only'
os.environ['DATABASE_NAME'] = 'ngo-test'

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import token_for
from database import DocumentStore, get_store
from main import app


@pytest.fixture
def store() -> DocumentStore:
    """A fresh store over an in-memory MongoDB for each test"""
    store = DocumentStore(mongomock.MongoClient().get_database('ngo-test'))
    store.ensure_indexes()
    return store


@pytest.fixture
def client(store: DocumentStore):
    """Test client with the store dependency overridden"""
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(store: DocumentStore):
    """Insert a user straight into the store"""
    counter = {'n': 0}

    def _make(role: str = 'donor', **fields) -> dict:
        counter['n'] += 1
        doc = {
            'name': f'User {counter["n"]}',
            'email': f'user{counter["n"]}@example.com',
            'role': role,
        }
        doc.update(fields)
        return store.create('user', doc)

    return _make


@pytest.fixture
def admin(make_user) -> dict:
    return make_user('admin', name='Ada Admin', email='ada@example.com')


@pytest.fixture
def volunteer(make_user) -> dict:
    return make_user('volunteer', name='Val Volunteer', email='val@example.com')


@pytest.fixture
def donor(make_user) -> dict:
    return make_user('donor', name='Dan Donor', email='dan@example.com')


def bearer(user: dict, **kwargs) -> dict:
    return {'Authorization': f'Bearer {token_for(user, **kwargs)}'}


@pytest.fixture
def admin_headers(admin) -> dict:
    return bearer(admin)


@pytest.fixture
def volunteer_headers(volunteer) -> dict:
    return bearer(volunteer)


@pytest.fixture
def donor_headers(donor) -> dict:
    return bearer(donor)


def iso(days: float = 0, hours: float = 0) -> str:
    """ISO timestamp relative to now, whole seconds, UTC"""
    moment = datetime.now(timezone.utc) + timedelta(days=days, hours=hours)
    return moment.replace(microsecond=0).isoformat()


def parse(value: str) -> datetime:
    return datetime.fromisoformat(value)
