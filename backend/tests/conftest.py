"""
Pytest fixtures for backoffice backend tests.

Provides the application on an ephemeral SQLite file, a clean database per
test, and seeded roles, capabilities and users.

The database is a file rather than :memory: because audit writes and the
concurrency tests run on other threads, each with its own connection.
"""

from types import SimpleNamespace

import pytest

from backoffice import create_app
from backoffice.extensions import db, dispatcher
from backoffice.models import User
from backoffice.services import permission_service


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    db_path = tmp_path_factory.mktemp("db") / "backoffice-test.sqlite3"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{db_path}',
        'SQLALCHEMY_ENGINE_OPTIONS': {
            'connect_args': {'timeout': 30, 'check_same_thread': False},
        },
        # One worker keeps audit rows in call order
        'AUDIT_MAX_WORKERS': 1,
        'SEQUENCE_RETRY_ATTEMPTS': 10,
    })

    with app.app_context():
        db.create_all()
        yield app
        dispatcher.drain(10)
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh database for each test."""
    dispatcher.drain(10)
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Let queued audit writes land before the next test wipes the tables
    dispatcher.drain(10)
    db.session.rollback()


@pytest.fixture(scope='function')
def seed(db_session):
    """Roles, capabilities and one user per default role."""
    permission_service.seed_security()

    users = {}
    for role_name, email, first, last in (
        ("admin", "admin@test.local", "Ada", "Admin"),
        ("manager", "manager@test.local", "Max", "Manager"),
        ("staff", "staff@test.local", "Sam", "Staff"),
    ):
        user = User(email=email, first_name=first, last_name=last)
        db_session.add(user)
        db_session.commit()
        permission_service.assign_role(user.id, role_name)
        users[role_name] = user

    return SimpleNamespace(**users)

