"""pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import StaticPool
from werkzeug.security import generate_password_hash

# Ensure the project root is available on sys.path so tests can import the barbershop package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from barbershop import create_app
from barbershop.auth import build_token
from barbershop.extensions import db
from barbershop.models import AuthAccount, Barber, Product, Service, User
from barbershop.queue_service import QueueService


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SQLALCHEMY_ENGINE_OPTIONS": {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        },
        "QUEUE_HEARTBEAT_SECONDS": 0.05,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def broadcaster(app):
    return app.extensions["queue_broadcaster"]


@pytest.fixture
def queue_service(app, broadcaster):
    return QueueService(db.session, broadcaster, app.extensions["queue_locks"])


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make_user(role: str = "client", name: str | None = None, password: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            name=name or f"{role.title()} {counter['n']}",
            email=f"{role}{counter['n']}@example.com",
            role=role,
        )
        db.session.add(user)
        db.session.flush()
        if password:
            db.session.add(AuthAccount(user_id=user.user_id, password_hash=generate_password_hash(password)))
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def auth_header(app):
    def _auth_header(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {build_token(user)}"}

    return _auth_header


@pytest.fixture
def shop(app, make_user):
    """One open barber, a two-service menu and a product in stock."""
    barber = Barber(name="Bruno", status="active", queue_status="open")
    cut = Service(name="Cut", price_cents=2500, duration_minutes=30)
    beard = Service(name="Beard", price_cents=1500, duration_minutes=15)
    pomade = Product(name="Pomade", price_cents=1800, stock_quantity=5)
    db.session.add_all([barber, cut, beard, pomade])
    db.session.commit()

    return SimpleNamespace(
        barber=barber,
        cut=cut,
        beard=beard,
        pomade=pomade,
        admin=make_user("admin", name="Ada Admin"),
    )
