"""Pytest configuration and shared fixtures."""
import json
import os
from datetime import date

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("NOTIFY_URL", "")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from treasury.database import Base
from treasury.models.audit import AuditEntry  # noqa: F401
from treasury.models.domain import User
from treasury.models.enums import Department, DepositMethod, Role
from treasury.services.notifier import EmailNotifier
from treasury.services.state_machine import StateMachine
from treasury.services.storage import LocalBlobStore


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def file_sessions(tmp_path):
    """Two independent sessions on a file database, like two concurrent requests."""
    engine = create_engine(f"sqlite:///{tmp_path / 'treasury.db'}")
    Base.metadata.create_all(engine)
    SessionA = sessionmaker(bind=engine)
    SessionB = sessionmaker(bind=engine)
    a, b = SessionA(), SessionB()

    yield a, b

    a.close()
    b.close()
    engine.dispose()


@pytest.fixture
def make_user(db_session):
    def _make(name, role):
        user = User(name=name, email=f"{name.lower().replace(' ', '.')}@ucsd.edu", role=role)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make


@pytest.fixture
def member(make_user):
    return make_user("Alice Member", Role.MEMBER)


@pytest.fixture
def officer(make_user):
    """Executive officer: reviews reimbursements but not deposits."""
    return make_user("Olivia Officer", Role.EXECUTIVE_OFFICER)


@pytest.fixture
def admin(make_user):
    return make_user("Adam Admin", Role.ADMINISTRATOR)


@pytest.fixture
def second_admin(make_user):
    return make_user("Beth Admin", Role.ADMINISTRATOR)


@pytest.fixture
def new_reimbursement(db_session):
    """Submit the 42.50 team lunch reimbursement on behalf of a user."""
    def _submit(submitter, session=None):
        return StateMachine(session if session is not None else db_session).submit_reimbursement(
            submitter,
            title="Team lunch",
            date_of_purchase=date(2024, 3, 1),
            payment_method="Personal card",
            department=Department.EVENTS,
            business_purpose="Lunch for the hackathon volunteers",
            line_items=[
                {"description": "Sandwiches", "category": "Food", "amount": "30.00"},
                {"description": "Drinks", "category": "Food", "amount": "12.50"},
            ],
            vendor="Panera",
        )
    return _submit


@pytest.fixture
def new_deposit(db_session):
    """Record a pending cash deposit on behalf of a user."""
    def _submit(depositor, amount="150.00", title="Bake sale proceeds"):
        return StateMachine(db_session).submit_deposit(
            depositor,
            title=title,
            amount=amount,
            deposit_date=date(2024, 3, 4),
            deposit_method=DepositMethod.CASH,
            purpose="Fundraiser income",
        )
    return _submit


@pytest.fixture
def sample_reimbursement(new_reimbursement, member):
    """A 42.50 lunch reimbursement submitted by a member."""
    return new_reimbursement(member)


@pytest.fixture
def sample_deposit(new_deposit, admin):
    """A pending cash deposit made by an administrator."""
    return new_deposit(admin)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "storage", "http://files.test")


@pytest.fixture
def sent_notifications():
    return []


@pytest.fixture
def notifier(sent_notifications):
    """Notifier whose requests are captured instead of sent."""
    def handler(request):
        sent_notifications.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    return EmailNotifier("http://email.test/notify", transport=httpx.MockTransport(handler))


@pytest.fixture
def client(engine, blob_store, notifier):
    """API client bound to the test database, blob store and notifier."""
    from fastapi.testclient import TestClient

    from treasury.api.dependencies import get_blob_store, get_notifier
    from treasury.database import get_db
    from treasury.main import app

    TestingSessionLocal = sessionmaker(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
