"""Shared fixtures for the kingate test suite."""
import os

# Set env vars BEFORE any package imports
os.environ.setdefault("COOKIE_SECRET", "test-secret-key-for-testing")
os.environ.setdefault("SETUP_TOKEN", "test-setup-token")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from kingate import auth, events, people
from kingate.db import get_db, init_db, make_engine
from kingate.models import Person, Role


# Ensure auth module uses the test secrets
auth.COOKIE_SECRET = os.environ["COOKIE_SECRET"]
auth.SETUP_TOKEN = os.environ["SETUP_TOKEN"]


# ── Database fixtures ──

@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite, so separate sessions and threads see one store."""
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def clean_events():
    events.clear()
    yield
    events.clear()


@pytest.fixture
def captured_events():
    """Every emitted event, in order."""
    captured = []
    names = (events.SUGGESTION_CREATED, events.SUGGESTION_REVIEWED,
             events.PERSON_CHANGED, events.LAYOUT_RECALCULATE)
    for name in names:
        events.subscribe(name, captured.append)
    yield captured
    for name in names:
        events.unsubscribe(name, captured.append)


@pytest.fixture
def force_parent(db):
    """Write parent pointers directly, bypassing validation, to simulate bad historical data."""
    def _force(person_id, father_id=None, mother_id=None):
        values = {}
        if father_id is not None:
            values["father_id"] = father_id
        if mother_id is not None:
            values["mother_id"] = mother_id
        db.execute(update(Person).where(Person.id == person_id).values(**values))
        db.commit()
        db.expire_all()
    return _force


# ── Person fixtures ──

@pytest.fixture
def admin(db):
    return people.create_person(db, "Ada Admin", "female", role=Role.ADMIN)


@pytest.fixture
def super_admin(db):
    return people.create_person(db, "Sam Super", "male", role=Role.SUPER_ADMIN)


@pytest.fixture
def moderator(db):
    return people.create_person(db, "Mo Moderator", "male", role=Role.MODERATOR)


@pytest.fixture
def stranger(db):
    return people.create_person(db, "Uma Unrelated", "female")


@pytest.fixture
def family(db):
    """A -> B -> C, D is another child of A, E is B's current wife, F is E's mother.

    A(father=null), B(father=A), C(father=B), D(father=A).
    """
    a = people.create_person(db, "Abe", "male")
    b = people.create_person(db, "Ben", "male", father_id=a.id)
    c = people.create_person(db, "Cal", "male", father_id=b.id)
    d = people.create_person(db, "Dan", "male", father_id=a.id)
    f = people.create_person(db, "Fay", "female")
    e = people.create_person(db, "Eve", "female", mother_id=f.id)
    marriage = people.create_marriage(db, a.id, b.id, e.id)
    return {"A": a, "B": b, "C": c, "D": d, "E": e, "F": f, "marriage": marriage}


# ── FastAPI app fixtures ──

@pytest.fixture
def app_with_db(session_factory):
    """FastAPI app with the session dependency pointing at the test store."""
    from kingate.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app_with_db):
    """Unauthenticated TestClient."""
    return TestClient(app_with_db, raise_server_exceptions=False)


def _make_authenticated_client(app, db, person, email, password="password123"):
    """Helper: give a person an account and return a TestClient signed in as them."""
    try:
        account = auth.create_account(db, email, password, person.id)
    except ValueError:
        account = auth.get_account_by_email(db, email)
    token = auth.create_session_token(account.id)
    tc = TestClient(app, raise_server_exceptions=False, cookies={"session": token})
    tc._test_person_id = person.id
    return tc


@pytest.fixture
def make_client(app_with_db, db):
    """Factory fixture: returns a callable creating signed-in TestClients."""
    def _factory(person, email):
        return _make_authenticated_client(app_with_db, db, person, email)
    return _factory


@pytest.fixture
def admin_client(make_client, admin):
    return make_client(admin, "ada@test.com")
