import os
import tempfile

# Settings are read at import time by the app modules.
_TMP = tempfile.mkdtemp(prefix="campus-chat-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
from sqlalchemy.orm import sessionmaker

from app.controllers import users_controller
from app.db import models, schemas
from app.db.database import build_engine
from app.realtime.change_feed import ChangeFeed
from app.store.row_store import SqlRowStore


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    models.Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(session_factory, feed):
    return SqlRowStore(session_factory, feed)


def _make_user(factory, username: str, role: str) -> schemas.Identity:
    db = factory()
    try:
        user = users_controller.create_user(db, schemas.UserCreate(username=username, password="pass123", role=role))
        return schemas.Identity(id=user.id, role=user.role)
    finally:
        db.close()


@pytest.fixture
def people(session_factory):
    """A student, a recruiter and a second student."""
    return {
        "student": _make_user(session_factory, "alice", "student"),
        "recruiter": _make_user(session_factory, "acme", "recruiter"),
        "other_student": _make_user(session_factory, "bob", "student"),
    }


@pytest.fixture
def student(people):
    return people["student"]


@pytest.fixture
def recruiter(people):
    return people["recruiter"]
