"""Pytest configuration and fixtures."""

import itertools
import os
from datetime import datetime, timedelta, timezone

# Must be set before the app reads its settings.
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ENVIRONMENT"] = "test"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.tagonlink.errors import DatabaseError, ErrorKind  # noqa: E402
from src.tagonlink.main import app  # noqa: E402
from src.tagonlink.repository import get_link_repository, get_user_repository  # noqa: E402

TEST_PASSWORD = "testpass123"


class AuthHeaders(dict):
    """Dict subclass that also stores the user's id and email."""

    def __init__(self, *args, user_id: int | None = None, email: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_id = user_id
        self.email = email


class InMemoryStore:
    """Rows for both relations, plus an optional error to raise on the next call."""

    def __init__(self):
        self.users = {}
        self.links = {}
        self._user_ids = itertools.count(1)
        self._link_ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.fail_with = None

    def check(self):
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc

    def next_user_id(self):
        return next(self._user_ids)

    def next_link_id(self):
        return next(self._link_ids)

    def tick(self):
        # Strictly increasing timestamps keep ordering deterministic.
        self._clock += timedelta(seconds=1)
        return self._clock


class InMemoryUserRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    def find_by_email(self, email):
        self.store.check()
        for user in self.store.users.values():
            if user["email"] == email:
                return dict(user)
        return None

    def email_exists(self, email):
        return self.find_by_email(email) is not None

    def get_public(self, user_id):
        self.store.check()
        user = self.store.users.get(user_id)
        if not user:
            return None
        return {"id": user["id"], "email": user["email"], "name": user["name"]}

    def create(self, email, password_hash, name):
        self.store.check()
        if any(u["email"] == email for u in self.store.users.values()):
            raise DatabaseError(ErrorKind.conflict, "duplicate key value violates unique constraint", pgcode="23505")
        user = {"id": self.store.next_user_id(), "email": email, "password": password_hash, "name": name}
        self.store.users[user["id"]] = user
        return {"id": user["id"], "email": email, "name": name}

    def update_password(self, user_id, password_hash):
        self.store.check()
        if user_id not in self.store.users:
            return 0
        self.store.users[user_id]["password"] = password_hash
        return 1


class InMemoryLinkRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    def list_for_owner(self, user_id):
        self.store.check()
        rows = [dict(link) for link in self.store.links.values() if link["user_id"] == user_id]
        return sorted(rows, key=lambda r: (r["created_at"], r["id"]), reverse=True)

    def create(self, user_id, title, url, description, tags):
        self.store.check()
        if user_id not in self.store.users:
            raise DatabaseError(ErrorKind.foreign_key, "violates foreign key constraint", pgcode="23503")
        link = {
            "id": self.store.next_link_id(),
            "title": title,
            "url": url,
            "description": description,
            "tags": tags,
            "user_id": user_id,
            "created_at": self.store.tick(),
        }
        self.store.links[link["id"]] = link
        return dict(link)

    def get_owner_id(self, link_id):
        self.store.check()
        link = self.store.links.get(link_id)
        return link["user_id"] if link else None

    def update(self, link_id, user_id, title, url, description, tags):
        self.store.check()
        link = self.store.links.get(link_id)
        if not link or link["user_id"] != user_id:
            return None
        link.update(title=title, url=url, description=description, tags=tags)
        return dict(link)

    def delete(self, link_id, user_id):
        self.store.check()
        link = self.store.links.get(link_id)
        if not link or link["user_id"] != user_id:
            return 0
        del self.store.links[link_id]
        return 1


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def client(store):
    """Test client whose repositories are backed by the in-memory store."""
    app.dependency_overrides[get_user_repository] = lambda: InMemoryUserRepository(store)
    app.dependency_overrides[get_link_repository] = lambda: InMemoryLinkRepository(store)
    # Not used as a context manager: the lifespan would try to open a real pool.
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register(client, email, name):
    response = client.post(
        "/api/auth/register",
        json={"email": email, "password": TEST_PASSWORD, "name": name},
    )
    assert response.status_code == 201
    data = response.json()
    return AuthHeaders({"Authorization": f"Bearer {data['token']}"}, user_id=data["user"]["id"], email=email)


@pytest.fixture
def auth_headers(client):
    """Register a user and return bearer headers carrying its id and email."""
    return _register(client, "test@example.com", "Test User")


@pytest.fixture
def other_auth_headers(client):
    """A second, unrelated user."""
    return _register(client, "other@example.com", "Other User")
