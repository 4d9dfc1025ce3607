"""SQL for the users and links relations.

Handlers talk to these repositories rather than to the pool directly, so the
whole API can run against an in-memory implementation with the same methods.
"""
from typing import Any, Dict, List, Optional

from fastapi import Depends

from src.tagonlink.db import Database, get_db

_LINK_COLUMNS = "id, title, url, description, tags, user_id, created_at"


class UserRepository:
    def __init__(self, db: Database):
        self.db = db

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Return the full row, password hash included."""
        return self.db.fetch_one("SELECT id, email, password, name FROM users WHERE email=%s", [email])

    def email_exists(self, email: str) -> bool:
        return self.db.fetch_one("SELECT id FROM users WHERE email=%s", [email]) is not None

    def get_public(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one("SELECT id, email, name FROM users WHERE id=%s", [user_id])

    def create(self, email: str, password_hash: str, name: str) -> Dict[str, Any]:
        return self.db.execute_returning_one(
            "INSERT INTO users (email, password, name) VALUES (%s, %s, %s) RETURNING id, email, name",
            [email, password_hash, name],
        )

    def update_password(self, user_id: int, password_hash: str) -> int:
        return self.db.execute("UPDATE users SET password=%s WHERE id=%s", [password_hash, user_id])


class LinkRepository:
    """Owner-scoped access to links; every read and write filters on user_id."""

    def __init__(self, db: Database):
        self.db = db

    def list_for_owner(self, user_id: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT {_LINK_COLUMNS} FROM links WHERE user_id=%s ORDER BY created_at DESC, id DESC",
            [user_id],
        )

    def create(self, user_id: int, title: str, url: str, description: str, tags: str) -> Dict[str, Any]:
        return self.db.execute_returning_one(
            f"""
            INSERT INTO links (title, url, description, tags, user_id)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {_LINK_COLUMNS}
            """,
            [title, url, description, tags, user_id],
        )

    def get_owner_id(self, link_id: int) -> Optional[int]:
        """Owner of a link regardless of caller, or None if it does not exist."""
        row = self.db.fetch_one("SELECT user_id FROM links WHERE id=%s", [link_id])
        return row["user_id"] if row else None

    def update(
        self, link_id: int, user_id: int, title: str, url: str, description: str, tags: str
    ) -> Optional[Dict[str, Any]]:
        return self.db.execute_returning(
            f"""
            UPDATE links SET title=%s, url=%s, description=%s, tags=%s
            WHERE id=%s AND user_id=%s
            RETURNING {_LINK_COLUMNS}
            """,
            [title, url, description, tags, link_id, user_id],
        )

    def delete(self, link_id: int, user_id: int) -> int:
        return self.db.execute("DELETE FROM links WHERE id=%s AND user_id=%s", [link_id, user_id])


# PUBLIC_INTERFACE
def get_user_repository(db: Database = Depends(get_db)) -> UserRepository:
    return UserRepository(db)


# PUBLIC_INTERFACE
def get_link_repository(db: Database = Depends(get_db)) -> LinkRepository:
    return LinkRepository(db)
