from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StoreUnavailable
from chatrelay.storage.models import (
    MESSAGE_ROLES,
    MESSAGE_TYPES,
    ChatMessage,
    ChatSession,
    Session,
    User,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        avatar_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id UUID PRIMARY KEY,
        user_id UUID REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id UUID PRIMARY KEY,
        session_id UUID NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'text' CHECK (type IN ('text', 'image')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]


def _naive_utc(value: Any) -> datetime:
    """Return a naive UTC datetime for comparisons with ``datetime.utcnow()``."""
    if not isinstance(value, datetime):
        return datetime.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class PostgresStore:
    """Postgres-backed store for accounts, sessions and chat history."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__, error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except json.JSONDecodeError:
                meta = None
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar_url=row.get("avatar_url"),
            created_at=_naive_utc(row.get("created_at")),
            is_active=row.get("is_active", True),
            meta=meta,
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        normalized_meta.setdefault("email_verified", False)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, meta)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user_id, email, first_name, last_name, json.dumps(normalized_meta)),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            meta=normalized_meta,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET first_name = COALESCE(%s, first_name),
                    last_name = COALESCE(%s, last_name),
                    avatar_url = COALESCE(%s, avatar_url)
                WHERE id = %s
                RETURNING *
                """,
                (first_name, last_name, avatar_url, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET meta = COALESCE(meta, '{}'::jsonb) || '{"email_verified": true}'::jsonb
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=_naive_utc(row.get("created_at")),
            expires_at=_naive_utc(row.get("expires_at")),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            meta=row.get("meta"),
        )

    def extend_session(self, session_id: str, expires_at: datetime) -> Optional[Session]:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s",
                (expires_at, session_id),
            )
        return self.get_session(session_id)

    def revoke_session(self, session_id: str) -> None:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))

    # chat history
    def create_chat_session(self, user_id: Optional[str], title: str) -> ChatSession:
        chat = ChatSession(id=str(uuid.uuid4()), user_id=user_id, title=title)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO chat_sessions (id, user_id, title, created_at) VALUES (%s, %s, %s, %s)",
                    (chat.id, user_id, title, chat.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat session owner missing", {"user_id": user_id})
        return chat

    def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return ChatSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            title=row["title"],
            created_at=_naive_utc(row.get("created_at")),
        )

    def delete_chat_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM chat_sessions WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def list_chat_sessions(
        self, user_id: Optional[str] = None, limit: int = 20
    ) -> List[ChatSession]:
        query = "SELECT * FROM chat_sessions"
        params: list[Any] = []
        if user_id:
            query += " WHERE user_id = %s"
            params.append(user_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ChatSession(
                id=str(row["id"]),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                title=row["title"],
                created_at=_naive_utc(row.get("created_at")),
            )
            for row in rows
        ]

    def append_chat_message(
        self,
        session_id: str,
        role: str,
        content: str,
        message_type: str,
        user_id: str,
    ) -> ChatMessage:
        if role not in MESSAGE_ROLES:
            raise ConstraintViolation("invalid message role", {"field": "role"})
        if message_type not in MESSAGE_TYPES:
            raise ConstraintViolation("invalid message type", {"field": "type"})
        msg = ChatMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=user_id,
            role=role,
            content=content,
            type=message_type,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chat_messages (id, session_id, user_id, role, content, type, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (msg.id, session_id, user_id, role, content, message_type, msg.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "chat session not found", {"session_id": session_id}
            )
        return msg

    def list_chat_messages(
        self, session_id: Optional[str] = None, limit: int = 100
    ) -> List[ChatMessage]:
        query = "SELECT * FROM chat_messages"
        params: list[Any] = []
        if session_id:
            query += " WHERE session_id = %s"
            params.append(session_id)
        query += " ORDER BY created_at ASC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ChatMessage(
                id=str(row["id"]),
                session_id=str(row["session_id"]),
                user_id=str(row["user_id"]),
                role=row["role"],
                content=row["content"],
                type=row.get("type", "text"),
                created_at=_naive_utc(row.get("created_at")),
            )
            for row in rows
        ]
