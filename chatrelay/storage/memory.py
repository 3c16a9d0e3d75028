from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import (
    MESSAGE_ROLES,
    MESSAGE_TYPES,
    ChatMessage,
    ChatSession,
    Session,
    User,
)


class MemoryStore:
    """In-process backing store used for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._user_ids_by_email: Dict[str, str] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.chat_sessions: Dict[str, ChatSession] = {}
        self.chat_messages: Dict[str, List[ChatMessage]] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if email in self._user_ids_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            normalized_meta = meta.copy() if meta else {}
            normalized_meta.setdefault("email_verified", False)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                meta=normalized_meta,
            )
            self.users[user.id] = user
            self._user_ids_by_email[email] = user.id
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._user_ids_by_email.get(email)
            return self.users.get(user_id) if user_id else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if first_name is not None:
                user.first_name = first_name
            if last_name is not None:
                user.last_name = last_name
            if avatar_url is not None:
                user.avatar_url = avatar_url
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            meta = user.meta or {}
            meta["email_verified"] = True
            user.meta = meta
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def extend_session(self, session_id: str, expires_at: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.expires_at = expires_at
            return sess

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)

    # chat history
    def create_chat_session(self, user_id: Optional[str], title: str) -> ChatSession:
        with self._data_lock:
            if user_id is not None and user_id not in self.users:
                raise ConstraintViolation(
                    "chat session owner missing", {"user_id": user_id}
                )
            chat = ChatSession(id=str(uuid.uuid4()), user_id=user_id, title=title)
            self.chat_sessions[chat.id] = chat
            self.chat_messages[chat.id] = []
            return chat

    def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        with self._data_lock:
            return self.chat_sessions.get(session_id)

    def delete_chat_session(self, session_id: str) -> bool:
        with self._data_lock:
            self.chat_messages.pop(session_id, None)
            return self.chat_sessions.pop(session_id, None) is not None

    def list_chat_sessions(
        self, user_id: Optional[str] = None, limit: int = 20
    ) -> List[ChatSession]:
        with self._data_lock:
            rows = [
                s for s in self.chat_sessions.values() if not user_id or s.user_id == user_id
            ]
            return sorted(rows, key=lambda s: s.created_at, reverse=True)[:limit]

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
        with self._data_lock:
            if session_id not in self.chat_sessions:
                raise ConstraintViolation(
                    "chat session not found", {"session_id": session_id}
                )
            msg = ChatMessage(
                id=str(uuid.uuid4()),
                session_id=session_id,
                user_id=user_id,
                role=role,
                content=content,
                type=message_type,
            )
            self.chat_messages.setdefault(session_id, []).append(msg)
            return msg

    def list_chat_messages(
        self, session_id: Optional[str] = None, limit: int = 100
    ) -> List[ChatMessage]:
        with self._data_lock:
            if session_id is not None:
                return list(self.chat_messages.get(session_id, []))[:limit]
            rows = [m for msgs in self.chat_messages.values() for m in msgs]
            return rows[:limit]

    def close(self) -> None:
        return None
