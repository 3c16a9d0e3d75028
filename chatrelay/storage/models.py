from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

MESSAGE_ROLES = frozenset({"user", "assistant"})
MESSAGE_TYPES = frozenset({"text", "image"})


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True
    meta: Dict | None = None

    @property
    def email_verified(self) -> bool:
        return bool((self.meta or {}).get("email_verified"))

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar_url": self.avatar_url,
            "email_verified": self.email_verified,
        }


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


@dataclass
class ChatSession:
    """One conversation; created once per inference round.

    ``user_id`` is only empty for rows written by the connectivity probe.
    """

    id: str
    user_id: Optional[str]
    title: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ChatMessage:
    id: str
    session_id: str
    user_id: str
    role: str
    content: str
    type: str = "text"
    created_at: datetime = field(default_factory=datetime.utcnow)
