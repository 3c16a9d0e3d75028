from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.storage.models import ChatMessage, ChatSession

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 50
DEFAULT_TITLE = "New conversation"
PROBE_TITLE = "Test Session"


def derive_title(message: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """First ``max_length`` characters of the message, ``...`` appended if cut."""
    text = (message or "").strip()
    if not text:
        return DEFAULT_TITLE
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


class ChatHistoryStore(Protocol):
    def create_chat_session(self, user_id: Optional[str], title: str) -> ChatSession: ...

    def delete_chat_session(self, session_id: str) -> bool: ...

    def list_chat_sessions(
        self, user_id: Optional[str] = None, limit: int = 20
    ) -> List[ChatSession]: ...

    def append_chat_message(
        self, session_id: str, role: str, content: str, message_type: str, user_id: str
    ) -> ChatMessage: ...

    def list_chat_messages(
        self, session_id: Optional[str] = None, limit: int = 100
    ) -> List[ChatMessage]: ...


class ConversationService:
    """Insert-side glue between request handlers and the chat history tables."""

    def __init__(self, store: ChatHistoryStore) -> None:
        self.store = store

    def create_session(self, title: str, user_id: str) -> str:
        """Create a chat session; failures propagate to the caller."""
        chat = self.store.create_chat_session(user_id, title)
        logger.info("chat_session_created", session_id=chat.id, user_id=user_id)
        return chat.id

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        message_type: str,
        user_id: str,
    ) -> Optional[ChatMessage]:
        """Persist one message; failures are logged and swallowed."""
        try:
            return self.store.append_chat_message(session_id, role, content, message_type, user_id)
        except Exception as exc:
            logger.error(
                "chat_message_persist_failed",
                session_id=session_id,
                role=role,
                message_type=message_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def probe(self) -> Dict[str, Any]:
        """Read both tables, then insert and delete a throwaway session.

        Raises whatever the store raises; the caller reports it.
        """
        self.store.list_chat_sessions(limit=1)
        self.store.list_chat_messages(limit=1)
        chat = self.store.create_chat_session(None, PROBE_TITLE)
        deleted = self.store.delete_chat_session(chat.id)
        return {
            "chat_sessions_accessible": True,
            "chat_messages_accessible": True,
            "crud_operations": bool(deleted),
        }

    def probe_report(self) -> tuple[bool, Dict[str, Any]]:
        try:
            return True, self.probe()
        except Exception as exc:
            logger.error("datastore_probe_failed", error_type=type(exc).__name__, error=str(exc))
            return False, {"details": sanitize_error_message(str(exc))}

