"""
Session store for form-filling sessions.

Each entry wraps a FormSession. Sessions are created by POST /sessions and
cleaned up after a period without access.
"""

import threading
import time
import uuid

from dynaform.core.form_state import FormSession

# Default session timeout: 30 minutes
DEFAULT_SESSION_TIMEOUT_SECONDS = 30 * 60


class Session:
    """A single form-filling session and its access timestamps."""

    def __init__(self, form: FormSession):
        self.form: FormSession = form
        self.created_at: float = time.time()
        self.last_accessed_at: float = time.time()

    def touch(self) -> None:
        self.last_accessed_at = time.time()

    def is_expired(self, timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS) -> bool:
        return (time.time() - self.last_accessed_at) > timeout_seconds


class SessionStore:
    """In-memory, thread-safe store of form sessions."""

    def __init__(self, timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS):
        self._sessions: dict[str, Session] = {}
        self._timeout_seconds = timeout_seconds
        self._lock = threading.RLock()

    def add(self, form: FormSession, session_id: str | None = None) -> tuple[str, Session]:
        """Register a form session.

        Args:
            form: The session to store.
            session_id: Optional custom ID. Auto-generated if not provided.

        Returns:
            Tuple of (session_id, Session).
        """
        if session_id is None:
            session_id = str(uuid.uuid4())
        session = Session(form)
        with self._lock:
            self._sessions[session_id] = session
        return session_id, session

    def get_session(self, session_id: str) -> Session | None:
        """Retrieve a session by ID.

        Returns None if the session doesn't exist or has expired; expired
        sessions are removed and their pending lookups abandoned.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(self._timeout_seconds):
                del self._sessions[session_id]
                session.form.close()
                return None
        session.touch()
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session. Returns True if it existed."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.form.close()
        return True

    def cleanup_expired(self) -> int:
        """Remove all expired sessions. Returns the count removed."""
        with self._lock:
            expired = [
                sid for sid, session in self._sessions.items()
                if session.is_expired(self._timeout_seconds)
            ]
            removed = [self._sessions.pop(sid) for sid in expired]
        for session in removed:
            session.form.close()
        return len(removed)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def list_session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions.keys())
