"""
Errors - Failure taxonomy for session capture and persistence
"""

from typing import List, Optional


class ShadowError(Exception):
    """
    Base class for every error raised by Session Shadow.

    Each error carries a short diagnostic and, where one exists, a concrete
    next action for the user (``hint``).
    """

    default_hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint if hint is not None else self.default_hint

    def __str__(self) -> str:
        return self.message


class StateError(ShadowError):
    """An operation is not legal in the current session state."""

    def __init__(self, reason: str, message: str, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.reason = reason


class NotFoundError(ShadowError):
    """A referenced session id does not exist."""

    default_hint = "Run 'shadow list' to see stored sessions"

    def __init__(self, session_id: str, message: Optional[str] = None):
        super().__init__(message or f"Session not found: {session_id}")
        self.session_id = session_id


class ValidationError(ShadowError):
    """A session parsed correctly but its contents are inconsistent."""

    def __init__(self, problems: List[str], source: Optional[str] = None):
        where = f" ({source})" if source else ""
        super().__init__(f"Session failed validation{where}: " + "; ".join(problems))
        self.problems = list(problems)
        self.source = source


class StorageError(ShadowError):
    """A filesystem operation failed (permissions, disk full, missing path)."""

    default_hint = "Check permissions and free space in the shadow data directory"

    def __init__(self, message: str, path=None, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.path = path


class CorruptionError(ShadowError):
    """A session file could not be parsed at all."""

    default_hint = "Run 'shadow recover' to fall back to a backup"

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


class RecoveryExhaustedError(ShadowError):
    """Neither the canonical file nor any backup produced a valid session."""

    default_hint = (
        "Inspect the files under the sessions/ and backups/ directories, "
        "then run 'shadow clear-error' to discard the interrupted session"
    )

    def __init__(self, session_id: str, candidates_tried: int, failures: Optional[List[str]] = None):
        super().__init__(
            f"Could not recover session {session_id}: "
            f"{candidates_tried} candidate(s) tried, none valid"
        )
        self.session_id = session_id
        self.candidates_tried = candidates_tried
        self.failures = list(failures or [])
