"""
Session Aggregator - The single owner of the in-memory session

The aggregator applies lifecycle transitions, captured commands and
annotations to the canonical Session and enforces which of them are legal.
It performs no I/O: every accepted mutation marks the session dirty and
calls ``on_change`` so the owner can decide when to persist.
"""

import copy
import dataclasses
import logging
from datetime import datetime
from typing import Callable, List, Optional

from .errors import StateError
from .models import (
    Annotation,
    AnnotationType,
    CommandEntry,
    Session,
    SessionEvent,
    SessionEventType,
    SessionMetadata,
    SessionStatus,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

START_HINT = "Start a session first with 'shadow start \"description\"'"


class SessionAggregator:
    """
    State machine over at most one current session.

    States: none -> Active <-> Paused -> Stopped, and any -> Error when
    recovery fails. A Stopped session stays readable until cleared.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        on_change: Optional[Callable[[Session], None]] = None,
    ):
        self.clock = clock or utc_now
        self.on_change = on_change
        self._session: Optional[Session] = None
        self._dirty = False
        self._error: Optional[str] = None
        self._error_session_id: Optional[str] = None

    # -- queries ---------------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def session_id(self) -> Optional[str]:
        if self._session is not None:
            return self._session.id
        return self._error_session_id

    @property
    def status(self) -> Optional[SessionStatus]:
        if self._error is not None:
            return SessionStatus.ERROR
        if self._session is None:
            return None
        return self._session.status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    @property
    def has_open_session(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED)

    def is_capturing(self, session_id: str) -> bool:
        return (
            self._error is None
            and self._session is not None
            and self._session.id == session_id
            and self._session.status == SessionStatus.ACTIVE
        )

    def commands_for(self, session_id: str) -> List[CommandEntry]:
        if self._session is None or self._session.id != session_id:
            return []
        return [dataclasses.replace(c) for c in self._session.commands]

    def snapshot(self) -> Optional[Session]:
        """Return a deep copy of the current session."""
        if self._session is None:
            return None
        return copy.deepcopy(self._session)

    # -- transitions -----------------------------------------------------

    def start(
        self,
        description: str,
        output_path: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """none -> Active."""
        self._require_no_error()
        if self.has_open_session:
            raise StateError(
                "AlreadyActive",
                f"A session is already active: {self._session.id}",
                hint="Stop the current session first with 'shadow stop'",
            )
        if not description or not description.strip():
            raise ValueError("Session description must not be empty")

        now = self.clock()
        session = Session.new(
            description.strip(), output_path, metadata, now=now, session_id=session_id
        )
        self._session = session
        self._record(SessionEventType.SESSION_STARTED, f"Session created: {session.description}", now)
        self._changed(now)
        return session

    def pause(self) -> Session:
        """Active -> Paused."""
        self._require_no_error()
        session = self._session
        if session is None or session.status != SessionStatus.ACTIVE:
            if session is not None and session.is_paused:
                raise StateError(
                    "NotActive",
                    "Session is already paused",
                    hint="Resume it with 'shadow resume'",
                )
            raise StateError("NotActive", "No active session to pause", hint=START_HINT)
        now = self.clock()
        session.status = SessionStatus.PAUSED
        session.stats.pause_resume_count += 1
        self._record(SessionEventType.SESSION_PAUSED, None, now)
        self._changed(now)
        return session

    def resume(self) -> Session:
        """Paused -> Active."""
        self._require_no_error()
        session = self._session
        if session is None or session.status != SessionStatus.PAUSED:
            if session is not None and session.is_active:
                raise StateError("NotPaused", "Session is not paused; it is already capturing")
            raise StateError("NotPaused", "No paused session to resume", hint=START_HINT)
        now = self.clock()
        session.status = SessionStatus.ACTIVE
        self._record(SessionEventType.SESSION_RESUMED, None, now)
        self._changed(now)
        return session

    def stop(self) -> Session:
        """{Active, Paused} -> Stopped."""
        self._require_no_error()
        session = self._session
        if session is None or not session.can_modify:
            raise StateError("NoActiveSession", "No active session to stop", hint=START_HINT)
        now = self.clock()
        if session.started_at is not None and now < session.started_at:
            # Wall clock stepped backwards
            now = session.started_at
        session.status = SessionStatus.STOPPED
        session.stopped_at = now
        session.stats.duration_seconds = session.duration_seconds()
        self._record(
            SessionEventType.SESSION_STOPPED,
            f"Session completed with {session.stats.command_count} commands",
            now,
        )
        self._changed(now)
        return session

    def annotate(self, text: str, annotation_type: AnnotationType = AnnotationType.NOTE) -> Annotation:
        """Attach an annotation; allowed while Active or Paused."""
        self._require_no_error()
        session = self._session
        if session is None or not session.can_modify:
            raise StateError(
                "NoActiveSession",
                "No active session for annotation",
                hint=START_HINT,
            )
        if not text or not text.strip():
            raise ValueError("Annotation text must not be empty")
        now = self.clock()
        annotation = Annotation(
            id=new_id(),
            annotation_type=annotation_type,
            text=text.strip(),
            timestamp=now,
        )
        session.annotations.append(annotation)
        session.stats.annotation_count = len(session.annotations)
        self._record(SessionEventType.ANNOTATION_ADDED, f"Annotation added: {annotation.id}", now)
        self._changed(now)
        return dataclasses.replace(annotation)

    # -- capture events --------------------------------------------------

    def add_command(self, entry: CommandEntry) -> bool:
        """Append a captured command. Ignored unless the session is Active."""
        if not self.is_capturing(entry.session_id):
            return False
        session = self._session
        session.commands.append(dataclasses.replace(entry))
        self._recount(session)
        now = self.clock()
        self._record(SessionEventType.COMMAND_CAPTURED, entry.command, now)
        self._changed(now)
        return True

    def backfill_exit_code(
        self,
        session_id: str,
        timestamp: datetime,
        command: str,
        exit_code: int,
    ) -> Optional[CommandEntry]:
        """
        Set the exit code on the most recent entry matching
        (timestamp, command) that has none yet.

        Returns a copy of the updated entry, or None if nothing matched.
        """
        if not self.is_capturing(session_id):
            return None
        session = self._session
        for entry in reversed(session.commands):
            if entry.timestamp == timestamp and entry.command == command and entry.exit_code is None:
                entry.exit_code = exit_code
                self._recount(session)
                now = self.clock()
                self._record(
                    SessionEventType.EXIT_CODE_UPDATED,
                    f"{command} -> {exit_code}",
                    now,
                )
                self._changed(now)
                return dataclasses.replace(entry)
        return None

    def advance_log_offset(self, session_id: str, offset: int) -> None:
        session = self._session
        if session is None or session.id != session_id or session.log_offset == offset:
            return
        session.log_offset = offset
        self._dirty = True

    # -- recovery --------------------------------------------------------

    def load(self, session: Session, from_backup: bool = False) -> None:
        """
        Adopt a session read back from storage.

        A session restored from a backup is recorded in its audit trail and
        marked dirty so the good copy becomes canonical again.
        """
        self._require_no_error()
        if self.has_open_session and self._session.id != session.id:
            raise StateError(
                "AlreadyActive",
                f"A session is already active: {self._session.id}",
                hint="Stop the current session first with 'shadow stop'",
            )
        self._session = session
        self._dirty = False
        if from_backup and session.can_modify:
            now = self.clock()
            self._record(SessionEventType.SESSION_RECOVERED, "Restored from backup", now)
            self._changed(now)

    def mark_error(self, reason: str, session_id: Optional[str] = None) -> None:
        """
        Force the Error state.

        The session (if one is loaded) keeps its contents; when none could be
        loaded only the reason and id are held, nothing is fabricated.
        """
        self._error = reason
        self._error_session_id = session_id or (self._session.id if self._session else None)
        logger.error("Session %s entered error state: %s", self._error_session_id, reason)
        if self._session is not None:
            now = self.clock()
            self._session.status = SessionStatus.ERROR
            self._session.error = reason
            self._record(SessionEventType.ERROR_OCCURRED, reason, now)
            self._changed(now)

    def clear_error(self) -> None:
        """Manually leave the Error state; the aggregator holds no session afterwards."""
        if self._error is None:
            raise StateError("NotInError", "No session is in the error state")
        self._error = None
        self._error_session_id = None
        self._session = None
        self._dirty = False

    def clear(self) -> None:
        """Drop a Stopped session from memory."""
        if self.has_open_session:
            raise StateError(
                "AlreadyActive",
                "Cannot clear an open session",
                hint="Stop the current session first with 'shadow stop'",
            )
        self._require_no_error()
        self._session = None
        self._dirty = False

    def abandon(self) -> None:
        """Forget the current session without a transition (start rollback)."""
        self._session = None
        self._dirty = False

    # -- internals -------------------------------------------------------

    def _require_no_error(self) -> None:
        if self._error is not None:
            raise StateError(
                "Error",
                f"Session {self._error_session_id} is in the error state: {self._error}",
                hint="Run 'shadow clear-error' after inspecting the session files",
            )

    def _recount(self, session: Session) -> None:
        stats = session.stats
        stats.command_count = len(session.commands)
        stats.successful_commands = sum(1 for c in session.commands if c.succeeded)
        stats.failed_commands = sum(1 for c in session.commands if c.failed)

    def _record(self, event_type: SessionEventType, details: Optional[str], now: datetime) -> None:
        self._session.events.append(
            SessionEvent(id=new_id(), event_type=event_type, timestamp=now, details=details)
        )

    def _changed(self, now: datetime) -> None:
        self._session.updated_at = now
        self._dirty = True
        if self.on_change is not None:
            self.on_change(self._session)
