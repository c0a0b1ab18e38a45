"""
Session Manager - Serialized entry point for every session operation

Combines the aggregator, capture pipeline, store and auto-save scheduler.
The session is owned by one aggregator and every public method runs under
one lock, so the background watcher and command handlers never mutate it
at the same time.
"""

import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

from .autosave import AutoSaveScheduler
from .capture import CapturePipeline, PollResult
from .config import ShadowConfig
from .errors import CorruptionError, RecoveryExhaustedError, StateError
from .filter import CommandFilter
from .models import (
    AnnotationType,
    Session,
    SessionMetadata,
    SessionStatus,
    StorageStats,
    new_id,
    utc_now,
)
from .session import SessionAggregator
from .storage import ActiveMarker, SessionStore
from .watcher import CaptureWatcher

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Main interface for recording a terminal session.

    Usage:
        manager = SessionManager(ShadowConfig.load())
        manager.recover()                 # re-attach to an interrupted session
        session_id = manager.start("Deploy staging")
        manager.annotate("Database migrated", AnnotationType.MILESTONE)
        snapshot = manager.stop()
    """

    def __init__(
        self,
        config: Optional[ShadowConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: ShadowConfig (loads the effective config if not provided)
            clock: Wall clock for session timestamps and backup names
            monotonic: Clock for the auto-save interval
        """
        self.config = config or ShadowConfig.load()
        self.clock = clock or utc_now
        self.store = SessionStore.from_config(self.config, clock=self.clock)
        self.marker = ActiveMarker(self.config.marker_path)
        self.filter = CommandFilter.from_config(self.config)
        self.aggregator = SessionAggregator(clock=self.clock, on_change=self._on_change)
        self.scheduler = AutoSaveScheduler(
            self._save_current,
            interval_seconds=self.config.auto_save_interval_seconds,
            clock=monotonic,
        )
        self.pipeline: Optional[CapturePipeline] = None
        self._watcher: Optional[CaptureWatcher] = None
        self._lock = threading.RLock()

    # -- lifecycle -------------------------------------------------------

    def start(
        self,
        description: str,
        output: Optional[Union[str, Path]] = None,
        metadata: Optional[SessionMetadata] = None,
    ) -> str:
        """
        Start a new session and claim the active marker.

        Returns:
            The new session id

        Raises:
            StateError: if a session is already active here or in another process
        """
        with self._lock:
            self._reject_if_error()
            if self.aggregator.has_open_session:
                raise StateError(
                    "AlreadyActive",
                    f"A session is already active: {self.aggregator.session_id}",
                    hint="Stop the current session first with 'shadow stop'",
                )
            if not description or not description.strip():
                raise ValueError("Session description must not be empty")

            session_id = new_id()
            self.marker.create(session_id, created_at=self.clock())
            try:
                self.aggregator.start(
                    description,
                    output_path=str(output) if output else None,
                    metadata=metadata or SessionMetadata.detect(),
                    session_id=session_id,
                )
                self._attach_pipeline(self.aggregator.session)
                self._flush()
            except Exception:
                self.aggregator.abandon()
                self.pipeline = None
                self.marker.remove(session_id)
                raise

            logger.info("Started session %s: %s", session_id, description)
            return session_id

    def pause(self) -> Session:
        """Capture what is already logged, then stop capturing."""
        with self._lock:
            self._poll_locked()
            self.aggregator.pause()
            self._flush()
            return self.aggregator.snapshot()

    def resume(self) -> Session:
        """
        Start capturing again.

        Lines logged while paused are consumed first and dropped for good.
        """
        with self._lock:
            self._poll_locked()
            self.aggregator.resume()
            self._flush()
            return self.aggregator.snapshot()

    def stop(self) -> Session:
        """Stop the session, persist it and release the active marker."""
        self.stop_watching()
        with self._lock:
            self._poll_locked()
            session = self.aggregator.stop()
            self._flush()
            self.marker.remove(session.id)
            self.pipeline = None
            logger.info(
                "Stopped session %s with %d commands", session.id, session.stats.command_count
            )
            return self.aggregator.snapshot()

    def annotate(self, text: str, annotation_type: AnnotationType = AnnotationType.NOTE) -> str:
        """Attach an annotation and return its id."""
        with self._lock:
            annotation = self.aggregator.annotate(text, annotation_type)
            return annotation.id

    def status(self) -> Optional[Session]:
        """
        Read-only snapshot of the current session (None if there is none).

        Also acts as a periodic check: new log lines are ingested and a
        due auto-save runs.
        """
        with self._lock:
            if self.aggregator.status != SessionStatus.ERROR:
                self._poll_locked()
                self.scheduler.maybe_save(self.aggregator.dirty)
            return self.aggregator.snapshot()

    @property
    def status_name(self) -> Optional[str]:
        status = self.aggregator.status
        return status.value if status else None

    @property
    def error(self) -> Optional[str]:
        return self.aggregator.error

    @property
    def is_open(self) -> bool:
        return self.aggregator.has_open_session

    # -- capture ---------------------------------------------------------

    def poll(self) -> PollResult:
        """Ingest new capture lines now."""
        with self._lock:
            result = self._poll_locked()
            self.scheduler.maybe_save(self.aggregator.dirty)
            return result

    def start_watching(self) -> CaptureWatcher:
        """Poll the capture log in the background until the session stops."""
        with self._lock:
            if self.pipeline is None:
                raise StateError(
                    "NoActiveSession",
                    "No session to watch",
                    hint="Start a session first with 'shadow start \"description\"'",
                )
            if self._watcher is None or not self._watcher.is_running:
                self._watcher = CaptureWatcher(
                    self._tick, interval_seconds=self.config.poll_interval_seconds
                )
                self._watcher.start()
            return self._watcher

    def stop_watching(self) -> None:
        # Outside the lock: a tick waiting for it must be able to finish
        watcher = self._watcher
        if watcher is not None:
            watcher.stop()
            self._watcher = None

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.is_running

    def _tick(self) -> None:
        with self._lock:
            if self.pipeline is None:
                return
            result = self._poll_locked()
            for entry in result.entries:
                logger.info("Captured: %s", entry.command)
            self.scheduler.maybe_save(self.aggregator.dirty)

    def _poll_locked(self) -> PollResult:
        if self.pipeline is None:
            return PollResult()
        return self.pipeline.poll()

    def _attach_pipeline(self, session: Session) -> None:
        log_path = self.config.log_path(session.id)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self.pipeline = CapturePipeline(
            self.aggregator,
            session.id,
            log_path,
            offset=session.log_offset,
            command_filter=self.filter,
            shell=session.metadata.shell,
        )

    # -- persistence -----------------------------------------------------

    def force_save(self) -> bool:
        """Save the current session now, bypassing the interval."""
        with self._lock:
            if self.aggregator.session is None:
                return False
            self.scheduler.force_save()
            return True

    def recover(self) -> Optional[str]:
        """
        Re-attach to the session named by the active marker.

        Returns:
            The recovered session id, or None when there is nothing to recover

        Raises:
            RecoveryExhaustedError: no valid copy exists; the manager is left
                in the Error state
        """
        with self._lock:
            if self.aggregator.has_open_session:
                return self.aggregator.session_id
            self._reject_if_error()

            try:
                record = self.marker.read()
            except CorruptionError as e:
                self.aggregator.mark_error(str(e))
                raise
            if record is None:
                return None

            session_id = record["session_id"]
            try:
                outcome = self.store.recover(session_id)
            except RecoveryExhaustedError as e:
                self.aggregator.mark_error(str(e), session_id=session_id)
                raise

            session = outcome.session
            if session.is_stopped:
                # Stopped and saved, but the marker was never removed
                logger.info("Clearing stale marker for stopped session %s", session_id)
                self.marker.remove(session_id)
                return None

            if session.status == SessionStatus.ERROR:
                self.aggregator.load(session)
                self.aggregator.mark_error(session.error or "Session was left in the error state")
                self._reject_if_error()

            self.aggregator.load(session, from_backup=outcome.from_backup)
            self._attach_pipeline(session)
            self._flush()
            if outcome.from_backup:
                logger.warning(
                    "Session %s restored from backup %s after %d candidate(s)",
                    session_id, outcome.source.name, outcome.candidates_tried,
                )
            return session_id

    def clear_error(self) -> Optional[str]:
        """Leave the Error state and release the marker of the failed session."""
        with self._lock:
            session_id = self.aggregator.session_id
            self.aggregator.clear_error()
            self.pipeline = None
            if session_id:
                self.marker.remove(session_id)
            else:
                self.marker.remove()
            return session_id

    def export(self, session_id: str, path: Union[str, Path]) -> Path:
        """Write a session to ``path`` without touching its backups."""
        with self._lock:
            if self.aggregator.session is not None and self.aggregator.session_id == session_id:
                session = self.aggregator.snapshot()
            else:
                session = self.store.load(session_id)
            return self.store.export(session, path)

    def import_session(self, path: Union[str, Path]) -> str:
        """Validate a session file and store it through the normal save path."""
        with self._lock:
            session = self.store.read_import(path)
            if self.aggregator.session_id == session.id:
                raise StateError(
                    "InUse",
                    f"Session {session.id} is currently loaded and cannot be replaced",
                    hint="Stop the current session before importing over it",
                )
            self.store.check_import(session)
            self.store.save(session)
            return session.id

    def load_session(self, session_id: str) -> Session:
        with self._lock:
            if self.aggregator.session is not None and self.aggregator.session_id == session_id:
                return self.aggregator.snapshot()
            return self.store.load(session_id)

    def list_sessions(self) -> List[str]:
        return self.store.list_sessions()

    def cleanup(self, max_age_days: Optional[float] = None) -> int:
        """Remove stored data of sessions stopped longer ago than ``max_age_days``."""
        if max_age_days is None:
            max_age_days = self.config.cleanup_max_age_days
        with self._lock:
            protect = set()
            if self.aggregator.session_id:
                protect.add(self.aggregator.session_id)
            try:
                marked = self.marker.session_id
            except CorruptionError:
                marked = None
            if marked:
                protect.add(marked)
            return self.store.cleanup(max_age_days, protect=protect)

    def storage_stats(self) -> StorageStats:
        return self.store.storage_stats()

    def close(self) -> None:
        """Stop background polling and flush unsaved changes."""
        self.stop_watching()
        with self._lock:
            if self.aggregator.session is not None and self.aggregator.dirty:
                self.scheduler.force_save()

    def run_until_stopped(self, poll_timeout: float = 0.5) -> None:
        """Block while the watcher captures; returns once the session is no longer open."""
        self.start_watching()
        while self.is_open:
            time.sleep(poll_timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- internals -------------------------------------------------------

    def _on_change(self, session: Session) -> None:
        self.scheduler.maybe_save(self.aggregator.dirty)

    def _save_current(self) -> None:
        session = self.aggregator.session
        if session is None:
            return
        self.store.save(session)
        self.aggregator.mark_clean()

    def _reject_if_error(self) -> None:
        if self.aggregator.status == SessionStatus.ERROR:
            raise StateError(
                "Error",
                f"Session {self.aggregator.session_id} is in the error state: {self.aggregator.error}",
                hint="Run 'shadow clear-error' after inspecting the session files",
            )

    def _flush(self) -> None:
        if self.aggregator.dirty:
            self.scheduler.force_save()
