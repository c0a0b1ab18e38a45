"""
Session Store - Crash-safe persistence with backups and recovery

Directory layout under the configured base directory:

    sessions/<id>.json                  canonical session file
    backups/<id>_<timestamp>.json       historical copies, newest N kept
    logs/<id>.log                       capture log written by shell hooks
    active_session.json                 pointer to the one active session

A save copies the current canonical file to a backup, trims old backups,
writes the new content to a temporary file and renames it over the
canonical path. Readers see either the old or the new file, never a
partial one.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Union

from .errors import (
    CorruptionError,
    NotFoundError,
    RecoveryExhaustedError,
    StateError,
    StorageError,
    ValidationError,
)
from .models import BackupRecord, Session, SessionStatus, StorageStats, utc_now
from .validation import validate_session

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
BACKUP_TIME_FORMAT = "%Y%m%dT%H%M%S%fZ"
TEMP_SUFFIX = ".tmp"


def encode_session(session: Session) -> str:
    """Serialize a session to its canonical, deterministic JSON form."""
    document = {
        "format_version": FORMAT_VERSION,
        "session": session.to_dict(),
    }
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def decode_session(text: str, source: Optional[str] = None) -> Session:
    """
    Parse a session document.

    Raises:
        CorruptionError: if the text is not a readable session document.
    """
    where = f" in {source}" if source else ""
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptionError(f"Invalid JSON{where}: {e}", source)

    if not isinstance(document, dict) or not isinstance(document.get("session"), dict):
        raise CorruptionError(f"Not a session document{where}", source)

    version = document.get("format_version")
    if not isinstance(version, int) or version < 1:
        raise CorruptionError(f"Missing or invalid format_version{where}", source)
    if version > FORMAT_VERSION:
        raise CorruptionError(
            f"Unsupported format_version {version}{where} (this version reads up to {FORMAT_VERSION})",
            source,
        )

    try:
        return Session.from_dict(document["session"])
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CorruptionError(f"Malformed session data{where}: {e!r}", source)


def atomic_write_text(path: Path, content: str) -> None:
    """
    Write content so that ``path`` is replaced in one step.

    The temporary file lives in the same directory so the final rename
    never crosses filesystems.
    """
    path = Path(path)
    tmp_path = path.with_name(path.name + TEMP_SUFFIX)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        # Original remains untouched
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise StorageError(f"Failed to write {path}: {e}", path) from e


def _check_session_id(session_id: str) -> str:
    if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


@dataclass
class RecoveryOutcome:
    """A session that passed validation during recovery."""
    session: Session
    source: Path
    candidates_tried: int
    from_backup: bool
    failures: List[str] = field(default_factory=list)


class ActiveMarker:
    """
    Pointer record naming the one active session.

    Creation is exclusive: the marker is written to a temporary file and
    hard-linked into place, which fails if a marker already exists, so two
    processes can never both claim the active session.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[dict]:
        """Return the marker record, or None when no session is active."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Cannot read active session marker: {e}", self.path) from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptionError(f"Active session marker is not valid JSON: {e}", self.path)
        if not isinstance(data, dict) or not data.get("session_id"):
            raise CorruptionError("Active session marker has no session_id", self.path)
        return data

    @property
    def session_id(self) -> Optional[str]:
        data = self.read()
        return data["session_id"] if data else None

    def create(self, session_id: str, created_at: Optional[datetime] = None) -> None:
        record = {
            "session_id": session_id,
            "pid": os.getpid(),
            "created_at": (created_at or utc_now()).isoformat(),
        }
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}{TEMP_SUFFIX}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(record, f)
                f.flush()
                os.fsync(f.fileno())
            os.link(tmp_path, self.path)
        except FileExistsError:
            existing = None
            try:
                existing = self.session_id
            except (StorageError, CorruptionError):
                pass
            raise StateError(
                "AlreadyActive",
                f"A session is already active: {existing or 'unknown'}",
                hint="Stop the current session first with 'shadow stop'",
            )
        except OSError as e:
            raise StorageError(f"Cannot create active session marker: {e}", self.path) from e
        finally:
            try:
                tmp_path.unlink()
            except OSError:
                pass

    def remove(self, session_id: Optional[str] = None) -> bool:
        """Remove the marker; with ``session_id`` only if it points there."""
        if session_id is not None:
            try:
                current = self.session_id
            except CorruptionError:
                current = None
            if current is not None and current != session_id:
                return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot remove active session marker: {e}", self.path) from e
        return True


class SessionStore:
    """
    Filesystem persistence for sessions.

    Args:
        sessions_dir: Canonical session files
        backups_dir: Timestamped backups
        logs_dir: Capture logs (only counted and cleaned up here)
        max_backups: Backups kept per session id
        clock: Source of backup timestamps
    """

    def __init__(
        self,
        sessions_dir: Union[str, Path],
        backups_dir: Union[str, Path],
        logs_dir: Optional[Union[str, Path]] = None,
        max_backups: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.sessions_dir = Path(sessions_dir)
        self.backups_dir = Path(backups_dir)
        self.logs_dir = Path(logs_dir) if logs_dir else None
        self.max_backups = max_backups
        self.clock = clock or utc_now

    @classmethod
    def from_config(cls, config, clock: Optional[Callable[[], datetime]] = None) -> "SessionStore":
        return cls(
            sessions_dir=config.sessions_dir,
            backups_dir=config.backups_dir,
            logs_dir=config.logs_dir,
            max_backups=config.max_backups,
            clock=clock,
        )

    def ensure_dirs(self) -> None:
        dirs = [self.sessions_dir, self.backups_dir]
        if self.logs_dir is not None:
            dirs.append(self.logs_dir)
        for directory in dirs:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create directory {directory}: {e}", directory) from e

    # -- paths -----------------------------------------------------------

    def canonical_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{_check_session_id(session_id)}.json"

    def backup_path(self, session_id: str, timestamp: datetime) -> Path:
        stamp = timestamp.astimezone(timezone.utc).strftime(BACKUP_TIME_FORMAT)
        return self.backups_dir / f"{_check_session_id(session_id)}_{stamp}.json"

    def log_path(self, session_id: str) -> Optional[Path]:
        if self.logs_dir is None:
            return None
        return self.logs_dir / f"{_check_session_id(session_id)}.log"

    def exists(self, session_id: str) -> bool:
        return self.canonical_path(session_id).exists()

    # -- save ------------------------------------------------------------

    def save(self, session: Session) -> Path:
        """
        Persist a session with the backup-then-atomic-replace protocol.

        Raises:
            StorageError: if any filesystem step fails. Nothing is swallowed.
        """
        content = encode_session(session)
        self.ensure_dirs()
        canonical = self.canonical_path(session.id)

        if canonical.exists():
            self._backup(session.id, canonical)
            self.enforce_retention(session.id)

        atomic_write_text(canonical, content)
        logger.debug("Saved session %s to %s", session.id, canonical)
        return canonical

    def _backup(self, session_id: str, canonical: Path) -> Optional[Path]:
        backup = self.backup_path(session_id, self.clock())
        if backup.exists():
            # Same timestamp as an existing backup: never overwrite it
            logger.debug("Backup %s already exists; skipping", backup.name)
            return None
        try:
            data = canonical.read_bytes()
            with open(backup, "xb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except FileExistsError:
            logger.debug("Backup %s appeared concurrently; skipping", backup.name)
            return None
        except OSError as e:
            raise StorageError(f"Failed to back up {canonical}: {e}", backup) from e
        logger.debug("Backed up %s to %s", canonical.name, backup.name)
        return backup

    def enforce_retention(self, session_id: str) -> List[Path]:
        """Delete all but the newest ``max_backups`` backups of a session."""
        removed = []
        for record in self.list_backups(session_id)[self.max_backups:]:
            try:
                record.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Failed to remove old backup {record.path}: {e}", record.path) from e
            removed.append(record.path)
        return removed

    # -- backups ---------------------------------------------------------

    def _iter_backups(self) -> Iterable[BackupRecord]:
        if not self.backups_dir.exists():
            return
        for path in self.backups_dir.glob("*_*.json"):
            session_id, _, stamp = path.stem.rpartition("_")
            try:
                timestamp = datetime.strptime(stamp, BACKUP_TIME_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            yield BackupRecord(session_id=session_id, timestamp=timestamp, path=path)

    def list_backups(self, session_id: str) -> List[BackupRecord]:
        """Backups of one session, newest first."""
        records = [r for r in self._iter_backups() if r.session_id == session_id]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    # -- load ------------------------------------------------------------

    def load_file(self, path: Union[str, Path]) -> Session:
        """Read and decode a session file without validating it."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except UnicodeDecodeError as e:
            raise CorruptionError(f"Session file {path} is not UTF-8: {e}", path)
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}", path) from e
        if not text.strip():
            raise CorruptionError(f"Session file {path} is empty", path)
        return decode_session(text, str(path))

    def load_valid(self, path: Union[str, Path]) -> Session:
        session = self.load_file(path)
        return validate_session(session, str(path))

    def load(self, session_id: str) -> Session:
        """Load and validate the canonical file of a session."""
        try:
            return self.load_valid(self.canonical_path(session_id))
        except FileNotFoundError:
            raise NotFoundError(session_id)

    def list_sessions(self) -> List[str]:
        if not self.sessions_dir.exists():
            return []
        return sorted(p.stem for p in self.sessions_dir.glob("*.json"))

    # -- recovery --------------------------------------------------------

    def recover(self, session_id: str) -> RecoveryOutcome:
        """
        Find the newest valid copy of a session.

        Tries the canonical file, then backups newest-first. Broken files are
        kept on disk; a broken canonical file is renamed aside so the next save
        does not push it into the backup chain.

        Raises:
            RecoveryExhaustedError: if no candidate loads and validates.
        """
        canonical = self.canonical_path(session_id)
        candidates = []
        if canonical.exists():
            candidates.append(canonical)
        candidates.extend(r.path for r in self.list_backups(session_id))

        failures = []
        tried = 0
        for path in candidates:
            tried += 1
            try:
                session = self.load_valid(path)
            except FileNotFoundError:
                failures.append(f"{path.name}: disappeared")
                continue
            except (CorruptionError, ValidationError, StorageError) as e:
                logger.warning("Recovery candidate %s rejected: %s", path.name, e)
                failures.append(f"{path.name}: {e}")
                continue

            if session.id != session_id:
                logger.warning("Recovery candidate %s holds session %s", path.name, session.id)
                failures.append(f"{path.name}: holds session {session.id}")
                continue

            from_backup = path != canonical
            if from_backup:
                logger.warning("Recovered session %s from backup %s", session_id, path.name)
                if canonical.exists():
                    self._quarantine(canonical)
            return RecoveryOutcome(
                session=session,
                source=path,
                candidates_tried=tried,
                from_backup=from_backup,
                failures=failures,
            )

        raise RecoveryExhaustedError(session_id, tried, failures)

    def _quarantine(self, path: Path) -> Optional[Path]:
        stamp = self.clock().astimezone(timezone.utc).strftime(BACKUP_TIME_FORMAT)
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        try:
            os.replace(path, target)
        except OSError as e:
            raise StorageError(f"Cannot move aside broken file {path}: {e}", path) from e
        logger.warning("Kept broken session file as %s", target.name)
        return target

    # -- import / export -------------------------------------------------

    def export(self, session: Session, path: Union[str, Path]) -> Path:
        """Write a session to an arbitrary path; no backups are made."""
        path = Path(path).expanduser()
        atomic_write_text(path, encode_session(session))
        return path

    def read_import(self, path: Union[str, Path]) -> Session:
        """Read and validate a session file from outside the store."""
        path = Path(path).expanduser()
        try:
            session = self.load_file(path)
        except FileNotFoundError:
            raise StorageError(
                f"Import file not found: {path}",
                path,
                hint="Check the path passed to 'shadow import'",
            )
        _check_session_id(session.id)
        return validate_session(session, str(path))

    def check_import(self, session: Session) -> None:
        """
        Refuse imports that would break the stored state.

        Only finished sessions are imported: an Active or Paused copy has no
        active marker and could never be resumed or stopped. A stored copy is
        replaced only when it is unreadable or in the Error state; a Stopped
        session is read-only.

        Raises:
            StateError: if the import is not allowed.
        """
        if session.can_modify:
            raise StateError(
                "NotStopped",
                f"Session {session.id} is still {session.status.value} in the import file",
                hint="Stop the session and export it again with 'shadow export'",
            )
        try:
            stored = self.load_file(self.canonical_path(session.id))
        except FileNotFoundError:
            return
        except (CorruptionError, StorageError) as e:
            logger.warning("Import replaces unreadable session file: %s", e)
            return
        if stored.status != SessionStatus.ERROR:
            raise StateError(
                "AlreadyStored",
                f"Session {session.id} is already stored ({stored.status.value}) and cannot be replaced",
                hint="Import into another data directory with 'shadow --home <dir> import'",
            )

    def import_file(self, path: Union[str, Path]) -> Session:
        """Read, validate and persist a session via the normal save protocol."""
        session = self.read_import(path)
        self.check_import(session)
        self.save(session)
        return session

    # -- maintenance -----------------------------------------------------

    def delete(self, session_id: str) -> int:
        """Remove a session's canonical file, backups and capture log."""
        paths = [self.canonical_path(session_id)]
        paths.extend(r.path for r in self.list_backups(session_id))
        log_path = self.log_path(session_id)
        if log_path is not None:
            paths.append(log_path)

        removed = 0
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Failed to remove {path}: {e}", path) from e
            removed += 1
        return removed

    def cleanup(self, max_age_days: float, protect: Optional[Set[str]] = None) -> int:
        """
        Remove data of sessions stopped more than ``max_age_days`` ago.

        Unreadable canonical files are left in place. Backups whose canonical
        file is gone are removed once their own timestamp is past the cutoff.

        Returns:
            Number of files removed.
        """
        protect = set(protect or ())
        cutoff = self.clock() - timedelta(days=max_age_days)
        removed = 0

        for session_id in self.list_sessions():
            if session_id in protect:
                continue
            try:
                session = self.load_file(self.canonical_path(session_id))
            except (CorruptionError, StorageError, FileNotFoundError, ValueError) as e:
                logger.warning("Cleanup skipped unreadable session %s: %s", session_id, e)
                continue
            if (
                session.status == SessionStatus.STOPPED
                and session.stopped_at is not None
                and session.stopped_at < cutoff
            ):
                removed += self.delete(session_id)

        existing = set(self.list_sessions())
        for record in list(self._iter_backups()):
            if record.session_id in existing or record.session_id in protect:
                continue
            if record.timestamp < cutoff:
                try:
                    record.path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise StorageError(f"Failed to remove {record.path}: {e}", record.path) from e
                removed += 1

        return removed

    def storage_stats(self) -> StorageStats:
        stats = StorageStats()
        for path in self._files(self.sessions_dir, "*.json"):
            stats.session_count += 1
            stats.session_bytes += path.stat().st_size
        for path in self._files(self.backups_dir, "*.json"):
            stats.backup_count += 1
            stats.backup_bytes += path.stat().st_size
        if self.logs_dir is not None:
            for path in self._files(self.logs_dir, "*.log"):
                stats.log_count += 1
                stats.log_bytes += path.stat().st_size
        return stats

    @staticmethod
    def _files(directory: Path, pattern: str) -> List[Path]:
        if not directory.exists():
            return []
        return [p for p in directory.glob(pattern) if p.is_file()]
