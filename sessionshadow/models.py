"""
Models - Session, command and annotation records
"""

import getpass
import os
import platform
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(Enum):
    """Lifecycle state of a session."""
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class AnnotationType(Enum):
    """Kind of manual annotation."""
    NOTE = "note"                 # General comment
    EXPLANATION = "explanation"   # What is happening and why
    WARNING = "warning"           # Important caveat
    MILESTONE = "milestone"       # Section divider / progress point

    @classmethod
    def parse(cls, value: str) -> "AnnotationType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown annotation type '{value}' (expected one of: {valid})")


class SessionEventType(Enum):
    """Audit trail entries recorded on the session."""
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_STOPPED = "session_stopped"
    ANNOTATION_ADDED = "annotation_added"
    COMMAND_CAPTURED = "command_captured"
    EXIT_CODE_UPDATED = "exit_code_updated"
    ERROR_OCCURRED = "error_occurred"
    SESSION_RECOVERED = "session_recovered"


@dataclass
class CommandEntry:
    """One captured terminal invocation."""
    timestamp: datetime
    working_directory: str
    command: str
    exit_code: Optional[int] = None
    shell: str = "unknown"
    session_id: str = ""

    @property
    def identity(self) -> Tuple[datetime, str, Optional[int], str]:
        return (self.timestamp, self.working_directory, self.exit_code, self.command)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def failed(self) -> bool:
        return self.exit_code is not None and self.exit_code != 0

    def to_dict(self) -> dict:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "working_directory": self.working_directory,
            "command": self.command,
            "exit_code": self.exit_code,
            "shell": self.shell,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommandEntry":
        exit_code = data.get("exit_code")
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            working_directory=str(data.get("working_directory", "")),
            command=str(data["command"]),
            exit_code=int(exit_code) if exit_code is not None else None,
            shell=str(data.get("shell", "unknown")),
            session_id=str(data.get("session_id", "")),
        )


@dataclass
class Annotation:
    """A manually added note attached to a session."""
    id: str
    annotation_type: AnnotationType
    text: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "annotation_type": self.annotation_type.value,
            "text": self.text,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Annotation":
        return cls(
            id=str(data["id"]),
            annotation_type=AnnotationType(data["annotation_type"]),
            text=str(data["text"]),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class SessionEvent:
    """Audit trail record."""
    id: str
    event_type: SessionEventType
    timestamp: datetime
    details: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "timestamp": format_timestamp(self.timestamp),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionEvent":
        return cls(
            id=str(data["id"]),
            event_type=SessionEventType(data["event_type"]),
            timestamp=parse_timestamp(data["timestamp"]),
            details=data.get("details"),
        )


@dataclass
class SessionStats:
    """Counters kept alongside the session contents."""
    command_count: int = 0
    annotation_count: int = 0
    successful_commands: int = 0
    failed_commands: int = 0
    pause_resume_count: int = 0
    duration_seconds: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "command_count": self.command_count,
            "annotation_count": self.annotation_count,
            "successful_commands": self.successful_commands,
            "failed_commands": self.failed_commands,
            "pause_resume_count": self.pause_resume_count,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionStats":
        duration = data.get("duration_seconds")
        return cls(
            command_count=int(data.get("command_count", 0)),
            annotation_count=int(data.get("annotation_count", 0)),
            successful_commands=int(data.get("successful_commands", 0)),
            failed_commands=int(data.get("failed_commands", 0)),
            pause_resume_count=int(data.get("pause_resume_count", 0)),
            duration_seconds=int(duration) if duration is not None else None,
        )


@dataclass
class SessionMetadata:
    """Environment the session was started in."""
    working_directory: str = ""
    shell: str = "unknown"
    platform: str = "unknown"
    hostname: str = "unknown"
    user: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def detect(cls) -> "SessionMetadata":
        """Collect metadata from the current process environment."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = None
        shell = os.environ.get("SHELL", "")
        return cls(
            working_directory=os.getcwd(),
            shell=Path(shell).name if shell else "unknown",
            platform=platform.system().lower() or "unknown",
            hostname=socket.gethostname() or "unknown",
            user=user,
        )

    def to_dict(self) -> dict:
        return {
            "working_directory": self.working_directory,
            "shell": self.shell,
            "platform": self.platform,
            "hostname": self.hostname,
            "user": self.user,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMetadata":
        return cls(
            working_directory=str(data.get("working_directory", "")),
            shell=str(data.get("shell", "unknown")),
            platform=str(data.get("platform", "unknown")),
            hostname=str(data.get("hostname", "unknown")),
            user=data.get("user"),
            tags=[str(t) for t in data.get("tags", [])],
        )


@dataclass
class Session:
    """
    One bounded unit of documented terminal work, start to stop.

    The session is plain data; state transitions are enforced by
    ``SessionAggregator`` and persistence by ``SessionStore``.
    """
    id: str
    description: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    output_path: Optional[str] = None
    commands: List[CommandEntry] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)
    events: List[SessionEvent] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    stats: SessionStats = field(default_factory=SessionStats)
    log_offset: int = 0
    error: Optional[str] = None

    @classmethod
    def new(
        cls,
        description: str,
        output_path: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        now = now or utc_now()
        return cls(
            id=session_id or new_id(),
            description=description,
            status=SessionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            started_at=now,
            output_path=output_path,
            metadata=metadata or SessionMetadata(),
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_paused(self) -> bool:
        return self.status == SessionStatus.PAUSED

    @property
    def is_stopped(self) -> bool:
        return self.status == SessionStatus.STOPPED

    @property
    def can_modify(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED)

    def duration_seconds(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.started_at is None:
            return None
        end = self.stopped_at or now or utc_now()
        return max(0, int((end - self.started_at).total_seconds()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "started_at": format_timestamp(self.started_at),
            "stopped_at": format_timestamp(self.stopped_at),
            "output_path": self.output_path,
            "commands": [c.to_dict() for c in self.commands],
            "annotations": [a.to_dict() for a in self.annotations],
            "events": [e.to_dict() for e in self.events],
            "metadata": self.metadata.to_dict(),
            "stats": self.stats.to_dict(),
            "log_offset": self.log_offset,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """Build a session from its dict form; unknown keys are ignored."""
        return cls(
            id=str(data["id"]),
            description=str(data["description"]),
            status=SessionStatus(data["status"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data.get("updated_at") or data["created_at"]),
            started_at=parse_timestamp(data.get("started_at")),
            stopped_at=parse_timestamp(data.get("stopped_at")),
            output_path=data.get("output_path"),
            commands=[CommandEntry.from_dict(c) for c in data.get("commands", [])],
            annotations=[Annotation.from_dict(a) for a in data.get("annotations", [])],
            events=[SessionEvent.from_dict(e) for e in data.get("events", [])],
            metadata=SessionMetadata.from_dict(data.get("metadata") or {}),
            stats=SessionStats.from_dict(data.get("stats") or {}),
            log_offset=int(data.get("log_offset", 0)),
            error=data.get("error"),
        )


@dataclass
class BackupRecord:
    """A timestamped historical copy of a canonical session file."""
    session_id: str
    timestamp: datetime
    path: Path


@dataclass
class StorageStats:
    """Aggregate file counts and sizes across the data directories."""
    session_count: int = 0
    backup_count: int = 0
    log_count: int = 0
    session_bytes: int = 0
    backup_bytes: int = 0
    log_bytes: int = 0

    @property
    def total_bytes(self) -> int:
        return self.session_bytes + self.backup_bytes + self.log_bytes

    def to_dict(self) -> dict:
        return {
            "session_count": self.session_count,
            "backup_count": self.backup_count,
            "log_count": self.log_count,
            "session_bytes": self.session_bytes,
            "backup_bytes": self.backup_bytes,
            "log_bytes": self.log_bytes,
            "total_bytes": self.total_bytes,
        }
