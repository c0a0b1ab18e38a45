"""
Session Shadow - Crash-safe recorder for terminal command sessions

Shell hooks append one line per command to a per-session log; Session
Shadow tails that log into a session record, lets the user annotate it,
and persists it with atomic writes, rotating backups and recovery.
"""

__version__ = "1.0.0"

from .config import ShadowConfig
from .errors import (
    ShadowError,
    StateError,
    NotFoundError,
    ValidationError,
    StorageError,
    CorruptionError,
    RecoveryExhaustedError,
)
from .models import (
    Session,
    SessionStatus,
    CommandEntry,
    Annotation,
    AnnotationType,
    StorageStats,
)
from .filter import CommandFilter
from .capture import CapturePipeline, LogTailer, PollResult, parse_line, format_line
from .session import SessionAggregator
from .storage import SessionStore, ActiveMarker
from .autosave import AutoSaveScheduler
from .watcher import CaptureWatcher
from .manager import SessionManager

__all__ = [
    "ShadowConfig",
    "ShadowError",
    "StateError",
    "NotFoundError",
    "ValidationError",
    "StorageError",
    "CorruptionError",
    "RecoveryExhaustedError",
    "Session",
    "SessionStatus",
    "CommandEntry",
    "Annotation",
    "AnnotationType",
    "StorageStats",
    "CommandFilter",
    "CapturePipeline",
    "LogTailer",
    "PollResult",
    "parse_line",
    "format_line",
    "SessionAggregator",
    "SessionStore",
    "ActiveMarker",
    "AutoSaveScheduler",
    "CaptureWatcher",
    "SessionManager",
]
