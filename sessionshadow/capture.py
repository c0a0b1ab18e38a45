"""
Capture Pipeline - Tails the shell hook log and feeds commands to the session

The shell hooks append one line per command to ``logs/<session_id>.log``:

    <timestamp>|<working_directory>|<exit_code_or_empty>|<command_text>

A command may first be written without an exit code and again once it
finishes; the second line updates the stored entry instead of adding one.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set, Tuple, Union

from .filter import CommandFilter
from .models import CommandEntry, parse_timestamp

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"


@dataclass
class ParsedLine:
    """One well-formed capture line."""
    timestamp: datetime
    working_directory: str
    exit_code: Optional[int]
    command: str


@dataclass
class TailChunk:
    """Complete lines read past ``start_offset``, ending at ``end_offset``."""
    lines: List[str]
    start_offset: int
    end_offset: int

    @property
    def bytes_read(self) -> int:
        return self.end_offset - self.start_offset


@dataclass
class PollResult:
    """Outcome counters for one poll of the capture log."""
    added: int = 0
    updated: int = 0
    duplicates: int = 0
    malformed: int = 0
    ignored: int = 0
    dropped: int = 0
    bytes_read: int = 0
    entries: List[CommandEntry] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.added > 0 or self.updated > 0

    def merge(self, other: "PollResult") -> None:
        self.added += other.added
        self.updated += other.updated
        self.duplicates += other.duplicates
        self.malformed += other.malformed
        self.ignored += other.ignored
        self.dropped += other.dropped
        self.bytes_read += other.bytes_read
        self.entries.extend(other.entries)


def parse_capture_timestamp(raw: str) -> datetime:
    """Parse epoch seconds (integer or fractional) or ISO 8601."""
    raw = raw.strip()
    if not raw:
        raise ValueError("empty timestamp")
    try:
        seconds = float(raw)
    except ValueError:
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        return parse_timestamp(raw)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"timestamp out of range: {raw}") from e


def parse_line(line: str) -> ParsedLine:
    """
    Parse one capture line.

    Raises:
        ValueError: if the line does not have the four fields or a field
            cannot be parsed.
    """
    line = line.rstrip("\r\n")
    parts = line.split(FIELD_SEPARATOR, 3)
    if len(parts) != 4:
        raise ValueError(f"expected 4 fields, got {len(parts)}")

    raw_timestamp, working_directory, raw_exit, command = parts

    timestamp = parse_capture_timestamp(raw_timestamp)

    raw_exit = raw_exit.strip()
    exit_code = int(raw_exit) if raw_exit else None

    command = command.strip()
    if not command:
        raise ValueError("empty command")

    return ParsedLine(
        timestamp=timestamp,
        working_directory=working_directory,
        exit_code=exit_code,
        command=command,
    )


def format_line(
    timestamp: Union[datetime, int, float, str],
    working_directory: str,
    exit_code: Optional[int],
    command: str,
) -> str:
    """Build a newline-terminated capture line."""
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    exit_field = "" if exit_code is None else str(exit_code)
    return f"{timestamp}|{working_directory}|{exit_field}|{command}\n"


class LogTailer:
    """
    Reads a growing file from a remembered byte offset.

    Only complete (newline-terminated) lines are returned; a trailing partial
    write stays on disk until its newline arrives. The offset moves only when
    the caller commits a chunk, so lines handed out but not yet applied are
    read again on the next call.
    """

    def __init__(self, path: Union[str, Path], offset: int = 0):
        self.path = Path(path)
        self._offset = max(0, int(offset))

    @property
    def offset(self) -> int:
        return self._offset

    def read(self) -> TailChunk:
        """Return the complete lines appended since the committed offset."""
        start = self._offset
        try:
            size = os.stat(self.path).st_size
        except OSError:
            # Missing or unreadable: no new data, retry next poll
            return TailChunk([], start, start)

        if size < start:
            logger.warning(
                "Capture log %s shrank from %d to %d bytes; reading from the start",
                self.path, start, size,
            )
            start = 0
            self._offset = 0

        if size == start:
            return TailChunk([], start, start)

        try:
            with open(self.path, "rb") as f:
                f.seek(start)
                data = f.read(size - start)
        except OSError as e:
            logger.debug("Cannot read capture log %s: %s", self.path, e)
            return TailChunk([], start, start)

        last_newline = data.rfind(b"\n")
        if last_newline < 0:
            return TailChunk([], start, start)

        complete = data[:last_newline + 1]
        lines = [
            raw.decode("utf-8", errors="replace")
            for raw in complete.split(b"\n")[:-1]
        ]
        return TailChunk(lines, start, start + len(complete))

    def commit(self, chunk: TailChunk) -> None:
        self._offset = chunk.end_offset


class CapturePipeline:
    """
    Converts capture log lines into session-scoped command entries.

    Args:
        aggregator: SessionAggregator that owns the session
        session_id: Session whose log this pipeline reads
        log_path: Capture log written by the shell hooks
        offset: Byte offset already consumed (from the stored session)
        command_filter: Noise filter applied before deduplication
        shell: Shell kind recorded on each entry
    """

    def __init__(
        self,
        aggregator,
        session_id: str,
        log_path: Union[str, Path],
        offset: int = 0,
        command_filter: Optional[CommandFilter] = None,
        shell: str = "unknown",
    ):
        self.aggregator = aggregator
        self.session_id = session_id
        self.tailer = LogTailer(log_path, offset)
        self.filter = command_filter or CommandFilter()
        self.shell = shell
        self.totals = PollResult()
        self._seen: Set[Tuple] = set()
        self._seed_seen()

    def _seed_seen(self) -> None:
        for entry in self.aggregator.commands_for(self.session_id):
            self._seen.add(entry.identity)
            # A line without an exit code for a stored command is a replay
            self._seen.add((entry.timestamp, entry.working_directory, None, entry.command))

    @property
    def log_path(self) -> Path:
        return self.tailer.path

    @property
    def offset(self) -> int:
        return self.tailer.offset

    def poll(self) -> PollResult:
        """
        Read new lines and forward accepted entries to the aggregator.

        Never raises for bad input: unreadable files yield nothing and
        malformed lines are counted and skipped.
        """
        result = PollResult()
        chunk = self.tailer.read()
        if not chunk.lines and chunk.end_offset == self.tailer.offset:
            return result

        for line in chunk.lines:
            self._process_line(line, result)

        self.tailer.commit(chunk)
        result.bytes_read = chunk.bytes_read
        self.aggregator.advance_log_offset(self.session_id, chunk.end_offset)

        if result.malformed:
            logger.warning(
                "Skipped %d malformed line(s) in %s", result.malformed, self.log_path
            )
        self.totals.merge(result)
        return result

    def _process_line(self, line: str, result: PollResult) -> None:
        if not line.strip():
            return

        try:
            parsed = parse_line(line)
        except ValueError as e:
            result.malformed += 1
            logger.debug("Malformed capture line %r: %s", line, e)
            return

        if self.filter.should_ignore(parsed.command):
            result.ignored += 1
            return

        if not self.aggregator.is_capturing(self.session_id):
            # Stale session, or paused: consumed and dropped for good
            result.dropped += 1
            return

        entry = CommandEntry(
            timestamp=parsed.timestamp,
            working_directory=parsed.working_directory,
            command=parsed.command,
            exit_code=parsed.exit_code,
            shell=self.shell,
            session_id=self.session_id,
        )

        if entry.identity in self._seen:
            result.duplicates += 1
            return
        self._seen.add(entry.identity)

        if entry.exit_code is not None:
            updated = self.aggregator.backfill_exit_code(
                self.session_id, entry.timestamp, entry.command, entry.exit_code
            )
            if updated is not None:
                result.updated += 1
                result.entries.append(updated)
                return

        self.aggregator.add_command(entry)
        result.added += 1
        result.entries.append(entry)
