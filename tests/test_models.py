from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone

from sessionshadow.models import (
    Annotation,
    AnnotationType,
    CommandEntry,
    Session,
    SessionMetadata,
    parse_timestamp,
)
from sessionshadow.validation import check_session, is_valid


def test_naive_timestamps_are_read_as_utc() -> None:
    assert parse_timestamp("2026-01-01T12:00:00") == datetime(2026, 1, 1, 12, tzinfo=timezone.utc)


def test_command_entry_outcome() -> None:
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    pending = CommandEntry(timestamp=ts, working_directory="/a", command="make")

    assert not pending.succeeded and not pending.failed
    assert dataclasses.replace(pending, exit_code=0).succeeded
    assert dataclasses.replace(pending, exit_code=2).failed
    assert CommandEntry.from_dict(pending.to_dict()) == pending


def test_session_dict_ignores_unknown_keys(clock) -> None:
    session = Session.new("demo", metadata=SessionMetadata(shell="zsh", tags=["infra"]), now=clock())
    data = session.to_dict()
    data["rendered_markdown"] = "# ignored"

    assert Session.from_dict(data) == session


def test_duration_uses_stop_time(clock) -> None:
    session = Session.new("demo", now=clock())
    session.stopped_at = clock() + timedelta(minutes=5)

    assert session.duration_seconds(now=clock() + timedelta(days=1)) == 300


def test_metadata_detect_fills_fields() -> None:
    metadata = SessionMetadata.detect()

    assert metadata.working_directory
    assert metadata.hostname


def test_validation_reports_each_problem(clock) -> None:
    session = Session.new("demo", now=clock())
    duplicate = Annotation(
        id="7f1c2a9e-3b1d-4c6e-9a3f-2d5b8e4c1a07",
        annotation_type=AnnotationType.NOTE,
        text="twice",
        timestamp=clock(),
    )
    session.annotations = [duplicate, duplicate, dataclasses.replace(duplicate, id="not-a-uuid")]
    session.stats.annotation_count = 3
    session.stopped_at = session.started_at - timedelta(seconds=1)
    session.description = " "

    problems = check_session(session)

    assert "empty description" in problems
    assert "stopped_at is before started_at" in problems
    assert any(p.startswith("duplicate annotation id") for p in problems)
    assert any(p.startswith("invalid annotation id") for p in problems)
    assert not is_valid(session)


def test_new_session_is_valid(clock) -> None:
    assert is_valid(Session.new("demo", now=clock()))
