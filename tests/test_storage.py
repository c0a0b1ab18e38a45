from __future__ import annotations

import dataclasses
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sessionshadow.errors import (
    CorruptionError,
    NotFoundError,
    RecoveryExhaustedError,
    StateError,
    StorageError,
    ValidationError,
)
from sessionshadow.models import (
    Annotation,
    AnnotationType,
    CommandEntry,
    Session,
    SessionEvent,
    SessionEventType,
    SessionMetadata,
    SessionStats,
    SessionStatus,
    new_id,
)
from sessionshadow.storage import (
    FORMAT_VERSION,
    ActiveMarker,
    SessionStore,
    atomic_write_text,
    decode_session,
    encode_session,
)
from sessionshadow.validation import is_valid


@pytest.fixture
def store(tmp_path: Path, clock) -> SessionStore:
    return SessionStore(
        tmp_path / "sessions",
        tmp_path / "backups",
        tmp_path / "logs",
        max_backups=3,
        clock=clock,
    )


def make_session(clock, description: str = "demo", session_id: str = None) -> Session:
    return Session.new(description, now=clock(), session_id=session_id)


def test_encode_is_deterministic(clock) -> None:
    session = make_session(clock)

    first = encode_session(session)
    second = encode_session(decode_session(first))

    assert first == second
    assert json.loads(first)["format_version"] == FORMAT_VERSION


def test_decode_rejects_newer_format(clock) -> None:
    document = json.loads(encode_session(make_session(clock)))
    document["format_version"] = FORMAT_VERSION + 1

    with pytest.raises(CorruptionError, match="Unsupported format_version"):
        decode_session(json.dumps(document))


@pytest.mark.parametrize("text", ["{not json", "[]", '{"format_version": 1}', '{"session": {}}'])
def test_decode_rejects_broken_documents(text: str) -> None:
    with pytest.raises(CorruptionError):
        decode_session(text)


def test_save_then_load_returns_equal_session(store: SessionStore, clock) -> None:
    session = populated_session(clock)

    store.save(session)

    assert store.load(session.id) == session


def test_saving_twice_gives_identical_canonical_file(store: SessionStore, clock) -> None:
    session = make_session(clock)

    path = store.save(session)
    first = path.read_bytes()
    clock.advance(1)
    store.save(session)

    assert path.read_bytes() == first


def test_first_save_creates_no_backup(store: SessionStore, clock) -> None:
    session = make_session(clock)

    store.save(session)

    assert store.list_backups(session.id) == []


def test_retention_keeps_newest_backups(store: SessionStore, clock) -> None:
    session = make_session(clock)
    stamps = []
    for i in range(6):
        session.description = f"revision {i}"
        stamps.append(clock())
        store.save(session)
        clock.advance(1)

    backups = store.list_backups(session.id)

    # Saves 2..6 each back up at their own time; only the newest 3 survive
    assert [b.timestamp for b in backups] == list(reversed(stamps[-3:]))
    contents = [decode_session(b.path.read_text()).description for b in backups]
    assert contents == ["revision 4", "revision 3", "revision 2"]


def test_backup_timestamp_collision_is_skipped(store: SessionStore, clock) -> None:
    session = make_session(clock)
    session.description = "first"
    store.save(session)
    session.description = "second"
    store.save(session)
    session.description = "third"
    store.save(session)

    backups = store.list_backups(session.id)

    assert len(backups) == 1
    assert decode_session(backups[0].path.read_text()).description == "first"
    assert store.load(session.id).description == "third"


def test_save_leaves_no_temporary_files(store: SessionStore, clock) -> None:
    store.save(make_session(clock))

    assert list(store.sessions_dir.glob("*.tmp")) == []


def test_failed_write_keeps_the_original(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "data.json"
    target.write_text("original")

    def fail_replace(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("sessionshadow.storage.os.replace", fail_replace)

    with pytest.raises(StorageError):
        atomic_write_text(target, "new content")

    assert target.read_text() == "original"
    assert not (tmp_path / "data.json.tmp").exists()


def test_load_missing_session_raises_not_found(store: SessionStore) -> None:
    with pytest.raises(NotFoundError):
        store.load("4b8f6a1e-0000-0000-0000-000000000000")


def test_path_traversal_ids_are_rejected(store: SessionStore) -> None:
    with pytest.raises(ValueError):
        store.canonical_path("../escape")


def test_recover_prefers_canonical(store: SessionStore, clock) -> None:
    session = make_session(clock)
    store.save(session)

    outcome = store.recover(session.id)

    assert outcome.from_backup is False
    assert outcome.candidates_tried == 1
    assert outcome.session == session


def test_recover_falls_back_to_backup_on_truncated_canonical(store: SessionStore, clock) -> None:
    session = make_session(clock, "good copy")
    store.save(session)
    clock.advance(1)
    session.description = "latest"
    canonical = store.save(session)
    text = canonical.read_text()
    canonical.write_text(text[: len(text) // 2])

    outcome = store.recover(session.id)

    assert outcome.from_backup is True
    assert outcome.candidates_tried == 2
    assert outcome.session.description == "good copy"
    assert not canonical.exists()
    quarantined = list(store.sessions_dir.glob(f"{session.id}.json.corrupt-*"))
    assert len(quarantined) == 1
    assert quarantined[0].read_text() == text[: len(text) // 2]


def test_recover_skips_files_that_fail_validation(store: SessionStore, clock) -> None:
    session = make_session(clock, "good copy")
    store.save(session)
    clock.advance(1)
    session.stats.command_count = 7
    store.save(session)

    with pytest.raises(ValidationError):
        store.load(session.id)
    outcome = store.recover(session.id)

    assert outcome.from_backup is True
    assert outcome.session.stats.command_count == 0
    assert any("validation" in failure for failure in outcome.failures)


def test_recover_exhausted_reports_candidates(store: SessionStore, clock) -> None:
    session = make_session(clock)
    store.save(session)
    for _ in range(2):
        clock.advance(1)
        store.save(session)
    for path in [store.canonical_path(session.id)] + [b.path for b in store.list_backups(session.id)]:
        path.write_text("")

    with pytest.raises(RecoveryExhaustedError) as excinfo:
        store.recover(session.id)

    assert excinfo.value.session_id == session.id
    assert excinfo.value.candidates_tried == 3
    assert len(excinfo.value.failures) == 3


def test_recover_unknown_session_tries_nothing(store: SessionStore) -> None:
    with pytest.raises(RecoveryExhaustedError) as excinfo:
        store.recover("c0ffee00-0000-0000-0000-000000000000")

    assert excinfo.value.candidates_tried == 0


def populated_session(clock) -> Session:
    session = Session.new(
        "Migrate staging database",
        output_path="/tmp/migration.md",
        metadata=SessionMetadata(
            working_directory="/srv/app",
            shell="zsh",
            platform="linux",
            hostname="build-01",
            user="ops",
            tags=["infra", "db"],
        ),
        now=clock(),
    )
    started = clock()
    session.commands = [
        CommandEntry(started, "/srv/app", "pg_dump staging > dump.sql", 0, "zsh", session.id),
        CommandEntry(
            started + timedelta(seconds=5, microseconds=250),
            "/srv/app",
            "tail -f migrate.log | grep ERROR",
            None,
            "zsh",
            session.id,
        ),
        CommandEntry(
            datetime(2026, 1, 1, 14, 0, 7, tzinfo=timezone(timedelta(hours=2))),
            "/srv/app/ünïcode dir",
            "make migrate",
            2,
            "zsh",
            session.id,
        ),
    ]
    session.annotations = [
        Annotation(new_id(), AnnotationType.WARNING, "Backups disabled during the run", started),
        Annotation(new_id(), AnnotationType.MILESTONE, "Schema migrated", started + timedelta(minutes=3)),
    ]
    session.events = [
        SessionEvent(new_id(), SessionEventType.SESSION_STARTED, started, "Session created"),
        SessionEvent(new_id(), SessionEventType.SESSION_PAUSED, started + timedelta(minutes=1)),
        SessionEvent(new_id(), SessionEventType.SESSION_STOPPED, started + timedelta(minutes=10), "done"),
    ]
    session.stats = SessionStats(
        command_count=3,
        annotation_count=2,
        successful_commands=1,
        failed_commands=1,
        pause_resume_count=1,
        duration_seconds=600,
    )
    session.log_offset = 4096
    session.status = SessionStatus.STOPPED
    session.stopped_at = started + timedelta(minutes=10)
    session.updated_at = session.stopped_at
    session.error = "capture log rotated during the session"
    return session


def test_populated_session_survives_encoding(clock) -> None:
    session = populated_session(clock)

    decoded = decode_session(encode_session(session))

    assert decoded == session
    assert decoded.commands[1].exit_code is None
    assert decoded.metadata.tags == ["infra", "db"]


def test_export_import_round_trip(store: SessionStore, clock, tmp_path: Path) -> None:
    session = populated_session(clock)
    store.save(session)

    exported = store.export(session, tmp_path / "out" / "session.json")
    store.delete(session.id)
    imported = store.import_file(exported)

    assert imported == session
    assert store.load(session.id) == session
    assert is_valid(imported)


def test_import_refuses_open_sessions(store: SessionStore, clock, tmp_path: Path) -> None:
    session = make_session(clock)
    exported = store.export(session, tmp_path / "active.json")

    with pytest.raises(StateError) as excinfo:
        store.import_file(exported)

    assert excinfo.value.reason == "NotStopped"
    assert store.list_sessions() == []


def test_import_never_replaces_a_stored_stopped_session(store: SessionStore, clock, tmp_path: Path) -> None:
    session = populated_session(clock)
    store.save(session)
    older = dataclasses.replace(session, description="older copy")
    exported = store.export(older, tmp_path / "older.json")

    with pytest.raises(StateError) as excinfo:
        store.import_file(exported)

    assert excinfo.value.reason == "AlreadyStored"
    assert store.load(session.id).description == session.description


def test_import_repairs_unreadable_stored_copy(store: SessionStore, clock, tmp_path: Path) -> None:
    session = populated_session(clock)
    store.save(session)
    exported = store.export(session, tmp_path / "copy.json")
    store.canonical_path(session.id).write_text("{ truncated")
    clock.advance(1)

    store.import_file(exported)

    assert store.load(session.id) == session
    # The broken copy is kept as a backup
    assert len(store.list_backups(session.id)) == 1


def test_import_rejects_invalid_file(store: SessionStore, clock, tmp_path: Path) -> None:
    session = make_session(clock)
    session.stats.annotation_count = 3
    bad = tmp_path / "bad.json"
    bad.write_text(encode_session(session))

    with pytest.raises(ValidationError, match="annotation_count"):
        store.import_file(bad)

    assert store.list_sessions() == []


def test_import_missing_file(store: SessionStore, tmp_path: Path) -> None:
    with pytest.raises(StorageError, match="not found"):
        store.import_file(tmp_path / "nope.json")


def test_cleanup_removes_old_stopped_sessions(store: SessionStore, clock) -> None:
    old = make_session(clock, "old")
    old.status = SessionStatus.STOPPED
    old.stopped_at = clock() + timedelta(hours=1)
    store.save(old)
    clock.advance(1)
    store.save(old)
    log = store.log_path(old.id)
    log.parent.mkdir(parents=True, exist_ok=True)
    log.write_text("1767268800|/a|0|ls\n")

    open_session = make_session(clock, "still open")
    store.save(open_session)

    clock.advance(40 * 24 * 3600)
    recent = make_session(clock, "recent")
    recent.status = SessionStatus.STOPPED
    recent.stopped_at = clock()
    store.save(recent)

    removed = store.cleanup(30)

    assert removed == 3
    assert store.list_sessions() == sorted([open_session.id, recent.id])
    assert store.list_backups(old.id) == []
    assert not log.exists()


def test_cleanup_respects_protected_ids(store: SessionStore, clock) -> None:
    session = make_session(clock)
    session.status = SessionStatus.STOPPED
    session.stopped_at = clock()
    store.save(session)
    clock.advance(90 * 24 * 3600)

    assert store.cleanup(30, protect={session.id}) == 0
    assert store.exists(session.id)


def test_cleanup_keeps_unreadable_files(store: SessionStore, clock) -> None:
    store.ensure_dirs()
    broken = store.sessions_dir / "broken.json"
    broken.write_text("{")
    clock.advance(90 * 24 * 3600)

    assert store.cleanup(30) == 0
    assert broken.exists()


def test_cleanup_removes_old_orphan_backups(store: SessionStore, clock) -> None:
    session = make_session(clock)
    store.save(session)
    clock.advance(1)
    store.save(session)
    store.canonical_path(session.id).unlink()
    clock.advance(40 * 24 * 3600)

    assert store.cleanup(30) == 1
    assert store.list_backups(session.id) == []


def test_storage_stats_counts_files(store: SessionStore, clock) -> None:
    session = make_session(clock)
    store.save(session)
    clock.advance(1)
    store.save(session)
    log = store.log_path(session.id)
    log.write_text("1767268800|/a|0|ls\n")

    stats = store.storage_stats()

    assert (stats.session_count, stats.backup_count, stats.log_count) == (1, 1, 1)
    assert stats.log_bytes == log.stat().st_size
    assert stats.total_bytes == stats.session_bytes + stats.backup_bytes + stats.log_bytes


def test_marker_creation_is_exclusive(tmp_path: Path) -> None:
    marker = ActiveMarker(tmp_path / "active_session.json")
    marker.create("first")

    with pytest.raises(StateError) as excinfo:
        ActiveMarker(marker.path).create("second")

    assert excinfo.value.reason == "AlreadyActive"
    assert marker.session_id == "first"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["active_session.json"]


def test_marker_remove_checks_owner(tmp_path: Path) -> None:
    marker = ActiveMarker(tmp_path / "active_session.json")
    marker.create("first")

    assert marker.remove("other") is False
    assert marker.remove("first") is True
    assert marker.read() is None


def test_corrupt_marker_raises(tmp_path: Path) -> None:
    marker = ActiveMarker(tmp_path / "active_session.json")
    marker.path.write_text("{}")

    with pytest.raises(CorruptionError):
        marker.read()
