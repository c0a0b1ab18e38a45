from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import append_lines
from shadow import main


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "cli-home"


def run(home: Path, *args: str) -> None:
    main(["--home", str(home), *args])


def active_id(home: Path) -> str:
    return json.loads((home / "active_session.json").read_text())["session_id"]


def test_full_session_from_the_command_line(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "start", "Set up staging database")
    out = capsys.readouterr().out
    session_id = active_id(home)
    assert f"Started session: {session_id}" in out

    append_lines(home / "logs" / f"{session_id}.log", "1767268800|/srv|0|psql -f schema.sql")
    run(home, "milestone", "Schema migrated")
    run(home, "annotate", "--type", "warning", "Backups are disabled")
    capsys.readouterr()

    run(home, "status")
    out = capsys.readouterr().out
    assert "Status:      active" in out
    assert "Commands:    1 (1 ok, 0 failed)" in out
    assert "Annotations: 2" in out

    run(home, "stop")
    out = capsys.readouterr().out
    assert "Session stopped." in out
    assert not (home / "active_session.json").exists()

    stored = json.loads((home / "sessions" / f"{session_id}.json").read_text())
    assert stored["session"]["status"] == "stopped"
    assert [c["command"] for c in stored["session"]["commands"]] == ["psql -f schema.sql"]


def test_pause_and_resume(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "start", "demo")
    run(home, "pause")
    run(home, "resume")
    out = capsys.readouterr().out

    assert "Session paused." in out
    assert "Session resumed." in out


def test_stop_without_session_prints_hint(home: Path, capsys: pytest.CaptureFixture) -> None:
    with pytest.raises(SystemExit) as excinfo:
        run(home, "stop")

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert "Error: No active session to stop" in err
    assert "shadow start" in err


def test_status_without_session(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "status")

    assert "No active session." in capsys.readouterr().out


def test_failed_recovery_then_clear_error(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "start", "demo")
    session_id = active_id(home)
    (home / "sessions" / f"{session_id}.json").write_text("")
    capsys.readouterr()

    with pytest.raises(SystemExit):
        run(home, "status")
    assert "could not be recovered (1 candidates tried)" in capsys.readouterr().out

    run(home, "clear-error")
    assert f"Cleared error state for session {session_id}." in capsys.readouterr().out
    assert not (home / "active_session.json").exists()


def test_export_import_and_list(home: Path, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "start", "demo")
    session_id = active_id(home)
    run(home, "stop")
    target = tmp_path / "export.json"
    run(home, "export", session_id, str(target))

    other_home = tmp_path / "other"
    run(other_home, "import", str(target))
    capsys.readouterr()
    run(other_home, "list")

    assert capsys.readouterr().out.split() == [session_id]


def test_stats(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "start", "demo")
    run(home, "stop")
    capsys.readouterr()

    run(home, "stats")

    out = capsys.readouterr().out
    assert "Sessions: 1" in out
    assert "Backups:  1" in out


def test_init_writes_config(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "init")

    assert (home / "config.yaml").exists()
    with pytest.raises(SystemExit):
        run(home, "init")


def test_status_verbose_lists_recent_commands(home: Path, capsys: pytest.CaptureFixture) -> None:
    run(home, "start", "demo")
    session_id = active_id(home)
    append_lines(home / "logs" / f"{session_id}.log", "1767268800|/srv|2|make deploy")
    capsys.readouterr()

    run(home, "status", "-v")

    out = capsys.readouterr().out
    assert "Recent commands:" in out
    assert "[2] make deploy" in out


def test_home_option_reads_its_config_file(home: Path) -> None:
    home.mkdir(parents=True)
    (home / "config.yaml").write_text("storage:\n  max_backups: 1\n")

    run(home, "start", "demo")
    run(home, "pause")
    run(home, "resume")
    run(home, "stop")

    assert len(list((home / "backups").glob("*.json"))) == 1
