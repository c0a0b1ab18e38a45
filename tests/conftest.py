from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sessionshadow import SessionManager, ShadowConfig
from sessionshadow.models import SessionMetadata

START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture(autouse=True)
def _isolate_shadow_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SHADOW_HOME", str(tmp_path / "home"))
    for name in ("SHADOW_MAX_BACKUPS", "SHADOW_AUTOSAVE_INTERVAL", "SHADOW_POLL_INTERVAL", "SHADOW_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def config(tmp_path: Path) -> ShadowConfig:
    return ShadowConfig(base_dir=tmp_path / "shadow", poll_interval_seconds=0.01)


@pytest.fixture
def metadata() -> SessionMetadata:
    return SessionMetadata(working_directory="/work", shell="bash", platform="linux", hostname="box")


@pytest.fixture
def manager(config: ShadowConfig, clock: FakeClock, monotonic: FakeMonotonic) -> SessionManager:
    return SessionManager(config, clock=clock, monotonic=monotonic)


def append_lines(path: Path, *lines: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line if line.endswith("\n") else line + "\n")
