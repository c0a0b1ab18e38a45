"""
Auto-save Scheduler - Decides when a dirty session is written to disk
"""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class AutoSaveScheduler:
    """
    Reactive save trigger.

    There is no timer thread: mutating operations and periodic status
    checks call ``maybe_save``, which saves only when the session is dirty
    and at least ``interval_seconds`` have passed since the last save.

    Args:
        save: Callable that persists the session
        interval_seconds: Minimum time between automatic saves
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        save: Callable[[], None],
        interval_seconds: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.save = save
        self.interval = interval_seconds
        self.clock = clock or time.monotonic
        self._last_saved: Optional[float] = None
        self._save_count = 0

    @property
    def last_saved_at(self) -> Optional[float]:
        return self._last_saved

    @property
    def save_count(self) -> int:
        return self._save_count

    def seconds_until_due(self) -> float:
        if self._last_saved is None:
            return 0.0
        return max(0.0, self.interval - (self.clock() - self._last_saved))

    def is_due(self) -> bool:
        return self.seconds_until_due() <= 0

    def maybe_save(self, dirty: bool) -> bool:
        """Save if dirty and the interval has elapsed. Returns True if saved."""
        if not dirty or not self.is_due():
            return False
        self._run_save()
        return True

    def force_save(self) -> None:
        """Save now regardless of the interval."""
        self._run_save()

    def reset(self) -> None:
        """Restart the interval as if a save just happened."""
        self._last_saved = self.clock()

    def _run_save(self) -> None:
        # A failing save propagates and leaves the timer untouched
        self.save()
        self._last_saved = self.clock()
        self._save_count += 1
        logger.debug("Session saved (save #%d)", self._save_count)
