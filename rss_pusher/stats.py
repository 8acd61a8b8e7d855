"""
Daily push statistics.

Counts pushes per day and per feed in memory. Counters reset lazily the
first time they are touched on a new date.
"""

import logging
import threading
from collections.abc import Callable
from datetime import date

logger = logging.getLogger(__name__)


class PushStats:
    """
    Day-bucketed push counters.

    Attributes
    ----------
    date : date
        Day the counters belong to.
    total : int
        Pushes recorded on that day.
    by_feed : dict[str, int]
        Pushes per feed name on that day.
    """

    def __init__(self, today: Callable[[], date] = date.today):
        """
        Initialize empty counters for the current day.

        Parameters
        ----------
        today : Callable[[], date]
            Clock returning the current date.
        """
        self._today = today
        self._lock = threading.Lock()
        self.date = today()
        self.total = 0
        self.by_feed: dict[str, int] = {}

    def _roll_over(self, current: date) -> bool:
        """Reset counters if the day changed. Caller holds the lock."""
        if self.date == current:
            return False
        self.date = current
        self.total = 0
        self.by_feed = {}
        return True

    def reset_if_needed(self) -> None:
        """Reset the counters if the date changed, logging the finished day."""
        with self._lock:
            previous, previous_total = self.date, self.total
            if self._roll_over(self._today()) and previous_total > 0:
                logger.info(
                    "Date changed, %s pushed %d notification%s in total; counters reset",
                    previous.isoformat(),
                    previous_total,
                    "" if previous_total == 1 else "s",
                )

    def record_push(self, feed_name: str) -> None:
        """Count one push for a feed."""
        with self._lock:
            self._roll_over(self._today())
            self.total += 1
            self.by_feed[feed_name] = self.by_feed.get(feed_name, 0) + 1

    def snapshot(self) -> tuple[date, int, dict[str, int]]:
        """Return a consistent copy of date, total and per-feed counts."""
        with self._lock:
            return self.date, self.total, dict(self.by_feed)

    def summary(self) -> str:
        """Human-readable summary of today's pushes."""
        day, total, by_feed = self.snapshot()
        lines = [f"📊 Pushes today ({day.isoformat()}): {total}"]
        for feed_name, count in sorted(by_feed.items()):
            lines.append(f"📊 {feed_name}: {count}")
        return "\n".join(lines)
