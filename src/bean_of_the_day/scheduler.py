"""
Nightly Bean of the Day scheduler.

The loop waits until the next local midnight, runs one selection cycle
against a freshly created store, then recomputes the wait from the current
time. A failed cycle is logged and skipped; only the stop event (or task
cancellation while waiting) ends the loop.
"""

import asyncio
import logging
import os
import random
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import BeanStore
from .selector import SelectionOutcome, run_selection_cycle

logger = logging.getLogger(__name__)

# A wake-up this close to the target counts as on time
WAKE_TOLERANCE = timedelta(seconds=1)

LOCALTIME_PATH = Path("/etc/localtime")


def next_midnight(now: datetime) -> datetime:
    """Start of the calendar day after now, in the same timezone as now."""
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)


def delay_until(now: datetime, target: datetime) -> timedelta:
    """Real time from now until target; aware datetimes are compared in UTC."""
    if now.tzinfo is None:
        return target - now
    return target.astimezone(UTC) - now.astimezone(UTC)


def compute_delay(now: datetime) -> timedelta:
    """
    Time from now until the next midnight.

    Naive datetimes use plain wall-clock arithmetic. Aware datetimes are
    compared in UTC, so on a daylight-saving transition day the result is
    the real elapsed time until the clocks read 00:00.
    """
    return delay_until(now, next_midnight(now))


def system_timezone() -> ZoneInfo | None:
    """
    The host's named timezone, from $TZ or the /etc/localtime symlink.

    Returns None when no IANA name can be found.
    """
    candidates = []
    tz_env = os.environ.get("TZ", "").lstrip(":")
    if tz_env:
        candidates.append(tz_env)
    if LOCALTIME_PATH.is_symlink():
        target = str(LOCALTIME_PATH.resolve())
        if "zoneinfo/" in target:
            candidates.append(target.split("zoneinfo/", 1)[1])

    for name in candidates:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return None


def local_clock(tz: ZoneInfo | None = None) -> Callable[[], datetime]:
    """
    Clock returning the current time in tz, or in the system timezone.

    If the system timezone has no IANA name the clock falls back to the
    current fixed UTC offset, which does not follow daylight-saving changes.
    """
    if tz is None:
        tz = system_timezone()
        if tz is None:
            logger.debug("No named system timezone; using the current UTC offset")

    def _now() -> datetime:
        if tz is None:
            return datetime.now().astimezone()
        return datetime.now(tz)

    return _now


class BeanOfTheDayScheduler:
    """Runs a selection cycle every night at midnight."""

    def __init__(
        self,
        store_factory: Callable[[], BeanStore],
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
        run_on_startup: bool = False,
    ):
        self.store_factory = store_factory
        self.rng = rng or random.Random()
        self.clock = clock or local_clock()
        self.run_on_startup = run_on_startup

        self.cycles_completed = 0
        self.cycles_failed = 0
        self.last_outcome: SelectionOutcome | None = None
        self.next_run: datetime | None = None

    def run_cycle(self) -> SelectionOutcome | None:
        """
        Run one selection cycle, logging instead of raising on failure.

        Returns the outcome, or None if the cycle was skipped.
        """
        try:
            store = self.store_factory()
            outcome = run_selection_cycle(store, rng=self.rng, clock=self.clock)
        except Exception:
            self.cycles_failed += 1
            logger.exception("Failed to select Bean of the Day; will retry next cycle")
            return None

        self.cycles_completed += 1
        self.last_outcome = outcome
        return outcome

    async def _wait(self, seconds: float, stop_event: asyncio.Event) -> bool:
        """Sleep for seconds. Returns False if stop_event fired first."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run until stop_event is set or the task is cancelled."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Starting Bean of the Day scheduler")

        if self.run_on_startup and not stop_event.is_set():
            self.run_cycle()

        last_target: datetime | None = None
        try:
            while not stop_event.is_set():
                now = self.clock()
                target = next_midnight(now)
                if last_target is not None and target <= last_target:
                    # Clock stepped back after a cycle; that midnight is already done
                    target = next_midnight(last_target)
                delay = delay_until(now, target)
                self.next_run = target
                logger.info(f"Waiting {delay} until next selection at {target.isoformat()}")

                if not await self._wait(delay.total_seconds(), stop_event):
                    break

                woke_at = self.clock()
                if delay_until(woke_at, target) > WAKE_TOLERANCE:
                    logger.warning(
                        f"Woke at {woke_at.isoformat()}, before {target.isoformat()}; "
                        f"waiting again"
                    )
                    continue

                self.run_cycle()
                last_target = target
        except asyncio.CancelledError:
            logger.info("Bean of the Day scheduler cancelled")
            raise
        finally:
            self.next_run = None

        logger.info(
            f"Bean of the Day scheduler stopped: {self.cycles_completed} completed, "
            f"{self.cycles_failed} failed"
        )
