from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable

from homedash.automations.evaluator import ClockTick
from homedash.config import settings
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("senses.clock")


class ClockSense:
    """Emits one ClockTick per wall-clock minute, aligned to the minute start."""

    def __init__(
        self,
        sink: Callable[[ClockTick], None],
        *,
        interval_seconds: float | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._interval_seconds = interval_seconds or settings.get_clock_interval_seconds()
        self._now_fn = now_fn or (lambda: datetime.now(tz=timezone.utc))
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="homedash-clock", daemon=True)
        self._thread.start()
        logger.info("ClockSense started interval=%.2fs", self._interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logger.info("ClockSense stopped")

    def tick(self) -> ClockTick:
        tick = ClockTick(now=self._now_fn())
        self._sink(tick)
        return tick

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                logger.exception("ClockSense tick failed", exc_info=exc)
            self._stop_event.wait(timeout=seconds_until_next(self._now_fn(), self._interval_seconds))


def seconds_until_next(now: datetime, interval_seconds: float) -> float:
    if interval_seconds < 60.0:
        return interval_seconds
    elapsed = now.second + now.microsecond / 1_000_000
    # Land just after the next minute boundary.
    return max(0.5, 60.0 - elapsed + 0.05)
