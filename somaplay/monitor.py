"""Underrun monitor.

Checked once per tick while the session is playing. When the sink runs dry
or the playback position stops advancing, the active station is restarted,
subject to a grace period after each (re)load and exponential backoff
between restarts.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .history import HistoryLog
from .models import MessageType, MonitorConfig, PlaybackState
from .session import PlaybackSession

logger = logging.getLogger(__name__)

_MAX_BACKOFF_EXPONENT = 32


@dataclass
class UnderrunTracker:
    """Mutable bookkeeping for underrun detection."""

    last_position: float | None = None
    last_underrun_check: float | None = None
    station_loading: bool = False
    playback_start_time_for_underrun: float | None = None
    last_restart_time: float | None = None
    restart_attempts: int = 0
    underrun_detected: bool = False


def required_backoff(attempts: int, base: float, maximum: float) -> float:
    """Seconds to wait after `attempts` restarts: base * 2^attempts, capped."""
    return min(base * 2 ** min(attempts, _MAX_BACKOFF_EXPONENT), maximum)


class UnderrunMonitor:
    """Detects stalled playback and restarts the active station."""

    def __init__(
        self,
        session: PlaybackSession,
        config: MonitorConfig,
        history: HistoryLog,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._config = config
        self._history = history
        self._clock = clock
        self._tracker = UnderrunTracker()
        session.add_listener(self)

    @property
    def tracker(self) -> UnderrunTracker:
        return self._tracker

    def loading_started(self) -> None:
        self._tracker.station_loading = True
        self._tracker.playback_start_time_for_underrun = self._clock()

    def loading_finished(self, success: bool) -> None:
        self._tracker.station_loading = False
        if success:
            self._tracker.restart_attempts = 0
            self._tracker.playback_start_time_for_underrun = self._clock()

    def tick(self) -> bool:
        """Run one check. Returns True if a restart was issued."""
        tracker = self._tracker
        now = self._clock()
        tracker.last_underrun_check = now

        if self._session.state is not PlaybackState.PLAYING:
            tracker.last_position = None
            tracker.underrun_detected = False
            return False

        status = self._session.sink_status()
        start = self._session.playback_start_time
        position_stalled = (
            tracker.last_position is not None
            and status.position == tracker.last_position
            and start is not None
            and now - start > self._config.stall_seconds
        )
        potential_underrun = (
            status.is_empty
            or (status.queue_len == 0 and not status.is_paused)
            or position_stalled
        )

        anchor = tracker.playback_start_time_for_underrun
        past_grace = anchor is None or now - anchor > self._config.grace_period_seconds

        backoff = required_backoff(
            tracker.restart_attempts,
            self._config.backoff_base_seconds,
            self._config.backoff_max_seconds,
        )
        past_backoff = (
            tracker.last_restart_time is None
            or now - tracker.last_restart_time >= backoff
        )

        restarted = False
        if (
            potential_underrun
            and not tracker.station_loading
            and past_grace
            and past_backoff
        ):
            tracker.last_restart_time = now
            tracker.restart_attempts += 1
            tracker.underrun_detected = True
            self._history.emit(
                f"Underrun detected, restarting playback "
                f"(attempt {tracker.restart_attempts}, backoff {backoff:.1f}s)",
                MessageType.ERROR,
            )
            logger.warning(
                "Underrun: empty=%s queue=%d position=%.2f",
                status.is_empty,
                status.queue_len,
                status.position,
            )
            self._session.restart()
            restarted = True
        else:
            tracker.underrun_detected = False

        tracker.last_position = status.position
        return restarted
