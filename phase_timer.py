from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from typing import Any, Callable, Optional, Protocol

from meeting_store import Clock, Meeting, now_ms
from schemas import Phase

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
MIN_PHASE_MS = MINUTE_MS
MAX_PHASE_MS = 60 * MINUTE_MS


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Schedules expiry callbacks on one asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0, delay_ms) / 1000.0, callback)


def _override_minutes(minutes: Any) -> float | None:
    if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
        return None
    return float(minutes) if math.isfinite(minutes) else None


class PhaseTimer:
    # idle: phase None; running: phase_ends_at set; paused: phase_remaining_ms set.

    def __init__(
        self,
        scheduler: Scheduler,
        clock: Clock = now_ms,
        on_expiry: Optional[Callable[[Meeting, Phase], None]] = None,
        lock: Any = None,
    ):
        self.scheduler = scheduler
        self.clock = clock
        self.on_expiry = on_expiry
        self._lock = lock if lock is not None else contextlib.nullcontext()
        self._handles: dict[str, TimerHandle] = {}

    def has_pending(self, meeting_id: str) -> bool:
        return meeting_id in self._handles

    def cancel(self, meeting_id: str) -> None:
        handle = self._handles.pop(meeting_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for meeting_id in list(self._handles.keys()):
            self.cancel(meeting_id)

    def _schedule(self, meeting: Meeting) -> None:
        self.cancel(meeting.id)
        if not meeting.is_running or meeting.phase_ends_at is None:
            return
        delay = max(0, meeting.phase_ends_at - self.clock())
        holder: dict[str, TimerHandle] = {}

        def _fire() -> None:
            with self._lock:
                # A handle replaced or cancelled after being queued must not touch state.
                if self._handles.get(meeting.id) is not holder.get("handle"):
                    return
                self._handles.pop(meeting.id, None)
                self._expire(meeting)

        handle = self.scheduler.call_later(delay, _fire)
        holder["handle"] = handle
        self._handles[meeting.id] = handle

    def _expire(self, meeting: Meeting) -> None:
        if not meeting.is_running:
            return
        phase = meeting.phase
        meeting.phase_paused = True
        meeting.phase_remaining_ms = 0
        meeting.phase_ends_at = None
        logger.info("meeting %s phase %s expired", meeting.id, phase.value if phase else None)
        if self.on_expiry is not None and phase is not None:
            self.on_expiry(meeting, phase)

    def duration_ms(self, meeting: Meeting, phase: Phase, minutes: Any = None) -> int:
        override = _override_minutes(minutes)
        dur_min = override if override is not None else float(meeting.durations.get(phase.value, 1))
        return int(max(MIN_PHASE_MS, min(MAX_PHASE_MS, dur_min * MINUTE_MS)))

    def start(self, meeting: Meeting, phase: Any, minutes: Any = None, topic_id: Any = None) -> bool:
        try:
            target = Phase(phase)
        except ValueError:
            return False
        if target == Phase.DISCUSS:
            topic = meeting.find_topic(topic_id) or meeting.find_topic(meeting.current_topic_id)
            if topic is None:
                return False
            meeting.current_topic_id = topic.id
        meeting.phase = target
        meeting.phase_ends_at = self.clock() + self.duration_ms(meeting, target, minutes)
        meeting.phase_paused = False
        meeting.phase_remaining_ms = None
        logger.info("meeting %s phase %s started", meeting.id, target.value)
        self._schedule(meeting)
        return True

    def add_minute(self, meeting: Meeting) -> bool:
        if meeting.phase is None:
            return False
        if meeting.phase_paused:
            meeting.phase_remaining_ms = max(0, (meeting.phase_remaining_ms or 0) + MINUTE_MS)
        elif meeting.phase_ends_at is not None:
            meeting.phase_ends_at += MINUTE_MS
            self._schedule(meeting)
        else:
            return False
        return True

    def pause(self, meeting: Meeting) -> bool:
        if not meeting.is_running:
            return False
        now = self.clock()
        ends_at = meeting.phase_ends_at if meeting.phase_ends_at is not None else now
        self.cancel(meeting.id)
        meeting.phase_remaining_ms = max(0, ends_at - now)
        meeting.phase_ends_at = None
        meeting.phase_paused = True
        return True

    def resume(self, meeting: Meeting) -> bool:
        if not meeting.is_paused:
            return False
        remaining = max(0, meeting.phase_remaining_ms or 0)
        meeting.phase_ends_at = self.clock() + remaining
        meeting.phase_remaining_ms = None
        meeting.phase_paused = False
        self._schedule(meeting)
        return True

    def end(self, meeting: Meeting) -> bool:
        self.cancel(meeting.id)
        meeting.phase = None
        meeting.phase_ends_at = None
        meeting.phase_paused = False
        meeting.phase_remaining_ms = None
        return True

    def reconcile(self, meeting: Meeting) -> None:
        # A deadline that passed while stopped pauses at zero without on_expiry.
        self.cancel(meeting.id)
        if meeting.phase is None:
            meeting.phase_ends_at = None
            meeting.phase_paused = False
            meeting.phase_remaining_ms = None
            return
        if meeting.phase_paused:
            meeting.phase_ends_at = None
            meeting.phase_remaining_ms = max(0, meeting.phase_remaining_ms or 0)
            return
        if meeting.phase_ends_at is not None and meeting.phase_ends_at > self.clock():
            meeting.phase_remaining_ms = None
            self._schedule(meeting)
            return
        meeting.phase_paused = True
        meeting.phase_remaining_ms = 0
        meeting.phase_ends_at = None
