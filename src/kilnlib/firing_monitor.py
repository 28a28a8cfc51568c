#
# ABOUT
# Live monitoring of an active firing: progress sampling, milestone
# detection with a notified watermark, and the idle/running/completed/
# cancelled lifecycle.

# LICENSE
# This program or module is free software: you can redistribute it and/or
# modify it under the terms of the GNU General Public License as published
# by the Free Software Foundation, either version 2 of the License, or
# version 3 of the License, or (at your option) any later version. It is
# provided for educational purposes and is distributed in the hope that
# it will be useful, but WITHOUT ANY WARRANTY; without even the implied
# warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See
# the GNU General Public License for more details.

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Final, Literal, Protocol, TYPE_CHECKING

from kilnlib.firing_segments import round_half_up, temperature_at_elapsed, theoretical_duration
from kilnlib.ktypes import FiringLog, Outcome
from kilnlib.notifications import (
    Message,
    MilestoneKind,
    build_cancel_message,
    build_completion_message,
    build_milestone_message,
    build_start_message,
)

if TYPE_CHECKING:
    from kilnlib.firing_segments import FiringSchedule
    from kilnlib.firing_store import ActiveFiringRecord, FiringStore
    from kilnlib.notifications import Notifier


_log: Final[logging.Logger] = logging.getLogger(__name__)

FiringState = Literal['idle', 'running', 'completed', 'cancelled']

DEFAULT_THRESHOLDS: Final[tuple[int, ...]] = (50, 75, 90)
NEAR_COMPLETION_MINUTES: Final[float] = 15.0
OVERDUE_GRACE_MINUTES: Final[float] = 10.0

WATERMARK_ALMOST_DONE: Final[int] = 99
WATERMARK_OVERDUE: Final[int] = 100
_ALMOST_DONE_GUARD: Final[int] = 95

LOCAL_INTERVAL_S: Final[float] = 1.0
REMOTE_INTERVAL_S: Final[float] = 300.0


# ---------------------------------------------------------------------------
# Clocks and the recurring sampler
# ---------------------------------------------------------------------------

class Clock(Protocol):
    def now(self) -> float: ...
    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock in epoch seconds."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class ManualClock:
    """Synthetic clock; ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)


class RecurringTask:
    """Run *callback* every *interval_s* seconds until cancelled.

    The loop also ends as soon as the callback returns ``False``.
    """

    def __init__(self, interval_s: float, callback: Callable[[], object], clock: Clock | None = None) -> None:
        if interval_s <= 0:
            raise ValueError('interval_s must be > 0')
        self.interval_s = float(interval_s)
        self.callback = callback
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.ticks = 0
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def tick(self) -> bool:
        """Run the callback once; returns whether the task should continue."""
        if self._cancelled:
            return False
        self.ticks += 1
        if self.callback() is False:
            self._cancelled = True
        return not self._cancelled

    def run(self, max_ticks: int | None = None) -> int:
        """Tick until cancelled (or *max_ticks* reached); returns ticks run."""
        first = self.ticks
        while max_ticks is None or self.ticks - first < max_ticks:
            if not self.tick():
                break
            self.clock.sleep(self.interval_s)
        return self.ticks - first


# ---------------------------------------------------------------------------
# Sampling and milestones
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FiringSample:
    elapsed_minutes: float
    progress_pct: float
    current_temp: int
    remaining_minutes: float

    @property
    def display_progress_pct(self) -> float:
        return min(max(self.progress_pct, 0.0), 100.0)


@dataclass(frozen=True)
class Milestone:
    """A notification-worthy event; ``level`` becomes the new watermark."""

    kind: MilestoneKind
    level: int


def sample_firing(schedule: FiringSchedule, start_time: float, now: float) -> FiringSample:
    """Progress of *schedule* started at *start_time* (epoch seconds) at *now*."""
    elapsed_minutes = (now - start_time) / 60.0
    estimate = float(schedule.estimated_duration_minutes)
    progress = elapsed_minutes / estimate * 100.0 if estimate > 0 else 100.0
    return FiringSample(
        elapsed_minutes=elapsed_minutes,
        progress_pct=progress,
        current_temp=temperature_at_elapsed(schedule.segments, elapsed_minutes),
        remaining_minutes=estimate - elapsed_minutes,
    )


def detect_milestone(
    watermark: int,
    progress_pct: float,
    remaining_minutes: float,
    thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
    *,
    near_completion_minutes: float = NEAR_COMPLETION_MINUTES,
    overdue_minutes: float = OVERDUE_GRACE_MINUTES,
) -> Milestone | None:
    """Return the single milestone to notify for this sample, if any.

    Conditions are evaluated in order (progress thresholds, near
    completion, overrun); each one that fires raises the watermark and
    replaces the previous candidate, so only the last is reported.
    """
    level = watermark
    found: Milestone | None = None
    for threshold in sorted(thresholds):
        if progress_pct >= threshold and level < threshold:
            level = threshold
            found = Milestone('progress', threshold)
    if 0 < remaining_minutes <= near_completion_minutes and level < _ALMOST_DONE_GUARD:
        level = WATERMARK_ALMOST_DONE
        found = Milestone('almost_done', WATERMARK_ALMOST_DONE)
    if remaining_minutes < -overdue_minutes and level < WATERMARK_OVERDUE:
        found = Milestone('overdue', WATERMARK_OVERDUE)
    return found


def _deliver(notifier: Notifier | None, message: Message) -> bool:
    if notifier is None:
        return True
    return notifier.send(message)


def notify_milestone(
    record: ActiveFiringRecord,
    store: FiringStore,
    notifier: Notifier | None,
    now: float,
    thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
    *,
    website_url: str = '',
    near_completion_minutes: float = NEAR_COMPLETION_MINUTES,
    overdue_minutes: float = OVERDUE_GRACE_MINUTES,
) -> Milestone | None:
    """Evaluate one persisted firing and notify at most one milestone.

    The persisted watermark is claimed with compare-and-set before the
    message goes out, so concurrent pollers never notify twice. If the
    notification attempt cannot be made the claim is released again.
    """
    sample = sample_firing(record.schedule, record.start_time, now)
    milestone = detect_milestone(
        record.watermark, sample.progress_pct, sample.remaining_minutes, thresholds,
        near_completion_minutes=near_completion_minutes, overdue_minutes=overdue_minutes,
    )
    if milestone is None:
        return None

    claim = store.update_watermark(record.id, milestone.level, expected=record.watermark)
    if not claim.ok:
        _log.warning('Milestone %s for %s skipped: %s', milestone.kind, record.id, claim.message)
        return None

    message = build_milestone_message(record.schedule, sample, milestone, website_url=website_url)
    try:
        delivered = _deliver(notifier, message)
    except Exception:  # pylint: disable=broad-except
        _log.exception('Notification attempt failed for %s; releasing watermark', record.id)
        store.update_watermark(record.id, record.watermark, expected=milestone.level)
        return None
    if not delivered:
        _log.warning('Milestone %s for %s was not delivered to every webhook', milestone.kind, record.id)
    return milestone


def poll_active_firings(
    store: FiringStore,
    notifier: Notifier | None,
    now: float,
    thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
    *,
    website_url: str = '',
    near_completion_minutes: float = NEAR_COMPLETION_MINUTES,
    overdue_minutes: float = OVERDUE_GRACE_MINUTES,
) -> list[tuple[str, Milestone]]:
    """One pass of the scheduled remote job over every active firing."""
    fired: list[tuple[str, Milestone]] = []
    for record in store.list_active_firings():
        milestone = notify_milestone(
            record, store, notifier, now, thresholds,
            website_url=website_url,
            near_completion_minutes=near_completion_minutes,
            overdue_minutes=overdue_minutes,
        )
        if milestone is not None:
            fired.append((record.id, milestone))
    _log.debug('Polled active firings at %.0f: %d milestone(s)', now, len(fired))
    return fired


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class FiringMonitor:
    """Tracks one firing from start to completion or cancellation.

    ``idle -> running -> completed | cancelled``; terminal states take no
    further samples. Notification failures never block a transition.
    """

    def __init__(
        self,
        *,
        notifier: Notifier | None = None,
        store: FiringStore | None = None,
        clock: Clock | None = None,
        thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
        website_url: str = '',
        near_completion_minutes: float = NEAR_COMPLETION_MINUTES,
        overdue_minutes: float = OVERDUE_GRACE_MINUTES,
    ) -> None:
        self.notifier = notifier
        self.store = store
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.thresholds: tuple[int, ...] = tuple(sorted(thresholds))
        self.website_url = website_url
        self.near_completion_minutes = near_completion_minutes
        self.overdue_minutes = overdue_minutes
        self.state: FiringState = 'idle'
        self.schedule: FiringSchedule | None = None
        self.start_time: float | None = None
        self.watermark = 0
        self.last_sample: FiringSample | None = None
        self.events: list[Message] = []
        self._task: RecurringTask | None = None

    @property
    def firing_id(self) -> str | None:
        return self.schedule.id if self.schedule is not None else None

    def _emit(self, message: Message) -> bool:
        self.events.append(message)
        try:
            return _deliver(self.notifier, message)
        except Exception:  # pylint: disable=broad-except
            _log.exception('Notifier raised while sending %r', getattr(message, 'title', message))
            return False

    def _require_running(self) -> tuple[FiringSchedule, float]:
        if self.state != 'running' or self.schedule is None or self.start_time is None:
            raise RuntimeError(f'No firing is running (state: {self.state})')
        return self.schedule, self.start_time

    # -- transitions --------------------------------------------------------

    def start(self, schedule: FiringSchedule, start_time: float | None = None) -> None:
        if self.state == 'running':
            raise RuntimeError('A firing is already running')
        self.schedule = schedule
        self.start_time = self.clock.now() if start_time is None else float(start_time)
        self.watermark = 0
        self.last_sample = None
        self.state = 'running'
        _log.info('Firing %s started (%s, %d min estimated)',
                  schedule.id, schedule.name, schedule.estimated_duration_minutes)
        self._emit(build_start_message(schedule, self.start_time, website_url=self.website_url))

    def sample(self) -> FiringSample:
        schedule, start_time = self._require_running()
        self.last_sample = sample_firing(schedule, start_time, self.clock.now())
        return self.last_sample

    def tick(self) -> Milestone | None:
        """Take one sample and notify a milestone if one was reached."""
        if self.state != 'running':
            return None
        schedule, start_time = self._require_running()
        sample = self.sample()
        _log.debug('Firing %s: %.1f%%, ~%dC, %.1f min left',
                   schedule.id, sample.progress_pct, sample.current_temp, sample.remaining_minutes)

        milestone = detect_milestone(
            self.watermark, sample.progress_pct, sample.remaining_minutes, self.thresholds,
            near_completion_minutes=self.near_completion_minutes,
            overdue_minutes=self.overdue_minutes,
        )
        if milestone is None:
            return None

        previous = self.watermark
        claimed_from: int | None = None
        if self.store is not None:
            record = self.store.get_active_firing(schedule.id)
            if record is not None:
                if record.watermark >= milestone.level:
                    # Another poller already notified this one
                    self.watermark = record.watermark
                    return None
                claim = self.store.update_watermark(schedule.id, milestone.level, expected=record.watermark)
                if not claim.ok:
                    _log.warning('Watermark claim for %s failed: %s', schedule.id, claim.message)
                    return None
                claimed_from = record.watermark

        self.watermark = milestone.level
        message = build_milestone_message(schedule, sample, milestone, website_url=self.website_url)
        self.events.append(message)
        try:
            delivered = _deliver(self.notifier, message)
        except Exception:  # pylint: disable=broad-except
            _log.exception('Notification attempt failed for %s; releasing watermark', schedule.id)
            self.watermark = previous
            if self.store is not None and claimed_from is not None:
                self.store.update_watermark(schedule.id, claimed_from, expected=milestone.level)
            return None
        if not delivered:
            _log.warning('Milestone %s for %s was not delivered to every webhook', milestone.kind, schedule.id)
        _log.info('Firing %s milestone %s (%d)', schedule.id, milestone.kind, milestone.level)
        return milestone

    def complete(self, outcome: Outcome, notes: str = '') -> FiringLog:
        """Finish the firing and return its log entry."""
        schedule, start_time = self._require_running()
        log = self._build_log(schedule, start_time, outcome, notes)
        self._stop('completed')
        self._emit(build_completion_message(schedule, log))
        return log

    def cancel(self, *, record_log: bool = False, notes: str = 'Cancelled') -> FiringLog | None:
        """Abort the firing; optionally return an ``error`` log entry."""
        schedule, start_time = self._require_running()
        elapsed_minutes = (self.clock.now() - start_time) / 60.0
        log = self._build_log(schedule, start_time, 'error', notes) if record_log else None
        self._stop('cancelled')
        self._emit(build_cancel_message(schedule, elapsed_minutes))
        return log

    def _stop(self, state: FiringState) -> None:
        self.state = state
        if self._task is not None:
            self._task.cancel()
        _log.info('Firing %s %s', self.firing_id, state)

    def _build_log(self, schedule: FiringSchedule, start_time: float, outcome: Outcome, notes: str) -> FiringLog:
        now = self.clock.now()
        return FiringLog(
            schedule_name=schedule.name,
            date=datetime.fromtimestamp(now, timezone.utc).isoformat(),
            predicted_duration=schedule.estimated_duration_minutes,
            theoretical_duration=theoretical_duration(schedule.segments),
            actual_duration=round_half_up((now - start_time) / 60.0),
            outcome=outcome,
            clay_weight_kg=schedule.clay_weight_kg,
            sample_type=schedule.sample_type,
            firing_stage=schedule.firing_stage,
            notes=notes,
        )

    # -- sampling loop --------------------------------------------------------

    def run(self, interval_s: float = LOCAL_INTERVAL_S, max_ticks: int | None = None) -> int:
        """Sample every *interval_s* seconds until the firing leaves ``running``."""
        self._require_running()

        def _step() -> bool:
            self.tick()
            return self.state == 'running'

        self._task = RecurringTask(interval_s, _step, self.clock)
        try:
            return self._task.run(max_ticks)
        finally:
            self._task = None
