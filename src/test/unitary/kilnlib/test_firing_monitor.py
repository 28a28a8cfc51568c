import pytest

from kilnlib.firing_monitor import (
    WATERMARK_ALMOST_DONE,
    WATERMARK_OVERDUE,
    FiringMonitor,
    ManualClock,
    Milestone,
    RecurringTask,
    detect_milestone,
    notify_milestone,
    poll_active_firings,
    sample_firing,
)
from kilnlib.firing_segments import FiringSchedule, HoldSegment, RampSegment
from kilnlib.firing_store import ActiveFiringRecord, MemoryFiringStore
from kilnlib.notifications import Embed, Message


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[Message] = []

    def send(self, message: Message) -> bool:
        self.sent.append(message)
        return self.result


class RaisingNotifier:
    def send(self, message: Message) -> bool:
        raise RuntimeError('network down')


def _schedule(estimate: int = 600) -> FiringSchedule:
    return FiringSchedule(
        name='Glaze',
        segments=(RampSegment(rate=120.0, target_temp=1225.0), HoldSegment(target_temp=1225.0, hold_minutes=0.0)),
        estimated_duration_minutes=estimate,
    )


def _titles(messages: list[Message]) -> list[str]:
    return [m.title if isinstance(m, Embed) else m for m in messages]


# ---------------------------------------------------------------------------
# Milestone detection
# ---------------------------------------------------------------------------

def test_coarse_jump_reports_only_highest_threshold() -> None:
    milestone = detect_milestone(0, 95.0, 50.0)
    assert milestone == Milestone('progress', 90)


def test_thresholds_already_notified_are_skipped() -> None:
    assert detect_milestone(50, 60.0, 200.0) is None
    assert detect_milestone(50, 76.0, 150.0) == Milestone('progress', 75)


def test_almost_done_needs_positive_remaining_time() -> None:
    assert detect_milestone(90, 97.0, 10.0) == Milestone('almost_done', WATERMARK_ALMOST_DONE)
    assert detect_milestone(90, 100.0, 0.0) is None
    assert detect_milestone(WATERMARK_ALMOST_DONE, 98.0, 5.0) is None


def test_almost_done_replaces_progress_in_the_same_sample() -> None:
    # A short firing can cross 90% and enter the last 15 minutes at once
    assert detect_milestone(0, 92.0, 8.0) == Milestone('almost_done', WATERMARK_ALMOST_DONE)


def test_overdue_after_grace_period() -> None:
    assert detect_milestone(WATERMARK_ALMOST_DONE, 105.0, -5.0) is None
    assert detect_milestone(WATERMARK_ALMOST_DONE, 105.0, -11.0) == Milestone('overdue', WATERMARK_OVERDUE)
    assert detect_milestone(WATERMARK_OVERDUE, 120.0, -60.0) is None


def test_custom_thresholds_and_windows() -> None:
    assert detect_milestone(0, 30.0, 400.0, (25,)) == Milestone('progress', 25)
    assert detect_milestone(25, 80.0, 25.0, (25,), near_completion_minutes=30.0) == Milestone(
        'almost_done', WATERMARK_ALMOST_DONE)
    assert detect_milestone(99, 110.0, -3.0, overdue_minutes=2.0) == Milestone('overdue', WATERMARK_OVERDUE)


def test_sample_firing() -> None:
    sample = sample_firing(_schedule(), start_time=1000.0, now=1000.0 + 300 * 60.0)

    assert sample.elapsed_minutes == pytest.approx(300.0)
    assert sample.progress_pct == pytest.approx(50.0)
    assert sample.remaining_minutes == pytest.approx(300.0)
    assert sample.current_temp == 625


def test_sample_of_zero_estimate_is_complete() -> None:
    sample = sample_firing(_schedule(estimate=0), start_time=0.0, now=60.0)
    assert sample.progress_pct == 100.0
    assert sample.display_progress_pct == 100.0


# ---------------------------------------------------------------------------
# Recurring task
# ---------------------------------------------------------------------------

def test_recurring_task_stops_when_callback_returns_false() -> None:
    clock = ManualClock()
    calls: list[float] = []

    def _cb() -> bool:
        calls.append(clock.now())
        return len(calls) < 3

    task = RecurringTask(60.0, _cb, clock)
    assert task.run() == 3
    assert calls == [0.0, 60.0, 120.0]
    assert task.cancelled


def test_recurring_task_max_ticks_and_cancel() -> None:
    clock = ManualClock()
    task = RecurringTask(1.0, lambda: None, clock)

    assert task.run(max_ticks=4) == 4
    assert clock.now() == 4.0
    task.cancel()
    assert task.run(max_ticks=4) == 0


def test_recurring_task_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        RecurringTask(0.0, lambda: None)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def test_monitor_lifecycle_notifies_each_milestone_once() -> None:
    clock = ManualClock()
    notifier = RecordingNotifier()
    monitor = FiringMonitor(notifier=notifier, clock=clock)
    monitor.start(_schedule())

    clock.advance(240 * 60.0)  # 40%
    assert monitor.tick() is None
    clock.advance(330 * 60.0)  # 95%
    assert monitor.tick() == Milestone('progress', 90)
    assert monitor.tick() is None
    clock.advance(20 * 60.0)  # 10 min left
    assert monitor.tick() == Milestone('almost_done', WATERMARK_ALMOST_DONE)
    clock.advance(25 * 60.0)  # 15 min over
    assert monitor.tick() == Milestone('overdue', WATERMARK_OVERDUE)
    clock.advance(60 * 60.0)
    assert monitor.tick() is None

    titles = _titles(notifier.sent)
    assert len(titles) == 4
    assert titles[0].startswith('Firing started')
    assert titles[1].startswith('Firing progress 90%')
    assert titles[3].startswith('Firing overdue')
    assert monitor.watermark == WATERMARK_OVERDUE


def test_watermark_never_decreases() -> None:
    clock = ManualClock()
    monitor = FiringMonitor(clock=clock)
    monitor.start(_schedule())
    seen = []
    for _ in range(80):
        clock.advance(10 * 60.0)
        monitor.tick()
        seen.append(monitor.watermark)
    assert seen == sorted(seen)


def test_complete_builds_log_and_stops_sampling() -> None:
    clock = ManualClock(start=1_700_000_000.0)
    notifier = RecordingNotifier()
    monitor = FiringMonitor(notifier=notifier, clock=clock)
    schedule = _schedule()
    monitor.start(schedule)
    clock.advance(612.4 * 60.0)

    log = monitor.complete('perfect', 'nice glaze')

    assert monitor.state == 'completed'
    assert log.actual_duration == 612
    assert log.predicted_duration == 600
    assert log.theoretical_duration == schedule.theoretical_duration_minutes
    assert log.notes == 'nice glaze'
    assert monitor.tick() is None
    with pytest.raises(RuntimeError):
        monitor.sample()
    assert _titles(notifier.sent)[-1].startswith('Firing complete')


def test_cancel_optionally_records_error_log() -> None:
    clock = ManualClock()
    monitor = FiringMonitor(clock=clock)
    monitor.start(_schedule())
    clock.advance(30 * 60.0)

    log = monitor.cancel(record_log=True)

    assert monitor.state == 'cancelled'
    assert log is not None
    assert log.outcome == 'error'
    assert log.actual_duration == 30

    monitor.start(_schedule())
    assert monitor.cancel() is None


def test_lifecycle_misuse_raises() -> None:
    monitor = FiringMonitor(clock=ManualClock())
    with pytest.raises(RuntimeError):
        monitor.complete('perfect')
    with pytest.raises(RuntimeError):
        monitor.cancel()

    monitor.start(_schedule())
    with pytest.raises(RuntimeError):
        monitor.start(_schedule())


def test_notifier_failure_does_not_block_transitions() -> None:
    clock = ManualClock()
    monitor = FiringMonitor(notifier=RaisingNotifier(), clock=clock)
    monitor.start(_schedule())
    clock.advance(560 * 60.0)

    assert monitor.tick() is None
    assert monitor.watermark == 0
    monitor.complete('perfect')
    assert monitor.state == 'completed'
    assert len(monitor.events) == 3


def test_run_samples_until_the_firing_ends() -> None:
    clock = ManualClock()
    monitor = FiringMonitor(clock=clock)
    monitor.start(_schedule(estimate=60))

    ticks = monitor.run(interval_s=60.0, max_ticks=90)

    assert ticks == 90
    assert monitor.watermark == WATERMARK_OVERDUE
    # start, 50%, almost done (which absorbs 75%), overdue
    assert len(monitor.events) == 4


# ---------------------------------------------------------------------------
# Shared watermark
# ---------------------------------------------------------------------------

def _active_store(schedule: FiringSchedule, start_time: float = 0.0) -> MemoryFiringStore:
    store = MemoryFiringStore()
    store.set_active_firing(ActiveFiringRecord(id=schedule.id, schedule=schedule, start_time=start_time))
    return store


def test_notify_milestone_claims_the_watermark_once() -> None:
    schedule = _schedule()
    store = _active_store(schedule)
    record = store.get_active_firing(schedule.id)
    assert record is not None
    notifier = RecordingNotifier()
    now = 570 * 60.0

    first = notify_milestone(record, store, notifier, now)
    second = notify_milestone(record, store, notifier, now)

    assert first == Milestone('progress', 90)
    assert second is None
    assert len(notifier.sent) == 1
    stored = store.get_active_firing(schedule.id)
    assert stored is not None and stored.watermark == 90


def test_notify_milestone_releases_claim_when_notifier_raises() -> None:
    schedule = _schedule()
    store = _active_store(schedule)
    record = store.get_active_firing(schedule.id)
    assert record is not None

    assert notify_milestone(record, store, RaisingNotifier(), 570 * 60.0) is None
    stored = store.get_active_firing(schedule.id)
    assert stored is not None and stored.watermark == 0


def test_monitor_releases_claim_when_notifier_raises() -> None:
    clock = ManualClock()
    schedule = _schedule()
    store = _active_store(schedule)
    monitor = FiringMonitor(notifier=RaisingNotifier(), store=store, clock=clock)
    monitor.start(schedule, start_time=0.0)
    clock.advance(570 * 60.0)

    assert monitor.tick() is None
    assert monitor.watermark == 0
    stored = store.get_active_firing(schedule.id)
    assert stored is not None and stored.watermark == 0

    monitor.notifier = RecordingNotifier()
    assert monitor.tick() == Milestone('progress', 90)
    stored = store.get_active_firing(schedule.id)
    assert stored is not None and stored.watermark == 90


def test_undelivered_message_still_advances_watermark() -> None:
    schedule = _schedule()
    store = _active_store(schedule)
    record = store.get_active_firing(schedule.id)
    assert record is not None

    assert notify_milestone(record, store, RecordingNotifier(result=False), 570 * 60.0) is not None
    stored = store.get_active_firing(schedule.id)
    assert stored is not None and stored.watermark == 90


def test_monitor_and_remote_poller_share_the_watermark() -> None:
    clock = ManualClock()
    schedule = _schedule()
    store = _active_store(schedule)
    local = RecordingNotifier()
    remote = RecordingNotifier()
    monitor = FiringMonitor(notifier=local, store=store, clock=clock)
    monitor.start(schedule, start_time=0.0)
    clock.advance(570 * 60.0)

    fired = poll_active_firings(store, remote, clock.now())
    assert fired == [(schedule.id, Milestone('progress', 90))]

    assert monitor.tick() is None
    assert monitor.watermark == 90
    assert len(remote.sent) == 1
    assert len(local.sent) == 1  # start message only


def test_poll_active_firings_visits_every_record() -> None:
    early, late = _schedule(), _schedule(estimate=100)
    store = MemoryFiringStore()
    store.set_active_firing(ActiveFiringRecord(id=early.id, schedule=early, start_time=0.0))
    store.set_active_firing(ActiveFiringRecord(id=late.id, schedule=late, start_time=0.0))

    fired = dict(poll_active_firings(store, None, 55 * 60.0))

    assert early.id not in fired
    assert fired[late.id] == Milestone('progress', 50)
    assert poll_active_firings(store, None, 55 * 60.0) == []
