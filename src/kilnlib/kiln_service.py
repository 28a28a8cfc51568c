#
# ABOUT
# Studio-level facade: loads history, keeps the calibration current,
# plans calibrated schedules and drives the active firing.

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
from typing import Final, TYPE_CHECKING

from kilnlib.calibration import calculate_calibration, resolve_calibration
from kilnlib.firing_monitor import FiringMonitor, SystemClock
from kilnlib.firing_store import ActiveFiringRecord, StoreResult
from kilnlib.kiln_settings import KilnSettings
from kilnlib.ktypes import CalibrationResult, FiringLog, FiringStage, Outcome, SampleType
from kilnlib.schedule_generator import GeneratedSchedule, generate_schedule

if TYPE_CHECKING:
    from kilnlib.firing_monitor import Clock
    from kilnlib.firing_segments import FiringSchedule
    from kilnlib.firing_store import FiringStore
    from kilnlib.notifications import Notifier


_log: Final[logging.Logger] = logging.getLogger(__name__)


class KilnService:
    """Holds the in-memory view of one studio's data.

    Writes go to the store first-class: every persistence call returns a
    :class:`StoreResult` and the in-memory state is reconciled here.
    """

    def __init__(
        self,
        store: FiringStore,
        notifier: Notifier | None = None,
        settings: KilnSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings if settings is not None else KilnSettings()
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.logs: list[FiringLog] = []
        self.calibration = CalibrationResult(factor=1.0, advice='')
        self.monitor: FiringMonitor | None = None

    # -- history and calibration ----------------------------------------------

    def refresh(self) -> CalibrationResult:
        """Reload logs and resolve the calibration against the stored factor."""
        self.logs = self.store.get_all_logs()
        self.calibration = resolve_calibration(self.store.get_calibration(), self.logs)
        _log.info('Loaded %d firing log(s); calibration factor %.3f', len(self.logs), self.calibration.factor)
        return self.calibration

    def add_log(self, log: FiringLog) -> StoreResult:
        """Append a log optimistically, rolling back if the store refuses it."""
        self.logs.append(log)
        result = self.store.append_log(log)
        if not result.ok:
            self.logs.remove(log)
            _log.warning('Firing log %s was not saved: %s', log.id, result.message)
        return result

    def recalibrate(self, *, save: bool = True) -> CalibrationResult:
        result = calculate_calibration(self.logs)
        self.calibration = result
        if save:
            saved = self.store.save_calibration(result)
            if not saved.ok:
                _log.warning('Calibration factor was not saved: %s', saved.message)
        return result

    def update_calibration(self, result: CalibrationResult) -> StoreResult:
        """Replace the active calibration, e.g. with a hand-tuned factor."""
        self.calibration = result
        return self.store.save_calibration(result)

    # -- planning ---------------------------------------------------------------

    def plan_schedule(
        self,
        sample_type: SampleType,
        firing_stage: FiringStage,
        clay_weight_kg: float,
        name: str | None = None,
    ) -> tuple[GeneratedSchedule, FiringSchedule | None]:
        """Generate a recommended schedule and its calibrated firing plan.

        The plan is ``None`` when the generator could not produce segments.
        """
        generated = generate_schedule(sample_type, firing_stage, clay_weight_kg)
        if generated.is_empty:
            return generated, None
        schedule = generated.to_schedule(
            name,
            clay_weight_kg=clay_weight_kg,
            calibration_factor=self.calibration.factor,
        )
        return generated, schedule

    # -- active firing -------------------------------------------------------

    def _new_monitor(self) -> FiringMonitor:
        return FiringMonitor(
            notifier=self.notifier,
            store=self.store,
            clock=self.clock,
            thresholds=self.settings.milestone_thresholds,
            website_url=self.settings.website_url,
            near_completion_minutes=self.settings.near_completion_minutes,
            overdue_minutes=self.settings.overdue_minutes,
        )

    def start_firing(self, schedule: FiringSchedule, start_time: float | None = None) -> FiringMonitor:
        if self.monitor is not None and self.monitor.state == 'running':
            raise RuntimeError('A firing is already running')
        monitor = self._new_monitor()
        started = self.clock.now() if start_time is None else float(start_time)
        record = ActiveFiringRecord(id=schedule.id, schedule=schedule, start_time=started)
        saved = self.store.set_active_firing(record)
        if not saved.ok:
            _log.warning('Active firing %s was not persisted: %s', schedule.id, saved.message)
        monitor.start(schedule, started)
        self.monitor = monitor
        return monitor

    def resume_firing(self, firing_id: str) -> FiringMonitor | None:
        """Rebuild the monitor for a persisted active firing."""
        record = self.store.get_active_firing(firing_id)
        if record is None:
            return None
        monitor = self._new_monitor()
        monitor.schedule = record.schedule
        monitor.start_time = record.start_time
        monitor.watermark = record.watermark
        monitor.state = 'running'
        self.monitor = monitor
        return monitor

    def _running_monitor(self) -> FiringMonitor:
        if self.monitor is None or self.monitor.state != 'running':
            raise RuntimeError('No firing is running')
        return self.monitor

    def finish_firing(self, outcome: Outcome, notes: str = '') -> FiringLog:
        monitor = self._running_monitor()
        firing_id = monitor.firing_id
        log = monitor.complete(outcome, notes)
        if firing_id is not None:
            self.store.clear_active_firing(firing_id)
        self.add_log(log)
        return log

    def cancel_firing(self) -> FiringLog | None:
        monitor = self._running_monitor()
        firing_id = monitor.firing_id
        log = monitor.cancel(record_log=self.settings.log_cancelled_firings)
        if firing_id is not None:
            self.store.clear_active_firing(firing_id)
        if log is not None:
            self.add_log(log)
        return log
