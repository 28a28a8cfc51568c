#
# ABOUT
# Persistence for firing logs, calibration factors, schedule templates,
# webhook lists and active-firing records.

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

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final, Protocol

from kilnlib.firing_segments import FiringSchedule
from kilnlib.ktypes import CalibrationResult, FiringLog
from kilnlib.notifications import WebhookConfig


_log: Final[logging.Logger] = logging.getLogger(__name__)

_FORMAT: Final[str] = 'kiln-planner-store-v1'


@dataclass(frozen=True)
class StoreResult:
    """Success flag returned by every store write."""

    ok: bool
    message: str = ''

    def __bool__(self) -> bool:
        return self.ok


OK: Final[StoreResult] = StoreResult(True)


@dataclass(frozen=True)
class ActiveFiringRecord:
    """Persisted state of a running firing.

    ``watermark`` is the highest milestone already notified.
    """

    id: str
    schedule: FiringSchedule
    start_time: float
    watermark: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'schedule': self.schedule.to_dict(),
            'start_time': self.start_time,
            'watermark': self.watermark,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ActiveFiringRecord:
        schedule = FiringSchedule.from_dict(data['schedule'])
        return cls(
            id=str(data.get('id') or schedule.id),
            schedule=schedule,
            start_time=float(data.get('start_time', data.get('startTime', 0.0))),
            watermark=int(data.get('watermark', 0)),
        )


@dataclass(frozen=True)
class CalibrationEntry:
    saved_at: float
    result: CalibrationResult


class FiringStore(Protocol):
    def get_all_logs(self) -> list[FiringLog]: ...
    def append_log(self, log: FiringLog) -> StoreResult: ...
    def get_calibration(self) -> CalibrationResult | None: ...
    def save_calibration(self, result: CalibrationResult) -> StoreResult: ...
    def calibration_history(self) -> list[CalibrationEntry]: ...
    def get_active_firing(self, firing_id: str) -> ActiveFiringRecord | None: ...
    def list_active_firings(self) -> list[ActiveFiringRecord]: ...
    def set_active_firing(self, record: ActiveFiringRecord) -> StoreResult: ...
    def clear_active_firing(self, firing_id: str) -> StoreResult: ...
    def update_watermark(self, firing_id: str, value: int, *, expected: int | None = None) -> StoreResult: ...
    def get_templates(self) -> dict[str, FiringSchedule]: ...
    def save_template(self, name: str, schedule: FiringSchedule) -> StoreResult: ...
    def get_webhooks(self) -> list[WebhookConfig]: ...
    def save_webhooks(self, webhooks: list[WebhookConfig]) -> StoreResult: ...
    def get_setting(self, key: str, default: str = '') -> str: ...
    def save_setting(self, key: str, value: str) -> StoreResult: ...


class MemoryFiringStore:
    """In-process store; every read-modify-write runs under one lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._logs: list[FiringLog] = []
        self._calibrations: list[CalibrationEntry] = []
        self._active: dict[str, ActiveFiringRecord] = {}
        self._templates: dict[str, FiringSchedule] = {}
        self._webhooks: list[WebhookConfig] = []
        self._settings: dict[str, str] = {}

    # -- hooks ------------------------------------------------------------

    def _commit(self) -> StoreResult:
        return OK

    def _refresh(self) -> None:
        """Re-read shared state before a conditional write."""

    def _mutate(self, change: Callable[[], object]) -> StoreResult:
        with self._lock:
            self._refresh()
            snapshot = self._snapshot()
            change()
            result = self._commit()
            if not result.ok:
                self._restore(snapshot)
            return result

    def _snapshot(self) -> tuple:
        return (list(self._logs), list(self._calibrations), dict(self._active),
                dict(self._templates), list(self._webhooks), dict(self._settings))

    def _restore(self, snapshot: tuple) -> None:
        (self._logs, self._calibrations, self._active,
         self._templates, self._webhooks, self._settings) = snapshot

    # -- logs -------------------------------------------------------------

    def get_all_logs(self) -> list[FiringLog]:
        with self._lock:
            return list(self._logs)

    def append_log(self, log: FiringLog) -> StoreResult:
        return self._mutate(lambda: self._logs.append(log))

    # -- calibration --------------------------------------------------------

    def get_calibration(self) -> CalibrationResult | None:
        with self._lock:
            return self._calibrations[-1].result if self._calibrations else None

    def save_calibration(self, result: CalibrationResult) -> StoreResult:
        entry = CalibrationEntry(saved_at=time.time(), result=result)
        return self._mutate(lambda: self._calibrations.append(entry))

    def calibration_history(self) -> list[CalibrationEntry]:
        with self._lock:
            return list(self._calibrations)

    # -- active firings ------------------------------------------------------

    def get_active_firing(self, firing_id: str) -> ActiveFiringRecord | None:
        with self._lock:
            return self._active.get(firing_id)

    def list_active_firings(self) -> list[ActiveFiringRecord]:
        with self._lock:
            return list(self._active.values())

    def set_active_firing(self, record: ActiveFiringRecord) -> StoreResult:
        return self._mutate(lambda: self._active.__setitem__(record.id, record))

    def clear_active_firing(self, firing_id: str) -> StoreResult:
        return self._mutate(lambda: self._active.pop(firing_id, None))

    def update_watermark(self, firing_id: str, value: int, *, expected: int | None = None) -> StoreResult:
        """Set the notified watermark, optionally only if it still equals *expected*."""
        with self._lock:
            self._refresh()
            record = self._active.get(firing_id)
            if record is None:
                return StoreResult(False, f'No active firing {firing_id}')
            if expected is not None and record.watermark != expected:
                return StoreResult(False, f'Watermark is {record.watermark}, expected {expected}')
            updated = replace(record, watermark=int(value))
            return self._mutate(lambda: self._active.__setitem__(firing_id, updated))

    # -- templates, webhooks, settings ---------------------------------------

    def get_templates(self) -> dict[str, FiringSchedule]:
        with self._lock:
            return dict(self._templates)

    def save_template(self, name: str, schedule: FiringSchedule) -> StoreResult:
        return self._mutate(lambda: self._templates.__setitem__(name, schedule))

    def get_webhooks(self) -> list[WebhookConfig]:
        with self._lock:
            return list(self._webhooks)

    def save_webhooks(self, webhooks: list[WebhookConfig]) -> StoreResult:
        hooks = list(webhooks)
        return self._mutate(lambda: setattr(self, '_webhooks', hooks))

    def get_setting(self, key: str, default: str = '') -> str:
        with self._lock:
            return self._settings.get(key, default)

    def save_setting(self, key: str, value: str) -> StoreResult:
        return self._mutate(lambda: self._settings.__setitem__(key, value))


class JsonFiringStore(MemoryFiringStore):
    """Store persisted to a single JSON document.

    Every successful write replaces the file atomically; a failed write
    leaves both the file and the in-memory state unchanged.
    """

    def __init__(self, filepath: str | Path) -> None:
        super().__init__()
        self.filepath = Path(filepath)
        if self.filepath.exists():
            self._load()

    def _refresh(self) -> None:
        if not self.filepath.exists():
            return
        try:
            self._load()
        except (OSError, ValueError) as exc:
            _log.warning('Could not re-read store %s: %s', self.filepath, exc)

    def _load(self) -> None:
        with open(self.filepath, encoding='utf-8') as fh:
            data = json.load(fh)
        logs: list[FiringLog] = []
        for row in data.get('logs', []):
            try:
                logs.append(FiringLog.from_dict(row))
            except (KeyError, ValueError) as exc:
                _log.warning('Skipping unreadable firing log %r: %s', row.get('id'), exc)
        self._logs = logs
        self._calibrations = [
            CalibrationEntry(float(c.get('saved_at', 0.0)), CalibrationResult.from_dict(c))
            for c in data.get('calibrations', [])
        ]
        active: dict[str, ActiveFiringRecord] = {}
        for row in data.get('active_firings', []):
            try:
                record = ActiveFiringRecord.from_dict(row)
            except (KeyError, TypeError, ValueError) as exc:
                _log.warning('Skipping unreadable active firing %r: %s', row.get('id'), exc)
                continue
            active[record.id] = record
        templates: dict[str, FiringSchedule] = {}
        for name, row in data.get('templates', {}).items():
            try:
                templates[name] = FiringSchedule.from_dict(row)
            except (KeyError, TypeError, ValueError) as exc:
                _log.warning('Skipping unreadable template %r: %s', name, exc)
        webhooks: list[WebhookConfig] = []
        for row in data.get('webhooks', []):
            try:
                webhooks.append(WebhookConfig.from_dict(row))
            except (KeyError, TypeError, ValueError) as exc:
                _log.warning('Skipping unreadable webhook %r: %s', row.get('name'), exc)
        self._active = active
        self._templates = templates
        self._webhooks = webhooks
        self._settings = {str(k): str(v) for k, v in data.get('settings', {}).items()}
        _log.debug('Loaded store %s: %d log(s)', self.filepath, len(self._logs))

    def _to_dict(self) -> dict[str, object]:
        return {
            'format': _FORMAT,
            'logs': [log.to_dict() for log in self._logs],
            'calibrations': [
                {**entry.result.to_dict(), 'saved_at': entry.saved_at} for entry in self._calibrations
            ],
            'active_firings': [r.to_dict() for r in self._active.values()],
            'templates': {name: s.to_dict() for name, s in self._templates.items()},
            'webhooks': [w.to_dict() for w in self._webhooks],
            'settings': dict(self._settings),
        }

    def _commit(self) -> StoreResult:
        try:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.filepath.parent, suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                    json.dump(self._to_dict(), fh, indent=2, ensure_ascii=False)
                    fh.write('\n')
                os.replace(tmp_path, self.filepath)
            except BaseException:
                os.unlink(tmp_path)
                raise
        except OSError as exc:
            _log.exception('Failed to save store %s', self.filepath)
            return StoreResult(False, str(exc))
        return OK
