#
# ABOUT
# Shared record types for firing logs and calibration results.

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

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Final, Literal, cast, get_args

Outcome = Literal['perfect', 'underfired', 'overfired', 'error', 'failure']
SampleType = Literal['standard', 'thick', 'thin', 'large_flat', 'sculpture']
FiringStage = Literal['bisque', 'glaze', 'uncertain']
BaselineMethod = Literal['theoretical', 'historical']

OUTCOMES: Final[tuple[Outcome, ...]] = get_args(Outcome)
SAMPLE_TYPES: Final[tuple[SampleType, ...]] = get_args(SampleType)
FIRING_STAGES: Final[tuple[FiringStage, ...]] = get_args(FiringStage)

# Outcomes that describe aborted or anomalous runs
EXCLUDED_OUTCOMES: Final[frozenset[Outcome]] = frozenset({'error', 'failure'})

OUTCOME_LABELS: Final[dict[Outcome, str]] = {
    'perfect': 'Perfect',
    'underfired': 'Underfired',
    'overfired': 'Overfired',
    'error': 'Error',
    'failure': 'Failure',
}

SAMPLE_TYPE_LABELS: Final[dict[SampleType, str]] = {
    'standard': 'Standard',
    'thick': 'Thick-walled',
    'thin': 'Thin-walled',
    'large_flat': 'Large plate / slab',
    'sculpture': 'Complex sculpture',
}

STAGE_LABELS: Final[dict[FiringStage, str]] = {
    'bisque': 'Bisque',
    'glaze': 'Glaze',
    'uncertain': 'Undecided',
}


def parse_outcome(value: object) -> Outcome:
    text = str(value).strip().lower()
    if text not in OUTCOMES:
        raise ValueError(f'Unknown firing outcome: {value!r}')
    return cast(Outcome, text)


def parse_sample_type(value: object) -> SampleType:
    text = str(value).strip().lower()
    if text not in SAMPLE_TYPES:
        raise ValueError(f'Unknown sample type: {value!r}')
    return cast(SampleType, text)


def parse_firing_stage(value: object) -> FiringStage:
    text = str(value).strip().lower()
    if text not in FIRING_STAGES:
        raise ValueError(f'Unknown firing stage: {value!r}')
    return cast(FiringStage, text)


def _optional_float(value: object) -> float | None:
    if value is None or value == '':
        return None
    try:
        return float(cast(float, value))
    except (TypeError, ValueError):
        return None


def _pick(data: dict, *keys: str, default: object = None) -> object:
    for key in keys:
        if key in data:
            return data[key]
    return default


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    stamp = datetime.fromisoformat(text)
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


@dataclass(frozen=True)
class FiringLog:
    """One historical firing record.

    ``predicted_duration`` is the estimate shown before the firing (it
    already contains the calibration factor of that time).
    ``theoretical_duration`` is the factor-free estimate and is missing on
    records written before it was tracked.
    """

    schedule_name: str
    date: str
    predicted_duration: float
    actual_duration: float
    outcome: Outcome
    theoretical_duration: float | None = None
    clay_weight_kg: float | None = None
    sample_type: SampleType | None = None
    firing_stage: FiringStage | None = None
    notes: str = ''
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def timestamp(self) -> datetime:
        return parse_timestamp(self.date)

    def baseline(self) -> float:
        """Duration the actual time is compared against during calibration."""
        if self.theoretical_duration is not None and self.theoretical_duration > 0:
            return float(self.theoretical_duration)
        return float(self.predicted_duration)

    def to_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'schedule_name': self.schedule_name,
            'date': self.date,
            'predicted_duration': self.predicted_duration,
            'theoretical_duration': self.theoretical_duration,
            'actual_duration': self.actual_duration,
            'clay_weight_kg': self.clay_weight_kg,
            'sample_type': self.sample_type,
            'firing_stage': self.firing_stage,
            'notes': self.notes,
            'outcome': self.outcome,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FiringLog:
        """Build a log from a stored row; legacy camelCase keys are accepted."""
        date = _pick(data, 'date', 'timestamp')
        if not date:
            raise ValueError('Firing log is missing its date')
        try:
            parse_timestamp(str(date))
        except ValueError as e:
            raise ValueError(f'Firing log has an unreadable date: {date!r}') from e
        predicted = _optional_float(_pick(data, 'predicted_duration', 'predictedDuration'))
        actual = _optional_float(_pick(data, 'actual_duration', 'actualDuration'))
        if predicted is None or actual is None:
            raise ValueError('Firing log needs predicted and actual durations')
        sample_type = _pick(data, 'sample_type', 'sampleType')
        stage = _pick(data, 'firing_stage', 'firingStage')
        return cls(
            schedule_name=str(_pick(data, 'schedule_name', 'scheduleName', default='')),
            date=str(date),
            predicted_duration=predicted,
            actual_duration=actual,
            outcome=parse_outcome(data.get('outcome', 'perfect')),
            theoretical_duration=_optional_float(
                _pick(data, 'theoretical_duration', 'theoreticalDuration')),
            clay_weight_kg=_optional_float(_pick(data, 'clay_weight_kg', 'clayWeight')),
            sample_type=(parse_sample_type(sample_type) if sample_type else None),
            firing_stage=(parse_firing_stage(stage) if stage else None),
            notes=str(data.get('notes') or ''),
            id=str(data.get('id') or uuid.uuid4()),
        )


@dataclass(frozen=True)
class CalibrationResult:
    """Multiplicative duration correction learned from firing history.

    A ``factor`` of 1.05 means the kiln runs about 5% slower than the
    theoretical schedule.
    """

    factor: float
    advice: str
    valid_count: int = 0
    used_count: int = 0
    outlier_count: int = 0
    baseline_method: BaselineMethod | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            'factor': self.factor,
            'advice': self.advice,
            'valid_count': self.valid_count,
            'used_count': self.used_count,
            'outlier_count': self.outlier_count,
            'baseline_method': self.baseline_method,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CalibrationResult:
        factor = _optional_float(data.get('factor'))
        method = data.get('baseline_method')
        return cls(
            factor=(1.0 if factor is None else factor),
            advice=str(data.get('advice') or ''),
            valid_count=int(data.get('valid_count') or 0),
            used_count=int(data.get('used_count') or 0),
            outlier_count=int(data.get('outlier_count') or 0),
            baseline_method=(cast(BaselineMethod, method)
                             if method in get_args(BaselineMethod) else None),
        )
