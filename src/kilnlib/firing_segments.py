#
# ABOUT
# Ramp/hold firing segments and the simulated kiln timeline they describe.
# Provides theoretical duration, temperature-at-time sampling and the
# schedule polyline used for charts.

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

import math
import uuid
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Final, NamedTuple, TYPE_CHECKING

import numpy as np

from kilnlib.ktypes import (
    FiringStage,
    SampleType,
    parse_firing_stage,
    parse_sample_type,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray  # pylint: disable=unused-import


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AMBIENT_TEMP_C: Final[float] = 25.0
"""Implicit start temperature of every schedule."""

_MINUTES_PER_HOUR: Final[float] = 60.0


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity.

    ``round()`` uses banker's rounding; durations and temperatures are
    reported with plain half-up rounding instead.
    """
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Segment types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RampSegment:
    """Change temperature at ``rate`` deg C per hour until ``target_temp``.

    The sign of ``rate`` is a convention only (negative for controlled
    cooling); durations use its magnitude.
    """

    rate: float
    target_temp: float


@dataclass(frozen=True)
class HoldSegment:
    """Dwell at ``target_temp`` for ``hold_minutes``."""

    target_temp: float
    hold_minutes: float


FiringSegment = RampSegment | HoldSegment


class SchedulePoint(NamedTuple):
    time_minutes: float
    temp_c: float


def segment_duration(segment: FiringSegment, start_temp: float) -> float:
    """Minutes spent in *segment* when it starts at *start_temp*.

    A zero-rate ramp contributes no time.
    """
    if isinstance(segment, HoldSegment):
        return float(segment.hold_minutes)
    if segment.rate == 0:
        return 0.0
    return abs(segment.target_temp - start_temp) / abs(segment.rate) * _MINUTES_PER_HOUR


def _end_temp(segment: FiringSegment, start_temp: float) -> float:
    # A ramp always lands on its target, even at rate 0
    if isinstance(segment, RampSegment):
        return float(segment.target_temp)
    return start_temp


def _timeline(segments: Iterable[FiringSegment]) -> Iterator[tuple[FiringSegment, float, float, float]]:
    """Yield ``(segment, start_time, start_temp, duration)`` in order."""
    current_temp = AMBIENT_TEMP_C
    elapsed = 0.0
    for segment in segments:
        duration = segment_duration(segment, current_temp)
        yield segment, elapsed, current_temp, duration
        elapsed += duration
        current_temp = _end_temp(segment, current_temp)


# ---------------------------------------------------------------------------
# Timeline queries
# ---------------------------------------------------------------------------

def theoretical_duration(segments: Iterable[FiringSegment]) -> int:
    """Pure rate/hold duration of a schedule in whole minutes.

    Rounding happens once on the final sum.
    """
    total = sum(duration for _seg, _t0, _temp0, duration in _timeline(segments))
    return round_half_up(total)


def final_temperature(segments: Iterable[FiringSegment]) -> float:
    current_temp = AMBIENT_TEMP_C
    for segment in segments:
        current_temp = _end_temp(segment, current_temp)
    return current_temp


def temperature_at_elapsed(segments: Sequence[FiringSegment], elapsed_minutes: float) -> int:
    """Scheduled kiln temperature after *elapsed_minutes*.

    Holds report their target temperature, ramps interpolate linearly
    from their start temperature. Past the end of the schedule the final
    running temperature is returned, starting at the whole-minute
    duration reported by :func:`theoretical_duration`.
    """
    elapsed_minutes = max(0.0, float(elapsed_minutes))
    if elapsed_minutes >= theoretical_duration(segments):
        return round_half_up(final_temperature(segments))
    current_temp = AMBIENT_TEMP_C
    for segment, start_time, start_temp, duration in _timeline(segments):
        current_temp = _end_temp(segment, start_temp)
        if duration <= 0 or start_time + duration <= elapsed_minutes:
            continue
        if isinstance(segment, HoldSegment):
            return round_half_up(segment.target_temp)
        fraction = (elapsed_minutes - start_time) / duration
        return round_half_up(start_temp + (segment.target_temp - start_temp) * fraction)
    return round_half_up(current_temp)


class SchedulePoints:
    """Restartable iterable over the vertices of the schedule polyline.

    Starts at ``(0, 25)`` and appends one vertex per segment boundary.
    """

    __slots__ = ('_segments',)

    def __init__(self, segments: Iterable[FiringSegment]) -> None:
        self._segments: tuple[FiringSegment, ...] = tuple(segments)

    def __iter__(self) -> Iterator[SchedulePoint]:
        yield SchedulePoint(0.0, AMBIENT_TEMP_C)
        for segment, start_time, start_temp, duration in _timeline(self._segments):
            yield SchedulePoint(start_time + duration, _end_temp(segment, start_temp))

    def __len__(self) -> int:
        return len(self._segments) + 1


def schedule_points(segments: Iterable[FiringSegment]) -> SchedulePoints:
    return SchedulePoints(segments)


def schedule_arrays(
    segments: Iterable[FiringSegment],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Return the schedule polyline as ``(time_minutes, temp_c)`` arrays."""
    points = list(schedule_points(segments))
    times = np.fromiter((p.time_minutes for p in points), dtype=np.float64, count=len(points))
    temps = np.fromiter((p.temp_c for p in points), dtype=np.float64, count=len(points))
    return times, temps


def apply_calibration(theoretical_minutes: float, factor: float, time_modifier: float = 1.0) -> int:
    """Predicted duration for the next firing, in whole minutes."""
    return round_half_up(theoretical_minutes * factor * time_modifier)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _first(data: dict, *keys: str) -> object:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def segment_to_dict(segment: FiringSegment) -> dict[str, object]:
    if isinstance(segment, HoldSegment):
        return {'type': 'hold', 'target_temp': segment.target_temp, 'hold_minutes': segment.hold_minutes}
    return {'type': 'ramp', 'rate': segment.rate, 'target_temp': segment.target_temp}


def segment_from_dict(data: dict) -> FiringSegment:
    """Parse one segment; the legacy ``targetTemp``/``holdTime`` keys are accepted."""
    kind = str(data.get('type', '')).strip().lower()
    target = _first(data, 'target_temp', 'targetTemp')
    if target is None:
        raise ValueError(f'Segment is missing its target temperature: {data!r}')
    try:
        if kind == 'ramp':
            return RampSegment(rate=float(data.get('rate') or 0.0), target_temp=float(target))  # type: ignore[arg-type]
        if kind == 'hold':
            hold = _first(data, 'hold_minutes', 'holdTime')
            return HoldSegment(target_temp=float(target), hold_minutes=float(hold or 0.0))  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f'Invalid segment values: {data!r}') from exc
    raise ValueError(f'Unknown segment type: {kind!r}')


@dataclass(frozen=True)
class FiringSchedule:
    """Named segment sequence; fixed once a firing has started."""

    name: str
    segments: tuple[FiringSegment, ...]
    estimated_duration_minutes: int
    clay_weight_kg: float | None = None
    sample_type: SampleType | None = None
    firing_stage: FiringStage | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_segments(
        cls,
        name: str,
        segments: Iterable[FiringSegment],
        *,
        calibration_factor: float = 1.0,
        time_modifier: float = 1.0,
        **metadata: object,
    ) -> FiringSchedule:
        """Build a schedule whose estimate is derived from its segments."""
        segs = tuple(segments)
        estimate = apply_calibration(theoretical_duration(segs), calibration_factor, time_modifier)
        return cls(name=name, segments=segs, estimated_duration_minutes=estimate, **metadata)  # type: ignore[arg-type]

    @property
    def theoretical_duration_minutes(self) -> int:
        return theoretical_duration(self.segments)

    def to_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'name': self.name,
            'segments': [segment_to_dict(s) for s in self.segments],
            'estimated_duration_minutes': self.estimated_duration_minutes,
            'clay_weight_kg': self.clay_weight_kg,
            'sample_type': self.sample_type,
            'firing_stage': self.firing_stage,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FiringSchedule:
        raw_segments = data.get('segments')
        if not isinstance(raw_segments, list):
            raise ValueError('Schedule must have a segments list')
        segments = tuple(segment_from_dict(s) for s in raw_segments)
        estimate = _first(data, 'estimated_duration_minutes', 'estimatedDurationMinutes')
        sample_type = _first(data, 'sample_type', 'sampleType')
        stage = _first(data, 'firing_stage', 'firingStage')
        weight = _first(data, 'clay_weight_kg', 'clayWeight')
        return cls(
            name=str(data.get('name') or 'Untitled'),
            segments=segments,
            estimated_duration_minutes=(
                theoretical_duration(segments) if estimate is None else int(estimate)),  # type: ignore[call-overload]
            clay_weight_kg=(None if weight is None else float(weight)),  # type: ignore[arg-type]
            sample_type=(None if sample_type is None else parse_sample_type(sample_type)),
            firing_stage=(None if stage is None else parse_firing_stage(stage)),
            id=str(data.get('id') or uuid.uuid4()),
        )
