#
# ABOUT
# Recommended bisque/glaze firing schedules derived from sample type and
# clay load.

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
from dataclasses import dataclass, field
from typing import Final

from kilnlib.firing_segments import (
    FiringSchedule,
    FiringSegment,
    HoldSegment,
    RampSegment,
    round_half_up,
    theoretical_duration,
)
from kilnlib.ktypes import STAGE_LABELS, FiringStage, SampleType


_log: Final[logging.Logger] = logging.getLogger(__name__)

_DRYING_TEMP_C: Final[float] = 120.0
_BURNOUT_TEMP_C: Final[float] = 600.0
_DRYING_HOLD_MIN: Final[float] = 60.0
_HEAVY_LOAD_KG: Final[float] = 5.0
_HEAVY_LOAD_EXTRA: Final[float] = 0.10
_GLAZE_SLOW_COOL_TEMP_C: Final[float] = 900.0
_SLOW_COOL_TEMP_C: Final[float] = 700.0
_FINAL_TEMP_C: Final[float] = 25.0

NATURAL_COOLING_RATE: Final[float] = -9999.0
"""Sentinel rate of the final segment: kiln switched off and left to cool."""

_TIME_MODIFIERS: Final[dict[SampleType, float]] = {
    'standard': 1.0,
    'thick': 1.25,
    'sculpture': 1.35,
    'large_flat': 1.10,
    'thin': 0.9,
}

_SAMPLE_ADVICE: Final[dict[SampleType, str]] = {
    'thick': 'Thick-walled work: low-temperature ramp rates were reduced.',
    'sculpture': 'Complex sculpture: rates below 200C and around the 573C quartz inversion were slowed.',
    'large_flat': 'Large plate/slab: the quartz inversion zone was slowed, keep the shelf level.',
    'thin': 'Thin-walled work: the schedule was shortened slightly.',
}


@dataclass(frozen=True)
class StageProfile:
    """Stage-specific temperatures and rates after sample-type adjustment."""

    peak_temp: float
    peak_hold_minutes: float
    low_rate: float    # 25-120C
    mid_rate: float    # 120-600C
    main_rate: float   # 600C-peak
    cool_rate: float


@dataclass
class GeneratedSchedule:
    segments: list[FiringSegment] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    advice: list[str] = field(default_factory=list)
    estimated_duration_minutes: int = 0
    time_modifier: float = 1.0
    sample_type: SampleType | None = None
    firing_stage: FiringStage | None = None

    @property
    def is_empty(self) -> bool:
        return not self.segments

    def to_schedule(
        self,
        name: str | None = None,
        *,
        clay_weight_kg: float | None = None,
        calibration_factor: float = 1.0,
    ) -> FiringSchedule:
        """Wrap the segments as a named schedule, optionally calibrated."""
        if name is None:
            stage = STAGE_LABELS[self.firing_stage] if self.firing_stage else 'Firing'
            name = f'{stage} ({self.sample_type or "standard"})'
        return FiringSchedule.from_segments(
            name,
            self.segments,
            calibration_factor=calibration_factor,
            time_modifier=self.time_modifier,
            clay_weight_kg=clay_weight_kg,
            sample_type=self.sample_type,
            firing_stage=self.firing_stage,
        )

    def summary_lines(self) -> list[str]:
        lines = [f'Estimated duration: {self.estimated_duration_minutes} min (x{self.time_modifier:.2f})']
        lines.extend(self.advice)
        lines.extend(self.warnings)
        return lines


def time_modifier_for(sample_type: SampleType, clay_weight_kg: float) -> float:
    modifier = _TIME_MODIFIERS[sample_type]
    if clay_weight_kg > _HEAVY_LOAD_KG:
        modifier += _HEAVY_LOAD_EXTRA
    return modifier


def stage_profile(stage: FiringStage, sample_type: SampleType) -> StageProfile | None:
    """Return the stage constants for *sample_type*, or ``None`` for ``uncertain``."""
    heavy = sample_type in ('thick', 'sculpture')
    if stage == 'bisque':
        return StageProfile(
            peak_temp=800.0,
            peak_hold_minutes=10.0,
            low_rate=60.0 if heavy else 100.0,
            mid_rate=100.0 if (heavy or sample_type == 'large_flat') else 150.0,
            main_rate=180.0,
            cool_rate=-200.0,
        )
    if stage == 'glaze':
        return StageProfile(
            peak_temp=1240.0,
            peak_hold_minutes=30.0 if sample_type in ('large_flat', 'thick') else 20.0,
            low_rate=120.0,
            mid_rate=100.0 if sample_type == 'large_flat' else 150.0,
            main_rate=220.0,
            cool_rate=-100.0,
        )
    return None


def generate_schedule(
    sample_type: SampleType,
    firing_stage: FiringStage,
    clay_weight_kg: float,
) -> GeneratedSchedule:
    """Build the recommended schedule for a sample type and firing stage.

    The ``uncertain`` stage yields an empty schedule with a warning asking
    for a concrete stage.
    """
    result = GeneratedSchedule(sample_type=sample_type, firing_stage=firing_stage)

    profile = stage_profile(firing_stage, sample_type)
    if profile is None:
        result.warnings.append('Select bisque or glaze firing to get a recommended schedule.')
        return result

    result.time_modifier = time_modifier_for(sample_type, clay_weight_kg)
    if sample_type in _SAMPLE_ADVICE:
        result.advice.append(_SAMPLE_ADVICE[sample_type])
    if clay_weight_kg > _HEAVY_LOAD_KG:
        result.advice.append(
            f'Total load over {_HEAVY_LOAD_KG:g} kg: about 10% extra time added for the heat load.')

    if firing_stage == 'bisque':
        result.advice.append(f'Bisque firing: peak {profile.peak_temp:.0f}C with a slow low-temperature zone.')
    else:
        result.advice.append(
            f'Glaze firing: peak {profile.peak_temp:.0f}C with a controlled cooling segment to '
            f'{_GLAZE_SLOW_COOL_TEMP_C:.0f}C.')

    segments = result.segments
    segments.append(RampSegment(rate=profile.low_rate, target_temp=_DRYING_TEMP_C))
    if sample_type in ('thick', 'sculpture'):
        segments.append(HoldSegment(target_temp=_DRYING_TEMP_C, hold_minutes=_DRYING_HOLD_MIN))
    segments.append(RampSegment(rate=profile.mid_rate, target_temp=_BURNOUT_TEMP_C))
    segments.append(RampSegment(rate=profile.main_rate, target_temp=profile.peak_temp))
    if profile.peak_hold_minutes > 0:
        segments.append(HoldSegment(target_temp=profile.peak_temp, hold_minutes=profile.peak_hold_minutes))

    cool_to = (_GLAZE_SLOW_COOL_TEMP_C
               if firing_stage == 'glaze' and profile.peak_temp > 1200.0
               else _SLOW_COOL_TEMP_C)
    segments.append(RampSegment(rate=profile.cool_rate, target_temp=cool_to))
    segments.append(RampSegment(rate=NATURAL_COOLING_RATE, target_temp=_FINAL_TEMP_C))

    result.estimated_duration_minutes = round_half_up(
        theoretical_duration(segments) * result.time_modifier)

    _log.debug(
        'Generated %s schedule for %s (%.2f kg): %d segments, %d min',
        firing_stage, sample_type, clay_weight_kg, len(segments),
        result.estimated_duration_minutes,
    )
    return result
