#
# ABOUT
# Rule-of-thumb safety review for hand-edited firing schedules.

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

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Final

from kilnlib.firing_segments import AMBIENT_TEMP_C, FiringSegment, HoldSegment, RampSegment
from kilnlib.ktypes import SAMPLE_TYPE_LABELS, SampleType

QUARTZ_INVERSION_C: Final[float] = 573.0
_EARLY_ZONE_C: Final[float] = 200.0
_EARLY_MAX_RATE: Final[float] = 100.0
_QUARTZ_MAX_RATE: Final[float] = 150.0
_DRYING_HOLD_MAX_TEMP_C: Final[float] = 130.0
_DRYING_HOLD_MIN_MINUTES: Final[float] = 30.0

_TIME_MODIFIERS: Final[dict[SampleType, float]] = {
    'standard': 1.0,
    'thick': 1.15,
    'sculpture': 1.25,
    'large_flat': 1.05,
    'thin': 0.95,
}


@dataclass
class ScheduleCheckResult:
    """Outcome of reviewing a schedule against the studio's rules of thumb."""

    time_modifier: float = 1.0
    advice: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_safe(self) -> bool:
        return not self.warnings

    def summary_lines(self) -> list[str]:
        lines = [f'Schedule check: {"PASS" if self.is_safe else "WARN"} (time x{self.time_modifier:.2f})']
        lines.extend(self.advice)
        lines.extend(self.warnings)
        return lines


def _crosses(start: float, end: float, level: float) -> bool:
    return (start < level < end) or (end < level < start)


def check_schedule(
    sample_type: SampleType,
    segments: Sequence[FiringSegment],
    clay_weight_kg: float = 0.0,
) -> ScheduleCheckResult:
    """Flag heating rates that risk cracking for the given sample type.

    Only heating ramps (positive rate) are reviewed; cooling segments and
    zero-rate ramps are ignored.
    """
    result = ScheduleCheckResult(time_modifier=_TIME_MODIFIERS[sample_type])
    if clay_weight_kg > 5.0:
        result.time_modifier += 0.05
        result.advice.append('Heavy load: allow roughly 5% extra time.')

    heavy = sample_type in ('thick', 'sculpture')
    label = SAMPLE_TYPE_LABELS[sample_type].lower()
    has_drying_hold = False
    current_temp = AMBIENT_TEMP_C

    for index, seg in enumerate(segments, start=1):
        start_temp = current_temp
        if isinstance(seg, RampSegment):
            current_temp = seg.target_temp
            if seg.rate <= 0:
                continue
            if heavy and start_temp < _EARLY_ZONE_C and seg.rate > _EARLY_MAX_RATE:
                result.warnings.append(
                    f'Segment {index}: {seg.rate:g}C/h below {_EARLY_ZONE_C:.0f}C is too fast for '
                    f'{label} work, keep it under {_EARLY_MAX_RATE:.0f}C/h.')
            if (sample_type in ('large_flat', 'sculpture')
                    and _crosses(start_temp, seg.target_temp, QUARTZ_INVERSION_C)
                    and seg.rate > _QUARTZ_MAX_RATE):
                result.warnings.append(
                    f'Segment {index}: crossing the {QUARTZ_INVERSION_C:.0f}C quartz inversion at '
                    f'{seg.rate:g}C/h is too fast, keep it under {_QUARTZ_MAX_RATE:.0f}C/h.')
        elif isinstance(seg, HoldSegment):
            if seg.target_temp <= _DRYING_HOLD_MAX_TEMP_C and seg.hold_minutes >= _DRYING_HOLD_MIN_MINUTES:
                has_drying_hold = True

    if heavy and segments and not has_drying_hold:
        result.warnings.append(
            'No low-temperature drying hold found: hold at 100-120C for 30-60 minutes '
            'before continuing with heavy work.')
    return result
