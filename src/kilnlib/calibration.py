#
# ABOUT
# Learns a kiln duration correction factor from firing history using
# recency-weighted actual/baseline ratios with outlier rejection.

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
import math
from collections.abc import Iterable
from datetime import datetime
from typing import Final

import numpy as np

from kilnlib.firing_segments import round_half_up
from kilnlib.ktypes import EXCLUDED_OUTCOMES, BaselineMethod, CalibrationResult, FiringLog


_log: Final[logging.Logger] = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RECENCY_BASE: Final[float] = 1.6
"""Each firing weighs 1.6x the one before it (10th ~ 68x the 1st)."""

RATIO_MIN: Final[float] = 0.5
RATIO_MAX: Final[float] = 1.5
"""Ratios outside this band are treated as data anomalies, not kiln drift."""

_WELL_CALIBRATED_PCT: Final[int] = 1

_METHOD_LABELS: Final[dict[BaselineMethod, str]] = {
    'theoretical': 'absolute theoretical',
    'historical': 'historical estimate',
}

ADVICE_NO_DATA: Final[str] = 'No firing history is available for calibration yet.'
ADVICE_NO_VALID: Final[str] = (
    'Not enough valid firing data: error and failure records are excluded from calibration.')
ADVICE_ALL_OUTLIERS: Final[str] = (
    'Recorded durations deviate too far from the schedules to calibrate. '
    'Please inspect the kiln for faults.')


def log_ratio(log: FiringLog) -> float:
    """Return actual/baseline for *log*, or NaN when the baseline is unusable."""
    baseline = log.baseline()
    if baseline <= 0:
        return math.nan
    return float(log.actual_duration) / baseline


def _is_inlier(ratio: float) -> bool:
    return math.isfinite(ratio) and RATIO_MIN <= ratio <= RATIO_MAX


def _timestamp_or_none(log: FiringLog) -> datetime | None:
    try:
        return log.timestamp()
    except (TypeError, ValueError):
        _log.warning('Ignoring firing log %s with unreadable date %r', log.id, log.date)
        return None


def _advice(factor: float, valid_count: int, outliers: int, method: BaselineMethod) -> str:
    percentage = round_half_up((factor - 1.0) * 100.0)
    method_label = _METHOD_LABELS[method]
    if abs(percentage) < _WELL_CALIBRATED_PCT:
        text = (f'Analysed {valid_count} valid firings against the {method_label} baseline. The kiln '
                f'is well calibrated: actual times match the theoretical schedule almost exactly.')
    elif percentage > 0:
        text = (f'Analysed {valid_count} valid firings with exponential recency weighting against the '
                f'{method_label} baseline. The kiln has recently been running slower than theoretical '
                f'by about {percentage}%, possibly from good insulation slowing the cool-down or from '
                f'ageing elements. Parameters were extended to lengthen future estimates.')
    else:
        text = (f'Analysed {valid_count} valid firings with exponential recency weighting against the '
                f'{method_label} baseline. The kiln has recently been running faster than theoretical '
                f'by about {abs(percentage)}%, suggesting strong elements or light loads. '
                f'Parameters were shortened to reduce future estimates.')
    if method == 'historical':
        text += (' Older records lack a theoretical duration, so their ratios are measured against '
                 'an estimate that already contained a correction and are less accurate.')
    if outliers:
        text += f' {outliers} record(s) deviating by more than 50% were ignored.'
    return text


def calculate_calibration(logs: Iterable[FiringLog]) -> CalibrationResult:
    """Compute the duration correction factor from firing history.

    Error/failure firings are dropped, the rest are ordered oldest first
    and compared against their baseline duration. Ratios outside
    ``[RATIO_MIN, RATIO_MAX]`` are rejected and the survivors averaged
    with weights ``RECENCY_BASE ** i`` by chronological position.

    Never raises: insufficient data yields the identity factor with an
    explanatory advice string.
    """
    history = list(logs)
    if not history:
        return CalibrationResult(factor=1.0, advice=ADVICE_NO_DATA)

    dated = [(stamp, log) for log in history
             if log.outcome not in EXCLUDED_OUTCOMES and (stamp := _timestamp_or_none(log)) is not None]
    valid = [log for _stamp, log in sorted(dated, key=lambda pair: pair[0])]
    if not valid:
        return CalibrationResult(factor=1.0, advice=ADVICE_NO_VALID)

    survivors = [(log, ratio) for log in valid if _is_inlier(ratio := log_ratio(log))]
    outliers = len(valid) - len(survivors)
    if not survivors:
        _log.warning('All %d valid firing logs were rejected as outliers', len(valid))
        return CalibrationResult(
            factor=1.0,
            advice=ADVICE_ALL_OUTLIERS,
            valid_count=len(valid),
            outlier_count=outliers,
        )

    ratios = np.fromiter((ratio for _log_entry, ratio in survivors), dtype=np.float64, count=len(survivors))
    weights = np.power(RECENCY_BASE, np.arange(len(survivors), dtype=np.float64))
    factor = round(float(np.sum(ratios * weights) / np.sum(weights)), 3)

    method: BaselineMethod = (
        'theoretical'
        if any(log.theoretical_duration for log, _ratio in survivors)
        else 'historical'
    )

    _log.info(
        'Calibration: factor=%.3f from %d firing(s) (%d outlier(s), %s baseline)',
        factor, len(survivors), outliers, method,
    )
    return CalibrationResult(
        factor=factor,
        advice=_advice(factor, len(valid), outliers, method),
        valid_count=len(valid),
        used_count=len(survivors),
        outlier_count=outliers,
        baseline_method=method,
    )


def resolve_calibration(stored: CalibrationResult | None, logs: Iterable[FiringLog]) -> CalibrationResult:
    """Combine a persisted factor with a fresh analysis of *logs*.

    A positive stored factor wins (it may have been set by hand); the
    advice always comes from the fresh analysis.
    """
    local = calculate_calibration(logs)
    if stored is None or stored.factor <= 0:
        return local
    return CalibrationResult(
        factor=stored.factor,
        advice=local.advice,
        valid_count=local.valid_count,
        used_count=local.used_count,
        outlier_count=local.outlier_count,
        baseline_method=local.baseline_method,
    )
