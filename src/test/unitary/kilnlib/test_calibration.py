import math

import pytest

from kilnlib.calibration import (
    ADVICE_ALL_OUTLIERS,
    ADVICE_NO_DATA,
    ADVICE_NO_VALID,
    calculate_calibration,
    log_ratio,
    resolve_calibration,
)
from kilnlib.ktypes import CalibrationResult, FiringLog


def _log(date: str, actual: float, *, theoretical: float | None = 100.0, predicted: float = 100.0,
         outcome: str = 'perfect') -> FiringLog:
    return FiringLog(
        schedule_name='Bisque',
        date=date,
        predicted_duration=predicted,
        actual_duration=actual,
        outcome=outcome,  # type: ignore[arg-type]
        theoretical_duration=theoretical,
    )


def test_empty_history_gives_identity_factor() -> None:
    result = calculate_calibration([])

    assert result.factor == 1.0
    assert result.advice == ADVICE_NO_DATA


def test_recent_firings_weigh_more() -> None:
    logs = [_log('2024-01-01T10:00:00Z', 100.0), _log('2024-02-01T10:00:00Z', 120.0)]
    result = calculate_calibration(logs)

    assert result.factor == pytest.approx(1.123)
    assert result.used_count == 2
    assert result.baseline_method == 'theoretical'
    assert 'slower' in result.advice
    assert '12%' in result.advice


def test_input_order_does_not_matter_but_dates_do() -> None:
    older, newer = _log('2024-01-01T10:00:00Z', 100.0), _log('2024-02-01T10:00:00Z', 120.0)
    assert calculate_calibration([newer, older]).factor == pytest.approx(1.123)

    swapped = [_log('2024-01-01T10:00:00Z', 120.0), _log('2024-02-01T10:00:00Z', 100.0)]
    assert calculate_calibration(swapped).factor == pytest.approx(1.077)


def test_naive_and_aware_dates_sort_together() -> None:
    logs = [_log('2024-02-01T10:00:00', 120.0), _log('2024-01-01T10:00:00+00:00', 100.0)]
    assert calculate_calibration(logs).factor == pytest.approx(1.123)


def test_outliers_are_excluded() -> None:
    logs = [
        _log('2024-01-01T10:00:00Z', 100.0),
        _log('2024-02-01T10:00:00Z', 120.0),
        _log('2024-03-01T10:00:00Z', 300.0),
    ]
    result = calculate_calibration(logs)

    assert result.factor == pytest.approx(1.123)
    assert result.valid_count == 3
    assert result.outlier_count == 1
    assert '1 record(s)' in result.advice


def test_band_edges_are_kept() -> None:
    logs = [_log('2024-01-01T10:00:00Z', 50.0), _log('2024-02-01T10:00:00Z', 150.0)]
    result = calculate_calibration(logs)

    assert result.outlier_count == 0
    assert result.factor == pytest.approx(round((0.5 + 1.5 * 1.6) / 2.6, 3))


def test_all_outliers() -> None:
    result = calculate_calibration([_log('2024-01-01T10:00:00Z', 300.0)])

    assert result.factor == 1.0
    assert result.advice == ADVICE_ALL_OUTLIERS
    assert result.outlier_count == 1


def test_error_and_failure_logs_are_ignored() -> None:
    logs = [
        _log('2024-01-01T10:00:00Z', 130.0, outcome='error'),
        _log('2024-01-02T10:00:00Z', 70.0, outcome='failure'),
    ]
    assert calculate_calibration(logs).advice == ADVICE_NO_VALID

    logs.append(_log('2024-01-03T10:00:00Z', 110.0, outcome='underfired'))
    result = calculate_calibration(logs)
    assert result.factor == pytest.approx(1.1)
    assert result.valid_count == 1


def test_unreadable_dates_are_skipped(caplog: pytest.LogCaptureFixture) -> None:
    logs = [
        _log('2024-01-01T10:00:00Z', 100.0),
        _log('03/02/2024', 140.0),
        _log('2024-02-01T10:00:00Z', 120.0),
    ]

    result = calculate_calibration(logs)

    assert result.factor == pytest.approx(1.123)
    assert result.valid_count == 2
    assert 'unreadable date' in caplog.text
    assert calculate_calibration([_log('not-a-date', 100.0)]).advice == ADVICE_NO_VALID


def test_firing_log_rejects_unreadable_date() -> None:
    row = {'date': 'not-a-date', 'predictedDuration': 100, 'actualDuration': 100}

    with pytest.raises(ValueError, match='unreadable date'):
        FiringLog.from_dict(row)
    assert FiringLog.from_dict({**row, 'date': '2024-01-01'}).date == '2024-01-01'


def test_legacy_logs_use_predicted_duration() -> None:
    logs = [_log('2024-01-01T10:00:00Z', 90.0, theoretical=None, predicted=100.0)]
    result = calculate_calibration(logs)

    assert result.factor == pytest.approx(0.9)
    assert result.baseline_method == 'historical'
    assert 'faster' in result.advice
    assert 'Older records' in result.advice


def test_unusable_baseline_counts_as_outlier() -> None:
    broken = _log('2024-01-01T10:00:00Z', 90.0, theoretical=0.0, predicted=0.0)

    assert math.isnan(log_ratio(broken))
    assert calculate_calibration([broken]).advice == ADVICE_ALL_OUTLIERS


def test_well_calibrated_advice() -> None:
    result = calculate_calibration([_log('2024-01-01T10:00:00Z', 100.0)])

    assert result.factor == 1.0
    assert 'well calibrated' in result.advice
    assert 'absolute theoretical' in result.advice

    legacy = calculate_calibration([_log('2024-01-01T10:00:00Z', 100.0, theoretical=None)])
    assert 'historical estimate' in legacy.advice


def test_stored_factor_wins_over_fresh_analysis() -> None:
    logs = [_log('2024-01-01T10:00:00Z', 120.0)]
    stored = CalibrationResult(factor=1.05, advice='hand tuned')

    result = resolve_calibration(stored, logs)
    assert result.factor == 1.05
    assert result.advice == calculate_calibration(logs).advice

    assert resolve_calibration(None, logs).factor == pytest.approx(1.2)
    assert resolve_calibration(CalibrationResult(0.0, ''), logs).factor == pytest.approx(1.2)
