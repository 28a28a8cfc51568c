import json
from pathlib import Path

import pytest

from kilnlib.firing_segments import FiringSchedule, HoldSegment, RampSegment
from kilnlib.firing_store import ActiveFiringRecord, JsonFiringStore, MemoryFiringStore, StoreResult
from kilnlib.kiln_service import KilnService
from kilnlib.ktypes import CalibrationResult, FiringLog
from kilnlib.notifications import WebhookConfig


def _schedule() -> FiringSchedule:
    return FiringSchedule.from_segments(
        'Glaze',
        [RampSegment(rate=150.0, target_temp=1240.0), HoldSegment(target_temp=1240.0, hold_minutes=20.0)],
        sample_type='standard',
        firing_stage='glaze',
    )


def _log(actual: float = 500.0) -> FiringLog:
    return FiringLog(schedule_name='Glaze', date='2024-05-01T12:00:00Z', predicted_duration=506,
                     actual_duration=actual, outcome='perfect', theoretical_duration=506)


def test_memory_store_round_trip() -> None:
    store = MemoryFiringStore()
    log = _log()

    assert store.append_log(log).ok
    assert store.get_all_logs() == [log]
    assert store.get_calibration() is None

    store.save_calibration(CalibrationResult(factor=1.02, advice='a'))
    store.save_calibration(CalibrationResult(factor=1.04, advice='b'))
    assert store.get_calibration() == CalibrationResult(factor=1.04, advice='b')
    assert [e.result.factor for e in store.calibration_history()] == [1.02, 1.04]


def test_update_watermark_compare_and_set() -> None:
    store = MemoryFiringStore()
    schedule = _schedule()
    store.set_active_firing(ActiveFiringRecord(id=schedule.id, schedule=schedule, start_time=0.0))

    assert store.update_watermark(schedule.id, 50, expected=0).ok
    conflict = store.update_watermark(schedule.id, 75, expected=0)
    assert not conflict
    assert 'expected 0' in conflict.message
    assert store.update_watermark(schedule.id, 75).ok
    assert store.get_active_firing(schedule.id).watermark == 75  # type: ignore[union-attr]

    assert not store.update_watermark('missing', 50)
    assert store.clear_active_firing(schedule.id).ok
    assert store.list_active_firings() == []


def test_json_store_persists_everything(tmp_path: Path) -> None:
    path = tmp_path / 'store.json'
    schedule = _schedule()
    log = _log()

    store = JsonFiringStore(path)
    store.append_log(log)
    store.save_calibration(CalibrationResult(factor=0.97, advice='faster', baseline_method='theoretical'))
    store.set_active_firing(ActiveFiringRecord(id=schedule.id, schedule=schedule, start_time=1234.5, watermark=50))
    store.save_template('glaze', schedule)
    store.save_webhooks([WebhookConfig('studio', 'https://hooks.example/1')])
    store.save_setting('unit', 'C')

    reloaded = JsonFiringStore(path)

    assert reloaded.get_all_logs() == [log]
    assert reloaded.get_calibration() == CalibrationResult(
        factor=0.97, advice='faster', baseline_method='theoretical')
    assert reloaded.get_active_firing(schedule.id) == ActiveFiringRecord(
        id=schedule.id, schedule=schedule, start_time=1234.5, watermark=50)
    assert reloaded.get_templates() == {'glaze': schedule}
    assert reloaded.get_webhooks() == [WebhookConfig('studio', 'https://hooks.example/1')]
    assert reloaded.get_setting('unit') == 'C'
    assert reloaded.get_setting('missing', 'x') == 'x'

    data = json.loads(path.read_text(encoding='utf-8'))
    assert data['format'] == 'kiln-planner-store-v1'


def test_json_store_sees_writes_from_another_instance(tmp_path: Path) -> None:
    path = tmp_path / 'store.json'
    schedule = _schedule()
    first = JsonFiringStore(path)
    first.set_active_firing(ActiveFiringRecord(id=schedule.id, schedule=schedule, start_time=0.0))
    second = JsonFiringStore(path)

    assert second.update_watermark(schedule.id, 90, expected=0).ok
    # The first instance re-reads the file before its conditional write
    assert not first.update_watermark(schedule.id, 90, expected=0)


def test_json_store_skips_unreadable_logs(tmp_path: Path) -> None:
    path = tmp_path / 'store.json'
    path.write_text(json.dumps({
        'logs': [
            {'id': 'ok', 'date': '2024-01-01', 'predictedDuration': 100, 'actualDuration': 105,
             'outcome': 'perfect'},
            {'id': 'bad', 'date': '2024-01-02', 'outcome': 'perfect'},
            {'id': 'worse', 'date': '2024-01-03', 'predicted_duration': 100, 'actual_duration': 90,
             'outcome': 'exploded'},
        ],
    }), encoding='utf-8')

    store = JsonFiringStore(path)

    assert [log.id for log in store.get_all_logs()] == ['ok']


def test_json_store_skips_logs_with_unreadable_dates(tmp_path: Path) -> None:
    path = tmp_path / 'store.json'
    path.write_text(json.dumps({
        'logs': [
            {'id': 'ok', 'date': '2024-01-01T10:00:00Z', 'predictedDuration': 100, 'theoreticalDuration': 100,
             'actualDuration': 110, 'outcome': 'perfect'},
            {'id': 'bad', 'date': 'not-a-date', 'predictedDuration': 100, 'theoreticalDuration': 100,
             'actualDuration': 140, 'outcome': 'perfect'},
        ],
    }), encoding='utf-8')

    store = JsonFiringStore(path)

    assert [log.id for log in store.get_all_logs()] == ['ok']
    assert KilnService(store).refresh().factor == pytest.approx(1.1)


def test_json_store_skips_malformed_active_firings(tmp_path: Path) -> None:
    path = tmp_path / 'store.json'
    schedule = _schedule()
    good = ActiveFiringRecord(id=schedule.id, schedule=schedule, start_time=10.0)
    path.write_text(json.dumps({
        'active_firings': [{'id': 'broken', 'start_time': 0.0}, good.to_dict()],
        'templates': {'bad': {'name': 'no segments'}, 'glaze': schedule.to_dict()},
        'webhooks': [{'name': 'no url'}, {'name': 'studio', 'url': 'https://hooks.example/1'}],
    }), encoding='utf-8')

    store = JsonFiringStore(path)

    assert store.list_active_firings() == [good]
    assert list(store.get_templates()) == ['glaze']
    assert [h.name for h in store.get_webhooks()] == ['studio']
    assert store.update_watermark(schedule.id, 50, expected=0).ok


def test_failed_write_rolls_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = JsonFiringStore(tmp_path / 'store.json')
    store.append_log(_log(400.0))

    def _fail(*_args: object, **_kwargs: object) -> None:
        raise OSError('disk full')

    monkeypatch.setattr('kilnlib.firing_store.os.replace', _fail)
    result = store.append_log(_log(410.0))

    assert result == StoreResult(False, 'disk full')
    assert [log.actual_duration for log in store.get_all_logs()] == [400.0]
    assert list(tmp_path.glob('*.tmp')) == []
