#
# ABOUT
# Command line front end for the kiln planner: schedule generation,
# duration and safety checks, calibration, and driving an active firing
# (start, finish, cancel, remote polling and offline simulation).

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

import argparse
import json
import logging
import sys
from typing import Final

from kilnlib.calibration import calculate_calibration
from kilnlib.firing_monitor import FiringMonitor, ManualClock, RecurringTask, SystemClock, poll_active_firings
from kilnlib.firing_segments import (
    AMBIENT_TEMP_C,
    FiringSchedule,
    HoldSegment,
    apply_calibration,
    schedule_arrays,
    segment_duration,
)
from kilnlib.firing_store import FiringStore, JsonFiringStore
from kilnlib.kiln_service import KilnService
from kilnlib.kiln_settings import KilnSettings
from kilnlib.ktypes import (
    FIRING_STAGES,
    OUTCOMES,
    SAMPLE_TYPES,
    CalibrationResult,
    FiringLog,
    parse_firing_stage,
    parse_outcome,
    parse_sample_type,
)
from kilnlib.notifications import Embed, Message, WebhookConfig, WebhookNotifier, format_minutes
from kilnlib.schedule_validator import check_schedule


_log: Final[logging.Logger] = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _load_settings(args: argparse.Namespace) -> KilnSettings:
    settings = KilnSettings.load(args.settings) if args.settings else KilnSettings()
    if args.store:
        settings.store_path = args.store
    return settings


def _open_store(settings: KilnSettings) -> JsonFiringStore:
    return JsonFiringStore(settings.store_path)


def _build_notifier(store: FiringStore, settings: KilnSettings) -> WebhookNotifier:
    return WebhookNotifier(store.get_webhooks(), timeout=settings.webhook_timeout_s)


def _load_schedule(filepath: str) -> FiringSchedule:
    """Read a schedule JSON file; a bare segment list is accepted too."""
    with open(filepath, encoding='utf-8') as fh:
        data = json.load(fh)
    if isinstance(data, list):
        data = {'name': filepath, 'segments': data}
    if not isinstance(data, dict):
        raise ValueError(f'{filepath} does not contain a schedule')
    return FiringSchedule.from_dict(data)


def _load_logs(filepath: str) -> list[FiringLog]:
    with open(filepath, encoding='utf-8') as fh:
        data = json.load(fh)
    rows = data.get('logs', []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ValueError(f'{filepath} does not contain a list of firing logs')
    logs: list[FiringLog] = []
    for row in rows:
        try:
            logs.append(FiringLog.from_dict(row))
        except (KeyError, ValueError) as exc:
            print(f'Warning: skipping log {row.get("id", "?")}: {exc}', file=sys.stderr)
    return logs


def _print_segments(schedule: FiringSchedule) -> None:
    header = f'{"#":>3}  {"Type":<5} {"Rate C/h":>9} {"Target C":>9} {"Hold":>6} {"Time":>7}'
    print(header)
    print('-' * len(header))
    temp = AMBIENT_TEMP_C
    for index, seg in enumerate(schedule.segments, start=1):
        minutes = segment_duration(seg, temp)
        if isinstance(seg, HoldSegment):
            print(f'{index:>3}  {"hold":<5} {"":>9} {seg.target_temp:>9.0f} '
                  f'{seg.hold_minutes:>6.0f} {format_minutes(minutes):>7}')
        else:
            print(f'{index:>3}  {"ramp":<5} {seg.rate:>9.0f} {seg.target_temp:>9.0f} '
                  f'{"":>6} {format_minutes(minutes):>7}')
            temp = seg.target_temp


def _print_calibration(result: CalibrationResult) -> None:
    print(f'Calibration factor: {result.factor:.3f}')
    print(f'Valid firings:      {result.valid_count}')
    print(f'Used firings:       {result.used_count}')
    print(f'Outliers ignored:   {result.outlier_count}')
    if result.baseline_method:
        print(f'Baseline:           {result.baseline_method}')
    print()
    print(result.advice)


def _message_text(message: Message) -> str:
    return message.to_text() if isinstance(message, Embed) else message


def _select_active(store: FiringStore, firing_id: str | None) -> str:
    if firing_id:
        return firing_id
    active = store.list_active_firings()
    if not active:
        raise ValueError('No firing is running')
    if len(active) > 1:
        ids = ', '.join(r.id for r in active)
        raise ValueError(f'Several firings are running, pass --id ({ids})')
    return active[0].id


def _plot_schedule(schedule: FiringSchedule) -> None:
    """Show the schedule polyline with matplotlib."""
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        print('Warning: matplotlib not available, skipping plot.',
              file=sys.stderr)
        return

    try:
        times, temps = schedule_arrays(schedule.segments)
        fig, ax = plt.subplots(figsize=(10, 5))
        fig.suptitle(f'Firing schedule: {schedule.name}', fontsize=14)
        ax.plot(times / 60.0, temps, 'r-', linewidth=2, label='Scheduled temperature')
        ax.axhline(573.0, color='gray', linestyle=':', linewidth=1, label='Quartz inversion')
        ax.set_xlabel('Time (h)')
        ax.set_ylabel('Temperature (C)')
        ax.legend(loc='upper right')
        ax.grid(True, alpha=0.3)
        plt.tight_layout()
        plt.show()
    except Exception as exc:  # pylint: disable=broad-except
        print(f'Warning: Could not display plot: {exc}', file=sys.stderr)


# ---------------------------------------------------------------------------
# Subcommand: generate
# ---------------------------------------------------------------------------

def _cmd_generate(args: argparse.Namespace) -> int:
    """Generate the recommended schedule for a sample type and stage."""
    if args.weight < 0:
        print('Error: --weight must be >= 0 kg', file=sys.stderr)
        return 1
    settings = _load_settings(args)
    store = _open_store(settings)
    service = KilnService(store, settings=settings)
    service.refresh()

    generated, schedule = service.plan_schedule(
        parse_sample_type(args.sample_type),
        parse_firing_stage(args.stage),
        args.weight,
        args.name,
    )
    if schedule is None:
        for line in generated.warnings:
            print(line)
        return 1

    print(f'Schedule: {schedule.name}')
    _print_segments(schedule)
    print()
    for line in generated.summary_lines():
        print(line)
    print(f'Theoretical duration: {format_minutes(schedule.theoretical_duration_minutes)}')
    print(f'Calibrated estimate:  {format_minutes(schedule.estimated_duration_minutes)} '
          f'(factor {service.calibration.factor:.3f})')

    if args.save_template:
        saved = store.save_template(args.save_template, schedule)
        if not saved:
            print(f'Error: Could not save template: {saved.message}', file=sys.stderr)
            return 1
        print(f'Template saved as: {args.save_template}')
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as fh:
            json.dump(schedule.to_dict(), fh, indent=2)
        print(f'Schedule saved to: {args.output}')
    if args.plot:
        _plot_schedule(schedule)
    return 0


# ---------------------------------------------------------------------------
# Subcommand: duration
# ---------------------------------------------------------------------------

def _cmd_duration(args: argparse.Namespace) -> int:
    """Report theoretical and calibrated durations of a schedule file."""
    schedule = _load_schedule(args.schedule)
    settings = _load_settings(args)
    service = KilnService(_open_store(settings), settings=settings)
    factor = service.refresh().factor

    theoretical = schedule.theoretical_duration_minutes
    print(f'Schedule: {schedule.name} ({len(schedule.segments)} segments)')
    print(f'Theoretical duration: {theoretical} min ({format_minutes(theoretical)})')
    calibrated = apply_calibration(theoretical, factor)
    print(f'Calibrated duration:  {calibrated} min ({format_minutes(calibrated)}, factor {factor:.3f})')
    if args.plot:
        _plot_schedule(schedule)
    return 0


# ---------------------------------------------------------------------------
# Subcommand: check
# ---------------------------------------------------------------------------

def _cmd_check(args: argparse.Namespace) -> int:
    """Review a schedule file against the rules for a sample type."""
    schedule = _load_schedule(args.schedule)
    sample_type = parse_sample_type(args.sample_type or schedule.sample_type or 'standard')
    weight = args.weight if args.weight is not None else (schedule.clay_weight_kg or 0.0)
    result = check_schedule(sample_type, schedule.segments, weight)
    for line in result.summary_lines():
        print(line)
    return 0 if result.is_safe else 2


# ---------------------------------------------------------------------------
# Subcommand: calibrate
# ---------------------------------------------------------------------------

def _cmd_calibrate(args: argparse.Namespace) -> int:
    """Compute the calibration factor from the firing history."""
    settings = _load_settings(args)
    store = _open_store(settings)
    if args.logs:
        logs = _load_logs(args.logs)
        print(f'Loaded {len(logs)} firing log(s) from {args.logs}')
        result = calculate_calibration(logs)
    else:
        service = KilnService(store, settings=settings)
        service.refresh()
        print(f'Loaded {len(service.logs)} firing log(s) from {settings.store_path}')
        result = service.recalibrate(save=False)
    print()
    _print_calibration(result)

    if args.save:
        saved = store.save_calibration(result)
        if not saved:
            print(f'Error: Could not save calibration: {saved.message}', file=sys.stderr)
            return 1
        print(f'\nCalibration saved to: {settings.store_path}')
    return 0


# ---------------------------------------------------------------------------
# Subcommands: start / finish / cancel
# ---------------------------------------------------------------------------

def _cmd_start(args: argparse.Namespace) -> int:
    """Start a firing from a schedule file or a saved template."""
    settings = _load_settings(args)
    store = _open_store(settings)
    if args.template:
        templates = store.get_templates()
        if args.template not in templates:
            print(f'Error: No template named {args.template!r}', file=sys.stderr)
            return 1
        schedule = templates[args.template]
    elif args.schedule:
        schedule = _load_schedule(args.schedule)
    else:
        print('Error: pass a schedule file or --template NAME', file=sys.stderr)
        return 1

    with _build_notifier(store, settings) as notifier:
        service = KilnService(store, notifier, settings)
        monitor = service.start_firing(schedule)
    print(f'Firing started: {schedule.name}')
    print(f'Firing id:      {monitor.firing_id}')
    print(f'Estimated:      {format_minutes(schedule.estimated_duration_minutes)}')
    return 0


def _cmd_finish(args: argparse.Namespace) -> int:
    """Record the outcome of the running firing and close it."""
    settings = _load_settings(args)
    store = _open_store(settings)
    firing_id = _select_active(store, args.id)
    with _build_notifier(store, settings) as notifier:
        service = KilnService(store, notifier, settings)
        service.refresh()
        if service.resume_firing(firing_id) is None:
            print(f'Error: No active firing {firing_id}', file=sys.stderr)
            return 1
        log = service.finish_firing(parse_outcome(args.outcome), args.notes)
    print(f'Firing finished: {log.schedule_name}')
    print(f'Actual duration:    {format_minutes(log.actual_duration)}')
    print(f'Predicted duration: {format_minutes(log.predicted_duration)}')
    if args.recalibrate:
        print()
        _print_calibration(service.recalibrate())
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    """Abort the running firing."""
    settings = _load_settings(args)
    store = _open_store(settings)
    firing_id = _select_active(store, args.id)
    with _build_notifier(store, settings) as notifier:
        service = KilnService(store, notifier, settings)
        if service.resume_firing(firing_id) is None:
            print(f'Error: No active firing {firing_id}', file=sys.stderr)
            return 1
        log = service.cancel_firing()
    print(f'Firing {firing_id} cancelled.')
    if log is not None:
        print('An error log entry was recorded.')
    return 0


# ---------------------------------------------------------------------------
# Subcommand: poll
# ---------------------------------------------------------------------------

def _cmd_poll(args: argparse.Namespace) -> int:
    """Check every persisted active firing for milestones."""
    settings = _load_settings(args)
    store = _open_store(settings)
    clock = SystemClock()

    with _build_notifier(store, settings) as notifier:
        def _pass() -> bool:
            fired = poll_active_firings(
                store, notifier, clock.now(), settings.milestone_thresholds,
                website_url=settings.website_url,
                near_completion_minutes=settings.near_completion_minutes,
                overdue_minutes=settings.overdue_minutes,
            )
            for firing_id, milestone in fired:
                print(f'{firing_id}: {milestone.kind} ({milestone.level})')
            return True

        if not args.loop:
            _pass()
            return 0
        task = RecurringTask(args.interval or settings.remote_interval_s, _pass, clock)
        ticks = task.run(args.max_ticks)
        _log.info('Polling stopped after %d pass(es)', ticks)
    return 0


# ---------------------------------------------------------------------------
# Subcommand: simulate
# ---------------------------------------------------------------------------

def _cmd_simulate(args: argparse.Namespace) -> int:
    """Replay a schedule on a synthetic clock and print every notification."""
    if args.step <= 0:
        print('Error: --step must be > 0 minutes', file=sys.stderr)
        return 1
    schedule = _load_schedule(args.schedule)
    settings = _load_settings(args)
    clock = ManualClock()
    monitor = FiringMonitor(
        clock=clock,
        thresholds=settings.milestone_thresholds,
        near_completion_minutes=settings.near_completion_minutes,
        overdue_minutes=settings.overdue_minutes,
    )
    monitor.start(schedule, clock.now())

    total_minutes = schedule.estimated_duration_minutes + args.overrun
    ticks = int(total_minutes // args.step) + 1
    monitor.run(interval_s=args.step * 60.0, max_ticks=ticks)
    monitor.complete(parse_outcome(args.outcome))

    for message in monitor.events:
        print(_message_text(message))
        print()
    print(f'Simulated {format_minutes(total_minutes)} in {ticks} sample(s), '
          f'{len(monitor.events)} notification(s).')
    return 0


# ---------------------------------------------------------------------------
# Subcommand: webhooks
# ---------------------------------------------------------------------------

def _cmd_webhooks(args: argparse.Namespace) -> int:
    """List, add or remove notification webhooks."""
    settings = _load_settings(args)
    store = _open_store(settings)
    hooks = store.get_webhooks()

    if args.add or args.remove:
        if args.add:
            name, url = args.add
            hooks = [h for h in hooks if h.name != name]
            hooks.append(WebhookConfig(name=name, url=url))
        if args.remove:
            hooks = [h for h in hooks if h.name != args.remove]
        saved = store.save_webhooks(hooks)
        if not saved:
            print(f'Error: Could not save webhooks: {saved.message}', file=sys.stderr)
            return 1

    if not hooks:
        print('No webhooks configured.')
    for hook in hooks:
        state = 'on' if hook.enabled else 'off'
        print(f'{hook.name:<20} [{state}] {hook.url}')
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='kiln-planner',
        description='Kiln firing schedule planner and calibration assistant.',
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='Enable debug logging.',
    )
    parser.add_argument(
        '--settings', default=None,
        help='Path to a settings JSON file.',
    )
    parser.add_argument(
        '--store', default=None,
        help='Path to the store JSON file (overrides the settings file).',
    )
    sub = parser.add_subparsers(dest='command')

    # ── generate ──────────────────────────────────────────────────────
    p_gen = sub.add_parser(
        'generate',
        help='Generate a recommended schedule.',
    )
    p_gen.add_argument(
        'sample_type', choices=SAMPLE_TYPES,
        help='Kind of work being fired.',
    )
    p_gen.add_argument(
        'stage', choices=FIRING_STAGES,
        help='Firing stage.',
    )
    p_gen.add_argument(
        '--weight', type=float, default=1.0,
        help='Total clay weight in kg (default: 1).',
    )
    p_gen.add_argument(
        '--name', default=None,
        help='Schedule name (default: derived from stage and sample type).',
    )
    p_gen.add_argument(
        '--save-template', default=None, metavar='NAME',
        help='Save the calibrated schedule as a named template.',
    )
    p_gen.add_argument(
        '-o', '--output', default=None,
        help='Write the schedule JSON to this file.',
    )
    p_gen.add_argument(
        '--plot', action='store_true',
        help='Show matplotlib plot of the schedule.',
    )

    # ── duration ──────────────────────────────────────────────────────
    p_dur = sub.add_parser(
        'duration',
        help='Theoretical and calibrated duration of a schedule file.',
    )
    p_dur.add_argument(
        'schedule',
        help='Path to the schedule JSON file.',
    )
    p_dur.add_argument(
        '--plot', action='store_true',
        help='Show matplotlib plot of the schedule.',
    )

    # ── check ─────────────────────────────────────────────────────────
    p_chk = sub.add_parser(
        'check',
        help='Safety check of a schedule file.',
    )
    p_chk.add_argument(
        'schedule',
        help='Path to the schedule JSON file.',
    )
    p_chk.add_argument(
        '--sample-type', choices=SAMPLE_TYPES, default=None,
        help='Sample type (default: from the schedule, else standard).',
    )
    p_chk.add_argument(
        '--weight', type=float, default=None,
        help='Total clay weight in kg (default: from the schedule).',
    )

    # ── calibrate ─────────────────────────────────────────────────────
    p_cal = sub.add_parser(
        'calibrate',
        help='Compute the duration calibration factor.',
    )
    p_cal.add_argument(
        '--logs', default=None,
        help='Read firing logs from this JSON file instead of the store.',
    )
    p_cal.add_argument(
        '--save', action='store_true',
        help='Persist the computed factor.',
    )

    # ── start ─────────────────────────────────────────────────────────
    p_start = sub.add_parser(
        'start',
        help='Start a firing.',
    )
    p_start.add_argument(
        'schedule', nargs='?', default=None,
        help='Path to the schedule JSON file.',
    )
    p_start.add_argument(
        '--template', default=None,
        help='Start a saved template instead of a file.',
    )

    # ── finish ────────────────────────────────────────────────────────
    p_fin = sub.add_parser(
        'finish',
        help='Record the outcome of the running firing.',
    )
    p_fin.add_argument(
        'outcome', choices=OUTCOMES,
        help='How the firing turned out.',
    )
    p_fin.add_argument(
        '--notes', default='',
        help='Free-form notes for the log.',
    )
    p_fin.add_argument(
        '--id', default=None,
        help='Firing id (default: the only running firing).',
    )
    p_fin.add_argument(
        '--recalibrate', action='store_true',
        help='Recompute and save the calibration factor afterwards.',
    )

    # ── cancel ────────────────────────────────────────────────────────
    p_can = sub.add_parser(
        'cancel',
        help='Cancel the running firing.',
    )
    p_can.add_argument(
        '--id', default=None,
        help='Firing id (default: the only running firing).',
    )

    # ── poll ──────────────────────────────────────────────────────────
    p_poll = sub.add_parser(
        'poll',
        help='Notify milestones of persisted active firings.',
    )
    p_poll.add_argument(
        '--loop', action='store_true',
        help='Keep polling at the remote interval.',
    )
    p_poll.add_argument(
        '--interval', type=float, default=None,
        help='Polling interval in seconds (default: from settings).',
    )
    p_poll.add_argument(
        '--max-ticks', type=int, default=None,
        help='Stop after this many passes.',
    )

    # ── simulate ──────────────────────────────────────────────────────
    p_sim = sub.add_parser(
        'simulate',
        help='Replay a schedule on a synthetic clock.',
    )
    p_sim.add_argument(
        'schedule',
        help='Path to the schedule JSON file.',
    )
    p_sim.add_argument(
        '--step', type=float, default=5.0,
        help='Sampling step in minutes (default: 5).',
    )
    p_sim.add_argument(
        '--overrun', type=float, default=0.0,
        help='Minutes to keep running past the estimate (default: 0).',
    )
    p_sim.add_argument(
        '--outcome', choices=OUTCOMES, default='perfect',
        help='Outcome recorded at the end (default: perfect).',
    )

    # ── webhooks ──────────────────────────────────────────────────────
    p_hook = sub.add_parser(
        'webhooks',
        help='List or edit notification webhooks.',
    )
    p_hook.add_argument(
        '--add', nargs=2, metavar=('NAME', 'URL'), default=None,
        help='Add or replace a webhook.',
    )
    p_hook.add_argument(
        '--remove', metavar='NAME', default=None,
        help='Remove a webhook by name.',
    )

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

_COMMANDS = {
    'generate':  _cmd_generate,
    'duration':  _cmd_duration,
    'check':     _cmd_check,
    'calibrate': _cmd_calibrate,
    'start':     _cmd_start,
    'finish':    _cmd_finish,
    'cancel':    _cmd_cancel,
    'poll':      _cmd_poll,
    'simulate':  _cmd_simulate,
    'webhooks':  _cmd_webhooks,
}


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.  Returns an exit code (0 = success)."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(levelname)s: %(name)s: %(message)s',
    )

    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except (FileNotFoundError, ValueError, RuntimeError) as exc:
        print(f'Error: {exc}', file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print('\nInterrupted.', file=sys.stderr)
        return 130
    except Exception as exc:  # noqa: BLE001
        print(f'Unexpected error: {exc}', file=sys.stderr)
        _log.debug('Traceback:', exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
