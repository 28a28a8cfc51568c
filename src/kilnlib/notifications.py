#
# ABOUT
# Chat-webhook notification payloads for firing lifecycle events and a
# best-effort webhook sender.

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
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Final, Literal, Protocol, TYPE_CHECKING

import httpx

from kilnlib.ktypes import OUTCOME_LABELS, FiringLog

if TYPE_CHECKING:
    from kilnlib.firing_monitor import FiringSample, Milestone
    from kilnlib.firing_segments import FiringSchedule


_log: Final[logging.Logger] = logging.getLogger(__name__)

MilestoneKind = Literal['progress', 'almost_done', 'overdue']

# Embed colours (0xRRGGBB)
COLOR_START: Final[int] = 0x3498DB
COLOR_PROGRESS: Final[int] = 0xF1C40F
COLOR_ALMOST_DONE: Final[int] = 0xE67E22
COLOR_OVERDUE: Final[int] = 0xE74C3C
COLOR_COMPLETE: Final[int] = 0x2ECC71
COLOR_CANCEL: Final[int] = 0x95A5A6

_DEFAULT_TIMEOUT_S: Final[float] = 10.0


def format_minutes(minutes: float) -> str:
    """Format minutes as ``[-]h:mm``."""
    sign = '-' if minutes < 0 else ''
    total = int(round(abs(minutes)))
    return f'{sign}{total // 60}:{total % 60:02d}'


def _iso(epoch_s: float | None = None) -> str:
    stamp = datetime.now(timezone.utc) if epoch_s is None else datetime.fromtimestamp(epoch_s, timezone.utc)
    return stamp.isoformat()


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmbedField:
    name: str
    value: str
    inline: bool = True


@dataclass
class Embed:
    """Structured chat message: title, colour, field list and timestamp."""

    title: str
    color: int
    fields: list[EmbedField] = field(default_factory=list)
    timestamp: str = field(default_factory=_iso)
    description: str = ''
    url: str = ''

    def add_field(self, name: str, value: str, inline: bool = True) -> Embed:
        self.fields.append(EmbedField(name, value, inline))
        return self

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            'title': self.title,
            'color': self.color,
            'timestamp': self.timestamp,
            'fields': [{'name': f.name, 'value': f.value, 'inline': f.inline} for f in self.fields],
        }
        if self.description:
            data['description'] = self.description
        if self.url:
            data['url'] = self.url
        return data

    def to_text(self) -> str:
        lines = [f'**{self.title}**']
        if self.description:
            lines.append(self.description)
        lines.extend(f'{f.name}: {f.value}' for f in self.fields)
        return '\n'.join(lines)


Message = Embed | str


def to_payload(message: Message) -> dict[str, object]:
    """Chat-webhook JSON body for *message*."""
    if isinstance(message, Embed):
        return {'embeds': [message.to_dict()]}
    return {'content': message}


def build_start_message(
    schedule: FiringSchedule,
    start_time: float,
    *,
    website_url: str = '',
) -> Embed:
    embed = Embed(
        title=f'Firing started: {schedule.name}',
        color=COLOR_START,
        timestamp=_iso(start_time),
        url=website_url,
    )
    embed.add_field('Estimated duration', format_minutes(schedule.estimated_duration_minutes))
    embed.add_field('Expected end', _iso(start_time + schedule.estimated_duration_minutes * 60.0))
    embed.add_field('Segments', str(len(schedule.segments)))
    return embed


_MILESTONE_TITLES: Final[dict[MilestoneKind, str]] = {
    'progress': 'Firing progress',
    'almost_done': 'Firing almost done',
    'overdue': 'Firing overdue',
}

_MILESTONE_COLORS: Final[dict[MilestoneKind, int]] = {
    'progress': COLOR_PROGRESS,
    'almost_done': COLOR_ALMOST_DONE,
    'overdue': COLOR_OVERDUE,
}


def build_milestone_message(
    schedule: FiringSchedule,
    sample: FiringSample,
    milestone: Milestone,
    *,
    website_url: str = '',
) -> Embed:
    title = _MILESTONE_TITLES[milestone.kind]
    if milestone.kind == 'progress':
        title = f'{title} {milestone.level}%'
    embed = Embed(
        title=f'{title}: {schedule.name}',
        color=_MILESTONE_COLORS[milestone.kind],
        url=website_url,
    )
    embed.add_field('Progress', f'{min(sample.progress_pct, 100.0):.0f}%')
    embed.add_field('Scheduled temperature', f'~{sample.current_temp}C')
    embed.add_field('Elapsed', format_minutes(sample.elapsed_minutes))
    embed.add_field('Remaining', format_minutes(sample.remaining_minutes))
    if milestone.kind == 'overdue':
        embed.description = 'The firing has run past its estimate. Check the kiln.'
    return embed


def build_completion_message(schedule: FiringSchedule, log: FiringLog) -> Embed:
    embed = Embed(title=f'Firing complete: {schedule.name}', color=COLOR_COMPLETE)
    embed.add_field('Outcome', OUTCOME_LABELS[log.outcome])
    embed.add_field('Actual duration', format_minutes(log.actual_duration))
    embed.add_field('Predicted duration', format_minutes(log.predicted_duration))
    if log.notes:
        embed.add_field('Notes', log.notes, inline=False)
    return embed


def build_cancel_message(schedule: FiringSchedule, elapsed_minutes: float) -> Embed:
    embed = Embed(title=f'Firing cancelled: {schedule.name}', color=COLOR_CANCEL)
    embed.add_field('Elapsed', format_minutes(elapsed_minutes))
    return embed


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@dataclass
class WebhookConfig:
    name: str
    url: str
    enabled: bool = True

    def to_dict(self) -> dict[str, object]:
        return {'name': self.name, 'url': self.url, 'enabled': self.enabled}

    @classmethod
    def from_dict(cls, data: dict) -> WebhookConfig:
        url = str(data.get('url') or '').strip()
        if not url:
            raise ValueError('Webhook needs a url')
        return cls(name=str(data.get('name') or url), url=url, enabled=bool(data.get('enabled', True)))


class Notifier(Protocol):
    """Delivers a message; returns ``False`` on failure and never raises."""

    def send(self, message: Message) -> bool: ...


class WebhookNotifier:
    """Post messages to every enabled chat webhook.

    Delivery is best effort: HTTP failures are logged and reported through
    the return value only.
    """

    def __init__(
        self,
        webhooks: Iterable[WebhookConfig],
        *,
        client: httpx.Client | None = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
    ) -> None:
        self.webhooks: list[WebhookConfig] = list(webhooks)
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> WebhookNotifier:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def send(self, message: Message) -> bool:
        targets = [hook for hook in self.webhooks if hook.enabled]
        if not targets:
            _log.debug('No enabled webhooks; message dropped')
            return True
        payload = to_payload(message)
        delivered = 0
        for hook in targets:
            try:
                response = self._client.post(hook.url, json=payload)
                response.raise_for_status()
                delivered += 1
            except httpx.HTTPError as exc:
                _log.warning('Webhook %s delivery failed: %s', hook.name, exc)
        return delivered == len(targets)
