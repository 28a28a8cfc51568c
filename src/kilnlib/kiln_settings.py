#
# ABOUT
# User-editable settings for the kiln planner, stored as JSON.

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
from dataclasses import asdict, dataclass, field, fields
from typing import Final

from kilnlib.firing_monitor import (
    DEFAULT_THRESHOLDS,
    LOCAL_INTERVAL_S,
    NEAR_COMPLETION_MINUTES,
    OVERDUE_GRACE_MINUTES,
    REMOTE_INTERVAL_S,
)


_log: Final[logging.Logger] = logging.getLogger(__name__)


@dataclass
class KilnSettings:
    """Planner configuration passed explicitly to services and monitors."""

    store_path: str = 'kiln_store.json'
    milestone_thresholds: list[int] = field(default_factory=lambda: list(DEFAULT_THRESHOLDS))
    local_interval_s: float = LOCAL_INTERVAL_S
    remote_interval_s: float = REMOTE_INTERVAL_S
    near_completion_minutes: float = NEAR_COMPLETION_MINUTES
    overdue_minutes: float = OVERDUE_GRACE_MINUTES
    webhook_timeout_s: float = 10.0
    log_cancelled_firings: bool = False
    website_url: str = ''

    def validate(self) -> None:
        if any(t <= 0 or t > 100 for t in self.milestone_thresholds):
            raise ValueError('milestone thresholds must be within (0, 100]')
        if self.local_interval_s <= 0 or self.remote_interval_s <= 0:
            raise ValueError('sampling intervals must be > 0')
        if self.webhook_timeout_s <= 0:
            raise ValueError('webhook_timeout_s must be > 0')

    def save(self, filepath: str) -> None:
        """Save settings to a JSON file."""
        with open(filepath, 'w', encoding='utf-8') as fh:
            json.dump(asdict(self), fh, indent=2)
        _log.info('Saved kiln settings to %s', filepath)

    @classmethod
    def load(cls, filepath: str) -> KilnSettings:
        """Load settings from a JSON file; unknown keys are ignored."""
        with open(filepath, encoding='utf-8') as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f'Settings file {filepath} must contain a JSON object')
        valid_names = {f.name for f in fields(cls)}
        settings = cls(**{k: v for k, v in data.items() if k in valid_names})
        settings.milestone_thresholds = sorted(int(t) for t in settings.milestone_thresholds)
        settings.validate()
        _log.info('Loaded kiln settings from %s', filepath)
        return settings
