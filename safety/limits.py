"""
Case Rate Limits — Evaluation Cooldown and Daily Case Cap

THIS MODULE DEFINES NO COMMANDS.

Both gates are advisory: the core consults them before invoking the
detector or convening a jury. They never call those stages themselves.
State is kept per identity and resets on UTC day rollover.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from utils.timers import Clock, utc_now

DEFAULT_IDENTITY = "default"


@dataclass
class LimitState:
    last_evaluation_at: Optional[datetime] = None
    cases_today: int = 0
    day: Optional[date] = None


class RateLimiter:
    def __init__(
        self,
        cooldown_minutes: float = 30,
        max_cases_per_day: int = 3,
        *,
        clock: Clock = utc_now,
    ) -> None:
        if cooldown_minutes < 0:
            raise ValueError("cooldown_minutes must be >= 0")
        if max_cases_per_day < 0:
            raise ValueError("max_cases_per_day must be >= 0")
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.max_cases_per_day = max_cases_per_day
        self._clock = clock
        self._states: Dict[str, LimitState] = {}

    def configure(self, cooldown_minutes: float, max_cases_per_day: int) -> None:
        self.cooldown = timedelta(minutes=max(0.0, cooldown_minutes))
        self.max_cases_per_day = max(0, max_cases_per_day)

    def _state(self, identity: str) -> LimitState:
        state = self._states.setdefault(identity, LimitState())
        today = self._clock().date()
        if state.day != today:
            state.day = today
            state.cases_today = 0
        return state

    def cooldown_remaining(self, identity: str = DEFAULT_IDENTITY) -> timedelta:
        state = self._state(identity)
        if state.last_evaluation_at is None:
            return timedelta(0)
        elapsed = self._clock() - state.last_evaluation_at
        return max(timedelta(0), self.cooldown - elapsed)

    def can_evaluate(self, identity: str = DEFAULT_IDENTITY) -> bool:
        """True when the cooldown has elapsed. A granted evaluation restarts the cooldown."""
        if self.cooldown_remaining(identity) > timedelta(0):
            return False
        self._state(identity).last_evaluation_at = self._clock()
        return True

    def can_file(self, identity: str = DEFAULT_IDENTITY) -> bool:
        return self._state(identity).cases_today < self.max_cases_per_day

    def record_case(self, identity: str = DEFAULT_IDENTITY) -> int:
        state = self._state(identity)
        state.cases_today += 1
        return state.cases_today

    def cases_today(self, identity: str = DEFAULT_IDENTITY) -> int:
        return self._state(identity).cases_today

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {
            identity: {
                "last_evaluation_at": state.last_evaluation_at.isoformat() if state.last_evaluation_at else None,
                "cases_today": self._state(identity).cases_today,
            }
            for identity, state in list(self._states.items())
        }
