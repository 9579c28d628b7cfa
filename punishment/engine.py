"""
Punishment Engine — Tiered, Escalating Sentencing

THIS MODULE DEFINES AUTONOMOUS DECISIONS (NO USER COMMANDS).

Responsibilities:
- Map an offense to a severity (configured per category, else by confidence)
- Select a tier from severity and the identity's repeat count
- Escalate duration multiplicatively for repeat offenses, capped at max_duration
- Record the conviction in offense history in the same critical section
- Hand the sentence to the host enforcer (muting etc.)

This module decides and records. Enforcement belongs to the host.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from court.models import Punishment, Verdict
from safety.logging import LogContext, log_error, log_escalation
from state.config import PunishmentConfig
from state.memory import OffenseHistory
from utils.timers import Clock, utc_now

logger = logging.getLogger(__name__)

Enforcer = Callable[[Punishment], Awaitable[None]]

DEFAULT_TIER = "default"


def severity_from_confidence(confidence: float) -> int:
    if confidence >= 0.9:
        return 3
    if confidence >= 0.75:
        return 2
    return 1


def escalated_duration(base: float, multiplier: float, repeat_count: int, max_duration: float) -> float:
    """base * multiplier ** repeat_count, capped at max_duration."""
    return min(base * (multiplier ** max(0, repeat_count)), max_duration)


class PunishmentEngine:
    def __init__(
        self,
        history: OffenseHistory,
        config: Optional[PunishmentConfig] = None,
        *,
        enforcer: Optional[Enforcer] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.history = history
        self.config = config or PunishmentConfig()
        self.enforcer = enforcer
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Dict[str, Punishment] = {}

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    def _ordered_tiers(self) -> List[Tuple[str, float, int]]:
        return sorted(
            ((name, tier.duration, tier.severity) for name, tier in self.config.tiers.items()),
            key=lambda item: item[2],
        )

    def severity_for(self, offense: str, confidence: float) -> int:
        configured = self.config.offense_severity.get(offense)
        if configured is not None:
            return int(configured)
        return severity_from_confidence(confidence)

    def select_tier(self, severity: int, repeat_count: int) -> Tuple[str, float]:
        """Return (tier name, base duration)."""
        tiers = self._ordered_tiers()
        if not tiers:
            return DEFAULT_TIER, self.config.default_duration
        index = next((i for i, (_, _, tier_severity) in enumerate(tiers) if tier_severity >= severity), len(tiers) - 1)
        if self.config.tier_escalation_repeats > 0:
            index += repeat_count // self.config.tier_escalation_repeats
        name, duration, _ = tiers[min(index, len(tiers) - 1)]
        return name, duration

    async def execute(self, verdict: Verdict) -> Optional[Punishment]:
        if not verdict.guilty:
            return None

        identity = verdict.identity
        offense = verdict.offense or "unknown"
        async with self._lock_for(identity):
            now = self._clock()
            repeat_count = self.history.get_count(identity, offense)
            severity = self.severity_for(offense, verdict.detection.confidence)
            tier, base = self.select_tier(severity, repeat_count)
            duration = escalated_duration(
                base,
                self.config.escalation_multiplier,
                repeat_count,
                self.config.max_duration,
            )
            punishment = Punishment(
                identity=identity,
                offense=offense,
                tier=tier,
                duration=duration,
                repeat_count=repeat_count,
                expires_at=now + timedelta(minutes=duration),
            )
            self.history.record(identity, offense, now)
            self._active[identity] = punishment

        log_escalation(
            "Sentence decided",
            context=LogContext(identity=identity, offense=offense, stage="punishment"),
            escalation=tier,
            duration=duration,
            repeat_count=repeat_count,
        )
        await self._enforce(punishment)
        return punishment

    async def _enforce(self, punishment: Punishment) -> None:
        if self.enforcer is None:
            return
        try:
            await self.enforcer(punishment)
        except Exception as exc:
            log_error(
                "Sentence enforcement failed",
                context=LogContext(identity=punishment.identity, offense=punishment.offense, stage="punishment"),
                error=exc,
            )

    def active_sentence(self, identity: str, now: Optional[datetime] = None) -> Optional[Punishment]:
        punishment = self._active.get(identity)
        if punishment is None:
            return None
        if (now or self._clock()) >= punishment.expires_at:
            self._active.pop(identity, None)
            return None
        return punishment

    def release(self, identity: str) -> bool:
        return self._active.pop(identity, None) is not None
