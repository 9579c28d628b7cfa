"""Shared fakes for courtroom tests: a manual clock, scripted detectors/judges, recording senders."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest

from court.errors import SubmissionDeliveryError
from court.models import Detection, Turn
from detection.detector import Detector
from hearing.judges import Judge, Juror, Opinion
from state.config import ConfigStore, MemoryBackend


class ManualClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class ScriptedDetector(Detector):
    def __init__(self, detection: Optional[Detection] = None, error: Optional[Exception] = None) -> None:
        self.detection = detection or Detection.clear()
        self.error = error
        self.calls: List[Sequence[Turn]] = []

    async def evaluate(self, turns: Sequence[Turn], memory: Mapping[str, object]) -> Detection:
        self.calls.append(list(turns))
        if self.error is not None:
            raise self.error
        return self.detection


class ScriptedJudge(Judge):
    """Seat N votes: True (guilty), False (not guilty), "slow" (sleeps past any deadline), Exception (raises)."""

    def __init__(self, script: Sequence[Any], slow_seconds: float = 5.0) -> None:
        self.script = list(script)
        self.slow_seconds = slow_seconds

    async def deliberate(self, juror: Juror, detection: Detection) -> Opinion:
        action = self.script[(juror.seat - 1) % len(self.script)]
        if action == "slow":
            await asyncio.sleep(self.slow_seconds)
            return Opinion(guilty=True, commentary="too late")
        if isinstance(action, Exception):
            raise action
        return Opinion(guilty=bool(action), commentary="guilty as charged" if action else "acquit")


class RecordingSender:
    def __init__(self, failures: int = 0, fail_forever: bool = False) -> None:
        self.failures = failures
        self.fail_forever = fail_forever
        self.payloads: List[Dict[str, Any]] = []
        self.attempts = 0

    async def __call__(self, payload: Dict[str, Any]) -> None:
        self.attempts += 1
        if self.fail_forever or self.attempts <= self.failures:
            raise SubmissionDeliveryError("endpoint unavailable", status=503)
        self.payloads.append(payload)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def memory_store() -> Dict[str, Any]:
    return {}


@pytest.fixture
def config(memory_store: Dict[str, Any]) -> ConfigStore:
    store = ConfigStore(MemoryBackend(memory_store))
    store.load()
    return store
