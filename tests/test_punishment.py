"""PunishmentEngine: tier selection, escalation, history updates, enforcement."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import ManualClock
from court.errors import PunishmentHistoryConflict
from court.models import Detection, Punishment, Verdict
from punishment.engine import PunishmentEngine, escalated_duration, severity_from_confidence
from state.config import PunishmentConfig
from state.memory import OffenseEntry, OffenseHistory


def _verdict(offense="overthinking", confidence=0.8, identity="alice", guilty=True) -> Verdict:
    return Verdict(
        guilty=guilty,
        votes=(),
        identity=identity,
        detection=Detection(triggered=True, offense=offense, confidence=confidence),
    )


def test_escalated_duration_example():
    assert escalated_duration(60, 1.5, 2, 1440) == pytest.approx(135)


def test_escalated_duration_is_capped():
    assert escalated_duration(120, 2.0, 10, 1440) == 1440


def test_severity_from_confidence_bands():
    assert severity_from_confidence(0.95) == 3
    assert severity_from_confidence(0.8) == 2
    assert severity_from_confidence(0.61) == 1


@pytest.mark.asyncio
async def test_repeat_offense_escalates(clock: ManualClock):
    history = OffenseHistory()
    history.record("alice", "overthinking")
    history.record("alice", "overthinking")
    engine = PunishmentEngine(history, PunishmentConfig(), clock=clock)

    punishment = await engine.execute(_verdict())

    assert punishment.tier == "moderate"
    assert punishment.repeat_count == 2
    assert punishment.duration == pytest.approx(135)
    assert punishment.expires_at == clock.now + timedelta(minutes=135)
    assert history.get_count("alice", "overthinking") == 3


@pytest.mark.asyncio
async def test_first_offense_uses_tier_base(clock: ManualClock):
    engine = PunishmentEngine(OffenseHistory(), PunishmentConfig(), clock=clock)

    punishment = await engine.execute(_verdict(offense="validation_seeking"))

    assert punishment.tier == "minor"
    assert punishment.duration == 30
    assert punishment.repeat_count == 0


@pytest.mark.asyncio
async def test_unknown_offense_uses_confidence_severity(clock: ManualClock):
    engine = PunishmentEngine(OffenseHistory(), PunishmentConfig(), clock=clock)

    punishment = await engine.execute(_verdict(offense="gaslighting", confidence=0.95))

    assert punishment.tier == "severe"
    assert punishment.duration == 120


@pytest.mark.asyncio
async def test_tier_bumps_after_enough_repeats(clock: ManualClock):
    history = OffenseHistory()
    for _ in range(3):
        history.record("alice", "validation_seeking")
    engine = PunishmentEngine(history, PunishmentConfig(), clock=clock)

    punishment = await engine.execute(_verdict(offense="validation_seeking"))

    assert punishment.tier == "moderate"
    assert punishment.duration == pytest.approx(60 * 1.5 ** 3)


@pytest.mark.asyncio
async def test_no_tiers_falls_back_to_default_duration(clock: ManualClock):
    engine = PunishmentEngine(OffenseHistory(), PunishmentConfig(tiers={}), clock=clock)

    punishment = await engine.execute(_verdict())

    assert punishment.tier == "default"
    assert punishment.duration == 60


@pytest.mark.asyncio
async def test_acquittal_is_not_punished():
    history = OffenseHistory()
    engine = PunishmentEngine(history)

    assert await engine.execute(_verdict(guilty=False)) is None
    assert history.get_count("alice", "overthinking") == 0


@pytest.mark.asyncio
async def test_concurrent_hearings_do_not_race_on_history(clock: ManualClock):
    history = OffenseHistory()
    engine = PunishmentEngine(history, PunishmentConfig(), clock=clock)

    punishments = await asyncio.gather(*(engine.execute(_verdict()) for _ in range(5)))

    assert sorted(p.repeat_count for p in punishments) == [0, 1, 2, 3, 4]
    assert history.get_count("alice", "overthinking") == 5


@pytest.mark.asyncio
async def test_enforcer_receives_sentence_and_failures_are_contained(clock: ManualClock):
    received = []

    async def enforcer(punishment: Punishment) -> None:
        received.append(punishment)
        raise RuntimeError("missing permissions")

    engine = PunishmentEngine(OffenseHistory(), enforcer=enforcer, clock=clock)
    punishment = await engine.execute(_verdict())

    assert received == [punishment]
    assert engine.active_sentence("alice") == punishment


@pytest.mark.asyncio
async def test_active_sentence_expires(clock: ManualClock):
    engine = PunishmentEngine(OffenseHistory(), clock=clock)
    punishment = await engine.execute(_verdict(offense="validation_seeking"))

    clock.advance(minutes=punishment.duration)
    assert engine.active_sentence("alice") is None


def test_history_never_moves_backwards():
    history = OffenseHistory()
    history.record("alice", "avoidance")
    history.record("alice", "avoidance")

    with pytest.raises(PunishmentHistoryConflict):
        history.restore("alice", "avoidance", OffenseEntry(count=1, last_timestamp=history.get_entry("alice", "avoidance").last_timestamp))
    assert history.get_count("alice", "avoidance") == 2
    assert history.total("alice") == 2
