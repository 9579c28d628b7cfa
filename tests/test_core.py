"""CourtroomCore end to end: gating, hearings, filing, submission and failure containment."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Callable

import pytest

from conftest import ManualClock, RecordingSender, ScriptedDetector, ScriptedJudge
from court.core import WINDOW_CAPACITY, build_courtroom
from court.errors import DetectorError, QueueOverflowError
from court.models import Detection, Role
from detection.detector import Detector
from hearing.jury import PanelState
from state.config import ConfigStore, MemoryBackend
from submission.signing import CaseSigner

OFFENSE = Detection(triggered=True, offense="overthinking", confidence=0.85, evidence=("what if",))


def _courtroom(config, clock, *, detector=None, script=(True,), sender=None, notifier=None):
    return build_courtroom(
        config,
        detector=detector or ScriptedDetector(OFFENSE),
        judge=ScriptedJudge(script),
        signer=CaseSigner.generate(),
        sender=sender if sender is not None else RecordingSender(),
        notifier=notifier,
        clock=clock,
    )


async def _ingest(core, identity: str, count: int, start: int = 0):
    outcome = None
    for index in range(start, start + count):
        outcome = await core.ingest(identity, f"message {index}")
    return outcome


async def _eventually(condition: Callable[[], object], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_guilty_verdict_files_one_signed_case(config, clock: ManualClock):
    sender = RecordingSender()
    core = _courtroom(config, clock, sender=sender)
    assert (await core.initialize())["status"] == "initialized"

    for index in range(4):
        assert await core.ingest("alice", f"message {index}") is None
    outcome = await core.ingest("alice", "message 4")

    assert outcome.filed
    assert [stage.stage for stage in outcome.stages] == ["detection", "hearing", "punishment", "submission", "filing"]
    assert core.case_count == 1
    assert core.queue.signer.verify(outcome.case)

    await core.queue.process_due()
    await _eventually(lambda: sender.payloads)
    assert len(sender.payloads) == 1
    assert sender.payloads[0]["case"]["case_id"] == outcome.case.case_id
    assert sender.payloads[0]["public_key"] == core.queue.signer.public_key

    await core.shutdown()


@pytest.mark.asyncio
async def test_cooldown_skips_detector(config, clock: ManualClock):
    detector = ScriptedDetector(OFFENSE)
    core = _courtroom(config, clock, detector=detector)
    await core.initialize()
    core.limiter.can_evaluate("alice")

    outcome = await _ingest(core, "alice", 5)

    assert outcome.last_stage.reason == "cooldown active"
    assert detector.calls == []
    assert core.case_count == 0
    await core.shutdown()


@pytest.mark.asyncio
async def test_acquittal_files_nothing(config, clock: ManualClock):
    core = _courtroom(config, clock, script=(False,))
    await core.initialize()

    outcome = await _ingest(core, "alice", 5)

    assert not outcome.filed
    assert outcome.stage("hearing").value.guilty is False
    assert outcome.last_stage.reason == "acquitted"
    assert core.case_count == 0
    assert len(core.queue) == 0
    assert core.punishment.history.total("alice") == 0
    await core.shutdown()


@pytest.mark.asyncio
async def test_detector_failure_is_contained(config, clock: ManualClock):
    core = _courtroom(config, clock, detector=ScriptedDetector(error=RuntimeError("model offline")))
    await core.initialize()

    outcome = await _ingest(core, "alice", 5)

    assert outcome.last_stage.stage == "detection"
    assert outcome.last_stage.ok is False
    assert isinstance(outcome.last_stage.error, DetectorError)
    assert core.enabled
    assert core.case_count == 0
    await core.shutdown()


@pytest.mark.asyncio
async def test_no_offense_stops_before_hearing(config, clock: ManualClock):
    core = _courtroom(config, clock, detector=ScriptedDetector(Detection.clear()))
    await core.initialize()

    outcome = await _ingest(core, "alice", 5)

    assert outcome.last_stage.reason == "no offense"
    assert core.panel.transitions == [PanelState.IDLE]
    await core.shutdown()


@pytest.mark.asyncio
async def test_daily_cap_stops_further_cases(config, clock: ManualClock):
    config.set("detection.cooldown_minutes", 0)
    config.set("detection.max_cases_per_day", 1)
    core = _courtroom(config, clock)
    await core.initialize()

    first = await _ingest(core, "alice", 5)
    second = await _ingest(core, "alice", 5, start=5)

    assert first.filed
    assert not second.filed
    assert second.last_stage.reason == "daily case limit reached"
    assert core.case_count == 1
    await core.shutdown()


@pytest.mark.asyncio
async def test_full_queue_drops_case_without_counting(config, clock: ManualClock):
    config.set("detection.cooldown_minutes", 0)
    config.set("api.max_queue_size", 1)
    config.set("api.retry_delay", 60)
    core = _courtroom(config, clock, sender=RecordingSender(fail_forever=True))
    await core.initialize()

    first = await _ingest(core, "alice", 5)
    second = await _ingest(core, "alice", 5, start=5)

    assert first.filed
    assert second.last_stage.stage == "submission"
    assert isinstance(second.last_stage.error, QueueOverflowError)
    assert core.case_count == 1
    assert len(core.queue) == 1
    await core.shutdown()


@pytest.mark.asyncio
async def test_dead_letters_reach_the_ledger(config, clock: ManualClock):
    config.set("api.retry_attempts", 1)
    core = _courtroom(config, clock, sender=RecordingSender(fail_forever=True))
    await core.initialize()

    await _ingest(core, "alice", 5)
    await core.queue.process_due()
    await _eventually(lambda: core.ledger.dead_letters == 1)

    assert core.status()["dead_letters"] == 1
    assert core.status()["queue"]["dead"] == 1
    await core.shutdown()


@pytest.mark.asyncio
async def test_notification_is_sent_after_filing(config, clock: ManualClock):
    sent = []

    async def notifier(identity: str, text: str) -> None:
        sent.append((identity, text))

    core = _courtroom(config, clock, notifier=notifier)
    await core.initialize()

    outcome = await _ingest(core, "alice", 5)
    await core.shutdown()

    assert len(sent) == 1
    identity, text = sent[0]
    assert identity == "alice"
    assert "CASE FILED" in text
    assert f"https://clawtrial.app/cases/{outcome.case.case_id}" in text


@pytest.mark.asyncio
async def test_failing_notifier_does_not_undo_the_case(config, clock: ManualClock):
    async def notifier(identity: str, text: str) -> None:
        raise RuntimeError("channel gone")

    core = _courtroom(config, clock, notifier=notifier)
    await core.initialize()

    outcome = await _ingest(core, "alice", 5)
    await core.shutdown()

    assert outcome.filed
    assert core.case_count == 1


@pytest.mark.asyncio
async def test_window_keeps_most_recent_turns(config, clock: ManualClock):
    core = _courtroom(config, clock, detector=ScriptedDetector(Detection.clear()))
    await core.initialize()

    await _ingest(core, "alice", WINDOW_CAPACITY + 10)

    window = core.window("alice")
    assert len(window) == WINDOW_CAPACITY
    assert window[-1].content == f"message {WINDOW_CAPACITY + 9}"
    assert window[0].content == "message 10"
    await core.shutdown()


@pytest.mark.asyncio
async def test_detector_sees_only_recent_fresh_turns(config, clock: ManualClock):
    config.set("detection.cooldown_minutes", 0)
    detector = ScriptedDetector(Detection.clear())
    core = _courtroom(config, clock, detector=detector)
    await core.initialize()

    await _ingest(core, "alice", 3)
    clock.advance(days=2)
    await _ingest(core, "alice", 2, start=3)
    assert [turn.content for turn in detector.calls[0]] == ["message 3", "message 4"]

    await _ingest(core, "alice", 10, start=5)
    assert len(detector.calls[-1]) == 10
    assert detector.calls[-1][-1].content == "message 14"
    await core.shutdown()


@pytest.mark.asyncio
async def test_identities_are_evaluated_independently(config, clock: ManualClock):
    core = _courtroom(config, clock)
    await core.initialize()

    alice = await _ingest(core, "alice", 5)
    bob = await _ingest(core, "bob", 5)

    assert alice.filed and bob.filed
    assert core.case_count == 2
    await core.shutdown()


@pytest.mark.asyncio
async def test_evaluations_of_one_identity_never_overlap(config, clock: ManualClock):
    class SlowDetector(Detector):
        def __init__(self) -> None:
            self.active = 0
            self.peak = 0

        async def evaluate(self, turns, memory):
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return Detection.clear()

    config.set("detection.cooldown_minutes", 0)
    detector = SlowDetector()
    core = _courtroom(config, clock, detector=detector)
    await core.initialize()
    await _ingest(core, "alice", 3)

    await asyncio.gather(*(core.evaluate("alice") for _ in range(4)))

    assert detector.peak == 1
    await core.shutdown()


@pytest.mark.asyncio
async def test_disabled_courtroom_ignores_messages(config, clock: ManualClock):
    config.set("enabled", False)
    detector = ScriptedDetector(OFFENSE)
    core = _courtroom(config, clock, detector=detector)

    assert await core.initialize() == {"status": "disabled"}
    assert await _ingest(core, "alice", 5) is None
    assert detector.calls == []
    assert core.window("alice") == ()


@pytest.mark.asyncio
async def test_assistant_turns_count_toward_the_window(config, clock: ManualClock):
    core = _courtroom(config, clock, detector=ScriptedDetector(Detection.clear()))
    await core.initialize()

    await core.ingest("alice", "hello", role=Role.ASSISTANT)

    assert core.window("alice")[0].role is Role.ASSISTANT
    await core.shutdown()


@pytest.mark.asyncio
async def test_reconfigure_reaches_running_components(config, clock: ManualClock):
    core = _courtroom(config, clock)
    await core.initialize()

    config.set("hearing.jury_size", 5)
    config.set("api.max_queue_size", 7)
    core.reconfigure()

    assert core.panel.jury_size == 5
    assert core.queue.max_queue_size == 7
    await core.shutdown()


@pytest.mark.asyncio
async def test_initialize_reports_key_while_queue_is_empty(config, clock: ManualClock):
    core = _courtroom(config, clock)

    result = await core.initialize()

    assert len(core.queue) == 0
    assert result["public_key"] == core.queue.signer.public_key
    assert core.status_sink.get("public_key") == core.queue.signer.public_key
    assert core.status()["queue"]["running"] is True
    await core.shutdown()
    assert core.status()["queue"]["running"] is False


@pytest.mark.asyncio
async def test_stored_bad_values_do_not_stop_startup(memory_store, clock: ManualClock):
    memory_store["courtroom_config_v1"] = {
        "hearing": {"jury_size": 0},
        "detection": {"cooldown_minutes": "abc"},
        "api": {"max_queue_size": "many"},
    }
    config = ConfigStore(MemoryBackend(memory_store))
    core = _courtroom(config, clock)

    assert (await core.initialize())["status"] == "initialized"
    assert core.panel.jury_size == 3
    assert core.limiter.cooldown == timedelta(minutes=30)
    assert core.queue.max_queue_size == 100
    outcome = await _ingest(core, "alice", 5)
    assert outcome.filed
    await core.shutdown()


@pytest.mark.asyncio
async def test_zero_vote_threshold_cannot_convict_on_acquittals(memory_store, clock: ManualClock):
    memory_store["courtroom_config_v1"] = {"hearing": {"min_vote_threshold": 0}}
    config = ConfigStore(MemoryBackend(memory_store))
    core = _courtroom(config, clock, script=(False,))
    await core.initialize()

    outcome = await _ingest(core, "alice", 5)

    assert core.panel.min_vote_threshold == 2
    assert outcome.stage("hearing").value.guilty is False
    assert core.case_count == 0
    await core.shutdown()
