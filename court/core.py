"""
Courtroom Core — Adjudication Pipeline Orchestrator

THIS MODULE DEFINES NO COMMANDS.

Pipeline, per conversation identity:
message -> bounded turn window -> (every Nth message, cooldown permitting)
detector -> (triggered, daily cap permitting) jury hearing -> (guilty)
punishment -> signed submission -> ledger/status -> notification

Every stage returns a StageResult. A failing stage is logged and the
pipeline returns to idle; nothing raised here reaches the host.
Evaluations of one identity never overlap.

The core is a caller-owned context object: build one with
`build_courtroom()` and keep it for the lifetime of the host.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Coroutine, Deque, Dict, Optional, Set, Tuple

from court.errors import DetectorError, QueueOverflowError
from court.models import CaseRecord, Detection, Punishment, Role, StageResult, Turn, Verdict, Vote
from detection.detector import Detector, LexicalDetector
from hearing.judges import Judge, PersonaJudge
from hearing.jury import JuryPanel
from punishment.engine import Enforcer, PunishmentEngine
from safety.limits import RateLimiter
from safety.logging import LogContext, log_action, log_error, log_escalation
from state.config import ConfigStore, CourtConfig
from state.memory import OffenseHistory
from state.status import CaseLedger, StatusSink
from submission.queue import Sender, SubmissionQueue
from submission.signing import CaseSigner
from utils.text import safe_truncate
from utils.timers import Clock, utc_now

logger = logging.getLogger(__name__)

WINDOW_CAPACITY = 50
MIN_TURNS_FOR_EVALUATION = 3

Notifier = Callable[[str, str], Awaitable[None]]


@dataclass
class Conversation:
    turns: Deque[Turn] = field(default_factory=lambda: deque(maxlen=WINDOW_CAPACITY))
    ingested: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass(frozen=True)
class PipelineOutcome:
    identity: str
    stages: Tuple[StageResult, ...]
    case: Optional[CaseRecord] = None

    @property
    def filed(self) -> bool:
        return self.case is not None

    @property
    def last_stage(self) -> Optional[StageResult]:
        return self.stages[-1] if self.stages else None

    def stage(self, name: str) -> Optional[StageResult]:
        return next((result for result in self.stages if result.stage == name), None)


class CourtroomCore:
    def __init__(
        self,
        config: ConfigStore,
        *,
        detector: Detector,
        panel: JuryPanel,
        punishment: PunishmentEngine,
        limiter: RateLimiter,
        ledger: CaseLedger,
        status: StatusSink,
        queue: Optional[SubmissionQueue] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.detector = detector
        self.panel = panel
        self.punishment = punishment
        self.limiter = limiter
        self.ledger = ledger
        self.status_sink = status
        self.queue = queue
        self.notifier = notifier
        self._clock = clock
        self._conversations: Dict[str, Conversation] = {}
        self._background: Set[asyncio.Task] = set()
        self.initialized = False

    # ---------------------------
    # Lifecycle
    # ---------------------------

    @property
    def settings(self) -> CourtConfig:
        return self.config.settings()

    @property
    def enabled(self) -> bool:
        return self.initialized and self.settings.enabled

    @property
    def case_count(self) -> int:
        return self.ledger.cases_filed

    async def initialize(self) -> Dict[str, Any]:
        if not self.config.loaded:
            self.config.load()
        self.reconfigure()
        settings = self.settings
        public_key = self.queue.signer.public_key if self.queue is not None else None
        if not settings.enabled:
            self.status_sink.update({"running": False, "initialized": False, "enabled": False})
            logger.info("Courtroom disabled in config")
            return {"status": "disabled"}

        if self.queue is not None and settings.api.enabled:
            self.queue.start()
        self.initialized = True
        self.status_sink.update(
            {
                "running": True,
                "initialized": True,
                "enabled": True,
                "public_key": public_key,
                "cases_filed": self.ledger.cases_filed,
            }
        )
        log_action("Courtroom initialized", action="initialize", public_key=public_key)
        return {"status": "initialized", "public_key": public_key}

    def reconfigure(self) -> None:
        """Push the current config tree into the running components."""
        settings = self.settings
        self.limiter.configure(settings.detection.cooldown_minutes, settings.detection.max_cases_per_day)
        self.panel.configure(settings.hearing, settings.humor)
        self.punishment.config = settings.punishment
        if self.queue is not None:
            self.queue.configure(settings.api)

    async def shutdown(self) -> None:
        if self.queue is not None:
            await self.queue.stop()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self.initialized = False
        self.status_sink.update({"running": False})
        await self.status_sink.flush()
        await self.config.flush()

    def status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "enabled": self.enabled,
            "case_count": self.ledger.cases_filed,
            "dead_letters": self.ledger.dead_letters,
            "panel_state": self.panel.state.value,
            "queue": {
                "depth": len(self.queue) if self.queue is not None else 0,
                "running": self.queue.running if self.queue is not None else False,
                **(self.queue.stats.as_dict() if self.queue is not None else {}),
            },
            "rate_limits": self.limiter.snapshot(),
            "recent_cases": self.ledger.recent_cases(),
        }

    # ---------------------------
    # Ingestion
    # ---------------------------

    def _conversation(self, identity: str) -> Conversation:
        conversation = self._conversations.get(identity)
        if conversation is None:
            conversation = Conversation()
            self._conversations[identity] = conversation
        return conversation

    def window(self, identity: str) -> Tuple[Turn, ...]:
        return tuple(self._conversation(identity).turns)

    async def ingest(self, identity: str, content: str, role: Role = Role.USER) -> Optional[PipelineOutcome]:
        """Record one message; every Nth message runs an evaluation."""
        if not self.enabled:
            return None
        try:
            conversation = self._conversation(identity)
            async with conversation.lock:
                conversation.turns.append(Turn(role=Role(role), content=content, timestamp=self._clock()))
                conversation.ingested += 1
                interval = max(1, self.settings.detection.evaluation_interval)
                if conversation.ingested % interval != 0:
                    return None
                return await self._evaluate(identity, conversation)
        except Exception as exc:
            log_error("Message ingestion failed", context=LogContext(identity=identity, stage="ingest"), error=exc)
            return None

    async def evaluate(self, identity: str) -> PipelineOutcome:
        conversation = self._conversation(identity)
        async with conversation.lock:
            return await self._evaluate(identity, conversation)

    # ---------------------------
    # Pipeline
    # ---------------------------

    async def _evaluate(self, identity: str, conversation: Conversation) -> PipelineOutcome:
        settings = self.settings
        stages = []

        def finish(result: StageResult, case: Optional[CaseRecord] = None) -> PipelineOutcome:
            stages.append(result)
            if not result.ok and result.error is None:
                logger.debug("Pipeline for %s stopped at %s: %s", identity, result.stage, result.reason)
            return PipelineOutcome(identity=identity, stages=tuple(stages), case=case)

        if not settings.enabled or not settings.detection.enabled:
            return finish(StageResult.skipped("detection", "detection disabled"))
        if len(conversation.turns) < MIN_TURNS_FOR_EVALUATION:
            return finish(StageResult.skipped("detection", "not enough turns"))
        if not self.limiter.can_evaluate(identity):
            return finish(StageResult.skipped("detection", "cooldown active"))

        detected = await self._detect(identity, conversation, settings)
        if not detected.ok:
            return finish(detected)
        stages.append(detected)
        detection = detected.value
        if not detection.triggered or detection.confidence < settings.detection.min_confidence:
            return finish(StageResult.skipped("hearing", "no offense"))

        if not settings.hearing.enabled:
            return finish(StageResult.skipped("hearing", "hearings disabled"))
        if not self.limiter.can_file(identity):
            return finish(StageResult.skipped("hearing", "daily case limit reached"))

        heard = await self._hear(identity, detection)
        if not heard.ok:
            return finish(heard)
        stages.append(heard)
        verdict = heard.value
        if not verdict.guilty:
            return finish(StageResult.skipped("punishment", "acquitted"))

        sentenced = await self._punish(verdict, settings)
        if not sentenced.ok and sentenced.error is not None:
            return finish(sentenced)
        stages.append(sentenced)

        record = CaseRecord.from_verdict(verdict, sentenced.value, now=self._clock())
        submitted = self._submit(record, settings)
        if not submitted.ok and submitted.error is not None:
            return finish(submitted)
        stages.append(submitted)
        case = submitted.value or record

        filed = self._file(case)
        return finish(filed, case=case if filed.ok else None)

    async def _detect(self, identity: str, conversation: Conversation, settings: CourtConfig) -> StageResult[Detection]:
        cutoff = self._clock() - timedelta(seconds=settings.security.max_evidence_age)
        turns = [turn for turn in conversation.turns if turn.timestamp >= cutoff]
        turns = turns[-max(1, settings.detection.evaluation_window):]
        memory = self.punishment.history.for_identity(identity)
        try:
            detection = await self.detector.evaluate(turns, memory)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = DetectorError(f"detector failed: {exc!r}")
            log_error("Evaluation failed", context=LogContext(identity=identity, stage="detection"), error=exc)
            return StageResult.failure("detection", error=error)
        if not isinstance(detection, Detection):
            return StageResult.failure("detection", error=DetectorError(f"detector returned {type(detection).__name__}"))
        if detection.triggered:
            log_action(
                "Offense detected",
                context=LogContext(identity=identity, offense=detection.offense, stage="detection"),
                action="detect",
                confidence=detection.confidence,
            )
        return StageResult.success("detection", detection)

    async def _hear(self, identity: str, detection: Detection) -> StageResult[Verdict]:
        log_action(
            "Initiating hearing",
            context=LogContext(identity=identity, offense=detection.offense, stage="hearing"),
            action="hearing",
        )
        try:
            verdict = await self.panel.conduct_hearing(detection, identity)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_error("Hearing failed", context=LogContext(identity=identity, stage="hearing"), error=exc)
            return StageResult.failure("hearing", error=exc)
        return StageResult.success("hearing", verdict)

    async def _punish(self, verdict: Verdict, settings: CourtConfig) -> StageResult[Punishment]:
        if not settings.punishment.enabled:
            return StageResult.skipped("punishment", "punishment disabled")
        try:
            punishment = await self.punishment.execute(verdict)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_error("Punishment failed", context=LogContext(identity=verdict.identity, stage="punishment"), error=exc)
            return StageResult.failure("punishment", error=exc)
        return StageResult.success("punishment", punishment)

    def _submit(self, record: CaseRecord, settings: CourtConfig) -> StageResult[CaseRecord]:
        if self.queue is None or not settings.api.enabled:
            return StageResult.skipped("submission", "submission disabled")
        context = LogContext(identity=record.identity, case_id=record.case_id, stage="submission")
        try:
            signed = self.queue.submit_case(record)
        except QueueOverflowError as exc:
            logger.warning("Dropping case %s: %s", record.case_id, exc)
            return StageResult.failure("submission", error=exc)
        except Exception as exc:
            log_error("Submission failed", context=context, error=exc)
            return StageResult.failure("submission", error=exc)
        return StageResult.success("submission", signed)

    def _file(self, case: CaseRecord) -> StageResult[CaseRecord]:
        try:
            self.limiter.record_case(case.identity)
            self.ledger.record_case(case)
        except Exception as exc:
            log_error("Case ledger update failed", context=LogContext(identity=case.identity, case_id=case.case_id), error=exc)
            return StageResult.failure("filing", error=exc)
        log_escalation(
            "Case filed",
            context=LogContext(identity=case.identity, case_id=case.case_id, offense=case.offense, stage="filing"),
            escalation=case.punishment.tier if case.punishment else None,
        )
        self._notify(case)
        return StageResult.success("filing", case)

    # ---------------------------
    # Notifications
    # ---------------------------

    def format_notification(self, case: CaseRecord) -> str:
        settings = self.settings
        lines = [
            f"🏛️ **CASE FILED**: {case.offense}",
            f"📋 Case ID: {case.case_id}",
            f"⚖️ Verdict: {case.verdict}",
        ]
        if case.punishment:
            lines.append(f"⏳ Sentence: {case.punishment.duration:.0f} min ({case.punishment.tier})")
        if self.queue is not None and settings.api.enabled:
            lines.append(f"🔗 View: {settings.api.case_url.rstrip('/')}/{case.case_id}")
        if settings.humor.enabled:
            remark = next((vote.commentary for vote in case.votes if vote.vote is Vote.GUILTY and vote.commentary), None)
            if remark:
                lines.append(f"> {safe_truncate(remark, settings.humor.max_commentary_length)}")
        return "\n".join(lines)

    def _notify(self, case: CaseRecord) -> None:
        if self.notifier is None:
            return
        self._spawn(self.notifier(case.identity, self.format_notification(case)), name=f"notify-{case.case_id}")

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Fire-and-forget: tracked so shutdown can wait, never awaited by the pipeline."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_error("Background task failed", error=error, task=task.get_name())


def build_courtroom(
    config: Optional[ConfigStore] = None,
    *,
    detector: Optional[Detector] = None,
    judge: Optional[Judge] = None,
    signer: Optional[CaseSigner] = None,
    sender: Optional[Sender] = None,
    status: Optional[StatusSink] = None,
    notifier: Optional[Notifier] = None,
    enforcer: Optional[Enforcer] = None,
    clock: Clock = utc_now,
) -> CourtroomCore:
    """Wire a CourtroomCore from config. Without a signer, cases are not submitted."""
    config = config or ConfigStore()
    if not config.loaded:
        config.load()
    settings = config.settings()
    status = status or StatusSink()
    ledger = CaseLedger(status, retention_days=settings.security.case_retention, clock=clock)

    judge = judge or PersonaJudge(
        threshold=settings.detection.min_confidence,
        dry_wit_level=settings.humor.dry_wit_level,
    )
    queue = None
    if signer is not None:
        queue = SubmissionQueue.from_config(
            signer,
            settings.api,
            sender=sender,
            on_dead=lambda entry: ledger.record_dead_letter(entry.case_id, entry.last_error),
            clock=clock,
        )
    else:
        logger.warning("No signing key available; cases will not be submitted")

    return CourtroomCore(
        config,
        detector=detector or LexicalDetector.from_triggers(settings.humor.triggers),
        panel=JuryPanel.from_config(judge, settings.hearing, settings.humor),
        punishment=PunishmentEngine(OffenseHistory(), settings.punishment, enforcer=enforcer, clock=clock),
        limiter=RateLimiter(
            settings.detection.cooldown_minutes,
            settings.detection.max_cases_per_day,
            clock=clock,
        ),
        ledger=ledger,
        status=status,
        queue=queue,
        notifier=notifier,
        clock=clock,
    )
