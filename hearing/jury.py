"""
Jury Panel — Bounded-Time Hearing State Machine

THIS MODULE DEFINES NO COMMANDS.

This module runs hearings:
IDLE -> CONVENED -> DELIBERATING -> CONCLUDED

Responsibilities:
- Seat the jurors for a detection
- Run every juror's deliberation concurrently
- Enforce the deliberation deadline (stragglers abstain, late results are dropped)
- Turn judge errors into abstentions
- Aggregate votes by quorum or unanimity
- Keep a per-juror trace for the case record

No Discord API calls should occur in this module.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from court.errors import JurorTimeoutError
from court.models import Detection, JurorVote, Verdict, Vote
from hearing.judges import Judge, Juror, Opinion, seat_jurors
from safety.logging import LogContext, log_batch
from state.config import HearingConfig, HumorConfig
from utils import timers
from utils.text import safe_truncate

logger = logging.getLogger(__name__)


class PanelState(str, Enum):
    IDLE = "idle"
    CONVENED = "convened"
    DELIBERATING = "deliberating"
    CONCLUDED = "concluded"


def aggregate_votes(
    votes: Sequence[JurorVote],
    *,
    require_unanimity: bool,
    min_vote_threshold: int,
) -> bool:
    """Guilty or not. Abstentions never count as votes; all-abstain acquits."""
    cast = [vote for vote in votes if not vote.abstained]
    if not cast:
        return False
    guilty_votes = sum(1 for vote in cast if vote.vote is Vote.GUILTY)
    if require_unanimity:
        return guilty_votes == len(cast)
    return guilty_votes >= min_vote_threshold


def _discard_late_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class JuryPanel:
    def __init__(
        self,
        judge: Judge,
        *,
        jury_size: int = 3,
        deliberation_timeout: float = 30.0,
        require_unanimity: bool = False,
        min_vote_threshold: int = 2,
        max_commentary_length: int = 280,
    ) -> None:
        if jury_size <= 0:
            raise ValueError("jury_size must be > 0")
        if deliberation_timeout <= 0:
            raise ValueError("deliberation_timeout must be > 0")
        self.judge = judge
        self.jury_size = jury_size
        self.deliberation_timeout = deliberation_timeout
        self.require_unanimity = require_unanimity
        self.min_vote_threshold = min_vote_threshold
        self.max_commentary_length = max_commentary_length
        self.state = PanelState.IDLE
        self.transitions: List[PanelState] = [PanelState.IDLE]
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, judge: Judge, hearing: HearingConfig, humor: Optional[HumorConfig] = None) -> "JuryPanel":
        return cls(
            judge,
            jury_size=hearing.jury_size,
            deliberation_timeout=hearing.deliberation_timeout,
            require_unanimity=hearing.require_unanimity,
            min_vote_threshold=hearing.min_vote_threshold,
            max_commentary_length=humor.max_commentary_length if humor else 280,
        )

    def configure(self, hearing: HearingConfig, humor: Optional[HumorConfig] = None) -> None:
        """Apply new settings; a hearing already in progress keeps its own."""
        if hearing.jury_size > 0:
            self.jury_size = hearing.jury_size
        if hearing.deliberation_timeout > 0:
            self.deliberation_timeout = hearing.deliberation_timeout
        self.require_unanimity = hearing.require_unanimity
        self.min_vote_threshold = hearing.min_vote_threshold
        if humor is not None:
            self.max_commentary_length = humor.max_commentary_length

    def _transition(self, state: PanelState) -> None:
        self.state = state
        self.transitions.append(state)

    async def conduct_hearing(self, detection: Detection, identity: str = "default") -> Verdict:
        async with self._lock:
            jurors = seat_jurors(self.jury_size, self.judge.roster())
            self._transition(PanelState.CONVENED)
            window = timers.TimedWindow(self.deliberation_timeout)

            tasks: Dict[asyncio.Task, Juror] = {
                asyncio.create_task(self._deliberate(juror, detection), name=f"juror-{juror.seat}"): juror
                for juror in jurors
            }
            self._transition(PanelState.DELIBERATING)
            try:
                done, pending = await asyncio.wait(tasks, timeout=self.deliberation_timeout)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                self._transition(PanelState.IDLE)
                raise

            for task in pending:
                task.add_done_callback(_discard_late_result)
                task.cancel()

            votes: List[JurorVote] = []
            for task, juror in tasks.items():
                if task in done:
                    votes.append(self._vote_from(task, juror))
                else:
                    error = JurorTimeoutError(juror.name, self.deliberation_timeout)
                    votes.append(self._abstention(juror, error, window.elapsed()))

            guilty = aggregate_votes(
                votes,
                require_unanimity=self.require_unanimity,
                min_vote_threshold=self.min_vote_threshold,
            )
            verdict = Verdict(guilty=guilty, votes=tuple(votes), identity=identity, detection=detection)
            self._transition(PanelState.CONCLUDED)

        log_batch(
            "juror_vote",
            (vote.as_dict() for vote in verdict.votes),
            message="Juror vote recorded",
            context=LogContext(identity=identity, offense=detection.offense, stage="hearing"),
        )
        logger.info(
            "Hearing concluded: %s %s (%s)",
            identity,
            verdict.label,
            verdict.vote_counts,
        )
        return verdict

    async def _deliberate(self, juror: Juror, detection: Detection) -> Tuple[Opinion, float]:
        window = timers.TimedWindow(self.deliberation_timeout)
        opinion = await self.judge.deliberate(juror, detection)
        return opinion, window.elapsed()

    def _vote_from(self, task: asyncio.Task, juror: Juror) -> JurorVote:
        if task.cancelled():
            return self._abstention(juror, asyncio.CancelledError(f"{juror.name} withdrew"), 0.0)
        error = task.exception()
        if error is not None:
            logger.warning("%s failed to deliberate: %r", juror.name, error)
            return self._abstention(juror, error, 0.0)
        opinion, elapsed = task.result()
        return JurorVote(
            juror=juror.name,
            persona=juror.persona.name,
            vote=Vote.GUILTY if opinion.guilty else Vote.NOT_GUILTY,
            commentary=safe_truncate(opinion.commentary, self.max_commentary_length),
            elapsed=elapsed,
        )

    def _abstention(self, juror: Juror, error: BaseException, elapsed: float) -> JurorVote:
        return JurorVote(
            juror=juror.name,
            persona=juror.persona.name,
            vote=Vote.ABSTAIN,
            elapsed=elapsed,
            error=repr(error),
        )
