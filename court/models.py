"""
Courtroom Models — Case, Verdict and Punishment Records

THIS MODULE DEFINES NO COMMANDS.

Plain data shared by every stage of the pipeline:
- Conversation turns and detections
- Juror votes and verdicts
- Punishment decisions
- Case records and their canonical (signable) form
- Stage results returned at every pipeline boundary

This module contains data only and performs no I/O.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Vote(str, Enum):
    GUILTY = "guilty"
    NOT_GUILTY = "not_guilty"
    ABSTAIN = "abstain"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str
    timestamp: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class Detection:
    """Outcome of one detector pass over a window of turns."""

    triggered: bool
    offense: Optional[str] = None
    confidence: float = 0.0
    evidence: Tuple[str, ...] = ()

    @classmethod
    def clear(cls) -> "Detection":
        return cls(triggered=False)


@dataclass(frozen=True)
class JurorVote:
    juror: str
    persona: str
    vote: Vote
    commentary: str = ""
    elapsed: float = 0.0
    error: Optional[str] = None

    @property
    def abstained(self) -> bool:
        return self.vote is Vote.ABSTAIN

    def as_dict(self) -> Dict[str, Any]:
        return {
            "juror": self.juror,
            "persona": self.persona,
            "vote": self.vote.value,
            "commentary": self.commentary,
            "elapsed": round(self.elapsed, 3),
            "error": self.error,
        }


@dataclass(frozen=True)
class Verdict:
    guilty: bool
    votes: Tuple[JurorVote, ...]
    identity: str
    detection: Detection
    concluded_at: datetime = field(default_factory=_utc_now)

    @property
    def vote_counts(self) -> Dict[str, int]:
        counts = {vote.value: 0 for vote in Vote}
        for juror_vote in self.votes:
            counts[juror_vote.vote.value] += 1
        return counts

    @property
    def label(self) -> str:
        return "GUILTY" if self.guilty else "NOT GUILTY"

    @property
    def offense(self) -> Optional[str]:
        return self.detection.offense


@dataclass(frozen=True)
class Punishment:
    identity: str
    offense: str
    tier: str
    duration: float  # minutes
    repeat_count: int
    expires_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "offense": self.offense,
            "tier": self.tier,
            "duration": round(self.duration, 3),
            "repeat_count": self.repeat_count,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class CaseRecord:
    """A finalized case. Immutable; signed exactly once."""

    case_id: str
    identity: str
    offense: str
    confidence: float
    timestamp: datetime
    verdict: str
    votes: Tuple[JurorVote, ...]
    punishment: Optional[Punishment] = None
    signature: Optional[str] = None

    @classmethod
    def from_verdict(
        cls,
        verdict: Verdict,
        punishment: Optional[Punishment] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "CaseRecord":
        return cls(
            case_id=str(uuid.uuid4()),
            identity=verdict.identity,
            offense=verdict.offense or "unknown",
            confidence=verdict.detection.confidence,
            timestamp=now or _utc_now(),
            verdict=verdict.label,
            votes=verdict.votes,
            punishment=punishment,
        )

    @property
    def signed(self) -> bool:
        return self.signature is not None

    def content(self) -> Dict[str, Any]:
        """Everything the signature covers."""
        return {
            "case_id": self.case_id,
            "identity": self.identity,
            "offense": self.offense,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
            "verdict": self.verdict,
            "votes": [vote.as_dict() for vote in self.votes],
            "punishment": self.punishment.as_dict() if self.punishment else None,
        }

    def canonical_bytes(self) -> bytes:
        return json.dumps(self.content(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    def with_signature(self, signature: str) -> "CaseRecord":
        if self.signed:
            raise ValueError(f"case {self.case_id} is already signed")
        return replace(self, signature=signature)

    def as_dict(self) -> Dict[str, Any]:
        payload = self.content()
        payload["signature"] = self.signature
        return payload


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Success/failure value returned at every pipeline stage boundary."""

    stage: str
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, stage: str, value: Optional[T] = None) -> "StageResult[T]":
        return cls(stage=stage, ok=True, value=value)

    @classmethod
    def failure(
        cls,
        stage: str,
        *,
        error: Optional[BaseException] = None,
        reason: Optional[str] = None,
    ) -> "StageResult[T]":
        return cls(stage=stage, ok=False, error=error, reason=reason or (repr(error) if error else None))

    @classmethod
    def skipped(cls, stage: str, reason: str) -> "StageResult[T]":
        return cls(stage=stage, ok=False, reason=reason)
