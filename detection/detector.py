"""
Offense Detection — Conversation Window Evaluation

THIS MODULE DEFINES NO COMMANDS.

Responsibilities:
- Define the detector capability used by the courtroom core
- Provide a lexical default detector for the four offense categories:
  repeated questions, validation seeking, overthinking, avoidance
- Weigh prior convictions from offense memory

This module contains scoring logic only.
It does not convene hearings or decide punishments.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from court.models import Detection, Role, Turn
from utils.text import is_question, normalize_whitespace, question_key, safe_truncate

OFFENSES = (
    "repeated_questions",
    "validation_seeking",
    "overthinking",
    "avoidance",
)

EVIDENCE_LENGTH = 160


class Detector:
    """Capability: look at recent turns, report whether an offense occurred."""

    async def evaluate(self, turns: Sequence[Turn], memory: Mapping[str, object]) -> Detection:
        raise NotImplementedError


# ---------------------------
# Configuration & weights
# ---------------------------

@dataclass(frozen=True)
class LexicalConfig:
    # Repeated questions
    repeat_base: float = 0.4
    repeat_step: float = 0.2

    # Validation seeking
    validation_base: float = 0.3
    validation_step: float = 0.15

    # Overthinking
    what_if_step: float = 0.2
    long_message_chars: int = 600
    long_message_step: float = 0.15

    # Avoidance
    avoidance_base: float = 0.3
    avoidance_step: float = 0.15

    # Prior convictions in the same category
    prior_step: float = 0.05
    prior_cap: float = 0.15

    trigger_floor: float = 0.5


# ---------------------------
# Lexical heuristics
# ---------------------------

_VALIDATION_PHRASES = {
    "am i right", "is that ok", "is this ok", "is that okay", "is this okay",
    "does that make sense", "be honest", "is it good", "do you like it",
    "was i wrong", "did i do well", "tell me it's fine", "right?",
}
_WHAT_IF_PHRASES = {
    "what if", "but then", "on the other hand", "second thought",
    "overthinking", "can't decide", "cant decide",
}
_AVOIDANCE_PHRASES = {
    "later", "tomorrow", "not now", "next week", "some other time",
    "i'll get to it", "ill get to it", "can't be bothered", "procrastinat",
    "let's skip", "lets skip", "never mind", "nevermind",
}


@dataclass
class LexicalDetector(Detector):
    config: LexicalConfig = field(default_factory=LexicalConfig)
    enabled_offenses: Tuple[str, ...] = OFFENSES

    @classmethod
    def from_triggers(cls, triggers: Mapping[str, bool], config: Optional[LexicalConfig] = None) -> "LexicalDetector":
        enabled = tuple(offense for offense in OFFENSES if triggers.get(offense, True))
        return cls(config=config or LexicalConfig(), enabled_offenses=enabled)

    async def evaluate(self, turns: Sequence[Turn], memory: Mapping[str, object]) -> Detection:
        user_turns = [turn for turn in turns if turn.role is Role.USER and turn.content]
        if not user_turns:
            return Detection.clear()

        scores: Dict[str, Tuple[float, List[str]]] = {}
        for offense in self.enabled_offenses:
            scorer = _SCORERS[offense]
            confidence, evidence = scorer(user_turns, self.config)
            if confidence > 0:
                confidence += _prior_bonus(memory.get(offense), self.config)
                scores[offense] = (min(1.0, confidence), evidence)

        if not scores:
            return Detection.clear()

        offense, (confidence, evidence) = max(scores.items(), key=lambda item: item[1][0])
        return Detection(
            triggered=confidence >= self.config.trigger_floor,
            offense=offense,
            confidence=round(confidence, 4),
            evidence=tuple(safe_truncate(normalize_whitespace(text), EVIDENCE_LENGTH) for text in evidence[:3]),
        )


def score_repeated_questions(turns: Sequence[Turn], config: LexicalConfig) -> Tuple[float, List[str]]:
    questions = [turn.content for turn in turns if is_question(turn.content)]
    keys = Counter(question_key(text) for text in questions)
    repeats = sum(count - 1 for key, count in keys.items() if key and count > 1)
    if repeats <= 0:
        return 0.0, []
    evidence = [text for text in questions if keys[question_key(text)] > 1]
    return config.repeat_base + config.repeat_step * repeats, evidence


def score_validation_seeking(turns: Sequence[Turn], config: LexicalConfig) -> Tuple[float, List[str]]:
    return _phrase_score(turns, _VALIDATION_PHRASES, config.validation_base, config.validation_step)


def score_overthinking(turns: Sequence[Turn], config: LexicalConfig) -> Tuple[float, List[str]]:
    score = 0.0
    evidence: List[str] = []
    for turn in turns:
        hits = _phrase_hits(turn.content.lower(), _WHAT_IF_PHRASES)
        long_message = len(turn.content) >= config.long_message_chars
        if hits:
            score += hits * config.what_if_step
        if long_message:
            score += config.long_message_step
        if hits or long_message:
            evidence.append(turn.content)
    return score, evidence


def score_avoidance(turns: Sequence[Turn], config: LexicalConfig) -> Tuple[float, List[str]]:
    return _phrase_score(turns, _AVOIDANCE_PHRASES, config.avoidance_base, config.avoidance_step)


_SCORERS = {
    "repeated_questions": score_repeated_questions,
    "validation_seeking": score_validation_seeking,
    "overthinking": score_overthinking,
    "avoidance": score_avoidance,
}


# ---------------------------
# Internal scoring helpers
# ---------------------------

def _phrase_score(
    turns: Iterable[Turn],
    phrases: set[str],
    base: float,
    step: float,
) -> Tuple[float, List[str]]:
    hits = 0
    evidence: List[str] = []
    for turn in turns:
        turn_hits = _phrase_hits(turn.content.lower(), phrases)
        if turn_hits:
            hits += turn_hits
            evidence.append(turn.content)
    if hits == 0:
        return 0.0, []
    return base + step * hits, evidence


def _phrase_hits(text: str, phrases: set[str]) -> int:
    return sum(1 for phrase in phrases if phrase in text)


def _prior_bonus(prior: object, config: LexicalConfig) -> float:
    count = getattr(prior, "count", prior)
    if not isinstance(count, int) or count <= 0:
        return 0.0
    return min(config.prior_cap, count * config.prior_step)
