"""
Judges — Pluggable Juror Reasoning

THIS MODULE DEFINES NO COMMANDS.

A judge turns a detection into one juror's opinion. The jury panel only
relies on the contract (`deliberate` returns an Opinion, possibly slowly,
possibly raising); the reasoning behind it is replaceable.

The default PersonaJudge gives each juror a leniency offset against the
detection confidence and a line of dry commentary.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

from court.models import Detection
from utils import timers


@dataclass(frozen=True)
class Persona:
    name: str
    leniency: float  # added to the conviction threshold
    guilty_lines: Tuple[str, ...]
    acquit_lines: Tuple[str, ...]


@dataclass(frozen=True)
class Juror:
    seat: int
    persona: Persona

    @property
    def name(self) -> str:
        return f"Juror {self.seat} ({self.persona.name})"


@dataclass(frozen=True)
class Opinion:
    guilty: bool
    commentary: str = ""


DEFAULT_PERSONAS: Tuple[Persona, ...] = (
    Persona(
        name="The Pragmatist",
        leniency=0.0,
        guilty_lines=("The evidence is tedious but clear.", "Guilty. Let's all move on."),
        acquit_lines=("Not enough here to waste the court's time.",),
    ),
    Persona(
        name="The Skeptic",
        leniency=0.1,
        guilty_lines=("Even I can't argue with this one.",),
        acquit_lines=("Circumstantial at best.", "I've seen worse before breakfast."),
    ),
    Persona(
        name="The Romantic",
        leniency=-0.05,
        guilty_lines=("It breaks my heart, but guilty.",),
        acquit_lines=("Everyone deserves a second chance.",),
    ),
    Persona(
        name="The Stickler",
        leniency=-0.1,
        guilty_lines=("Rules are rules.", "Section 4, paragraph 2. Guilty."),
        acquit_lines=("Technically within bounds. Barely.",),
    ),
)


class Judge:
    """Capability: form one juror's opinion about a detection."""

    async def deliberate(self, juror: Juror, detection: Detection) -> Opinion:
        raise NotImplementedError

    def roster(self) -> Sequence[Persona]:
        return DEFAULT_PERSONAS


@dataclass
class PersonaJudge(Judge):
    threshold: float = 0.6
    dry_wit_level: float = 0.8
    min_think_seconds: float = 0.0
    max_think_seconds: float = 0.0
    personas: Tuple[Persona, ...] = DEFAULT_PERSONAS
    rng: random.Random = field(default_factory=random.Random)

    def roster(self) -> Sequence[Persona]:
        return self.personas

    async def deliberate(self, juror: Juror, detection: Detection) -> Opinion:
        if self.max_think_seconds > 0:
            await timers.randomized_delay(self.min_think_seconds, self.max_think_seconds)
        guilty = detection.triggered and detection.confidence >= self.threshold + juror.persona.leniency
        return Opinion(guilty=guilty, commentary=self._commentary(juror.persona, guilty))

    def _commentary(self, persona: Persona, guilty: bool) -> str:
        if self.rng.random() >= self.dry_wit_level:
            return "Guilty." if guilty else "Not guilty."
        lines = persona.guilty_lines if guilty else persona.acquit_lines
        return self.rng.choice(lines)


def seat_jurors(size: int, personas: Optional[Sequence[Persona]] = None) -> Tuple[Juror, ...]:
    """Seat `size` jurors, cycling through the persona roster."""
    roster = tuple(personas or DEFAULT_PERSONAS)
    if size <= 0:
        raise ValueError("jury size must be > 0")
    return tuple(Juror(seat=seat + 1, persona=roster[seat % len(roster)]) for seat in range(size))
