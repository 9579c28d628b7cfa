"""Court Memory — Offense History Tracking

THIS MODULE DEFINES NO COMMANDS.

This module stores the courtroom's memory of past convictions.

- Track per-identity offense counts by category
- Track when each category was last convicted
- Expose read-only snapshots for detectors and status output

Counts only ever go up. The PunishmentEngine is the only writer and
serializes its writes per identity.
This module contains logic only and performs no Discord actions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional

from court.errors import PunishmentHistoryConflict
from utils.timers import utc_now


@dataclass(frozen=True)
class OffenseEntry:
    count: int
    last_timestamp: datetime


class OffenseHistory:
    """Per-identity mapping of offense category to conviction count."""

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, OffenseEntry]] = {}

    def get_count(self, identity: str, offense: str) -> int:
        entry = self._entries.get(identity, {}).get(offense)
        return entry.count if entry else 0

    def get_entry(self, identity: str, offense: str) -> Optional[OffenseEntry]:
        return self._entries.get(identity, {}).get(offense)

    def record(self, identity: str, offense: str, timestamp: Optional[datetime] = None) -> OffenseEntry:
        """Count one more conviction and return the updated entry."""
        previous = self.get_entry(identity, offense)
        count = (previous.count if previous else 0) + 1
        return self._store(identity, offense, OffenseEntry(count=count, last_timestamp=timestamp or utc_now()))

    def restore(self, identity: str, offense: str, entry: OffenseEntry) -> OffenseEntry:
        """Load a previously persisted entry; refuses to lower an existing count."""
        previous = self.get_entry(identity, offense)
        if previous and entry.count < previous.count:
            raise PunishmentHistoryConflict(
                f"{identity}/{offense}: count {entry.count} would undo {previous.count}"
            )
        return self._store(identity, offense, entry)

    def _store(self, identity: str, offense: str, entry: OffenseEntry) -> OffenseEntry:
        self._entries.setdefault(identity, {})[offense] = entry
        return entry

    def for_identity(self, identity: str) -> Mapping[str, OffenseEntry]:
        return dict(self._entries.get(identity, {}))

    def total(self, identity: str) -> int:
        return sum(entry.count for entry in self._entries.get(identity, {}).values())

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, object]]]:
        return {
            identity: {
                offense: {"count": entry.count, "last_timestamp": entry.last_timestamp.isoformat()}
                for offense, entry in offenses.items()
            }
            for identity, offenses in self._entries.items()
        }
