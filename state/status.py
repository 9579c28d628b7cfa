"""Court Status — Process-Visible Status Record and Case Ledger

THIS MODULE DEFINES NO COMMANDS.

Responsibilities:
- Merge partial status updates into one status record
- Write the record to the status file read by host monitoring
- Count filed cases and keep recent case summaries
- Prune summaries past the case retention window

Status writes are fire-and-forget; a failed write is logged and the
in-memory record stays authoritative.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional, Set

from court.models import CaseRecord
from state.config import courtroom_home, deep_merge
from utils.timers import Clock, utc_now

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "courtroom_status.json"
MAX_RECENT_CASES = 50
MAX_RECENT_DEAD_LETTERS = 50


def default_status_path() -> Path:
    return courtroom_home() / STATUS_FILE_NAME


class StatusSink:
    """Status record shared with the host. `path=None` keeps it in memory only."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._status: Dict[str, Any] = {}
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def for_home(cls) -> "StatusSink":
        sink = cls(default_status_path())
        sink.load()
        return sink

    def load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return self.snapshot()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                stored = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read status file %s: %s", self.path, exc)
            return self.snapshot()
        if isinstance(stored, Mapping):
            self._status = deep_merge(stored, self._status)
        return self.snapshot()

    def get(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self._status.get(key, default))

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._status)

    def update(self, partial: Mapping[str, Any]) -> Dict[str, Any]:
        self._status = deep_merge(self._status, partial)
        self._status["updated_at"] = utc_now().isoformat()
        self._persist()
        return self.snapshot()

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _persist(self) -> None:
        if self.path is None:
            return
        snapshot = self.snapshot()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(snapshot)
            return
        task = loop.create_task(asyncio.to_thread(self._write, snapshot))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _write(self, snapshot: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2, default=str)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not write status file %s: %s", self.path, exc)


class CaseLedger:
    """Local case counter plus recent case summaries."""

    def __init__(
        self,
        status: StatusSink,
        *,
        retention_days: int = 90,
        clock: Clock = utc_now,
    ) -> None:
        self._status = status
        self._retention = timedelta(days=retention_days)
        self._clock = clock
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=MAX_RECENT_CASES)
        self._recent_dead: Deque[Dict[str, Any]] = deque(maxlen=MAX_RECENT_DEAD_LETTERS)
        self.cases_filed = int(status.get("cases_filed", 0) or 0)
        self.dead_letters = int(status.get("dead_letter_count", 0) or 0)

    def record_case(self, record: CaseRecord) -> int:
        self.cases_filed += 1
        summary = {
            "case_id": record.case_id,
            "identity": record.identity,
            "offense": record.offense,
            "verdict": record.verdict,
            "timestamp": record.timestamp.isoformat(),
        }
        self._recent.append(summary)
        self.prune()
        self._status.update(
            {
                "cases_filed": self.cases_filed,
                "last_case": {
                    "timestamp": summary["timestamp"],
                    "offense": record.offense,
                    "verdict": record.verdict,
                    "case_id": record.case_id,
                },
            }
        )
        return self.cases_filed

    def record_dead_letter(self, case_id: str, error: Optional[str]) -> None:
        self.dead_letters += 1
        self._recent_dead.append({"case_id": case_id, "error": error, "at": self._clock().isoformat()})
        self._status.update(
            {
                "dead_letter_count": self.dead_letters,
                "dead_letters": list(self._recent_dead),
            }
        )

    def prune(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - self._retention
        kept = [case for case in self._recent if datetime.fromisoformat(case["timestamp"]) >= cutoff]
        removed = len(self._recent) - len(kept)
        if removed:
            self._recent.clear()
            self._recent.extend(kept)
        return removed

    def recent_cases(self) -> List[Dict[str, Any]]:
        return [dict(case) for case in self._recent]
