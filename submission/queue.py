"""
Submission Queue — Signed, Bounded, Retrying Case Delivery

THIS MODULE DEFINES BACKGROUND TASKS ONLY.

Responsibilities:
- Sign each finalized case record and enqueue it
- Reject new cases once the queue is full (never block the submitter)
- Drain the queue FIFO from a background task
- Retry failed deliveries with exponential backoff
- Move exhausted entries to the dead-letter list and report them once
- Shut down without abandoning an in-flight delivery

A slow or unreachable endpoint never stalls conversation monitoring.
Delivery carries the case id, so the remote side can drop a duplicate
that follows a retry of an ambiguous success.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import aiohttp

from court.errors import QueueOverflowError, SubmissionDeliveryError
from court.models import CaseRecord
from safety.logging import LogContext, log_action, log_error
from state.config import ApiConfig
from submission.signing import CaseSigner
from utils import timers
from utils.timers import Clock, utc_now

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], Awaitable[None]]
DeadLetterHook = Callable[["QueueEntry"], None]

IDLE_POLL_SECONDS = 60.0
DEFAULT_STOP_GRACE_SECONDS = 15.0
MAX_DEAD_LETTERS = 100


class EntryState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DEAD = "dead"


@dataclass
class QueueEntry:
    record: CaseRecord
    next_retry_at: datetime
    attempt_count: int = 0
    state: EntryState = EntryState.PENDING
    last_error: Optional[str] = None

    @property
    def case_id(self) -> str:
        return self.record.case_id


class HttpCaseSender:
    """POST case records as JSON with aiohttp. Any non-2xx is a delivery failure."""

    def __init__(self, endpoint: str, *, timeout: float = 10.0) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def __call__(self, payload: Dict[str, Any]) -> None:
        session = await self._get_session()
        try:
            async with session.post(self.endpoint, json=payload) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    raise SubmissionDeliveryError(
                        f"{self.endpoint} answered {response.status}: {body[:200]}",
                        status=response.status,
                    )
        except aiohttp.ClientError as exc:
            raise SubmissionDeliveryError(f"{self.endpoint} unreachable: {exc}") from exc

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


@dataclass
class QueueStats:
    submitted: int = 0
    delivered: int = 0
    retried: int = 0
    dead: int = 0
    rejected: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "delivered": self.delivered,
            "retried": self.retried,
            "dead": self.dead,
            "rejected": self.rejected,
        }


class SubmissionQueue:
    def __init__(
        self,
        signer: CaseSigner,
        sender: Sender,
        *,
        max_queue_size: int = 100,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_delay: float = 5.0,
        on_dead: Optional[DeadLetterHook] = None,
        clock: Clock = utc_now,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be > 0")
        if retry_attempts <= 0:
            raise ValueError("retry_attempts must be > 0")
        self.signer = signer
        self.sender = sender
        self.max_queue_size = max_queue_size
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.on_dead = on_dead
        self._clock = clock
        self._entries: Deque[QueueEntry] = deque()
        self.dead_letters: List[QueueEntry] = []
        self.stats = QueueStats()
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        signer: CaseSigner,
        api: ApiConfig,
        *,
        sender: Optional[Sender] = None,
        on_dead: Optional[DeadLetterHook] = None,
        clock: Clock = utc_now,
    ) -> "SubmissionQueue":
        return cls(
            signer,
            sender or HttpCaseSender(api.endpoint, timeout=api.timeout),
            max_queue_size=api.max_queue_size,
            timeout=api.timeout,
            retry_attempts=api.retry_attempts,
            retry_delay=api.retry_delay,
            on_dead=on_dead,
            clock=clock,
        )

    def configure(self, api: ApiConfig) -> None:
        """Apply new limits. Entries already queued are kept even if above a lowered cap."""
        if api.max_queue_size > 0:
            self.max_queue_size = api.max_queue_size
        if api.retry_attempts > 0:
            self.retry_attempts = api.retry_attempts
        self.timeout = api.timeout
        self.retry_delay = api.retry_delay
        if isinstance(self.sender, HttpCaseSender):
            self.sender.endpoint = api.endpoint
            self.sender.timeout = api.timeout

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    def submit_case(self, record: CaseRecord) -> CaseRecord:
        """Sign and enqueue. Raises QueueOverflowError when full."""
        if len(self._entries) >= self.max_queue_size:
            self.stats.rejected += 1
            raise QueueOverflowError(record.case_id, self.max_queue_size)
        signed = self.signer.sign(record)
        self._entries.append(QueueEntry(record=signed, next_retry_at=self._clock()))
        self.stats.submitted += 1
        self._wakeup.set()
        log_action(
            "Case queued for submission",
            context=LogContext(identity=signed.identity, case_id=signed.case_id, stage="submission"),
            action="enqueue",
            queue_depth=len(self._entries),
        )
        return signed

    def payload_for(self, record: CaseRecord) -> Dict[str, Any]:
        return {
            "case": record.content(),
            "signature": record.signature,
            "public_key": self.signer.public_key,
        }

    # ---------------------------
    # Draining
    # ---------------------------

    def _next_due(self, now: datetime) -> Optional[QueueEntry]:
        for entry in self._entries:
            if entry.state is EntryState.PENDING and entry.next_retry_at <= now:
                return entry
        return None

    def _seconds_until_next(self, now: datetime) -> float:
        upcoming = [entry.next_retry_at for entry in self._entries if entry.state is EntryState.PENDING]
        if not upcoming:
            return IDLE_POLL_SECONDS
        return max(0.0, (min(upcoming) - now).total_seconds())

    async def process_due(self) -> int:
        """Attempt every entry that is due right now, FIFO. Returns attempts made."""
        attempts = 0
        while not self._stopping:
            entry = self._next_due(self._clock())
            if entry is None:
                break
            await self._attempt(entry)
            attempts += 1
        return attempts

    async def _attempt(self, entry: QueueEntry) -> None:
        entry.state = EntryState.IN_FLIGHT
        entry.attempt_count += 1
        context = LogContext(identity=entry.record.identity, case_id=entry.case_id, stage="submission")
        try:
            await asyncio.wait_for(self.sender(self.payload_for(entry.record)), timeout=self.timeout)
        except asyncio.CancelledError:
            entry.state = EntryState.PENDING
            raise
        except Exception as exc:
            entry.last_error = repr(exc)
            if entry.attempt_count >= self.retry_attempts:
                self._bury(entry)
                return
            entry.state = EntryState.PENDING
            entry.next_retry_at = self._clock() + timedelta(
                seconds=timers.backoff_delay(self.retry_delay, entry.attempt_count)
            )
            self.stats.retried += 1
            logger.warning(
                "Delivery of case %s failed (attempt %s/%s): %s",
                entry.case_id,
                entry.attempt_count,
                self.retry_attempts,
                entry.last_error,
            )
            return

        entry.state = EntryState.DELIVERED
        self._entries.remove(entry)
        self.stats.delivered += 1
        log_action("Case delivered", context=context, action="delivered", attempts=entry.attempt_count)

    def _bury(self, entry: QueueEntry) -> None:
        entry.state = EntryState.DEAD
        self._entries.remove(entry)
        self.dead_letters.append(entry)
        del self.dead_letters[:-MAX_DEAD_LETTERS]
        self.stats.dead += 1
        log_error(
            "Case undeliverable, moved to dead letters",
            context=LogContext(identity=entry.record.identity, case_id=entry.case_id, stage="submission"),
            attempts=entry.attempt_count,
            last_error=entry.last_error,
        )
        if self.on_dead is not None:
            try:
                self.on_dead(entry)
            except Exception:
                logger.exception("Dead-letter report for case %s failed", entry.case_id)

    async def _loop(self) -> None:
        try:
            while not self._stopping:
                self._wakeup.clear()
                try:
                    await self.process_due()
                except Exception:
                    logger.exception("submission_queue_error")
                if self._stopping:
                    break
                delay = self._seconds_until_next(self._clock())
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay if delay > 0 else 0.01)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("submission_queue_cancelled")
            raise

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name="submission-queue")

    async def stop(self, grace: float = DEFAULT_STOP_GRACE_SECONDS) -> None:
        """
        Stop draining. An in-flight delivery gets `grace` seconds to finish or fail.
        Anything still undelivered afterwards is moved to the dead letters.
        """
        self._stopping = True
        self._wakeup.set()
        task = self._task
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=grace)
            except asyncio.TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._task = None
        self._abandon_pending()
        close = getattr(self.sender, "close", None)
        if callable(close):
            await close()

    def _abandon_pending(self) -> None:
        if not self._entries:
            return
        remaining = list(self._entries)
        logger.warning(
            "Submission queue stopped with %s undelivered case(s): %s",
            len(remaining),
            ", ".join(entry.case_id for entry in remaining),
        )
        for entry in remaining:
            entry.last_error = entry.last_error or "undelivered at shutdown"
            self._bury(entry)
