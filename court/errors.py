"""
Courtroom Errors — Failure Taxonomy

THIS MODULE DEFINES NO COMMANDS.

Every stage of the pipeline has its own error type. None of them is allowed
to reach the host: stage boundaries in the core convert them into logged
StageResult failures.
"""

from __future__ import annotations

from typing import Optional


class CourtroomError(Exception):
    """Base class for all pipeline failures."""


class ConfigBackendError(CourtroomError):
    """The configuration backend could not be read or written."""


class DetectorError(CourtroomError):
    """The detector failed; the current evaluation cycle is abandoned."""


class JurorTimeoutError(CourtroomError):
    """A juror missed the deliberation deadline and abstains."""

    def __init__(self, juror: str, timeout: float) -> None:
        super().__init__(f"{juror} did not deliberate within {timeout:.1f}s")
        self.juror = juror
        self.timeout = timeout


class PunishmentHistoryConflict(CourtroomError):
    """An offense history update would move a count backwards."""


class SubmissionDeliveryError(CourtroomError):
    """Delivery of a case record failed. Always retryable."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class QueueOverflowError(CourtroomError):
    """The submission queue is full; the case is rejected."""

    def __init__(self, case_id: str, max_size: int) -> None:
        super().__init__(f"submission queue full ({max_size}); case {case_id} rejected")
        self.case_id = case_id
        self.max_size = max_size


class SigningKeyError(CourtroomError):
    """The signing key pair is missing or unreadable."""
