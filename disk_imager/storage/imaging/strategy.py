"""Two-step imaging strategy: preferred method, then one generic retry.

Capture and restore both follow the same rule. Try the specialized
capability if it is installed; if it is missing or exits non-zero, clean up
whatever it left behind and run the generic method exactly once. The outcome
records every attempt so callers can report which method produced (or failed
to produce) the image.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from disk_imager.logging import get_logger

from ..commands import CommandResult


log = get_logger(source="strategy")


class AttemptStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    """One way of producing (or replaying) an image."""

    label: str
    available: bool
    run: Callable[[], CommandResult]
    cleanup: Optional[Callable[[], None]] = None


@dataclass(frozen=True)
class Attempt:
    label: str
    status: AttemptStatus
    detail: str = ""


@dataclass
class StrategyOutcome:
    attempts: list[Attempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].status is AttemptStatus.OK

    @property
    def label(self) -> str:
        """Label of the last step tried (the one that produced the image on success)."""
        return self.attempts[-1].label if self.attempts else ""

    @property
    def downgraded(self) -> bool:
        return self.succeeded and len(self.attempts) > 1

    @property
    def detail(self) -> str:
        return "; ".join(
            f"{attempt.label}: {attempt.detail or attempt.status.value}"
            for attempt in self.attempts
            if attempt.status is not AttemptStatus.OK
        )


def _attempt(step: Step, subject: str) -> Attempt:
    if not step.available:
        log.info(f"{step.label} not installed, skipping for {subject}")
        return Attempt(step.label, AttemptStatus.UNAVAILABLE, "not installed")
    result = step.run()
    if result.ok:
        return Attempt(step.label, AttemptStatus.OK)
    log.warning(f"{step.label} failed for {subject}: {result.error_summary}")
    log.debug(result.describe())
    if step.cleanup is not None:
        step.cleanup()
    return Attempt(step.label, AttemptStatus.FAILED, result.error_summary)


def run_with_fallback(
    primary: Step, fallback: Optional[Step], *, subject: str
) -> StrategyOutcome:
    """Run ``primary``; on any failure run ``fallback`` once.

    Args:
        primary: Preferred step
        fallback: Generic step, or None when no downgrade is allowed
        subject: Partition or device the steps operate on, for logging

    Returns:
        Outcome listing every attempt in order
    """
    outcome = StrategyOutcome()
    outcome.attempts.append(_attempt(primary, subject))
    if outcome.succeeded or fallback is None:
        return outcome
    log.info(f"Falling back to {fallback.label} for {subject}")
    outcome.attempts.append(_attempt(fallback, subject))
    return outcome
