"""
Stale UI detection.

The page can keep rendering a cached DOM while the game has moved on. A
countdown that should have ticked during the last sleep but reads exactly the
same is the signal; the driver then forces a refresh before trusting the next
read.
"""

import time
from dataclasses import dataclass
from typing import Optional, Callable

from castle_bot.logging import get_logger

logger = get_logger(__name__)

NO_SIGNATURE = "null"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StateSnapshot:
    """Compact fingerprint of observed UI state."""

    timestamp_ms: int
    signature: str

    @property
    def has_signal(self) -> bool:
        """False when nothing time-dependent was observed."""
        return self.signature != NO_SIGNATURE


@dataclass(frozen=True)
class StaleCheckResult:
    """Outcome of comparing two snapshots."""

    is_stale: bool
    reason: Optional[str] = None


def create_time_snapshot(
    min_time_remaining_ms: Optional[int],
    timestamp_ms: Optional[int] = None,
) -> StateSnapshot:
    """Snapshot keyed on the shortest visible countdown."""
    return StateSnapshot(
        timestamp_ms=now_ms() if timestamp_ms is None else timestamp_ms,
        signature=str(min_time_remaining_ms) if min_time_remaining_ms is not None else NO_SIGNATURE,
    )


def check_stale(
    previous: Optional[StateSnapshot],
    current: StateSnapshot,
    expected_change_ms: float,
    tolerance: float = 0.5,
) -> StaleCheckResult:
    """
    Decide whether the current observation is stale.

    Stale when the signature is unchanged and at least
    ``expected_change_ms * tolerance`` has elapsed since the previous
    snapshot. Never stale without a previous snapshot.
    """
    if previous is None:
        return StaleCheckResult(is_stale=False)

    if previous.signature != current.signature:
        return StaleCheckResult(is_stale=False)

    elapsed = current.timestamp_ms - previous.timestamp_ms
    threshold = expected_change_ms * tolerance

    if elapsed >= threshold:
        return StaleCheckResult(
            is_stale=True,
            reason=(
                f"State unchanged after {elapsed / 1000:.0f}s "
                f"(expected change after {threshold / 1000:.0f}s)"
            ),
        )

    return StaleCheckResult(is_stale=False)


class StalenessDetector:
    """
    Threads the previous snapshot from one cycle to the next.

    Only one snapshot is kept. Observations without a countdown do not take
    part in the comparison and clear the stored snapshot.
    """

    def __init__(
        self,
        tolerance: float = 0.5,
        on_stale: Optional[Callable[[StaleCheckResult], None]] = None,
    ):
        """
        Initialize detector.

        Args:
            tolerance: Fraction of the expected change after which an
                unchanged signature counts as stale
            on_stale: Callback for stale detections
        """
        self.tolerance = tolerance
        self.on_stale = on_stale

        self._previous: Optional[StateSnapshot] = None
        self._detections = 0

    @property
    def previous(self) -> Optional[StateSnapshot]:
        return self._previous

    @property
    def detections(self) -> int:
        return self._detections

    def observe(self, snapshot: StateSnapshot, expected_change_ms: float) -> StaleCheckResult:
        """
        Compare a new snapshot with the stored one and store it.

        Args:
            snapshot: Snapshot of the cycle that just finished
            expected_change_ms: How long the loop slept before this cycle
        """
        if not snapshot.has_signal:
            self._previous = None
            return StaleCheckResult(is_stale=False)

        result = check_stale(self._previous, snapshot, expected_change_ms, self.tolerance)
        self._previous = snapshot

        if result.is_stale:
            self._detections += 1
            logger.warning("Stale state detected", reason=result.reason, detections=self._detections)
            if self.on_stale:
                self.on_stale(result)

        return result

    def reset(self) -> None:
        """Forget the stored snapshot, e.g. after a forced refresh."""
        self._previous = None


class ConsecutiveFailureTracker:
    """
    Counts consecutive hard cycle failures.

    Signals escalation after N failures in a row; any success resets the run.
    """

    DEFAULT_THRESHOLD = 3

    def __init__(self, threshold: int = DEFAULT_THRESHOLD):
        """
        Initialize tracker.

        Args:
            threshold: Consecutive failures before escalation
        """
        self.threshold = threshold
        self._consecutive_failures = 0
        self._total_failures = 0

    def record_success(self) -> None:
        """Record a cycle that did not hard-fail."""
        self._consecutive_failures = 0

    def record_failure(self, error: str) -> bool:
        """
        Record a hard failure.

        Args:
            error: Error message

        Returns:
            True if the threshold has been reached
        """
        self._consecutive_failures += 1
        self._total_failures += 1

        logger.warning(
            "Hard cycle failure",
            consecutive=self._consecutive_failures,
            total=self._total_failures,
            error=error[:100],
        )

        if self._consecutive_failures >= self.threshold:
            logger.error(
                "Consecutive failure threshold reached",
                threshold=self.threshold,
                consecutive=self._consecutive_failures,
            )
            return True

        return False

    @property
    def should_escalate(self) -> bool:
        return self._consecutive_failures >= self.threshold

    @property
    def consecutive_failures(self) -> int:
        """Get consecutive failure count."""
        return self._consecutive_failures

    @property
    def total_failures(self) -> int:
        """Get total failure count."""
        return self._total_failures

    def reset(self) -> None:
        """Reset the consecutive count after escalation."""
        self._consecutive_failures = 0
