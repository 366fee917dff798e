"""Keeps the local replica convergent with the shared remote copy.

Pull integrates remote changes with a rebase, falling back to a merge once.
Push stages and commits the log file, then publishes with a single
pull-and-retry when the remote has moved on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .transport import IntegrationConflict, Transport, TransportError

logger = logging.getLogger(__name__)


class SyncOutcome(Enum):
    """Outcome of a sync operation."""

    SUCCESS = "success"
    CONFLICT = "conflict"  # Resolved internally; never returned by pull/push
    TRANSPORT_FAILURE = "transport_failure"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    outcome: SyncOutcome
    error: str | None = None
    retried: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.outcome == SyncOutcome.SUCCESS


class RemoteSync:
    """Pull and push the shared log over a Transport.

    Calls are blocking and stateless between invocations; callers serialize
    them.
    """

    def __init__(self, transport: Transport):
        """Initialize remote sync.

        Args:
            transport: Transport holding the local replica.
        """
        self.transport = transport
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    def _integrate(self, rebase: bool) -> SyncResult:
        try:
            self.transport.integrate(rebase=rebase)
        except IntegrationConflict as e:
            return SyncResult(outcome=SyncOutcome.CONFLICT, error=str(e))
        except TransportError as e:
            return SyncResult(outcome=SyncOutcome.TRANSPORT_FAILURE, error=str(e))
        return SyncResult(outcome=SyncOutcome.SUCCESS)

    def pull(self) -> SyncResult:
        """Integrate remote changes into the local replica.

        Returns:
            SUCCESS, or TRANSPORT_FAILURE when neither a rebase nor a single
            merge retry could complete. The replica is left as it was before
            a failed attempt.
        """
        return self._record(self._pull(), "pull")

    def _pull(self) -> SyncResult:
        result = self._integrate(rebase=True)

        try:
            if result.outcome == SyncOutcome.CONFLICT:
                logger.warning(f"Rebase stopped on a conflict, retrying with merge: {result.error}")
                self.transport.abort_integration()

                result = self._integrate(rebase=False)
                result.retried = True
                if result.outcome == SyncOutcome.CONFLICT:
                    self.transport.abort_integration()
                    result.outcome = SyncOutcome.TRANSPORT_FAILURE
        except TransportError as e:
            result = SyncResult(
                outcome=SyncOutcome.TRANSPORT_FAILURE,
                error=f"abort failed: {e}",
                retried=result.retried,
            )

        return result

    def push(self, message: str) -> SyncResult:
        """Commit the log file and publish it.

        A failed publish triggers exactly one pull and one more publish.

        Args:
            message: Commit message.

        Returns:
            SUCCESS, or TRANSPORT_FAILURE after the single retry.
        """
        try:
            self.transport.stage()
            if not self.transport.commit(message):
                logger.debug("Nothing new to commit, publishing pending commits")
        except TransportError as e:
            return self._record(
                SyncResult(outcome=SyncOutcome.TRANSPORT_FAILURE, error=str(e)), "push"
            )

        try:
            self.transport.publish()
            return self._record(SyncResult(outcome=SyncOutcome.SUCCESS), "push")
        except TransportError as e:
            logger.info(f"Publish failed, pulling before retry: {e}")

        # Counted once, as part of this push
        pull_result = self._pull()
        if not pull_result.ok:
            return self._record(
                SyncResult(
                    outcome=SyncOutcome.TRANSPORT_FAILURE,
                    error=pull_result.error,
                    retried=True,
                ),
                "push",
            )

        try:
            self.transport.publish()
        except TransportError as e:
            return self._record(
                SyncResult(outcome=SyncOutcome.TRANSPORT_FAILURE, error=str(e), retried=True),
                "push",
            )

        return self._record(SyncResult(outcome=SyncOutcome.SUCCESS, retried=True), "push")

    def has_unpublished(self) -> bool:
        """Whether local commits are waiting to be published."""
        try:
            return self.transport.has_unpublished()
        except TransportError as e:
            logger.warning(f"Could not check for unpublished commits: {e}")
            return False

    def unpublished_lines(self) -> list[str]:
        """Local log lines the remote has not seen, in file order."""
        try:
            return self.transport.unpublished_lines()
        except TransportError as e:
            logger.warning(f"Could not list unpublished lines: {e}")
            return []

    def _record(self, result: SyncResult, operation: str) -> SyncResult:
        if result.ok:
            self._last_sync = result.timestamp
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
            logger.warning(
                f"{operation} failed ({self._consecutive_failures} in a row): {result.error}"
            )
        return result

    @property
    def last_sync(self) -> datetime | None:
        """Timestamp of the last successful operation."""
        return self._last_sync

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures
