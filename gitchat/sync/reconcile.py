"""Background reconciliation of the local replica with the remote log.

A timer tick, a manual refresh and a user send all run through one lock, so
the replica, the view cursor, the snapshot and the pending lines are only
ever read and written by one operation at a time. Blocking storage and git
calls run in worker threads.
"""

import asyncio
import logging
from collections import Counter
from typing import TYPE_CHECKING

from ..log import Entry, LogStore, parse_lines
from .cursor import InvariantViolation, ViewCursor
from .remote import RemoteSync, SyncOutcome, SyncResult

if TYPE_CHECKING:
    from ..presenter import Presenter

logger = logging.getLogger(__name__)


class ReconciliationLoop:
    """Pull, diff and emit new log entries exactly once."""

    def __init__(
        self,
        store: LogStore,
        remote: RemoteSync,
        presenter: "Presenter",
        interval_seconds: float = 10.0,
    ):
        """Initialize the reconciliation loop.

        Args:
            store: Local replica of the log.
            remote: Sync with the shared remote copy.
            presenter: Receives new entries and status messages.
            interval_seconds: Seconds between timer ticks.
        """
        self._store = store
        self._remote = remote
        self._presenter = presenter
        self._interval = interval_seconds
        self._lock = asyncio.Lock()
        self._cursor = ViewCursor()
        self._snapshot: tuple[str, frozenset] | None = None
        self._surfaced: list[str] = []
        # Raw lines appended here but not yet published, held back from view
        self._pending: Counter[str] = Counter()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def cursor(self) -> ViewCursor:
        return self._cursor

    @property
    def pending(self) -> int:
        """Locally appended entries not yet published."""
        return sum(self._pending.values())

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def start(self) -> None:
        """Start the timer as a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Reconciliation loop started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the timer. An in-flight operation finishes in its thread."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconciliation loop stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Reconciliation tick failed: {e}", exc_info=True)

    async def tick(self) -> bool:
        """Run one timer reconciliation.

        Returns:
            False if skipped because another operation was in flight.
        """
        if self._lock.locked():
            logger.debug("Sync already in flight, skipping tick")
            return False

        async with self._lock:
            result, _ = await self._reconcile()
            if not result.ok:
                logger.warning(f"Background sync failed: {result.error}")
        return True

    async def refresh(self, announce: bool = True) -> SyncResult:
        """Run a user-requested reconciliation.

        Args:
            announce: Report the outcome to the presenter.
        """
        async with self._lock:
            result, _ = await self._reconcile()

        if announce:
            if result.ok:
                self._presenter.show_status("Messages synced!", "success")
            else:
                self._presenter.show_status("Failed to sync messages", "error")
        return result

    async def catch_up(self) -> list[Entry]:
        """Reconcile once and return the entries surfaced by it.

        When the pull fails the local replica is shown as it stands, so the
        history is available offline.
        """
        async with self._lock:
            result, batch = await self._reconcile(local_on_failure=True)

        if not result.ok:
            self._presenter.show_status("Failed to sync messages, showing local copy", "warning")
        return batch

    async def send(self, author: str, text: str) -> SyncResult:
        """Append a message locally, publish it and surface it.

        Raises:
            IOError: If the message could not be written locally.
            ValueError: If the message does not fit on one line.
        """
        async with self._lock:
            try:
                record = await asyncio.to_thread(self._store.append, author, text)
            except OSError as e:
                logger.error(f"Failed to append message: {e}")
                self._presenter.show_status(f"Failed to send message: {e}", "error")
                raise
            self._pending[record.to_line()] += 1

            result = await self._publish(f"chat: {author} sent a message")
            try:
                await self._emit_new()
            except (OSError, InvariantViolation) as e:
                logger.error(f"Failed to refresh view after send: {e}")

        if not result.ok:
            self._presenter.show_status(
                "Failed to send message. Check your git connection; "
                "it will be retried on the next sync.",
                "error",
            )
        return result

    async def _publish(self, message: str) -> SyncResult:
        result = await asyncio.to_thread(self._remote.push, message)
        if result.ok:
            self._pending.clear()
        return result

    async def _reconcile(
        self, local_on_failure: bool = False
    ) -> tuple[SyncResult, list[Entry]]:
        """Publish queued lines, pull and surface new entries. Caller holds the lock.

        Args:
            local_on_failure: Surface the local replica even if the pull fails.
        """
        queued = bool(self._pending)
        if not queued and await asyncio.to_thread(self._remote.has_unpublished):
            # Left over from an earlier run, or a log edit that never got committed
            lines = await asyncio.to_thread(self._remote.unpublished_lines)
            self._pending.update(lines)
            logger.info(f"Found {len(lines)} unpublished lines in the local replica")
            queued = True

        if queued:
            published = await self._publish("chat: publish queued messages")
            if published.ok:
                logger.info("Published queued messages")

        result = await asyncio.to_thread(self._remote.pull)
        if not result.ok and not local_on_failure:
            return result, []

        try:
            batch = await self._emit_new()
        except (OSError, InvariantViolation) as e:
            logger.error(f"Reconciliation failed: {e}")
            return SyncResult(outcome=SyncOutcome.TRANSPORT_FAILURE, error=str(e)), []
        return result, batch

    def _held_back(self, entries: list[Entry]) -> list[Entry]:
        """Entries in log order, minus this process's unpublished lines.

        Pending lines are matched by content, latest occurrence first, since a
        merge can leave them anywhere in the file.
        """
        held = Counter(self._pending)
        keep = []
        for entry in reversed(entries):
            if held[entry.raw] > 0:
                held[entry.raw] -= 1
            else:
                keep.append(entry)
        keep.reverse()
        return keep

    async def _emit_new(self) -> list[Entry]:
        """Hand entries beyond the cursor to the presenter. Caller holds the lock."""
        text = await asyncio.to_thread(self._store.read_text)
        key = (text, frozenset(self._pending.items()))
        if key == self._snapshot:
            return []

        visible = self._held_back(parse_lines(text))
        shown = self._cursor.position

        self._cursor.advance(len(visible))

        prefix = [entry.raw for entry in visible[:shown]]
        if prefix == self._surfaced:
            batch = visible[shown:]
        else:
            # A merge placed new lines before lines already shown
            logger.warning("Replica no longer extends what was shown, emitting unseen lines")
            seen = Counter(self._surfaced)
            batch = []
            for entry in visible:
                if seen[entry.raw] > 0:
                    seen[entry.raw] -= 1
                else:
                    batch.append(entry)

        self._surfaced = [entry.raw for entry in visible]
        self._snapshot = key

        if batch:
            self._presenter.show_entries(batch)
        return batch
