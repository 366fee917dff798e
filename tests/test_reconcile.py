"""Tests for the ReconciliationLoop."""

import asyncio
import threading
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from gitchat.log import LogStore
from gitchat.presenter import Presenter
from gitchat.sync import (
    MemoryRemote,
    MemoryTransport,
    ReconciliationLoop,
    RemoteSync,
    SyncOutcome,
    TransportError,
)

T0 = datetime(2024, 1, 1, 0, 0, 0)


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def remote():
    return MemoryRemote()


@pytest.fixture
def presenter():
    """Create a mock presenter."""
    return MagicMock(spec=Presenter)


@pytest.fixture
def other(remote, tmp_path):
    """Another participant publishing directly through RemoteSync."""
    store = LogStore(tmp_path / "other" / "chat.txt")
    sync = RemoteSync(MemoryTransport(remote, store.path))

    def post(text: str, seconds: int) -> None:
        store.append("bob", text, now=at(seconds))
        assert sync.push("chat: bob sent a message").ok

    return post


@pytest.fixture
def local(remote, tmp_path):
    store = LogStore(tmp_path / "alice" / "chat.txt")
    transport = MemoryTransport(remote, store.path)
    return store, transport


@pytest.fixture
def sync_loop(local, presenter):
    """Create a ReconciliationLoop for the local participant."""
    store, transport = local
    return ReconciliationLoop(store, RemoteSync(transport), presenter, interval_seconds=10)


def emitted(presenter) -> list[str]:
    """Raw lines of every batch handed to the presenter, in order."""
    lines = []
    for call in presenter.show_entries.call_args_list:
        lines.extend(entry.raw for entry in call.args[0])
    return lines


class TestTick:
    """Tests for timer reconciliation."""

    @pytest.mark.asyncio
    async def test_tick_emits_new_remote_entries(self, sync_loop, presenter, other):
        """Test entries published elsewhere are surfaced."""
        other("hello", 0)

        assert await sync_loop.tick() is True

        assert emitted(presenter) == ["[2024-01-01 00:00:00] bob: hello"]
        assert sync_loop.cursor.position == 1

    @pytest.mark.asyncio
    async def test_unchanged_log_emits_nothing(self, sync_loop, presenter, other):
        """Test a tick with no new content does not call the presenter."""
        other("hello", 0)
        await sync_loop.tick()
        presenter.show_entries.reset_mock()

        await sync_loop.tick()

        presenter.show_entries.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_duplicate_or_lost_emission(self, sync_loop, presenter, other, local):
        """Test all batches together equal the final replica exactly once."""
        store, _ = local
        seconds = 0
        for burst in (1, 3, 0, 2, 1):
            for _ in range(burst):
                other(f"message {seconds}", seconds)
                seconds += 1
            await sync_loop.tick()
            await sync_loop.refresh(announce=False)

        assert emitted(presenter) == [entry.raw for entry in store.read()]
        assert sync_loop.cursor.position == seconds

    @pytest.mark.asyncio
    async def test_pull_failure_leaves_state_unchanged(self, sync_loop, presenter, other, local):
        """Test a transport failure emits nothing and does not move the cursor."""
        _, transport = local
        other("hello", 0)
        transport.fail_next("integrate", TransportError("offline"))

        assert await sync_loop.tick() is True

        presenter.show_entries.assert_not_called()
        assert sync_loop.cursor.position == 0

        # Next tick recovers
        await sync_loop.tick()
        assert emitted(presenter) == ["[2024-01-01 00:00:00] bob: hello"]

    @pytest.mark.asyncio
    async def test_tick_skipped_while_operation_in_flight(self, sync_loop, local):
        """Test ticks are coalesced instead of queued."""
        _, transport = local

        async with sync_loop._lock:
            assert sync_loop.busy
            assert await sync_loop.tick() is False

        assert "integrate" not in transport.calls

    @pytest.mark.asyncio
    async def test_malformed_lines_surface_verbatim(self, sync_loop, presenter, local):
        """Test garbage lines are shown once like any other entry."""
        store, _ = local
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text("[2024-01-01 00:00:00] bob: hi\nhand edited garbage\n")

        await sync_loop.tick()

        assert emitted(presenter) == ["[2024-01-01 00:00:00] bob: hi", "hand edited garbage"]


class TestRefresh:
    """Tests for manual refresh."""

    @pytest.mark.asyncio
    async def test_refresh_reports_success(self, sync_loop, presenter, other):
        other("hello", 0)

        result = await sync_loop.refresh()

        assert result.ok
        presenter.show_status.assert_called_with("Messages synced!", "success")

    @pytest.mark.asyncio
    async def test_refresh_reports_failure(self, sync_loop, presenter, local):
        _, transport = local
        transport.fail_next("integrate", TransportError("offline"))

        result = await sync_loop.refresh()

        assert result.outcome == SyncOutcome.TRANSPORT_FAILURE
        presenter.show_status.assert_called_with("Failed to sync messages", "error")

    @pytest.mark.asyncio
    async def test_shrinking_log_fails_operation(self, sync_loop, presenter, local):
        """Test a truncated replica is an invariant violation, not a crash."""
        store, _ = local
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(
            "[2024-01-01 00:00:00] bob: one\n[2024-01-01 00:00:01] bob: two\n"
        )
        await sync_loop.refresh()
        presenter.show_entries.reset_mock()

        store.path.write_text("[2024-01-01 00:00:00] bob: one\n")
        result = await sync_loop.refresh()

        assert not result.ok
        assert sync_loop.cursor.position == 2
        presenter.show_entries.assert_not_called()

    @pytest.mark.asyncio
    async def test_lines_inserted_before_shown_lines(self, sync_loop, presenter, local):
        """Test a merge inserting earlier lines emits only the unseen ones."""
        store, _ = local
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(
            "[2024-01-01 00:00:00] bob: one\n[2024-01-01 00:00:02] alice: three\n"
        )
        await sync_loop.refresh()
        presenter.show_entries.reset_mock()

        store.path.write_text(
            "[2024-01-01 00:00:00] bob: one\n"
            "[2024-01-01 00:00:01] carol: two\n"
            "[2024-01-01 00:00:02] alice: three\n"
        )
        await sync_loop.refresh()

        assert emitted(presenter) == ["[2024-01-01 00:00:01] carol: two"]
        assert sync_loop.cursor.position == 3

    @pytest.mark.asyncio
    async def test_catch_up_returns_history(self, sync_loop, other):
        other("one", 0)
        other("two", 1)

        batch = await sync_loop.catch_up()

        assert [entry.record.text for entry in batch] == ["one", "two"]


class TestSend:
    """Tests for sending messages."""

    @pytest.mark.asyncio
    async def test_send_publishes_and_surfaces(self, sync_loop, presenter, remote, local):
        store, _ = local

        result = await sync_loop.send("alice", "hello")

        assert result.ok
        assert sync_loop.pending == 0
        assert remote.lines == store.read_text().splitlines()
        assert len(emitted(presenter)) == 1
        assert emitted(presenter)[0].endswith("alice: hello")

    @pytest.mark.asyncio
    async def test_concurrent_send_surfaces_both_in_log_order(
        self, sync_loop, presenter, other, local
    ):
        """Test a send racing another participant shows both lines once."""
        store, _ = local
        other("first", 0)

        result = await sync_loop.send("alice", "second")

        assert result.ok
        assert result.retried is True
        lines = emitted(presenter)
        assert lines == [entry.raw for entry in store.read()]
        assert lines[0] == "[2024-01-01 00:00:00] bob: first"
        assert lines[1].endswith("alice: second")

    @pytest.mark.asyncio
    async def test_failed_push_holds_message_until_published(
        self, sync_loop, presenter, remote, local
    ):
        """Test an unpublished message is queued and shown once published."""
        store, transport = local
        transport.fail_next("publish", TransportError("offline"), times=2)

        result = await sync_loop.send("alice", "hello")

        assert not result.ok
        assert sync_loop.pending == 1
        assert emitted(presenter) == []
        assert remote.lines == []
        presenter.show_status.assert_called_with(
            "Failed to send message. Check your git connection; "
            "it will be retried on the next sync.",
            "error",
        )

        await sync_loop.tick()

        assert sync_loop.pending == 0
        assert remote.lines == store.read_text().splitlines()
        assert len(emitted(presenter)) == 1
        assert emitted(presenter)[0].endswith("alice: hello")

    @pytest.mark.asyncio
    async def test_queued_message_moves_after_remote_lines(
        self, sync_loop, presenter, other, local
    ):
        """Test a queued message rebased behind new remote lines is shown once."""
        store, transport = local
        transport.fail_next("publish", TransportError("offline"), times=2)
        await sync_loop.send("alice", "queued")

        other("meanwhile", 0)
        await sync_loop.tick()

        lines = emitted(presenter)
        assert lines == [entry.raw for entry in store.read()]
        assert lines[0] == "[2024-01-01 00:00:00] bob: meanwhile"
        assert lines[1].endswith("alice: queued")

    @pytest.mark.asyncio
    async def test_append_failure_is_reported_and_raised(self, sync_loop, presenter, local):
        """Test a local write failure is never silently dropped."""
        store, transport = local

        with patch.object(store, "append", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await sync_loop.send("alice", "hello")

        assert sync_loop.pending == 0
        assert "publish" not in transport.calls
        presenter.show_status.assert_called_with("Failed to send message: disk full", "error")

    @pytest.mark.asyncio
    async def test_tick_waits_out_send(self, sync_loop, local):
        """Test a tick during a send is skipped, not interleaved."""
        store, _ = local
        started = asyncio.Event()
        release = threading.Event()
        real_append = store.append

        def slow_append(author, text):
            started_loop.call_soon_threadsafe(started.set)
            release.wait(timeout=5)
            return real_append(author, text)

        started_loop = asyncio.get_running_loop()
        with patch.object(store, "append", side_effect=slow_append):
            send_task = asyncio.create_task(sync_loop.send("alice", "hello"))
            await started.wait()

            assert await sync_loop.tick() is False

            release.set()
            result = await send_task

        assert result.ok
        assert sync_loop.cursor.position == 1


class TestUnpublishedLines:
    """Tests for lines that have not reached the remote yet."""

    @pytest.mark.asyncio
    async def test_queued_line_held_back_wherever_merge_puts_it(
        self, sync_loop, presenter, local
    ):
        """Test the unpublished line is hidden by content, not by position."""
        store, transport = local
        transport.fail_next("publish", TransportError("offline"), times=4)
        await sync_loop.send("alice", "queued")
        mine = store.read_text().splitlines()[0]

        # A merge keeps local lines ahead of the incoming ones
        store.path.write_text(
            f"[2024-01-01 00:00:00] bob: one\n{mine}\n[2024-01-01 00:00:01] bob: two\n"
        )
        await sync_loop.tick()

        assert sync_loop.pending == 1
        assert emitted(presenter) == [
            "[2024-01-01 00:00:00] bob: one",
            "[2024-01-01 00:00:01] bob: two",
        ]

        await sync_loop.tick()

        assert sync_loop.pending == 0
        assert emitted(presenter) == [
            "[2024-01-01 00:00:00] bob: one",
            "[2024-01-01 00:00:01] bob: two",
            mine,
        ]

    @pytest.mark.asyncio
    async def test_queued_message_published_after_restart(self, local, presenter, remote):
        """Test a message queued before quitting goes out on the next start."""
        store, transport = local
        first = ReconciliationLoop(store, RemoteSync(transport), MagicMock(spec=Presenter))
        transport.fail_next("publish", TransportError("offline"), times=2)
        await first.send("alice", "queued before quit")
        assert remote.lines == []

        second = ReconciliationLoop(store, RemoteSync(transport), presenter)
        batch = await second.catch_up()

        assert remote.lines == store.read_text().splitlines()
        assert len(remote.lines) == 1
        assert [entry.raw for entry in batch] == remote.lines
        assert second.pending == 0

    @pytest.mark.asyncio
    async def test_queued_message_stays_hidden_while_still_offline(self, local, presenter):
        store, transport = local
        first = ReconciliationLoop(store, RemoteSync(transport), MagicMock(spec=Presenter))
        transport.fail_next("publish", TransportError("offline"), times=4)
        await first.send("alice", "queued before quit")

        second = ReconciliationLoop(store, RemoteSync(transport), presenter)
        batch = await second.catch_up()

        assert batch == []
        assert second.pending == 1
        assert transport.calls.count("publish") == 4

    @pytest.mark.asyncio
    async def test_uncommitted_log_edit_is_published(self, sync_loop, remote, local):
        """Test an append that never got staged is committed and pushed later."""
        store, _ = local
        store.append("alice", "never staged", now=T0)

        await sync_loop.tick()

        assert remote.lines == ["[2024-01-01 00:00:00] alice: never staged"]

    @pytest.mark.asyncio
    async def test_offline_catch_up_shows_local_copy(self, local, presenter, other):
        """Test startup without a connection still shows the local history."""
        store, transport = local
        other("old message", 0)
        await ReconciliationLoop(
            store, RemoteSync(transport), MagicMock(spec=Presenter)
        ).catch_up()

        transport.fail_next("integrate", TransportError("offline"))
        restarted = ReconciliationLoop(store, RemoteSync(transport), presenter)
        batch = await restarted.catch_up()

        assert [entry.raw for entry in batch] == ["[2024-01-01 00:00:00] bob: old message"]
        assert restarted.cursor.position == 1
        presenter.show_status.assert_called_with(
            "Failed to sync messages, showing local copy", "warning"
        )


class TestLifecycle:
    """Tests for start/stop of the timer."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sync_loop):
        await sync_loop.start()
        assert sync_loop._task is not None

        await sync_loop.stop()
        assert sync_loop._task is None

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, sync_loop):
        await sync_loop.start()
        task = sync_loop._task

        await sync_loop.start()

        assert sync_loop._task is task
        await sync_loop.stop()

    @pytest.mark.asyncio
    async def test_timer_triggers_tick(self, local, presenter, other):
        store, transport = local
        fast_loop = ReconciliationLoop(store, RemoteSync(transport), presenter, interval_seconds=0.01)
        other("hello", 0)

        await fast_loop.start()
        for _ in range(100):
            if presenter.show_entries.called:
                break
            await asyncio.sleep(0.01)
        await fast_loop.stop()

        assert emitted(presenter) == ["[2024-01-01 00:00:00] bob: hello"]
