"""Tests for the remote write outbox."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from velto_credits.exceptions import RemoteUnavailableError
from velto_credits.outbox import RemoteWriteOutbox

from .conftest import GatedStore


@pytest.fixture
def gated_outbox(gated_store: GatedStore) -> RemoteWriteOutbox:
    """Outbox writing to the controllable store."""
    return RemoteWriteOutbox(gated_store, max_pending=10, flush_interval=60.0, max_attempts=3)


class TestSubmit:
    """Tests for submitting writes."""

    @pytest.mark.asyncio
    async def test_submit_writes_record(
        self, gated_outbox: RemoteWriteOutbox, gated_store: GatedStore
    ) -> None:
        """Test a submitted snapshot reaches the store and leaves nothing queued."""
        gated_outbox.submit("users", "u1", {"tier": "ultra"})
        await gated_outbox.drain()

        assert gated_outbox.pending_count == 0
        assert await gated_store.get_record("users", "u1") == {"tier": "ultra"}

    @pytest.mark.asyncio
    async def test_latest_snapshot_wins(
        self, gated_outbox: RemoteWriteOutbox, gated_store: GatedStore
    ) -> None:
        """Test a newer snapshot for the same record replaces the older one."""
        gated_store.fail = True
        gated_outbox.submit("users", "u1", {"output_tokens_used": 10})
        gated_outbox.submit("users", "u1", {"output_tokens_used": 20})
        await gated_outbox.drain()

        assert gated_outbox.pending_count == 1
        assert gated_outbox._pending[("users", "u1")].data == {"output_tokens_used": 20}

    @pytest.mark.asyncio
    async def test_full_outbox_drops_new_records(self, gated_store: GatedStore) -> None:
        """Test records beyond max_pending are dropped, updates to queued ones are not."""
        outbox = RemoteWriteOutbox(gated_store, max_pending=2)
        gated_store.fail = True
        outbox.submit("users", "u1", {})
        outbox.submit("users", "u2", {})
        outbox.submit("users", "u3", {})
        outbox.submit("users", "u1", {"updated": True})
        await outbox.drain()

        assert outbox.pending_count == 2
        assert not outbox.is_pending("users", "u3")

    @pytest.mark.asyncio
    async def test_writes_for_one_record_in_order(
        self, gated_outbox: RemoteWriteOutbox, gated_store: GatedStore
    ) -> None:
        """Test a snapshot submitted during a slow write is sent after it, never before."""
        gate = gated_store.hold_next_write()
        gated_outbox.submit("users", "u1", {"version": 1})
        await gated_store.held.wait()

        gated_outbox.submit("users", "u1", {"version": 2})
        gate.set()
        await gated_outbox.drain()

        assert gated_store.writes == [{"version": 1}, {"version": 2}]
        assert await gated_store.get_record("users", "u1") == {"version": 2}


class TestFlush:
    """Tests for retrying queued writes."""

    @pytest.mark.asyncio
    async def test_flush_delivers(
        self, gated_outbox: RemoteWriteOutbox, gated_store: GatedStore
    ) -> None:
        """Test a successful retry writes the record and clears it."""
        gated_store.fail = True
        gated_outbox.submit("users", "u1", {"tier": "ultra"})
        await gated_outbox.drain()
        gated_store.fail = False

        assert await gated_outbox.flush() == 1
        assert gated_outbox.pending_count == 0
        assert await gated_store.get_record("users", "u1") == {"tier": "ultra"}

    @pytest.mark.asyncio
    async def test_failed_retry_stays_queued(self, failing_store: MagicMock) -> None:
        """Test a failing retry keeps the write and counts the attempt."""
        outbox = RemoteWriteOutbox(failing_store, max_attempts=3)
        outbox.submit("users", "u1", {"tier": "ultra"})
        await outbox.drain()

        assert await outbox.flush() == 0
        assert outbox.pending_count == 1
        assert outbox._pending[("users", "u1")].attempts == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, failing_store: MagicMock) -> None:
        """Test a write is dropped and reported once retries run out."""
        outbox = RemoteWriteOutbox(failing_store, max_attempts=2)

        with patch("velto_credits.outbox.capture_exception") as capture:
            outbox.submit("users", "u1", {"tier": "ultra"})
            await outbox.drain()
            await outbox.flush()

        assert outbox.pending_count == 0
        capture.assert_called_once()
        assert isinstance(capture.call_args[0][0], RemoteUnavailableError)
        assert capture.call_args.kwargs["extra"] == {"collection": "users", "record_id": "u1"}

    @pytest.mark.asyncio
    async def test_retry_in_flight_never_overwrites_newer_write(
        self, gated_outbox: RemoteWriteOutbox, gated_store: GatedStore
    ) -> None:
        """Test an old snapshot being retried lands before a newer one submitted meanwhile."""
        gated_store.fail = True
        gated_outbox.submit("users", "u1", {"output_tokens_used": 100})
        await gated_outbox.drain()
        gated_store.fail = False

        gate = gated_store.hold_next_write()
        flush = asyncio.create_task(gated_outbox.flush())
        await gated_store.held.wait()
        gated_outbox.submit("users", "u1", {"output_tokens_used": 600})
        gate.set()
        await flush
        await gated_outbox.drain()

        record = await gated_store.get_record("users", "u1")
        assert record == {"output_tokens_used": 600}
        assert gated_outbox.pending_count == 0


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_stop_flushes(
        self, gated_outbox: RemoteWriteOutbox, gated_store: GatedStore
    ) -> None:
        """Test stopping makes a final delivery attempt."""
        await gated_outbox.start()
        await gated_outbox.start()
        gated_store.fail = True
        gated_outbox.submit("users", "u1", {"tier": "starter"})
        await gated_outbox.drain()
        gated_store.fail = False

        await gated_outbox.stop()

        assert gated_outbox._flush_task is None
        assert gated_outbox.pending_count == 0
        assert await gated_store.get_record("users", "u1") == {"tier": "starter"}
