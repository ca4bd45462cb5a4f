"""
Tests for SessionManager: boot ordering, credential persistence,
reconnection policy and the reset flow, driven by fake client events.
"""

import asyncio
import base64

import pytest

from conftest import FakeChatClient, FakeClientFactory
from wabot.channels.base import (
    CLOSE,
    CONNECTING,
    OPEN,
    ConnectionStateChanged,
    CredsUpdated,
    IncomingMessage,
    MessageReceived,
)
from wabot.core.commands import CommandDispatcher
from wabot.core.session_manager import (
    STATE_CLOSED,
    STATE_CONNECTING,
    STATE_OPEN,
    NotConnectedError,
    SessionManager,
)
from wabot.session.synchronizer import SessionSynchronizer


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def settle(manager):
    """Let the dispatch loop drain and pending snapshots finish."""
    await manager.events.join()
    await manager.synchronizer.flush()


def _decoded(snapshot):
    return {k: base64.b64decode(v) for k, v in snapshot.files.items()}


def make_manager(store, factory, auth_dir, dispatcher=None, delay=0.05, error_delay=0.05):
    return SessionManager(
        synchronizer=SessionSynchronizer(store, "whatsapp"),
        client_factory=factory,
        dispatcher=dispatcher,
        auth_dir=auth_dir,
        reconnect_delay=delay,
        reconnect_error_delay=error_delay,
    )


class TestStartup:
    @pytest.mark.asyncio
    async def test_boot_with_empty_store(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()

            assert manager.restored is False
            assert len(client_factory.clients) == 1
            assert client_factory.latest.connect_calls == 1
            assert manager.state == STATE_CONNECTING
            assert auth_dir.is_dir()
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_restore_completes_before_client_is_built(self, temp_store, auth_dir):
        temp_store.save("whatsapp", {"creds.json": base64.b64encode(b"stored").decode()})
        seen = []

        def factory(directory):
            seen.append({p.name: p.read_bytes() for p in directory.iterdir()})
            return FakeChatClient(directory)

        manager = make_manager(temp_store, factory, auth_dir)
        try:
            await manager.start()
        finally:
            await manager.stop()

        assert manager.restored is True
        assert seen == [{"creds.json": b"stored"}]

    @pytest.mark.asyncio
    async def test_unwritable_auth_dir_does_not_block_boot(self, temp_store, client_factory, auth_dir):
        temp_store.save("whatsapp", {"creds.json": base64.b64encode(b"{}").decode()})
        auth_dir.write_bytes(b"not a directory")
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()

            assert manager.restored is False
            assert len(client_factory.clients) == 1

            # The dispatch loop is running
            await client_factory.latest.emit(ConnectionStateChanged(state=OPEN))
            await settle(manager)
            assert manager.state == STATE_OPEN
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_unwritable_auth_dir_with_empty_store(self, temp_store, client_factory, auth_dir):
        auth_dir.write_bytes(b"not a directory")
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()

            assert manager.restored is False
            assert len(client_factory.clients) == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_boot_with_store_down_starts_unauthenticated(
        self, broken_store, client_factory, auth_dir
    ):
        manager = make_manager(broken_store, client_factory, auth_dir)
        try:
            await manager.start()

            assert manager.restored is False
            assert len(client_factory.clients) == 1
        finally:
            await manager.stop()


class TestCredentialPersistence:
    @pytest.mark.asyncio
    async def test_creds_update_populates_store(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            assert temp_store.load("whatsapp") is None

            (auth_dir / "creds.json").write_bytes(b'{"me": "bot"}')
            (auth_dir / "pre-key-1.json").write_bytes(b"\x00\xff")
            await client_factory.latest.emit(CredsUpdated())
            await settle(manager)

            assert _decoded(temp_store.load("whatsapp")) == {
                "creds.json": b'{"me": "bot"}',
                "pre-key-1.json": b"\x00\xff",
            }
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_second_rotation_replaces_first(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            client = client_factory.latest

            (auth_dir / "creds.json").write_bytes(b"v1")
            (auth_dir / "pre-key-1.json").write_bytes(b"k1")
            await client.emit(CredsUpdated())
            await settle(manager)

            (auth_dir / "pre-key-1.json").unlink()
            (auth_dir / "creds.json").write_bytes(b"v2")
            await client.emit(CredsUpdated())
            await settle(manager)

            assert _decoded(temp_store.load("whatsapp")) == {"creds.json": b"v2"}
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_store_failure_does_not_reach_event_handler(
        self, broken_store, client_factory, auth_dir
    ):
        manager = make_manager(broken_store, client_factory, auth_dir)
        auth_dir.mkdir(parents=True)
        (auth_dir / "creds.json").write_bytes(b"x")

        # Called directly: must return normally even though the save fails
        await manager.handle_event(CredsUpdated())
        await manager.synchronizer.flush()


    @pytest.mark.asyncio
    async def test_unreadable_auth_dir_keeps_bot_running(
        self, temp_store, client_factory, auth_dir, monkeypatch
    ):
        def unreadable(local_dir):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr("wabot.session.synchronizer.encode_directory", unreadable)
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            client = client_factory.latest

            await client.emit(CredsUpdated())
            await settle(manager)
            assert temp_store.load("whatsapp") is None

            await client.emit(ConnectionStateChanged(state=OPEN))
            await settle(manager)
            assert manager.state == STATE_OPEN
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_client_flushes_state_before_snapshot(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            (auth_dir / "creds.json").write_bytes(b"x")

            await client_factory.latest.emit(CredsUpdated())
            await settle(manager)

            assert client_factory.latest.checkpoint_calls == 1
            assert temp_store.load("whatsapp") is not None
        finally:
            await manager.stop()


class TestReconnectionPolicy:
    @pytest.mark.asyncio
    async def test_qr_cached_then_cleared_on_open(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            client = client_factory.latest

            await client.emit(ConnectionStateChanged(state=CONNECTING, qr="2@abc"))
            await settle(manager)
            assert manager.pending_qr == "2@abc"

            await client.emit(ConnectionStateChanged(state=OPEN))
            await settle(manager)
            assert manager.pending_qr is None
            assert manager.state == STATE_OPEN
            assert manager.is_connected
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_close_reconnects_after_delay(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            await client_factory.latest.emit(ConnectionStateChanged(state=CLOSE, error="timeout"))
            await settle(manager)
            assert manager.state == STATE_CLOSED

            await wait_for(lambda: len(client_factory.clients) == 2)
            assert client_factory.latest.connect_calls == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_reconnect_does_not_restore_again(self, temp_store, client_factory, auth_dir):
        temp_store.save("whatsapp", {"creds.json": base64.b64encode(b"old").decode()})
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            # Client rotated keys locally; the store still has the old copy
            (auth_dir / "creds.json").write_bytes(b"new")

            await client_factory.latest.emit(ConnectionStateChanged(state=CLOSE))
            await wait_for(lambda: len(client_factory.clients) == 2)

            assert (auth_dir / "creds.json").read_bytes() == b"new"
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_logged_out_close_is_terminal(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            await client_factory.latest.emit(
                ConnectionStateChanged(state=CLOSE, logged_out=True)
            )
            await settle(manager)
            await asyncio.sleep(0.2)

            assert manager.logged_out is True
            assert manager.state == STATE_CLOSED
            assert len(client_factory.clients) == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_connect_error_retries_with_error_delay(self, temp_store, auth_dir):
        factory = FakeClientFactory()
        factory.fail_first = 1
        manager = make_manager(temp_store, factory, auth_dir, delay=10, error_delay=0.05)
        try:
            await manager.start()
            assert manager.state == STATE_CLOSED

            await wait_for(lambda: len(factory.clients) == 2)
            assert manager.state == STATE_CONNECTING
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_repeated_close_schedules_one_reconnect(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir, delay=0.1)
        try:
            await manager.start()
            client = client_factory.latest
            await client.emit(ConnectionStateChanged(state=CLOSE))
            await client.emit(ConnectionStateChanged(state=CLOSE))
            await settle(manager)

            await wait_for(lambda: len(client_factory.clients) == 2)
            await asyncio.sleep(0.2)
            assert len(client_factory.clients) == 2
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_disconnects_without_logout(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        await manager.start()
        client = client_factory.latest

        await manager.stop()

        assert client.disconnect_calls == 1
        assert client.logout_calls == 0
        assert manager.state == STATE_CLOSED


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_clears_store_and_directory(self, temp_store, client_factory, auth_dir):
        temp_store.save("whatsapp", {"creds.json": base64.b64encode(b"stored").decode()})
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            old_client = client_factory.latest

            result = await manager.reset()

            assert result == {"success": True, "store_cleared": True}
            assert old_client.logout_calls == 1
            assert temp_store.load("whatsapp") is None
            assert auth_dir.is_dir()
            assert list(auth_dir.iterdir()) == []
            # A fresh client was started for the new pairing flow
            assert len(client_factory.clients) == 2
            assert manager.client is client_factory.latest
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_logout_failure_does_not_block_reset(self, temp_store, auth_dir):
        factory = FakeClientFactory(fail_logout=True)
        temp_store.save("whatsapp", {"creds.json": base64.b64encode(b"x").decode()})
        manager = make_manager(temp_store, factory, auth_dir)
        try:
            await manager.start()
            result = await manager.reset()

            assert result["success"] is True
            assert temp_store.load("whatsapp") is None
            assert list(auth_dir.iterdir()) == []
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_reset_clears_logged_out_state(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            await client_factory.latest.emit(
                ConnectionStateChanged(state=CLOSE, logged_out=True, qr=None)
            )
            await settle(manager)
            assert manager.logged_out is True

            await manager.reset()

            assert manager.logged_out is False
            assert manager.pending_qr is None
            assert manager.state == STATE_CONNECTING
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_events_from_old_client_are_ignored(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()
            old_client = client_factory.latest
            await manager.reset()

            await old_client.emit(ConnectionStateChanged(state=CLOSE))
            await old_client.emit(ConnectionStateChanged(state=OPEN))
            await settle(manager)
            await asyncio.sleep(0.2)

            assert len(client_factory.clients) == 2
            assert manager.state == STATE_CONNECTING
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_reset_with_store_down_reports_failure(
        self, broken_store, client_factory, auth_dir
    ):
        manager = make_manager(broken_store, client_factory, auth_dir)
        try:
            await manager.start()
            result = await manager.reset()

            assert result["success"] is False
            assert result["store_cleared"] is False
            assert "error" in result
            assert list(auth_dir.iterdir()) == []
        finally:
            await manager.stop()


class TestSupersededConnects:
    async def _reset_during_slow_reconnect(self, manager, factory, gate):
        await manager.start()
        await factory.latest.emit(ConnectionStateChanged(state=CLOSE))
        await wait_for(lambda: len(factory.clients) == 2)

        # The reconnect is still inside connect() when the operator resets
        await manager.reset()
        assert len(factory.clients) == 3

        gate.set()
        await asyncio.sleep(0.2)

    @pytest.mark.asyncio
    async def test_late_failure_of_old_connect_is_ignored(self, temp_store, auth_dir):
        factory = FakeClientFactory()
        gate = asyncio.Event()
        factory.gates[1] = gate
        factory.fail_at = {1}
        manager = make_manager(temp_store, factory, auth_dir)
        try:
            await self._reset_during_slow_reconnect(manager, factory, gate)

            assert len(factory.clients) == 3
            assert manager.client is factory.clients[2]
            assert manager.state == STATE_CONNECTING
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_late_success_of_old_connect_is_disconnected(self, temp_store, auth_dir):
        factory = FakeClientFactory()
        gate = asyncio.Event()
        factory.gates[1] = gate
        manager = make_manager(temp_store, factory, auth_dir)
        try:
            await self._reset_during_slow_reconnect(manager, factory, gate)

            stale = factory.clients[1]
            assert len(factory.clients) == 3
            assert manager.client is factory.clients[2]
            # Once by reset, once more when its connect finally returned
            assert stale.disconnect_calls == 2
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_reconnect_scheduled_before_reset_does_not_fire(
        self, temp_store, client_factory, auth_dir
    ):
        manager = make_manager(temp_store, client_factory, auth_dir, delay=0.1)
        try:
            await manager.start()
            await client_factory.latest.emit(ConnectionStateChanged(state=CLOSE))
            await settle(manager)

            await manager.reset()
            await asyncio.sleep(0.3)

            assert len(client_factory.clients) == 2
        finally:
            await manager.stop()


class TestMessages:
    @pytest.mark.asyncio
    async def test_command_reply_is_sent(self, temp_store, client_factory, auth_dir):
        dispatcher = CommandDispatcher(prefix="!")
        manager = make_manager(temp_store, client_factory, auth_dir, dispatcher=dispatcher)
        try:
            await manager.start()
            client = client_factory.latest
            await client.emit(ConnectionStateChanged(state=OPEN))

            message = IncomingMessage(
                id="m1", chat_id="111@s.whatsapp.net", sender_id="111@s.whatsapp.net", text="!ping"
            )
            await client.emit(MessageReceived(message))
            await settle(manager)

            await wait_for(lambda: client.sent)
            assert client.sent == [("111@s.whatsapp.net", dispatcher.text("ping"))]
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_send_requires_open_session(self, temp_store, client_factory, auth_dir):
        manager = make_manager(temp_store, client_factory, auth_dir)
        try:
            await manager.start()

            with pytest.raises(NotConnectedError):
                await manager.send_text("111@s.whatsapp.net", "hi")
        finally:
            await manager.stop()
