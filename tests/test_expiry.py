"""Token expiry timer and the logout it triggers."""

import asyncio

import pytest

from sockauth.service.session import ExpiryTimer

from fakes import EventRecorder, SequenceTokenService

LOGIN = {"strategy": "local", "username": "alice", "password": "wonderland"}


@pytest.fixture
def short_settings(settings):
    return settings.model_copy(update={"token_ttl": "50ms"})


class TestExpiryTimer:
    async def test_fires_once(self):
        timer = ExpiryTimer()
        fired = []

        timer.arm(0.01, lambda: fired.append("x"))
        assert timer.armed
        await asyncio.sleep(0.05)

        assert fired == ["x"]
        assert not timer.armed

    async def test_rearm_cancels_previous(self):
        timer = ExpiryTimer()
        fired = []

        timer.arm(0.01, lambda: fired.append("first"))
        timer.arm(0.02, lambda: fired.append("second"))
        await asyncio.sleep(0.06)

        assert fired == ["second"]

    async def test_cancel(self):
        timer = ExpiryTimer()
        fired = []

        timer.arm(0.01, lambda: fired.append("x"))
        assert timer.cancel() is True
        assert timer.cancel() is False
        await asyncio.sleep(0.03)

        assert fired == []
        assert not timer.armed

    def test_arm_requires_running_loop(self):
        with pytest.raises(RuntimeError):
            ExpiryTimer().arm(1, lambda: None)


class TestTokenExpiryLogout:
    async def test_expiry_logs_connection_out(
        self, make_handler, short_settings, token_service, bus, users, alice
    ):
        events = EventRecorder(bus)
        handler = make_handler(settings=short_settings)

        token = await handler.authenticate(LOGIN)
        assert handler.timer.armed
        await asyncio.sleep(0.2)

        assert not handler.authenticated
        assert handler.connection.access_token is None
        assert handler.connection.data == {}
        assert token_service.invalidated == [token["access_token"]]
        assert len(events.logouts) == 1
        [(logged_out, context)] = events.logouts
        assert logged_out["access_token"] == token["access_token"]
        assert context.connection_ref == handler.connection.id
        assert context.connection_state["data"]["user"]["id"] == alice.id
        assert users.listener_count("removed") == 0

    async def test_reauthentication_resets_the_timer(
        self, make_handler, short_settings, token_service, bus, alice
    ):
        events = EventRecorder(bus)
        handler = make_handler(settings=short_settings)

        await handler.authenticate(LOGIN)
        await asyncio.sleep(0.03)
        second = await handler.authenticate(LOGIN)
        await asyncio.sleep(0.035)

        # 65ms after the first login, 35ms after the second
        assert handler.authenticated
        assert handler.connection.access_token == second["access_token"]
        assert events.logouts == []

        await asyncio.sleep(0.15)
        assert not handler.authenticated
        assert len(events.logouts) == 1
        assert token_service.invalidated[-1] == second["access_token"]

    async def test_manual_logout_cancels_expiry(
        self, make_handler, short_settings, token_service, bus, alice
    ):
        events = EventRecorder(bus)
        handler = make_handler(settings=short_settings)

        token = await handler.authenticate(LOGIN)
        await handler.logout()
        await asyncio.sleep(0.15)

        assert token_service.invalidated == [token["access_token"]]
        assert len(events.logouts) == 1

    async def test_concurrent_expiry_and_logout_invalidate_once(
        self, handler, token_service, events, alice
    ):
        token = await handler.authenticate(LOGIN)

        results = await asyncio.gather(
            handler.logout(), handler._expire(token["access_token"])
        )

        assert token_service.invalidated == [token["access_token"]]
        assert len(events.logouts) == 1
        assert results[0]["access_token"] == token["access_token"]

    async def test_stale_expiry_after_reauthentication_is_ignored(
        self, handler, token_service, events, alice
    ):
        first = await handler.authenticate(LOGIN)
        second = await handler.authenticate(LOGIN)

        await handler._expire(first["access_token"])

        assert handler.authenticated
        assert handler.connection.access_token == second["access_token"]
        assert token_service.invalidated == [first["access_token"]]
        assert events.logouts == []

    async def test_close_cancels_pending_expiry(self, make_handler, short_settings, bus, alice):
        events = EventRecorder(bus)
        handler = make_handler(settings=short_settings)

        await handler.authenticate(LOGIN)
        await handler.close()
        await asyncio.sleep(0.1)

        assert events.logouts == []
        assert not handler.timer.armed

    async def test_close_awaits_cancelled_background_logout(self, make_handler, users, alice):
        class SlowRevoke(SequenceTokenService):
            async def invalidate(self, access_token, params):
                await asyncio.sleep(1)
                return await super().invalidate(access_token, params)

        tokens = SlowRevoke()
        handler = make_handler(tokens=tokens)
        await handler.authenticate(LOGIN)

        users.remove_user(alice.id)
        await asyncio.sleep(0.01)
        [task] = handler._tasks

        await handler.close()

        assert task.cancelled()
        assert handler._tasks == set()
        assert not handler.authenticated
        assert tokens.invalidated == []
