"""
Tests for the session facade.
"""

import asyncio
import time

import pytest

from conftest import make_jwt, make_user
from sessionkit.credential_store import SESSION_KEY, CredentialStore
from sessionkit.errors import ApiError, AuthenticationError, StorageError
from sessionkit.models.auth_models import ApiUser, TokenPair
from sessionkit.models.user import User
from sessionkit.session import SessionManager
from sessionkit.storage.memory import MemoryStorage
from sessionkit.token_refresh import TokenRefreshCoordinator


class BrokenRemovalStorage(MemoryStorage):
    """Reads and writes work; every removal fails."""

    async def remove_item(self, key):
        raise OSError("read-only")

    async def multi_remove(self, keys):
        raise OSError("read-only")


class ProfileFetcher:
    def __init__(self, api_user=None, delay=0.0, error=None):
        self.api_user = api_user or ApiUser()
        self.delay = delay
        self.error = error
        self.calls = []

    async def __call__(self, access_token):
        self.calls.append(access_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.api_user


def build_session(storage, logger, bus, fetcher=None, refresh_fn=None, sync_timeout=5.0):
    async def default_refresh(refresh_token):
        return TokenPair(access_token="access-2", refresh_token="refresh-2")

    store = CredentialStore(storage, logger, load_timeout_s=0.5)
    refresher = TokenRefreshCoordinator(refresh_fn or default_refresh, logger)
    session = SessionManager(
        store=store,
        refresher=refresher,
        events=bus,
        logger=logger,
        profile_fetcher=fetcher,
        profile_sync_timeout_s=sync_timeout,
    )
    return session, store, refresher


async def stored_user(storage):
    raw = await storage.get_item(SESSION_KEY)
    return User.from_record(raw) if raw else None


class TestInitialize:
    """Session restoration at startup"""

    @pytest.mark.asyncio
    async def test_fresh_install(self, storage, logger, bus):
        fetcher = ProfileFetcher()
        session, _, _ = build_session(storage, logger, bus, fetcher)
        assert session.is_loading is True

        assert await session.initialize() is None

        assert session.user is None
        assert session.is_loading is False
        assert session.is_authenticated is False
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_restores_and_syncs_profile(self, storage, logger, bus, user):
        await storage.set_item(SESSION_KEY, user.to_record())
        fetcher = ProfileFetcher(ApiUser(country="DO"))
        session, _, refresher = build_session(storage, logger, bus, fetcher)

        restored = await session.initialize()

        assert fetcher.calls == ["access-1"]
        assert restored.country == "DO"
        assert restored.first_name == "Ana"
        assert restored.auth_token == "access-1"
        assert (await stored_user(storage)).country == "DO"
        assert refresher.has_active_session

    @pytest.mark.asyncio
    async def test_sync_timeout_keeps_stored_user(self, storage, logger, bus, user):
        await storage.set_item(SESSION_KEY, user.to_record())
        fetcher = ProfileFetcher(ApiUser(country="DO"), delay=1.0)
        session, _, _ = build_session(storage, logger, bus, fetcher, sync_timeout=0.05)

        restored = await session.initialize()

        assert restored == user
        assert session.is_loading is False

    @pytest.mark.asyncio
    async def test_sync_failure_keeps_stored_user(self, storage, logger, bus, user):
        await storage.set_item(SESSION_KEY, user.to_record())
        fetcher = ProfileFetcher(error=ApiError("offline", 0))
        session, _, _ = build_session(storage, logger, bus, fetcher)

        assert await session.initialize() == user

    @pytest.mark.asyncio
    async def test_no_sync_without_access_token(self, storage, logger, bus):
        display_only = make_user(auth_token=None)
        await storage.set_item(SESSION_KEY, display_only.to_record())
        fetcher = ProfileFetcher()
        session, _, _ = build_session(storage, logger, bus, fetcher)

        assert await session.initialize() == display_only
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_runs_once(self, storage, logger, bus, user):
        await storage.set_item(SESSION_KEY, user.to_record())
        fetcher = ProfileFetcher()
        session, _, _ = build_session(storage, logger, bus, fetcher)

        await asyncio.gather(session.initialize(), session.initialize())
        await session.initialize()

        assert len(fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_listeners_see_loading_finish(self, storage, logger, bus):
        session, _, _ = build_session(storage, logger, bus)
        seen = []
        session.add_listener(lambda user: seen.append(session.is_loading))

        await session.initialize()

        assert seen[-1] is False


class TestLoginLogout:
    """Explicit session changes"""

    @pytest.mark.asyncio
    async def test_login_persists(self, storage, logger, bus, user):
        session, _, refresher = build_session(storage, logger, bus)

        await session.login(user)

        assert session.user == user
        assert session.access_token == "access-1"
        assert session.refresh_token == "refresh-1"
        assert await stored_user(storage) == user
        assert refresher.has_active_session

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, storage, logger, bus, user):
        await storage.set_item("authToken", "legacy")
        session, _, refresher = build_session(storage, logger, bus)
        await session.login(user)

        await session.logout()

        assert session.user is None
        assert session.is_authenticated is False
        assert storage.keys() == []
        assert refresher.has_active_session is False

    @pytest.mark.asyncio
    async def test_logout_with_failing_storage(self, logger, bus, user):
        storage = BrokenRemovalStorage()
        session, _, _ = build_session(storage, logger, bus)
        await session.login(user)

        await session.logout()

        assert session.user is None
        assert session.is_authenticated is False

    def test_get_current_user_requires_login(self, storage, logger, bus):
        session, _, _ = build_session(storage, logger, bus)
        with pytest.raises(AuthenticationError):
            session.get_current_user()

    @pytest.mark.asyncio
    async def test_bus_event_logs_out(self, storage, logger, bus, user):
        session, _, _ = build_session(storage, logger, bus)
        await session.login(user)

        bus.publish()
        await bus.join()

        assert session.user is None
        assert await storage.get_item(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, storage, logger, bus, user):
        session, _, _ = build_session(storage, logger, bus)
        await session.login(user)
        session.close()

        bus.publish()
        await bus.join()

        assert session.user == user
        assert bus.subscriber_count == 0


class TestUpdateUser:
    """Partial profile updates"""

    @pytest.mark.asyncio
    async def test_update_without_user_is_noop(self, storage, logger, bus):
        session, _, _ = build_session(storage, logger, bus)

        assert await session.update_user({"firstName": "Eva"}) is None
        assert storage.keys() == []

    @pytest.mark.asyncio
    async def test_update_merges_and_persists(self, storage, logger, bus, user):
        session, _, _ = build_session(storage, logger, bus)
        await session.login(user)

        updated = await session.update_user({"firstName": "Eva", "country": "PE"})

        assert updated.first_name == "Eva"
        assert updated.country == "PE"
        assert updated.auth_token == "access-1"
        assert await stored_user(storage) == updated


class TestTokens:
    """Token refresh and expiry"""

    @pytest.mark.asyncio
    async def test_refresh_applies_new_pair(self, storage, logger, bus, user):
        session, _, _ = build_session(storage, logger, bus)
        await session.login(user)

        assert await session.refresh_user_tokens() is True

        assert session.access_token == "access-2"
        assert session.refresh_token == "refresh-2"
        stored = await stored_user(storage)
        assert (stored.auth_token, stored.refresh_token) == ("access-2", "refresh-2")

    @pytest.mark.asyncio
    async def test_refresh_failure_logs_out(self, storage, logger, bus, user):
        async def rejected(refresh_token):
            raise ApiError("revoked", 401)

        session, _, _ = build_session(storage, logger, bus, refresh_fn=rejected)
        await session.login(user)

        assert await session.refresh_user_tokens() is False

        assert session.user is None
        assert await storage.get_item(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token_logs_out(self, storage, logger, bus):
        session, _, _ = build_session(storage, logger, bus)
        await session.login(make_user(refresh_token=None))

        assert await session.refresh_user_tokens() is False
        assert session.user is None

    @pytest.mark.asyncio
    async def test_refresh_after_logout_is_ignored(self, storage, logger, bus, user):
        session, _, refresher = build_session(storage, logger, bus)
        await session.login(user)
        await session.logout()

        await refresher.refresh("refresh-1")

        assert session.user is None
        assert storage.keys() == []

    @pytest.mark.asyncio
    async def test_refresh_in_flight_across_login_keeps_new_session_tokens(
        self, storage, logger, bus
    ):
        gate = asyncio.Event()

        async def gated_refresh(refresh_token):
            await gate.wait()
            return TokenPair(access_token="A-access-refreshed", refresh_token="A-refresh-2")

        session, _, _ = build_session(storage, logger, bus, refresh_fn=gated_refresh)
        await session.login(make_user(id="A", auth_token="A-access", refresh_token="A-refresh"))
        pending = asyncio.ensure_future(session.refresh_user_tokens())
        await asyncio.sleep(0)

        await session.login(make_user(id="B", auth_token="B-access", refresh_token="B-refresh"))
        gate.set()

        assert await pending is False
        assert (session.user.id, session.access_token) == ("B", "B-access")
        stored = await stored_user(storage)
        assert (stored.id, stored.auth_token, stored.refresh_token) == ("B", "B-access", "B-refresh")

    @pytest.mark.asyncio
    async def test_failed_refresh_of_replaced_session_keeps_new_session(
        self, storage, logger, bus
    ):
        gate = asyncio.Event()

        async def gated_rejection(refresh_token):
            await gate.wait()
            raise ApiError("revoked", 401)

        session, _, _ = build_session(storage, logger, bus, refresh_fn=gated_rejection)
        await session.login(make_user(id="A", refresh_token="A-refresh"))
        pending = asyncio.ensure_future(session.refresh_user_tokens())
        await asyncio.sleep(0)

        await session.login(make_user(id="B", auth_token="B-access", refresh_token="B-refresh"))
        gate.set()

        assert await pending is False
        assert session.is_authenticated
        assert session.user.id == "B"
        assert (await stored_user(storage)).id == "B"

    @pytest.mark.asyncio
    async def test_refresh_in_flight_across_logout_then_login(self, storage, logger, bus):
        gate = asyncio.Event()

        async def gated_refresh(refresh_token):
            await gate.wait()
            return TokenPair(access_token="A-access-refreshed", refresh_token="A-refresh-2")

        session, _, _ = build_session(storage, logger, bus, refresh_fn=gated_refresh)
        await session.login(make_user(id="A", refresh_token="A-refresh"))
        pending = asyncio.ensure_future(session.refresh_user_tokens())
        await asyncio.sleep(0)

        await session.logout()
        await session.login(make_user(id="B", auth_token="B-access", refresh_token="B-refresh"))
        gate.set()

        assert await pending is False
        assert (session.user.id, session.access_token) == ("B", "B-access")
        assert (await stored_user(storage)).auth_token == "B-access"

    @pytest.mark.asyncio
    async def test_login_failure_propagates(self, logger, bus, user):
        class ReadOnlyStorage(MemoryStorage):
            async def set_item(self, key, value):
                raise OSError("read-only")

        session, _, _ = build_session(ReadOnlyStorage(), logger, bus)
        with pytest.raises(StorageError):
            await session.login(user)

    @pytest.mark.parametrize(
        "offset, expired",
        [(3600, False), (10, True), (-60, True)],
    )
    @pytest.mark.asyncio
    async def test_is_token_expired(self, storage, logger, bus, offset, expired):
        session, _, _ = build_session(storage, logger, bus)
        token = make_jwt({"sub": "user-1", "exp": int(time.time()) + offset})
        await session.login(make_user(auth_token=token))

        assert session.is_token_expired is expired

    @pytest.mark.asyncio
    async def test_token_without_exp_is_not_expired(self, storage, logger, bus, user):
        session, _, _ = build_session(storage, logger, bus)
        await session.login(user)
        assert session.is_token_expired is False

    def test_no_token_is_expired(self, storage, logger, bus):
        session, _, _ = build_session(storage, logger, bus)
        assert session.is_token_expired is True
