"""
Unit tests for SessionManager.

Covers sign-in, sign-out, startup restore, single-flight refresh and the
handling of results that arrive after the session they belong to has ended.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from jose import jwt

from fleet_client.auth.session_manager import (
    SessionManager, needs_refresh, parse_token_claims, seconds_until_expiry
)
from fleet_client.auth.token_storage import SecureTokenStore
from fleet_shared.exceptions import (
    NetworkError, ServerError, PersistenceError, RefreshRejectedError, UnauthenticatedError
)
from fleet_shared.interfaces import ITokenStore
from fleet_shared.models import SessionStatus, TokenPair


class TestTokenClaims:
    """Test JWT claim helpers."""

    def test_claims_of_jwt(self, make_pair):
        pair = make_pair(subject="driver")
        claims = parse_token_claims(pair.access_token)
        assert claims['sub'].startswith("driver")
        assert 'exp' in claims

    def test_opaque_token_has_no_claims(self):
        assert parse_token_claims("not-a-jwt") is None
        assert seconds_until_expiry("not-a-jwt") is None

    def test_seconds_until_expiry(self, make_pair):
        assert seconds_until_expiry(make_pair(expires_in=600).access_token) > 500
        assert seconds_until_expiry(make_pair(expires_in=-60).access_token) < 0

    def test_needs_refresh(self, make_pair):
        assert needs_refresh("not-a-jwt", 0)
        assert needs_refresh(make_pair(expires_in=30).access_token, 60)
        assert not needs_refresh(make_pair(expires_in=600).access_token, 60)

    def test_jwt_without_expiry_is_not_refreshed(self):
        token = jwt.encode({'sub': "driver"}, 'test-secret', algorithm='HS256')
        assert not needs_refresh(token, 60)


class TestSignIn:
    """Test SessionManager.sign_in."""

    @pytest.mark.asyncio
    async def test_sign_in_persists_and_publishes(self, manager, store, make_pair):
        pair = make_pair()
        await manager.sign_in(pair)

        assert manager.state.status == SessionStatus.AUTHENTICATED
        assert manager.get_valid_access_token() == pair.access_token
        assert await store.load() == pair

    @pytest.mark.asyncio
    async def test_sign_in_twice_with_same_pair_is_noop(self, manager, store, make_pair):
        changes = []
        manager.state.subscribe(changes.append)
        pair = make_pair()

        await manager.sign_in(pair)
        await manager.sign_in(pair)

        assert len(changes) == 1
        assert store.save_calls == 1
        assert manager.get_valid_access_token() == pair.access_token

    @pytest.mark.asyncio
    async def test_sign_in_replaces_previous_pair(self, manager, store, make_pair):
        first, second = make_pair(), make_pair()
        await manager.sign_in(first)
        await manager.sign_in(second)

        assert manager.get_valid_access_token() == second.access_token
        assert await store.load() == second

    @pytest.mark.asyncio
    async def test_sign_in_persistence_failure_leaves_state_unchanged(self, manager, store, make_pair):
        await manager.sign_out()
        store.fail_save = True

        with pytest.raises(PersistenceError):
            await manager.sign_in(make_pair())

        assert manager.state.status == SessionStatus.ANONYMOUS
        with pytest.raises(UnauthenticatedError):
            manager.get_valid_access_token()

    @pytest.mark.asyncio
    async def test_sign_in_with_corrupt_key_file_raises_persistence_error(self, tmp_path, auth_client,
                                                                          make_pair):
        store = SecureTokenStore(storage_dir=tmp_path, use_keyring=False)
        store.key_path.write_bytes(b"not-a-fernet-key")
        manager = SessionManager(store, auth_client)

        with pytest.raises(PersistenceError):
            await manager.sign_in(make_pair())

        assert manager.state.status == SessionStatus.UNKNOWN
        with pytest.raises(UnauthenticatedError):
            manager.get_valid_access_token()

    @pytest.mark.asyncio
    async def test_sign_in_rejects_non_pair(self, manager):
        with pytest.raises(TypeError):
            await manager.sign_in({'access_token': 'a', 'refresh_token': 'r'})


class TestSignOut:
    """Test SessionManager.sign_out."""

    @pytest.mark.asyncio
    async def test_sign_out_clears_store_and_state(self, manager, store, make_pair):
        await manager.sign_in(make_pair())
        await manager.sign_out()

        assert manager.state.status == SessionStatus.ANONYMOUS
        assert await store.load() is None
        with pytest.raises(UnauthenticatedError):
            manager.get_valid_access_token()

    @pytest.mark.asyncio
    async def test_sign_out_when_anonymous_succeeds(self, manager, store):
        await manager.sign_out()
        await manager.sign_out()

        assert manager.state.status == SessionStatus.ANONYMOUS
        assert store.clear_calls == 2

    @pytest.mark.asyncio
    async def test_sign_out_completes_when_clear_fails(self, manager, store, make_pair):
        pair = make_pair()
        await manager.sign_in(pair)
        store.fail_clear = 1

        await manager.sign_out()

        assert manager.state.status == SessionStatus.ANONYMOUS
        assert await store.load() == pair

        # Background retry removes the stale pair
        await manager._clear_retry_task
        assert store.clear_calls == 2
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_clear_retry_gives_up_after_all_delays(self, manager, store, make_pair):
        pair = make_pair()
        await manager.sign_in(pair)
        store.fail_clear = 10

        await manager.sign_out()
        await manager._clear_retry_task

        assert store.clear_calls == 3
        assert manager.state.status == SessionStatus.ANONYMOUS

    @pytest.mark.asyncio
    async def test_clear_retry_abandoned_by_new_sign_in(self, manager, store, make_pair):
        await manager.sign_in(make_pair())
        store.fail_clear = 10
        await manager.sign_out()

        store.fail_clear = 0
        new_pair = make_pair()
        await manager.sign_in(new_pair)
        await asyncio.sleep(0)

        assert await store.load() == new_pair
        assert manager.get_valid_access_token() == new_pair.access_token


class TestInitialize:
    """Test restoring the stored session at startup."""

    @pytest.mark.asyncio
    async def test_restores_stored_pair(self, manager, store, make_pair):
        pair = make_pair()
        await store.save(pair)

        snapshot = await manager.initialize()

        assert snapshot.is_authenticated
        assert manager.get_valid_access_token() == pair.access_token

    @pytest.mark.asyncio
    async def test_nothing_stored_is_anonymous(self, manager):
        assert manager.state.status == SessionStatus.UNKNOWN

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS
        assert (await manager.state.wait_resolved()).status == SessionStatus.ANONYMOUS

    @pytest.mark.asyncio
    async def test_unreadable_store_is_anonymous(self, manager, store):
        store.fail_load = True

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS

    @pytest.mark.asyncio
    async def test_corrupt_key_file_is_anonymous(self, tmp_path, auth_client, make_pair):
        store = SecureTokenStore(storage_dir=tmp_path, use_keyring=False)
        await store.save(make_pair())
        store.key_path.write_bytes(b"not-a-fernet-key")
        manager = SessionManager(SecureTokenStore(storage_dir=tmp_path, use_keyring=False), auth_client)

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS
        assert (await manager.state.wait_resolved()).status == SessionStatus.ANONYMOUS
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unexpected_store_failure_is_anonymous(self, auth_client):
        store = AsyncMock(spec=ITokenStore)
        store.load.side_effect = RuntimeError("backend crashed")
        manager = SessionManager(store, auth_client)

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS

    @pytest.mark.asyncio
    async def test_opaque_access_token_is_refreshed(self, manager, store, auth_client, make_pair):
        fresh = make_pair()
        await store.save(TokenPair("opaque-access", "opaque-refresh"))
        auth_client.refresh_result = fresh

        snapshot = await manager.initialize()

        assert auth_client.refresh_calls == ["opaque-refresh"]
        assert snapshot.access_token == fresh.access_token

    @pytest.mark.asyncio
    async def test_runs_once(self, manager, store, make_pair):
        await manager.initialize()
        await store.save(make_pair())

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS

    @pytest.mark.asyncio
    async def test_expired_access_token_is_refreshed(self, manager, store, auth_client, make_pair):
        expired = make_pair(expires_in=-60)
        fresh = make_pair()
        await store.save(expired)
        auth_client.refresh_result = fresh

        snapshot = await manager.initialize()

        assert auth_client.refresh_calls == [expired.refresh_token]
        assert snapshot.access_token == fresh.access_token
        assert await store.load() == fresh

    @pytest.mark.asyncio
    async def test_expired_session_with_rejected_refresh_signs_out(self, manager, store,
                                                                   auth_client, make_pair):
        await store.save(make_pair(expires_in=-60))
        auth_client.error = RefreshRejectedError("Refresh token expired")

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_expired_session_kept_when_offline(self, manager, store, auth_client, make_pair):
        expired = make_pair(expires_in=-60)
        await store.save(expired)
        auth_client.error = NetworkError("connection refused")

        snapshot = await manager.initialize()

        assert snapshot.is_authenticated
        assert await store.load() == expired


class TestRefresh:
    """Test single-flight token refresh."""

    @pytest.mark.asyncio
    async def test_refresh_replaces_pair(self, manager, store, auth_client, make_pair):
        old, new = make_pair(), make_pair()
        await manager.sign_in(old)
        auth_client.refresh_result = new

        result = await manager.refresh_session()

        assert result == new
        assert auth_client.refresh_calls == [old.refresh_token]
        assert manager.get_valid_access_token() == new.access_token
        assert await store.load() == new

    @pytest.mark.asyncio
    async def test_refresh_notifies_subscribers_once(self, manager, auth_client, make_pair):
        await manager.sign_in(make_pair())
        new = make_pair()
        auth_client.refresh_result = new
        changes = []
        manager.state.subscribe(changes.append)

        await manager.refresh_session()

        assert len(changes) == 1
        assert changes[0].status == SessionStatus.AUTHENTICATED
        assert changes[0].access_token == new.access_token

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_exchange(self, manager, auth_client, make_pair):
        new = make_pair()
        await manager.sign_in(make_pair())
        auth_client.refresh_result = new
        auth_client.hold()

        callers = [asyncio.create_task(manager.refresh_session()) for _ in range(5)]
        await auth_client.started.wait()
        assert manager.is_refreshing
        auth_client.release.set()
        results = await asyncio.gather(*callers)

        assert len(auth_client.refresh_calls) == 1
        assert all(result == new for result in results)
        assert not manager.is_refreshing

    @pytest.mark.asyncio
    async def test_rejected_refresh_signs_out_every_caller(self, manager, store, auth_client, make_pair):
        await manager.sign_in(make_pair())
        auth_client.error = RefreshRejectedError("Refresh token revoked")
        auth_client.hold()

        callers = [asyncio.create_task(manager.refresh_session()) for _ in range(3)]
        await auth_client.started.wait()
        auth_client.release.set()
        results = await asyncio.gather(*callers, return_exceptions=True)

        assert all(isinstance(result, RefreshRejectedError) for result in results)
        assert len(auth_client.refresh_calls) == 1
        assert manager.state.status == SessionStatus.ANONYMOUS
        assert await store.load() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        NetworkError("connection reset"),
        ServerError("Internal server error", status=500),
    ])
    async def test_retryable_failure_keeps_session(self, manager, store, auth_client, make_pair, error):
        pair = make_pair()
        await manager.sign_in(pair)
        auth_client.error = error

        with pytest.raises(type(error)):
            await manager.refresh_session()

        assert manager.get_valid_access_token() == pair.access_token
        assert await store.load() == pair
        assert not manager.is_refreshing

    @pytest.mark.asyncio
    async def test_refresh_without_session(self, manager, auth_client):
        await manager.initialize()

        with pytest.raises(UnauthenticatedError):
            await manager.refresh_session()

        assert auth_client.refresh_calls == []

    @pytest.mark.asyncio
    async def test_sign_out_during_refresh_discards_result(self, manager, store, auth_client, make_pair):
        await manager.sign_in(make_pair())
        auth_client.refresh_result = make_pair()
        auth_client.hold()

        refresh = asyncio.create_task(manager.refresh_session())
        await auth_client.started.wait()
        await manager.sign_out()
        auth_client.release.set()

        with pytest.raises(UnauthenticatedError):
            await refresh

        assert manager.state.status == SessionStatus.ANONYMOUS
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_sign_in_during_refresh_wins(self, manager, store, auth_client, make_pair):
        await manager.sign_in(make_pair())
        auth_client.refresh_result = make_pair()
        auth_client.hold()

        refresh = asyncio.create_task(manager.refresh_session())
        await auth_client.started.wait()
        signed_in = make_pair()
        await manager.sign_in(signed_in)
        auth_client.release.set()

        assert await refresh == signed_in
        assert manager.get_valid_access_token() == signed_in.access_token
        assert await store.load() == signed_in

    @pytest.mark.asyncio
    async def test_rejection_after_sign_in_does_not_end_new_session(self, manager, auth_client, make_pair):
        await manager.sign_in(make_pair())
        auth_client.error = RefreshRejectedError("Refresh token revoked")
        auth_client.hold()

        refresh = asyncio.create_task(manager.refresh_session())
        await auth_client.started.wait()
        signed_in = make_pair()
        await manager.sign_in(signed_in)
        auth_client.release.set()

        with pytest.raises(RefreshRejectedError):
            await refresh
        assert manager.get_valid_access_token() == signed_in.access_token

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_refresh(self, manager, auth_client, make_pair):
        new = make_pair()
        await manager.sign_in(make_pair())
        auth_client.refresh_result = new
        auth_client.hold()

        first = asyncio.create_task(manager.refresh_session())
        second = asyncio.create_task(manager.refresh_session())
        await auth_client.started.wait()
        first.cancel()
        auth_client.release.set()

        assert await second == new
        assert first.cancelled()
        assert manager.get_valid_access_token() == new.access_token

    @pytest.mark.asyncio
    async def test_refreshed_pair_kept_in_memory_when_save_fails(self, manager, store, auth_client, make_pair):
        old, new = make_pair(), make_pair()
        await manager.sign_in(old)
        auth_client.refresh_result = new
        store.fail_save = True

        assert await manager.refresh_session() == new
        assert manager.get_valid_access_token() == new.access_token
        assert await store.load() == old


class TestEnsureFresh:
    """Test refresh-on-resume."""

    @pytest.mark.asyncio
    async def test_refreshes_when_close_to_expiry(self, manager, auth_client, make_pair):
        new = make_pair()
        await manager.sign_in(make_pair(expires_in=30))
        auth_client.refresh_result = new

        assert await manager.ensure_fresh() == new
        assert len(auth_client.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_refreshes_opaque_token(self, manager, auth_client, make_pair):
        new = make_pair()
        await manager.sign_in(TokenPair("opaque-access", "opaque-refresh"))
        auth_client.refresh_result = new

        assert await manager.ensure_fresh() == new
        assert auth_client.refresh_calls == ["opaque-refresh"]

    @pytest.mark.asyncio
    async def test_leaves_fresh_token_alone(self, manager, auth_client, make_pair):
        pair = make_pair(expires_in=3600)
        await manager.sign_in(pair)

        assert await manager.ensure_fresh() == pair
        assert auth_client.refresh_calls == []

    @pytest.mark.asyncio
    async def test_anonymous_returns_none(self, manager):
        assert await manager.ensure_fresh() is None

    @pytest.mark.asyncio
    async def test_current_claims(self, manager, make_pair):
        assert manager.current_claims() is None
        await manager.sign_in(make_pair(subject="driver"))
        assert manager.current_claims()['sub'].startswith("driver")


class TestShutdown:
    """Test cancelling background work."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_refresh(self, store, auth_client, make_pair):
        manager = SessionManager(store, auth_client)
        await manager.sign_in(make_pair())
        auth_client.refresh_result = make_pair()
        auth_client.hold()

        refresh = asyncio.create_task(manager.refresh_session())
        await auth_client.started.wait()
        await manager.shutdown()

        with pytest.raises(asyncio.CancelledError):
            await refresh
        assert not manager.is_refreshing


class TestStartupRaces:
    """Test startup restore racing with user actions."""

    @pytest.mark.asyncio
    async def test_sign_in_during_load_wins(self, auth_client, make_pair):
        stored, signed_in = make_pair(), make_pair()
        token_store = AsyncMock(spec=ITokenStore)
        manager = SessionManager(token_store, auth_client)

        async def load_while_user_signs_in():
            await manager.sign_in(signed_in)
            return stored

        token_store.load.side_effect = load_while_user_signs_in

        snapshot = await manager.initialize()

        assert snapshot.access_token == signed_in.access_token
        token_store.save.assert_awaited_once_with(signed_in)

    @pytest.mark.asyncio
    async def test_sign_out_during_load_wins(self, auth_client, make_pair):
        token_store = AsyncMock(spec=ITokenStore)
        manager = SessionManager(token_store, auth_client)

        async def load_while_user_signs_out():
            await manager.sign_out()
            return make_pair()

        token_store.load.side_effect = load_while_user_signs_out

        snapshot = await manager.initialize()

        assert snapshot.status == SessionStatus.ANONYMOUS
        token_store.clear.assert_awaited_once()
