"""
Tests for the login orchestration: token reuse, vault restore, dedup of
concurrent logins, logon timeout and persistence of fresh tokens.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from log_utils import DEFAULT_APP_NAME, LogEvent
from oauth import (
    GrantError,
    LoginProviderUnavailable,
    LogonTimeoutError,
    OAuthManager,
    RemoteConfig,
    SecretVault,
    Token,
    serialize_token,
)
from test_utils import FakeLoginProvider, make_conf

VAULT_KEY = "vscode_git_my%20system"


def _events(caplog):
    return [getattr(record, "log_record").event for record in caplog.records if hasattr(record, "log_record")]


class TestNoOAuthConfigured:
    @pytest.mark.asyncio
    async def test_login_is_none_and_future_token_is_none(self, login_provider):
        vault = AsyncMock(spec=SecretVault)
        manager = OAuthManager(login_provider=login_provider, vault=vault)
        conf = RemoteConfig(name="Basic", url="https://abap.example.com", username="DEVELOPER")

        assert manager.login(conf) is None
        assert await manager.future_token("Basic") is None
        assert login_provider.handles == []
        vault.load.assert_not_called()


class TestFastPath:
    @pytest.mark.asyncio
    async def test_existing_token_is_returned_without_io(self, login_provider, conf):
        vault = AsyncMock(spec=SecretVault)
        manager = OAuthManager(login_provider=login_provider, vault=vault)
        manager.token_store.set(conf.conn_id, Token("cached", "r0", "bearer"))

        do_login = manager.login(conf)
        assert await do_login() == "cached"
        assert await do_login() == "cached"

        vault.load.assert_not_called()
        vault.save.assert_not_called()
        assert login_provider.handles == []

    @pytest.mark.asyncio
    async def test_future_token_returns_cached_token(self, oauth_manager, conf):
        oauth_manager.token_store.set(conf.conn_id, Token("cached", "r0", "bearer"))
        assert await oauth_manager.future_token("My System") == "cached"
        assert await oauth_manager.future_token("my system") == "cached"


class TestFreshGrant:
    @pytest.mark.asyncio
    async def test_fresh_grant_stores_and_persists_token(self, oauth_manager, login_provider, conf, memory_keyring):
        access_token = await oauth_manager.login(conf)()

        assert access_token == "a1"
        assert login_provider.grants == [("https://host", "c1", "s1")]
        # The store keeps the full token, the vault only the stripped record.
        stored = oauth_manager.token_store.get("my system")
        assert stored.scope == "openid"

        await oauth_manager.wait_for_background()
        assert json.loads(memory_keyring.passwords[(VAULT_KEY, "c1")]) == {
            "accessToken": "a1", "refreshToken": "r1", "tokenType": "bearer", "expiresAt": 4102444800,
        }
        # A successful grant leaves the login server to its owner.
        assert login_provider.handles[0].server.close_calls == 0
        assert len(oauth_manager.pending) == 0

    @pytest.mark.asyncio
    async def test_without_save_credentials_vault_is_untouched(self, login_provider):
        vault = AsyncMock(spec=SecretVault)
        manager = OAuthManager(login_provider=login_provider, vault=vault)

        assert await manager.login(make_conf(save_credentials=False))() == "a1"
        await manager.wait_for_background()
        vault.load.assert_not_called()
        vault.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_call_reuses_token(self, oauth_manager, login_provider, conf):
        do_login = oauth_manager.login(conf)
        assert await do_login() == "a1"
        assert await do_login() == "a1"
        assert len(login_provider.grants) == 1

    @pytest.mark.asyncio
    async def test_grant_returning_dict_is_accepted(self, conf):
        provider = FakeLoginProvider()
        provider.token = {"access_token": "d1", "refresh_token": "r1", "token_type": "bearer"}
        manager = OAuthManager(login_provider=provider)

        assert await manager.login(conf)() == "d1"

    @pytest.mark.asyncio
    async def test_missing_login_provider(self, conf):
        manager = OAuthManager(login_provider=None)
        with pytest.raises(LoginProviderUnavailable):
            await manager.login(conf)()


class TestDedup:
    @pytest.mark.asyncio
    async def test_concurrent_logins_share_one_grant(self, conf):
        provider = FakeLoginProvider(delay=0.05)
        manager = OAuthManager(login_provider=provider)
        do_login = manager.login(conf)

        first, second, third = await asyncio.gather(do_login(), do_login(), manager.login(conf)())

        assert first == second == third == "a1"
        assert len(provider.grants) == 1
        assert len(provider.handles) == 1

    @pytest.mark.asyncio
    async def test_future_token_waits_for_pending_grant(self):
        conf = make_conf(save_credentials=False)
        provider = FakeLoginProvider(delay=0.05)
        manager = OAuthManager(login_provider=provider)

        login_task = asyncio.ensure_future(manager.login(conf)())
        await asyncio.sleep(0.01)
        assert manager.is_pending("My System")

        assert await manager.future_token("My System") == "a1"
        assert await login_task == "a1"
        assert not manager.is_pending("My System")
        assert len(provider.grants) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_grant(self):
        conf = make_conf(save_credentials=False)
        provider = FakeLoginProvider(delay=0.05)
        manager = OAuthManager(login_provider=provider)

        first = asyncio.ensure_future(manager.login(conf)())
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(manager.login(conf)())
        await asyncio.sleep(0)
        first.cancel()

        assert await second == "a1"
        assert first.cancelled()
        assert not provider.cancelled

    @pytest.mark.asyncio
    async def test_concurrent_cold_logins_share_one_restore(self, oauth_manager, login_provider, conf, memory_keyring):
        memory_keyring.passwords[(VAULT_KEY, "c1")] = serialize_token(Token("stale", "r1", "bearer"))

        with respx.mock:
            route = respx.post("https://host/oauth/token").mock(return_value=httpx.Response(200, json={
                "access_token": "fresh", "refresh_token": "r2", "token_type": "bearer",
            }))
            first, second = await asyncio.gather(oauth_manager.login(conf)(), oauth_manager.login(conf)())

        assert first == second == "fresh"
        # A rotated refresh token must only be spent once.
        assert route.call_count == 1
        assert login_provider.grants == []
        await oauth_manager.wait_for_background()

    @pytest.mark.asyncio
    async def test_future_token_waits_for_vault_restore(self, oauth_manager, conf, memory_keyring):
        memory_keyring.passwords[(VAULT_KEY, "c1")] = serialize_token(Token("stale", "r1", "bearer"))

        with respx.mock:
            respx.post("https://host/oauth/token").mock(return_value=httpx.Response(200, json={
                "access_token": "fresh", "token_type": "bearer",
            }))
            login_task = asyncio.ensure_future(oauth_manager.login(conf)())
            await asyncio.sleep(0)

            assert oauth_manager.is_pending("My System")
            assert await oauth_manager.future_token("My System") == "fresh"
            assert await login_task == "fresh"
        await oauth_manager.wait_for_background()

    @pytest.mark.asyncio
    async def test_different_connections_do_not_share_grants(self):
        provider = FakeLoginProvider(delay=0.02)
        manager = OAuthManager(login_provider=provider)

        await asyncio.gather(
            manager.login(make_conf("DEV"))(),
            manager.login(make_conf("QAS"))(),
        )
        assert len(provider.grants) == 2
        assert manager.has_token("dev") and manager.has_token("qas")


class TestLogonTimeout:
    @pytest.mark.asyncio
    async def test_timeout_closes_server_once_and_fails(self, conf, caplog):
        caplog.set_level(logging.DEBUG, logger=DEFAULT_APP_NAME)
        provider = FakeLoginProvider(hang=True)
        manager = OAuthManager(login_provider=provider, logon_timeout=0.05)

        with pytest.raises(LogonTimeoutError) as exc_info:
            await manager.login(conf)()

        assert str(exc_info.value) == "User logon timed out"
        # Let the abandoned grant settle.
        await asyncio.sleep(0.01)
        assert provider.handles[0].server.close_calls == 1
        assert provider.cancelled
        assert manager.token_store.get(conf.conn_id) is None
        assert not manager.is_pending(conf.name)
        assert LogEvent.OAUTH_LOGON_TIMEOUT.value in _events(caplog)

    @pytest.mark.asyncio
    async def test_waiters_see_the_same_timeout(self, conf):
        provider = FakeLoginProvider(hang=True)
        manager = OAuthManager(login_provider=provider, logon_timeout=0.05)

        results = await asyncio.gather(
            manager.login(conf)(), manager.login(conf)(), return_exceptions=True
        )
        assert all(isinstance(result, LogonTimeoutError) for result in results)
        assert len(provider.grants) == 1

    @pytest.mark.asyncio
    async def test_login_after_timeout_starts_a_new_grant(self, conf):
        provider = FakeLoginProvider(hang=True)
        manager = OAuthManager(login_provider=provider, logon_timeout=0.05)
        with pytest.raises(LogonTimeoutError):
            await manager.login(conf)()

        provider.hang = False
        assert await manager.login(conf)() == "a1"
        assert len(provider.grants) == 2


class TestGrantFailure:
    @pytest.mark.asyncio
    async def test_grant_error_propagates_and_writes_nothing(self, conf, memory_keyring):
        provider = FakeLoginProvider(exc=ConnectionError("uaa unreachable"))
        manager = OAuthManager(login_provider=provider)

        with pytest.raises(GrantError) as exc_info:
            await manager.login(conf)()

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        await manager.wait_for_background()
        assert manager.token_store.get(conf.conn_id) is None
        assert memory_keyring.passwords == {}
        assert not manager.is_pending(conf.name)
        assert provider.handles[0].server.close_calls == 0

    @pytest.mark.asyncio
    async def test_login_server_failure_is_grant_error(self, conf, caplog):
        caplog.set_level(logging.DEBUG, logger=DEFAULT_APP_NAME)
        provider = FakeLoginProvider(server_exc=OSError("address already in use"))
        manager = OAuthManager(login_provider=provider)

        with pytest.raises(GrantError) as exc_info:
            await manager.login(conf)()

        assert isinstance(exc_info.value.__cause__, OSError)
        assert provider.grants == []
        assert not manager.is_pending(conf.name)
        assert LogEvent.OAUTH_GRANT_FAILED.value in _events(caplog)

    @pytest.mark.asyncio
    async def test_unexpected_grant_result_is_rejected(self, conf):
        provider = FakeLoginProvider()
        provider.token = "a1"
        manager = OAuthManager(login_provider=provider)

        with pytest.raises(GrantError):
            await manager.login(conf)()
        assert manager.token_store.get(conf.conn_id) is None

    @pytest.mark.asyncio
    async def test_incomplete_token_is_rejected(self, conf):
        provider = FakeLoginProvider(token=Token("a1", "", "bearer"))
        manager = OAuthManager(login_provider=provider)

        with pytest.raises(GrantError):
            await manager.login(conf)()
        assert manager.token_store.get(conf.conn_id) is None


class TestVaultRestore:
    @pytest.mark.asyncio
    async def test_restore_refreshes_instead_of_logging_in(self, oauth_manager, login_provider, conf, memory_keyring):
        memory_keyring.passwords[(VAULT_KEY, "c1")] = serialize_token(Token("stale", "r1", "bearer"))

        with respx.mock:
            route = respx.post("https://host/oauth/token").mock(return_value=httpx.Response(200, json={
                "access_token": "fresh", "refresh_token": "r2", "token_type": "bearer",
            }))
            assert await oauth_manager.login(conf)() == "fresh"
            assert route.call_count == 1

        assert login_provider.grants == []
        assert oauth_manager.token_store.get(conf.conn_id).access_token == "fresh"
        await oauth_manager.wait_for_background()
        assert json.loads(memory_keyring.passwords[(VAULT_KEY, "c1")])["refreshToken"] == "r2"

    @pytest.mark.asyncio
    async def test_failed_restore_falls_back_to_login(self, oauth_manager, login_provider, conf, memory_keyring):
        memory_keyring.passwords[(VAULT_KEY, "c1")] = serialize_token(Token("stale", "r1", "bearer"))

        with respx.mock:
            respx.post("https://host/oauth/token").mock(return_value=httpx.Response(401))
            assert await oauth_manager.login(conf)() == "a1"

        assert len(login_provider.grants) == 1

    @pytest.mark.asyncio
    async def test_restore_only_when_saving_credentials(self, login_provider):
        vault = AsyncMock(spec=SecretVault)
        manager = OAuthManager(login_provider=login_provider, vault=vault)

        await manager.login(make_conf(save_credentials=False))()
        vault.load.assert_not_called()

    @pytest.mark.asyncio
    async def test_restart_restores_saved_grant(self, conf, memory_keyring):
        first = OAuthManager(login_provider=FakeLoginProvider())
        assert await first.login(conf)() == "a1"
        await first.shutdown()

        provider = FakeLoginProvider()
        second = OAuthManager(login_provider=provider)
        with respx.mock:
            route = respx.post("https://host/oauth/token").mock(return_value=httpx.Response(200, json={
                "access_token": "a2", "token_type": "bearer",
            }))
            assert await second.login(conf)() == "a2"
            assert route.call_count == 1
        assert provider.grants == []


class TestPersistenceFailure:
    @pytest.mark.asyncio
    async def test_vault_save_failure_is_logged_not_raised(self, oauth_manager, conf, memory_keyring, caplog):
        caplog.set_level(logging.DEBUG, logger=DEFAULT_APP_NAME)
        memory_keyring.fail_writes = True

        assert await oauth_manager.login(conf)() == "a1"
        await oauth_manager.wait_for_background()

        assert oauth_manager.token_store.get(conf.conn_id) is not None
        assert LogEvent.OAUTH_VAULT_SAVE_FAILED.value in _events(caplog)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_logout_drops_token_and_vault_record(self, oauth_manager, conf, memory_keyring):
        await oauth_manager.login(conf)()
        await oauth_manager.wait_for_background()

        assert await oauth_manager.logout(conf) is True
        assert oauth_manager.token_store.get(conf.conn_id) is None
        assert memory_keyring.passwords == {}
        assert await oauth_manager.logout(conf) is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_grants(self):
        conf = make_conf(save_credentials=False)
        provider = FakeLoginProvider(hang=True)
        manager = OAuthManager(login_provider=provider, logon_timeout=10)

        login_task = asyncio.ensure_future(manager.login(conf)())
        await asyncio.sleep(0.01)
        await manager.shutdown()

        with pytest.raises(asyncio.CancelledError):
            await login_task
        await asyncio.sleep(0.01)
        assert provider.handles[0].server.close_calls == 1
        assert provider.cancelled
        assert len(manager.pending) == 0
