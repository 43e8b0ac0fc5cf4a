import asyncio
import logging

import pytest

from credential_cache import CredentialCache
from credential_store import (
    LocalCredentialStore,
    RemoteCredentialStore,
    build_credential_store,
)
from errors import BrokerError, BrokerUnreachableError, CredentialError, CredentialErrorKind
from models import Platform, PlatformCredential


def _credential(platform=Platform.LINKEDIN, token='secret-access-token'):
    return PlatformCredential(
        platform=platform,
        connected=True,
        access_token=token,
        refresh_token='secret-refresh-token',
        external_id='member-1',
        profile={'name': 'Ada'},
    )


@pytest.fixture
def local_store(session_factory):
    return LocalCredentialStore(session_factory)


@pytest.fixture
def remote_store(mock_broker, clock, local_store):
    return RemoteCredentialStore(mock_broker, CredentialCache(300, clock=clock), mirror=local_store)


class TestLocalCredentialStore:
    @pytest.mark.asyncio
    async def test_get_after_save(self, local_store, caplog):
        caplog.set_level(logging.DEBUG)
        credential = _credential()

        await local_store.save(Platform.LINKEDIN, credential)
        loaded = await local_store.get(Platform.LINKEDIN)

        assert loaded.same_account(credential)
        assert loaded.access_token == credential.access_token
        assert 'secret-access-token' not in caplog.text
        assert 'secret-refresh-token' not in caplog.text

    @pytest.mark.asyncio
    async def test_missing_record_is_disconnected(self, local_store):
        loaded = await local_store.get(Platform.TWITTER)

        assert loaded.connected is False
        assert await local_store.is_connected(Platform.TWITTER) is False

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, local_store):
        await local_store.save(Platform.LINKEDIN, _credential())

        await local_store.delete(Platform.LINKEDIN)
        await local_store.delete(Platform.LINKEDIN)

        assert (await local_store.get(Platform.LINKEDIN)).connected is False

    @pytest.mark.asyncio
    async def test_save_overwrites(self, local_store):
        await local_store.save(Platform.LINKEDIN, _credential(token='one'))
        await local_store.save(Platform.LINKEDIN, _credential(token='two'))

        assert (await local_store.get(Platform.LINKEDIN)).access_token == 'two'

    @pytest.mark.asyncio
    async def test_bulk_helpers(self, local_store):
        await local_store.save(Platform.INSTAGRAM, _credential(Platform.INSTAGRAM))

        connected = await local_store.get_connected_platforms()
        assert connected == {Platform.LINKEDIN: False, Platform.INSTAGRAM: True, Platform.TWITTER: False}

        assert await local_store.clear_all() == 3
        assert not any((await local_store.get_connected_platforms()).values())


class TestRemoteCredentialStore:
    @pytest.mark.asyncio
    async def test_reads_are_cached(self, remote_store, mock_broker):
        mock_broker.get_credentials.return_value = _credential()

        await remote_store.get(Platform.LINKEDIN)
        await remote_store.get(Platform.LINKEDIN)

        mock_broker.get_credentials.assert_awaited_once_with(Platform.LINKEDIN)

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, remote_store, mock_broker, clock):
        mock_broker.get_credentials.return_value = _credential()

        await remote_store.get(Platform.LINKEDIN)
        clock.advance(301)
        await remote_store.get(Platform.LINKEDIN)

        assert mock_broker.get_credentials.await_count == 2

    @pytest.mark.asyncio
    async def test_save_invalidates_cache(self, remote_store, mock_broker):
        mock_broker.get_credentials.return_value = PlatformCredential.disconnected(Platform.LINKEDIN)
        await remote_store.get(Platform.LINKEDIN)

        await remote_store.save(Platform.LINKEDIN, _credential())
        mock_broker.get_credentials.return_value = _credential()
        loaded = await remote_store.get(Platform.LINKEDIN)

        assert loaded.connected
        assert mock_broker.get_credentials.await_count == 2

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, remote_store, mock_broker):
        await remote_store.delete(Platform.TWITTER)
        await remote_store.delete(Platform.TWITTER)

        mock_broker.get_credentials.return_value = PlatformCredential.disconnected(Platform.TWITTER)
        assert (await remote_store.get(Platform.TWITTER)).connected is False

    @pytest.mark.asyncio
    async def test_falls_back_to_mirror_when_broker_down(self, remote_store, mock_broker, clock):
        mock_broker.get_credentials.return_value = _credential()
        await remote_store.get(Platform.LINKEDIN)
        clock.advance(301)
        mock_broker.get_credentials.side_effect = BrokerUnreachableError("connection refused")

        loaded = await remote_store.get(Platform.LINKEDIN)

        assert loaded.connected
        assert loaded.access_token == 'secret-access-token'

    @pytest.mark.asyncio
    async def test_broker_down_without_mirror_copy(self, remote_store, mock_broker):
        mock_broker.get_credentials.side_effect = BrokerUnreachableError("connection refused")

        with pytest.raises(CredentialError) as exc_info:
            await remote_store.get(Platform.INSTAGRAM)

        assert exc_info.value.kind == CredentialErrorKind.BROKER_UNREACHABLE
        assert await remote_store.is_connected(Platform.INSTAGRAM) is False

    @pytest.mark.asyncio
    async def test_redacted_reads_are_not_mirrored(self, remote_store, mock_broker, local_store):
        mock_broker.get_credentials.return_value = PlatformCredential(
            platform=Platform.LINKEDIN, connected=True, redacted=True
        )

        await remote_store.get(Platform.LINKEDIN)

        assert (await local_store.get(Platform.LINKEDIN)).connected is False

    @pytest.mark.asyncio
    async def test_disconnect_during_inflight_read_sticks(self, remote_store, mock_broker, local_store):
        release = asyncio.Event()
        calls = []

        async def get_credentials(platform):
            calls.append(platform)
            if len(calls) == 1:
                await release.wait()
                return _credential()
            return PlatformCredential.disconnected(platform)

        mock_broker.get_credentials.side_effect = get_credentials
        reader = asyncio.create_task(remote_store.get(Platform.LINKEDIN))
        await asyncio.sleep(0)

        await remote_store.delete(Platform.LINKEDIN)
        release.set()
        await reader

        assert await remote_store.is_connected(Platform.LINKEDIN) is False
        assert (await local_store.get(Platform.LINKEDIN)).connected is False

    @pytest.mark.asyncio
    async def test_broker_rejection_does_not_use_mirror(self, remote_store, mock_broker, local_store):
        await local_store.save(Platform.LINKEDIN, _credential())
        mock_broker.get_credentials.side_effect = BrokerError("Unauthorized", status=401)

        with pytest.raises(CredentialError) as exc_info:
            await remote_store.get(Platform.LINKEDIN)

        assert exc_info.value.kind == CredentialErrorKind.BROKER_ERROR
        assert await remote_store.is_connected(Platform.LINKEDIN) is False

    @pytest.mark.asyncio
    async def test_get_all_degrades_failed_platforms(self, remote_store, mock_broker):
        async def get_credentials(platform):
            if platform == Platform.TWITTER:
                raise BrokerError("boom", status=500)
            return _credential(platform)

        mock_broker.get_credentials.side_effect = get_credentials

        credentials = await remote_store.get_all()

        assert credentials[Platform.LINKEDIN].connected
        assert credentials[Platform.TWITTER].connected is False


def test_build_credential_store_picks_backend(settings, session_factory):
    assert isinstance(build_credential_store(settings, session_factory), LocalCredentialStore)

    settings.use_cloud_storage = True
    store = build_credential_store(settings, session_factory)

    assert isinstance(store, RemoteCredentialStore)
    assert store.broker.user_id == 'test-user'
    assert store.cache.ttl == settings.credential_cache_ttl
