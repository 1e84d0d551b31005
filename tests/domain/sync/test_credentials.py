"""Tests for serialized credential refresh."""

import pytest

from playlist_sync.core import database
from playlist_sync.core.errors import AuthFailureError
from playlist_sync.domain.remote.provider import ProviderConfig
from playlist_sync.domain.sync import leases
from playlist_sync.domain.sync.credentials import (
    POLL_INTERVAL_SECONDS,
    CredentialGuard,
    guard_name,
)


@pytest.fixture
def guard(sync_db, fake_provider, sleeps):
    database.save_credential("fake", {"access_token": "good", "refresh_token": "r1"})
    return CredentialGuard("fake", fake_provider, "proc-a", wait_seconds=2, sleep=sleeps.append)


@pytest.fixture
def state(guard, fake_provider):
    return guard.load(fake_provider.init_provider(ProviderConfig(name="fake")))


class TestCredentialGuard:
    def test_load_uses_stored_token(self, state):
        assert state.token_data["access_token"] == "good"

    def test_load_without_credentials(self, sync_db, fake_provider):
        guard = CredentialGuard("fake", fake_provider, "proc-a")
        state = guard.load(fake_provider.init_provider(ProviderConfig(name="fake")))
        assert state.token_data is None

    def test_refresh_stores_new_token(self, guard, state, fake_provider):
        refreshed = guard.refresh(state, state.token_data)

        assert refreshed.token_data["access_token"] == "fresh-1"
        assert guard.adopted is False
        assert database.load_credential("fake").token["access_token"] == "fresh-1"
        assert leases.get_lease(guard_name("fake")) is None

    def test_adopts_token_refreshed_elsewhere(self, guard, state, fake_provider):
        """If the stored token already differs from the failed one, no refresh is made."""
        database.save_credential("fake", {"access_token": "from-proc-b"})

        refreshed = guard.refresh(state, state.token_data)

        assert refreshed.token_data["access_token"] == "from-proc-b"
        assert fake_provider.calls["refresh_credentials"] == 0
        assert guard.adopted is True

    def test_waits_for_other_holder(self, guard, state, fake_provider, sleeps):
        """A guard held by another process is polled until it frees up."""
        leases.acquire(guard_name("fake"), "proc-b", ttl_seconds=60)

        def release_after_first_poll(seconds):
            sleeps.append(seconds)
            leases.release(guard_name("fake"), "proc-b")

        guard.sleep = release_after_first_poll
        guard.refresh(state, state.token_data)

        assert sleeps == [POLL_INTERVAL_SECONDS]
        assert fake_provider.calls["refresh_credentials"] == 1

    def test_times_out_when_guard_stays_busy(self, guard, state, fake_provider, sleeps):
        leases.acquire(guard_name("fake"), "proc-b", ttl_seconds=60)

        with pytest.raises(AuthFailureError):
            guard.refresh(state, state.token_data)

        assert len(sleeps) == 4
        assert fake_provider.calls["refresh_credentials"] == 0
        assert leases.get_lease(guard_name("fake")).holder == "proc-b"

    def test_rejected_refresh_releases_guard(self, guard, state, fake_provider):
        fake_provider.refresh_error = AuthFailureError("revoked")

        with pytest.raises(AuthFailureError):
            guard.refresh(state, state.token_data)

        assert leases.get_lease(guard_name("fake")) is None
        assert database.load_credential("fake").token["access_token"] == "good"
