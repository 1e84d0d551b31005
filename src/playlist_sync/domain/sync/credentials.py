"""
Serialized credential refresh.

Only one process refreshes a provider's token at a time. The guard is a lease
named "credential:<provider>" in processing_locks; a process that finds it
held waits, then adopts whatever token the holder stored.
"""

import math
import time
from typing import Any, Callable, Dict, Optional

from loguru import logger

from playlist_sync.core import database
from playlist_sync.core.errors import AuthFailureError, LeaseBusyError
from playlist_sync.domain.remote.provider import ProviderState
from playlist_sync.domain.sync import leases

GUARD_TTL_SECONDS = 60
POLL_INTERVAL_SECONDS = 0.5


def guard_name(provider_name: str) -> str:
    return f"credential:{provider_name}"


class CredentialGuard:
    def __init__(
        self,
        provider_name: str,
        provider: Any,
        holder: str,
        wait_seconds: float = 30,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider_name = provider_name
        self.provider = provider
        self.holder = holder
        self.wait_seconds = wait_seconds
        self.sleep = sleep
        # True when the last refresh() took a token another process stored
        self.adopted = False

    def load(self, state: ProviderState) -> ProviderState:
        """State carrying the stored token, if any."""
        credential = database.load_credential(self.provider_name)
        if credential is None:
            logger.warning(f"No stored credentials for {self.provider_name}")
            return state
        return state.with_token(credential.token)

    def _acquire(self) -> None:
        name = guard_name(self.provider_name)
        polls = max(1, math.ceil(self.wait_seconds / POLL_INTERVAL_SECONDS))
        for attempt in range(polls + 1):
            try:
                leases.acquire(name, self.holder, GUARD_TTL_SECONDS)
                return
            except LeaseBusyError as e:
                if attempt == polls:
                    raise AuthFailureError(
                        f"Timed out waiting for {e.holder} to refresh {self.provider_name} credentials"
                    ) from e
                self.sleep(POLL_INTERVAL_SECONDS)

    def refresh(
        self, state: ProviderState, failed_token: Optional[Dict[str, Any]]
    ) -> ProviderState:
        """Replace failed_token with a working one.

        Raises:
            AuthFailureError: If the provider rejects the refresh or the guard
                stays busy past wait_seconds
        """
        self.adopted = False
        self._acquire()
        try:
            stored = database.load_credential(self.provider_name)
            failed_access = (failed_token or {}).get("access_token")
            if stored is not None and stored.token.get("access_token") != failed_access:
                logger.info(f"Adopting {self.provider_name} token refreshed elsewhere")
                self.adopted = True
                return state.with_token(stored.token)

            if stored is not None:
                state = state.with_token(stored.token)
            state, token_data = self.provider.refresh_credentials(state)
            database.save_credential(self.provider_name, token_data)
            logger.info(f"Stored refreshed {self.provider_name} credentials")
            return state
        finally:
            leases.release(guard_name(self.provider_name), self.holder)
