"""
Provider calls with the retry policy applied.

A ProviderSession pairs a provider module with its current ProviderState and
runs every call through the same rules:

- AuthExpiredError: refresh through the credential guard, retry once (a token
  adopted from another process that also fails leads to a real refresh)
- RateLimitedError: sleep retry_after when it fits max_retry_wait, else give up
- TransientNetworkError: exponential backoff up to max_retries
"""

import time
from typing import Any, Callable

from loguru import logger

from playlist_sync.core.config import Config
from playlist_sync.core.errors import (
    AuthExpiredError,
    AuthFailureError,
    RateLimitedError,
    TransientNetworkError,
)
from playlist_sync.domain.remote import get_provider
from playlist_sync.domain.remote.provider import ProviderConfig, ProviderState

from .credentials import CredentialGuard


def provider_config(config: Config) -> ProviderConfig:
    name = config.worker.provider
    section = getattr(config, name, None)
    return ProviderConfig(
        name=name,
        client_id=getattr(section, "client_id", ""),
        client_secret=getattr(section, "client_secret", ""),
        country_code=getattr(section, "country_code", "US"),
        max_batch_size=config.worker.max_batch_size,
    )


class ProviderSession:
    def __init__(
        self,
        provider: Any,
        state: ProviderState,
        guard: CredentialGuard,
        max_retries: int = 3,
        max_retry_wait: float = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.state = state
        self.guard = guard
        self.max_retries = max_retries
        self.max_retry_wait = max_retry_wait
        self.sleep = sleep
        self.calls = 0

    @classmethod
    def from_config(
        cls, config: Config, holder: str, sleep: Callable[[float], None] = time.sleep
    ) -> "ProviderSession":
        """Session for the configured provider, loaded with stored credentials.

        Raises:
            ConfigError: If the provider is not registered
        """
        name = config.worker.provider
        provider = get_provider(name)
        guard = CredentialGuard(
            name, provider, holder, config.worker.credential_wait_seconds, sleep=sleep
        )
        state = guard.load(provider.init_provider(provider_config(config)))
        return cls(
            provider,
            state,
            guard,
            max_retries=config.worker.max_retries_on_error,
            max_retry_wait=config.worker.max_retry_wait_seconds,
            sleep=sleep,
        )

    @property
    def name(self) -> str:
        return self.state.config.name

    def call(self, operation: str, *args: Any) -> Any:
        """Run provider.<operation>(state, *args) and return its result.

        Raises:
            AuthFailureError: Refresh failed, or the refreshed token was rejected too
            RateLimitedError: Provider asked for a longer wait than allowed
            TransientNetworkError: Still failing after max_retries
        """
        func = getattr(self.provider, operation)
        refreshed = False
        adoptions = 0
        attempt = 0

        while True:
            self.calls += 1
            try:
                self.state, result = func(self.state, *args)
                return result
            except AuthExpiredError as e:
                if refreshed or adoptions > 1:
                    raise AuthFailureError(
                        f"{self.name} rejected refreshed credentials: {e}"
                    ) from e
                logger.info(f"{self.name} credentials expired during {operation}; refreshing")
                # An adopted token may itself be expired
                self.state = self.guard.refresh(self.state, self.state.token_data)
                if self.guard.adopted:
                    adoptions += 1
                else:
                    refreshed = True
            except RateLimitedError as e:
                if e.retry_after > self.max_retry_wait or attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"{self.name} {operation} rate limited; waiting {e.retry_after}s "
                    f"(retry {attempt}/{self.max_retries})"
                )
                self.sleep(e.retry_after)
            except TransientNetworkError as e:
                if attempt >= self.max_retries:
                    raise
                delay = min(2**attempt, self.max_retry_wait)
                attempt += 1
                logger.warning(
                    f"{self.name} {operation} failed: {e}; retry {attempt}/{self.max_retries} in {delay}s"
                )
                self.sleep(delay)
