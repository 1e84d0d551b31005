"""
Remote provider registry.

Maps the `worker.provider` config value to the module that talks to that
service. The sync engine only ever goes through get_provider().
"""

from typing import Any, List

from playlist_sync.core.errors import ConfigError

# name -> module exporting the PlaylistProvider functions
PROVIDERS: dict[str, Any] = {}


def register_provider(name: str, provider_module: Any) -> None:
    PROVIDERS[name] = provider_module


def get_provider(name: str) -> Any:
    """Provider module registered under name.

    Raises:
        ConfigError: If no provider has that name
    """
    try:
        return PROVIDERS[name]
    except KeyError:
        raise ConfigError(
            f"Unknown provider '{name}'. Available: {', '.join(list_providers())}"
        ) from None


def list_providers() -> List[str]:
    return sorted(PROVIDERS)


def provider_exists(name: str) -> bool:
    return name in PROVIDERS


from . import spotify, tidal  # noqa: E402

register_provider("spotify", spotify)
register_provider("tidal", tidal)
