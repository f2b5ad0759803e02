"""Cloud provider capability and vendor implementations."""

from typing import Callable, Dict

from ..errors import ProviderError
from .base import CloudProvider, sanitize_response_data
from .hetzner import HetznerProvider

SUPPORTED_PROVIDERS = ("hetzner", "digitalocean", "vultr", "linode")

ProviderFactory = Callable[[str, str], CloudProvider]

_REGISTRY: Dict[str, Callable[[str], CloudProvider]] = {
    "hetzner": HetznerProvider,
}


def register_provider(name: str, factory: Callable[[str], CloudProvider]) -> None:
    """Make a vendor client available to create_provider()."""
    if name not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unknown provider: {name}")
    _REGISTRY[name] = factory


def create_provider(name: str, api_token: str) -> CloudProvider:
    """Build the client for a vendor, raising ProviderError if none is registered."""
    factory = _REGISTRY.get(name)
    if factory is None:
        raise ProviderError(f"No API client registered for provider: {name}")
    return factory(api_token)


__all__ = [
    'CloudProvider', 'HetznerProvider', 'ProviderFactory',
    'SUPPORTED_PROVIDERS', 'create_provider', 'register_provider',
    'sanitize_response_data',
]
