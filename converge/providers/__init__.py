from typing import Optional

from converge.errors import ConfigurationError
from converge.models.schema import KindRegistry
from converge.providers.base import Provider
from converge.providers.memory import MemoryProvider

PROVIDERS = {
    "memory": MemoryProvider,
}


def get_provider(name: str, registry: KindRegistry, path: Optional[str] = None, **options) -> Provider:
    try:
        cls = PROVIDERS[name]
    except KeyError:
        raise ConfigurationError(
            [f"unknown provider '{name}' (available: {', '.join(sorted(PROVIDERS))})"]
        ) from None
    return cls(registry, path=path, **options)
