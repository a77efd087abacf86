from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple


class Provider(ABC):
    """
    The cloud API the executor drives. Implementations raise
    TransientProviderError for retryable failures and PermanentProviderError
    for everything else.
    """

    name = "abstract"

    @abstractmethod
    def create(self, kind: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create a resource; return its provider id and realized attributes."""

    @abstractmethod
    def update(self, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Change a resource in place; return its realized attributes."""

    @abstractmethod
    def delete(self, provider_id: str) -> None:
        """Delete a resource. Deleting something already gone is not an error."""

    def read(self, provider_id: str) -> Optional[Dict[str, Any]]:
        """Current attributes, or None if the resource no longer exists."""
        raise NotImplementedError(f"{self.name} provider does not support refresh")

    def close(self) -> None:
        """Flush anything buffered. Called once after a run."""
