from typing import Optional

from converge.kinds import aws
from converge.models.schema import KindRegistry

BUILTIN_SCHEMAS = list(aws.SCHEMAS)


def default_registry(kinds_file: Optional[str] = None) -> KindRegistry:
    """Built-in kinds plus any declared in ``kinds_file``."""
    registry = KindRegistry(BUILTIN_SCHEMAS)
    if kinds_file:
        registry.load_file(kinds_file)
    return registry
