"""Property Store and Type Resolver interfaces, plus an in-memory store.

The engine never reads or writes host objects directly.  It goes through a
``PropertyStore`` (typed get/set by ``(type_name, path)``) and resolves
target type names through a ``TypeResolver`` wrapped in a ``TypeCache``.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from tabcalc.values import ValueKind, coerce_to_kind, kind_from_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PropertyStoreError(Exception):
    """Base class for property store failures."""


class PropertyPathInvalid(PropertyStoreError):
    """The property path does not exist on the target type."""

    def __init__(self, type_name: str, path: str) -> None:
        self.type_name = type_name
        self.path = path
        super().__init__(f"Property '{path}' not found on type '{type_name}'")


class TargetTypeInvalid(PropertyStoreError):
    """The target type name cannot be resolved."""

    def __init__(self, type_name: str) -> None:
        self.type_name = type_name
        super().__init__(f"Cannot resolve type '{type_name}'")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class PropertyStore(Protocol):
    def get(self, obj: Any, type_name: str, path: str) -> Any:
        """Read ``obj.<path>``; raise PropertyPathInvalid / TargetTypeInvalid."""
        ...

    def set(self, obj: Any, type_name: str, path: str, value: Any) -> bool:
        """Write ``obj.<path>``; return False when the write did not happen."""
        ...

    def property_kind(self, type_name: str, path: str) -> ValueKind | None:
        """Declared kind of the property, or None if unknown."""
        ...


class TypeResolver(Protocol):
    def resolve(self, type_name: str) -> Any | None:
        """Return an opaque type handle, or None if the name is unknown."""
        ...


class TypeCache:
    """Memoizes ``TypeResolver.resolve`` results, misses included.

    Owned by one engine; call ``clear()`` when the host's type universe
    changes.
    """

    def __init__(self, resolver: TypeResolver) -> None:
        self._resolver = resolver
        self._entries: dict[str, Any | None] = {}

    def resolve(self, type_name: str) -> Any | None:
        if type_name not in self._entries:
            self._entries[type_name] = self._resolver.resolve(type_name)
            logger.debug("resolved type %r -> %r", type_name, self._entries[type_name])
        return self._entries[type_name]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class DictPropertyStore:
    """Property store over plain dict objects with declared schemas.

    ``schemas`` maps a type name to ``{path: kind}``.  Paths are dotted and
    walk nested dicts: ``"stats.hp"`` reads ``obj["stats"]["hp"]``.  Values
    written are coerced to the declared kind.

    The store is also a ``TypeResolver``: a type resolves to its schema.
    """

    def __init__(self, schemas: Mapping[str, Mapping[str, ValueKind | str]] | None = None) -> None:
        self.schemas: dict[str, dict[str, ValueKind]] = {}
        for type_name, fields in (schemas or {}).items():
            self.declare(type_name, fields)

    def declare(self, type_name: str, fields: Mapping[str, ValueKind | str]) -> None:
        """Register (or replace) the schema for *type_name*."""
        parsed: dict[str, ValueKind] = {}
        for path, kind in fields.items():
            resolved = kind if isinstance(kind, ValueKind) else kind_from_name(kind)
            if resolved is None:
                raise ValueError(f"Unknown kind {kind!r} for {type_name}.{path}")
            parsed[path] = resolved
        self.schemas[type_name] = parsed

    # -- TypeResolver --

    def resolve(self, type_name: str) -> dict[str, ValueKind] | None:
        return self.schemas.get(type_name)

    # -- PropertyStore --

    def property_kind(self, type_name: str, path: str) -> ValueKind | None:
        schema = self.schemas.get(type_name)
        if schema is None:
            return None
        return schema.get(path)

    def get(self, obj: Any, type_name: str, path: str) -> Any:
        self._check(type_name, path)
        current = obj
        for part in path.split("."):
            if not isinstance(current, Mapping) or part not in current:
                return None
            current = current[part]
        return current

    def set(self, obj: Any, type_name: str, path: str, value: Any) -> bool:
        try:
            kind = self._check(type_name, path)
            coerced = coerce_to_kind(value, kind)
        except (PropertyStoreError, ValueError, TypeError) as exc:
            logger.debug("set %s.%s failed: %s", type_name, path, exc)
            return False

        parts = path.split(".")
        current = obj
        for part in parts[:-1]:
            if not isinstance(current, dict):
                return False
            current = current.setdefault(part, {})
        if not isinstance(current, dict):
            return False
        current[parts[-1]] = coerced
        return True

    def _check(self, type_name: str, path: str) -> ValueKind:
        schema = self.schemas.get(type_name)
        if schema is None:
            raise TargetTypeInvalid(type_name)
        if path not in schema:
            raise PropertyPathInvalid(type_name, path)
        return schema[path]
