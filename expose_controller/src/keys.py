from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class InvalidKeyError(ValueError):
    """Raised when an object key cannot be parsed or derived."""


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Namespace/name pair identifying a cluster object.

    Used as the work queue's dedup key, so equality and hashing are
    structural.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def parse(cls, raw: str) -> ObjectKey:
        """Split a ``namespace/name`` string.

        A bare ``name`` yields an empty namespace; anything with more than one
        separator or an empty name is rejected.
        """
        parts = raw.split("/")
        if len(parts) == 1:
            namespace, name = "", parts[0]
        elif len(parts) == 2:
            namespace, name = parts
        else:
            raise InvalidKeyError(f"unexpected key format: {raw!r}")
        if not name:
            raise InvalidKeyError(f"key has an empty name: {raw!r}")
        return cls(namespace=namespace, name=name)

    @classmethod
    def coerce(cls, value: ObjectKey | str) -> ObjectKey:
        if isinstance(value, ObjectKey):
            if not value.name:
                raise InvalidKeyError(f"key has an empty name: {value!r}")
            return value
        if isinstance(value, str):
            return cls.parse(value)
        raise InvalidKeyError(f"expected ObjectKey or str, got {type(value).__name__}")

    @classmethod
    def from_object(cls, obj: Any) -> ObjectKey:
        """Build a key from ``obj.metadata``."""
        metadata = getattr(obj, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            raise InvalidKeyError(f"object has no metadata.name: {type(obj).__name__}")
        return cls(namespace=getattr(metadata, "namespace", None) or "", name=name)


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for an object that disappeared while the watch was down.

    ``obj`` is the last state the cache saw and may be stale.
    """

    key: ObjectKey
    obj: Any


def deletion_key(obj: Any) -> ObjectKey:
    """Return the key for a delete notification, unwrapping tombstones."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return ObjectKey.from_object(obj)
