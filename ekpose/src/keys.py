from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class MalformedKeyError(ValueError):
    """Raised when a work key cannot be derived from a payload or parsed from text."""


@dataclass(frozen=True, order=True)
class WorkKey:
    """Identifies one Deployment and the Service/Ingress derived from it.

    Equality and hashing are structural, so the work queue coalesces every
    notification for the same ``namespace/name`` into one unit of work.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def parse(cls, text: str) -> WorkKey:
        """Parse a ``namespace/name`` (or bare ``name``) meta-namespace key."""
        parts = text.split("/")
        if len(parts) == 1:
            namespace, name = "", parts[0]
        elif len(parts) == 2:
            namespace, name = parts
        else:
            raise MalformedKeyError(f"unexpected key format: {text!r}")
        if not name:
            raise MalformedKeyError(f"key has an empty name: {text!r}")
        return cls(namespace=namespace, name=name)

    @classmethod
    def coerce(cls, item: Any) -> WorkKey:
        """Return *item* as a :class:`WorkKey`, parsing strings on the way."""
        if isinstance(item, WorkKey):
            return item
        if isinstance(item, str):
            return cls.parse(item)
        raise MalformedKeyError(f"unsupported work item type: {type(item).__name__}")


def key_for(obj: Any) -> WorkKey:
    """Extract the work key from a Kubernetes object's metadata.

    Accepts both typed client models and plain ``SimpleNamespace`` fakes.
    """
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        raise MalformedKeyError("object has no metadata")
    name = getattr(metadata, "name", None)
    if not isinstance(name, str) or not name:
        raise MalformedKeyError("object metadata has no name")
    namespace = getattr(metadata, "namespace", None) or ""
    if not isinstance(namespace, str):
        raise MalformedKeyError(f"object {name} has a non-string namespace")
    return WorkKey(namespace=namespace, name=name)
