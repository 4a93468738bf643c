"""Read caches used by the controller to look up objects by name.

A cache is scoped to one kind. Besides lookups it lets the controller
enqueue an object for another reconcile, write back an updated object (such
as a status change) and delete an object.
"""

from abc import ABC, abstractmethod
import logging
from typing import Generic, TypeVar

from chart_controller.exceptions import ObjectNotFoundError
from chart_controller.manifest import BaseManifest, NamedResource

from .store import Store

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseManifest)


class ObjectCache(ABC, Generic[T]):
    """Access to the objects of a single kind."""

    @abstractmethod
    def get(self, namespace: str, name: str) -> T:
        """Return the object, raising ObjectNotFoundError if it does not exist."""

    @abstractmethod
    def enqueue(self, namespace: str, name: str) -> None:
        """Request another reconcile of the object."""

    @abstractmethod
    def update(self, obj: T) -> T:
        """Write back a modified object and return the stored copy."""

    @abstractmethod
    def delete(self, namespace: str, name: str) -> None:
        """Delete the object along with anything it owns."""


class StoreObjectCache(ObjectCache[T]):
    """ObjectCache backed by a Store."""

    def __init__(self, store: Store, kind: str, cls: type[T]) -> None:
        """Initialize StoreObjectCache."""
        self._store = store
        self._kind = kind
        self._cls = cls

    def _resource_id(self, namespace: str, name: str) -> NamedResource:
        return NamedResource(self._kind, namespace, name)

    def get(self, namespace: str, name: str) -> T:
        """Return the object, raising ObjectNotFoundError if it does not exist."""
        resource_id = self._resource_id(namespace, name)
        if (obj := self._store.get_object(resource_id, self._cls)) is None:
            raise ObjectNotFoundError(self._kind, namespace, name)
        return obj

    def enqueue(self, namespace: str, name: str) -> None:
        """Request another reconcile of the object."""
        self._store.request_reconcile(self._resource_id(namespace, name))

    def update(self, obj: T) -> T:
        """Write back a modified object and return the stored copy."""
        resource_id = self._resource_id(obj.namespace, obj.name)  # type: ignore[attr-defined]
        if self._store.get_object(resource_id, self._cls) is None:
            raise ObjectNotFoundError(self._kind, resource_id.namespace, resource_id.name)
        self._store.add_object(obj)
        return obj

    def delete(self, namespace: str, name: str) -> None:
        """Delete the object along with anything it owns."""
        resource_id = self._resource_id(namespace, name)
        if not self._store.delete_object(resource_id):
            raise ObjectNotFoundError(self._kind, namespace, name)
        _LOGGER.debug("Deleted %s", resource_id)
