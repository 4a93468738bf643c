"""Store module for holding the state of cluster objects."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from chart_controller.manifest import BaseManifest, NamedResource

T = TypeVar("T", bound=BaseManifest)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_DELETED = "object_deleted"
    RECONCILE_REQUESTED = "reconcile_requested"


class Store(ABC):
    """Abstract base class for the central object type-safe object store with listener support."""

    @abstractmethod
    def add_object(self, obj: T) -> None:
        """Add or replace a manifest object in the store."""

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a manifest object by resource identity and type."""

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> bool:
        """Remove a manifest object, returning False if it was not present."""

    @abstractmethod
    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List all manifest objects in the store, optionally filtered by kind."""

    @abstractmethod
    def request_reconcile(self, resource_id: NamedResource) -> None:
        """Ask listeners to reconcile the resource again."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, BaseManifest | None], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event (object added, deleted, reconcile requested).

        Returns a callable that can be called to remove the listener.
        """
