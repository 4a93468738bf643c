"""Owner-scoped apply of desired object sets.

Each apply declares the complete set of objects an owner wants. Objects are
created or updated to match, and anything previously applied for the same
owner that is missing from the new set is deleted. Applying an empty set
removes everything the owner had.

Applied objects are stamped with annotations naming the applier set id and
the owner, which is how objects from earlier applies are found again.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
import dataclasses
import logging

from chart_controller.exceptions import ApplyException
from chart_controller.manifest import KubeObject, NamedResource, ObjectSet

from .store import Store

__all__ = [
    "Applier",
    "StoreApplier",
    "Patcher",
    "SET_ID_ANNOTATION",
    "OWNER_KIND_ANNOTATION",
    "OWNER_NAMESPACE_ANNOTATION",
    "OWNER_NAME_ANNOTATION",
]

_LOGGER = logging.getLogger(__name__)

SET_ID_ANNOTATION = "objectset.rio.cattle.io/id"
OWNER_KIND_ANNOTATION = "objectset.rio.cattle.io/owner-gvk"
OWNER_NAMESPACE_ANNOTATION = "objectset.rio.cattle.io/owner-namespace"
OWNER_NAME_ANNOTATION = "objectset.rio.cattle.io/owner-name"

Patcher = Callable[[NamedResource, KubeObject], None]
"""Replaces the default update of an existing object of one kind.

Called with the identity of the existing object and the desired object. A
patcher may raise to report that the update is not complete.
"""


class Applier(ABC):
    """Applies desired object sets on behalf of an owner."""

    @abstractmethod
    async def apply(self, owner: NamedResource, objects: ObjectSet) -> None:
        """Make the objects owned by `owner` match `objects` exactly."""

    @abstractmethod
    def with_patcher(self, kind: str, patcher: Patcher) -> "Applier":
        """Return an applier that updates existing objects of `kind` with `patcher`."""


class StoreApplier(Applier):
    """Applier writing to a Store."""

    def __init__(
        self,
        store: Store,
        set_id: str,
        patchers: dict[str, Patcher] | None = None,
    ) -> None:
        """Initialize StoreApplier."""
        self._store = store
        self._set_id = set_id
        self._patchers = dict(patchers or {})

    def with_patcher(self, kind: str, patcher: Patcher) -> "StoreApplier":
        """Return an applier that updates existing objects of `kind` with `patcher`."""
        return StoreApplier(self._store, self._set_id, {**self._patchers, kind: patcher})

    def _owner_annotations(self, owner: NamedResource) -> dict[str, str]:
        return {
            SET_ID_ANNOTATION: self._set_id,
            OWNER_KIND_ANNOTATION: owner.kind,
            OWNER_NAMESPACE_ANNOTATION: owner.namespace or "",
            OWNER_NAME_ANNOTATION: owner.name,
        }

    def owned_objects(self, owner: NamedResource) -> list[KubeObject]:
        """Return the objects previously applied for the owner."""
        owner_annotations = self._owner_annotations(owner)
        return [
            obj
            for obj in self._store.list_objects()
            if isinstance(obj, KubeObject)
            and all(
                (obj.annotations or {}).get(key) == value
                for key, value in owner_annotations.items()
            )
        ]

    async def apply(self, owner: NamedResource, objects: ObjectSet) -> None:
        """Make the objects owned by `owner` match `objects` exactly."""
        owner_annotations = self._owner_annotations(owner)
        desired: dict[NamedResource, KubeObject] = {}
        for obj in objects:
            desired[obj.resource_id] = dataclasses.replace(
                obj, annotations={**(obj.annotations or {}), **owner_annotations}
            )

        errors: list[Exception] = []
        for resource_id, obj in desired.items():
            existing = self._store.get_object(resource_id, KubeObject)
            if existing is None:
                _LOGGER.debug("Creating %s for %s", resource_id, owner)
                self._store.add_object(obj)
                continue
            if existing.to_manifest() == obj.to_manifest():
                continue
            if (patcher := self._patchers.get(resource_id.kind)) is not None:
                _LOGGER.debug("Patching %s for %s", resource_id, owner)
                try:
                    patcher(resource_id, obj)
                except Exception as err:
                    errors.append(err)
                continue
            _LOGGER.debug("Updating %s for %s", resource_id, owner)
            self._store.add_object(obj)

        for stale in self.owned_objects(owner):
            if stale.resource_id in desired:
                continue
            _LOGGER.debug("Pruning %s no longer desired by %s", stale.resource_id, owner)
            self._store.delete_object(stale.resource_id)

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise ApplyException(
                f"Failed to apply objects for {owner}: "
                + "; ".join(str(err) for err in errors)
            )
