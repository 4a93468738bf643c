"""Tests for the store backed object cache."""

import pytest

from chart_controller.exceptions import ObjectNotFoundError
from chart_controller.manifest import BaseManifest, HelmChart, NamedResource
from chart_controller.store import InMemoryStore, StoreObjectCache
from chart_controller.store.store import StoreEvent


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create a test store."""
    return InMemoryStore()


@pytest.fixture(name="cache")
def cache_fixture(store: InMemoryStore) -> StoreObjectCache[HelmChart]:
    """Create a cache of HelmCharts."""
    return StoreObjectCache(store, "HelmChart", HelmChart)


def test_get(store: InMemoryStore, cache: StoreObjectCache[HelmChart]) -> None:
    """Test looking up an object by name."""
    chart = HelmChart(name="example", namespace="default", chart="example")
    store.add_object(chart)
    assert cache.get("default", "example") is chart

    with pytest.raises(ObjectNotFoundError, match="HelmChart default/missing not found") as err:
        cache.get("default", "missing")
    assert err.value.kind == "HelmChart"
    assert err.value.name == "missing"


def test_update(store: InMemoryStore, cache: StoreObjectCache[HelmChart]) -> None:
    """Test writing back an updated object."""
    chart = HelmChart(name="example", namespace="default", chart="example")
    with pytest.raises(ObjectNotFoundError):
        cache.update(chart)

    store.add_object(chart)
    updated = HelmChart(name="example", namespace="default", chart="other")
    assert cache.update(updated) is updated
    assert cache.get("default", "example").chart == "other"


def test_enqueue(store: InMemoryStore, cache: StoreObjectCache[HelmChart]) -> None:
    """Test enqueue requests a reconcile of the object."""
    requested: list[NamedResource] = []

    def listener(resource_id: NamedResource, obj: BaseManifest | None) -> None:
        requested.append(resource_id)

    store.add_listener(StoreEvent.RECONCILE_REQUESTED, listener)
    cache.enqueue("default", "example")
    assert requested == [NamedResource("HelmChart", "default", "example")]


def test_delete(store: InMemoryStore, cache: StoreObjectCache[HelmChart]) -> None:
    """Test deleting an object."""
    store.add_object(HelmChart(name="example", namespace="default", chart="example"))
    cache.delete("default", "example")
    assert store.list_objects() == []

    with pytest.raises(ObjectNotFoundError):
        cache.delete("default", "example")
