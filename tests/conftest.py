"""Pytest configuration and fixtures."""

import copy

import pytest

from composite.errors import ServiceUnavailableError
from composite.kinds import GroupVersionKind, Scheme
from composite.resources import Unstructured
from composite.storage.memory import MemoryStorage

PARENT_GVK = GroupVersionKind("example.com", "v1", "Composite")


class FlakyStorage(MemoryStorage):
    """MemoryStorage failing reads and writes of chosen objects."""

    def __init__(self):
        super().__init__()
        self.fail_gets = set()
        self.fail_lists = set()
        self.fail_patches = set()
        self.fail_deletes = set()
        self.fail_updates = False

    async def _get(self, gvk, namespace, name):
        if name in self.fail_gets:
            raise ServiceUnavailableError(f"get {name}: unavailable")
        return await super()._get(gvk, namespace, name)

    async def _list(self, gvk, namespace, label_selector):
        if gvk.kind in self.fail_lists:
            raise ServiceUnavailableError(f"list {gvk.kind}: unavailable")
        return await super()._list(gvk, namespace, label_selector)

    async def _patch(self, data, patch_type, field_manager, force, dry_run, body):
        name = data["metadata"]["name"]
        if name in self.fail_patches:
            raise ServiceUnavailableError(f"patch {name}: unavailable")
        return await super()._patch(
            data, patch_type, field_manager, force, dry_run, body
        )

    async def _update(self, data, field_manager, dry_run):
        if self.fail_updates:
            raise ServiceUnavailableError("update: unavailable")
        return await super()._update(data, field_manager, dry_run)

    async def _delete(self, gvk, namespace, name, dry_run):
        if name in self.fail_deletes:
            raise ServiceUnavailableError(f"delete {name}: unavailable")
        await super()._delete(gvk, namespace, name, dry_run)


def _service(name, namespace="default", port=80):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"ports": [{"name": "http", "protocol": "TCP", "port": port}]},
    }


def _config_map(name, namespace="default", data=None):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data if data is not None else {"key": "value"},
    }


@pytest.fixture
def storage():
    """In-memory storage backend."""
    return MemoryStorage()


@pytest.fixture
def flaky_storage():
    """In-memory storage with injectable failures."""
    return FlakyStorage()


@pytest.fixture
def scheme():
    """Scheme resolving kinds from apiVersion/kind fields."""
    return Scheme()


@pytest.fixture
def service():
    """Factory for Service children."""

    def factory(name="service-1", namespace="default", port=80):
        return Unstructured(_service(name, namespace, port))

    return factory


@pytest.fixture
def config_map():
    """Factory for ConfigMap children."""

    def factory(name="cm-1", namespace="default", data=None):
        return Unstructured(_config_map(name, namespace, data))

    return factory


@pytest.fixture
def parent_object():
    """An unsaved composite parent."""
    return Unstructured(
        {
            "apiVersion": PARENT_GVK.api_version,
            "kind": PARENT_GVK.kind,
            "metadata": {"name": "my-resource", "namespace": "default"},
            "spec": {"replicas": 1},
        }
    )


@pytest.fixture
def copies():
    """Deep-copy a list of children, as a caller rendering them afresh would."""

    def factory(children):
        return [Unstructured(copy.deepcopy(c.object)) for c in children]

    return factory
