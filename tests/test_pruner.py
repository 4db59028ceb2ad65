"""Unit tests for pruner.py - Orphan deletion."""

import pytest

from composite.errors import CompositeError, ServiceUnavailableError
from composite.kinds import GroupVersionKind
from composite.pruner import Pruner
from composite.state import DEFAULT_DOMAIN, CompositeState, StateAccessor
from composite.storage.memory import MemoryStorage

LABEL = "composite.no8s.io/composite-parent"
ANNOTATION = "composite.no8s.io/composite-state"
SERVICE = GroupVersionKind("", "v1", "Service")
CONFIGMAP = GroupVersionKind("", "v1", "ConfigMap")


class VanishingStorage(MemoryStorage):
    """Loses every object right after listing it."""

    async def _list(self, gvk, namespace, label_selector):
        items = await super()._list(gvk, namespace, label_selector)
        self._objects.clear()
        return items


def make_pruner(storage, parent, dry_run=False):
    return Pruner(
        storage, parent, StateAccessor(), DEFAULT_DOMAIN, "mgr", dry_run=dry_run
    )


async def create_child(storage, child, parent_uid):
    child.labels = {LABEL: parent_uid}
    await storage.create(child)
    return child.uid


class TestPrune:
    """Tests for Pruner.prune()."""

    @pytest.mark.asyncio
    async def test_deletes_children_not_kept(
        self, storage, parent_object, service
    ):
        await storage.create(parent_object)
        keep = await create_child(storage, service("a"), parent_object.uid)
        await create_child(storage, service("b"), parent_object.uid)
        state = CompositeState([SERVICE])

        result = await make_pruner(storage, parent_object).prune(state, [keep], [SERVICE])

        assert result is state
        assert [o.name for o in await storage.list(SERVICE)] == ["a"]

    @pytest.mark.asyncio
    async def test_ignores_unlabelled_and_foreign_children(
        self, storage, parent_object, service
    ):
        await storage.create(parent_object)
        await storage.create(service("unlabelled"))
        await create_child(storage, service("foreign"), "other-parent")

        await make_pruner(storage, parent_object).prune(
            CompositeState([SERVICE]), [], [SERVICE]
        )

        names = [o.name for o in await storage.list(SERVICE)]
        assert names == ["foreign", "unlabelled"]

    @pytest.mark.asyncio
    async def test_retires_dropped_kind(
        self, storage, parent_object, service, config_map
    ):
        await storage.create(parent_object)
        await create_child(storage, service(), parent_object.uid)
        keep = await create_child(storage, config_map(), parent_object.uid)

        result = await make_pruner(storage, parent_object).prune(
            CompositeState([SERVICE, CONFIGMAP]), [keep], [CONFIGMAP]
        )

        assert result.deployed_kinds == [CONFIGMAP]
        assert await storage.list(SERVICE) == []
        stored = await storage.get(parent_object.gvk, "default", "my-resource")
        assert stored.annotations[ANNOTATION] == (
            '{"deployedKinds":[{"group":"","version":"v1","kind":"ConfigMap"}]}'
        )
        assert parent_object.annotations == stored.annotations

    @pytest.mark.asyncio
    async def test_unchanged_kind_count_writes_nothing(
        self, storage, parent_object, service
    ):
        await storage.create(parent_object)
        keep = await create_child(storage, service(), parent_object.uid)
        storage.reset_writes()

        await make_pruner(storage, parent_object).prune(
            CompositeState([SERVICE]), [keep], [SERVICE]
        )

        assert storage.writes == []

    @pytest.mark.asyncio
    async def test_partial_delete_failure_keeps_state(
        self, flaky_storage, parent_object, service
    ):
        await flaky_storage.create(parent_object)
        for name in ("a", "b", "c"):
            await create_child(flaky_storage, service(name), parent_object.uid)
        flaky_storage.fail_deletes = {"b"}
        flaky_storage.reset_writes()

        with pytest.raises(ServiceUnavailableError):
            await make_pruner(flaky_storage, parent_object).prune(
                CompositeState([SERVICE]), [], []
            )

        assert [o.name for o in await flaky_storage.list(SERVICE)] == ["b"]
        assert [w.verb for w in flaky_storage.writes] == ["delete", "delete"]
        assert parent_object.annotations is None

    @pytest.mark.asyncio
    async def test_list_failure_stops_pruning(
        self, flaky_storage, parent_object, service, config_map
    ):
        await flaky_storage.create(parent_object)
        await create_child(flaky_storage, service(), parent_object.uid)
        await create_child(flaky_storage, config_map(), parent_object.uid)
        flaky_storage.fail_lists = {"Service"}
        flaky_storage.reset_writes()

        with pytest.raises(ServiceUnavailableError):
            await make_pruner(flaky_storage, parent_object).prune(
                CompositeState([SERVICE, CONFIGMAP]), [], []
            )

        assert flaky_storage.writes == []
        assert [o.name for o in await flaky_storage.list(CONFIGMAP)] == ["cm-1"]
        assert parent_object.annotations is None

    @pytest.mark.asyncio
    async def test_delete_failures_across_kinds_are_aggregated(
        self, flaky_storage, parent_object, service, config_map
    ):
        await flaky_storage.create(parent_object)
        await create_child(flaky_storage, service(), parent_object.uid)
        await create_child(flaky_storage, config_map(), parent_object.uid)
        flaky_storage.fail_deletes = {"service-1", "cm-1"}

        with pytest.raises(CompositeError) as exc_info:
            await make_pruner(flaky_storage, parent_object).prune(
                CompositeState([SERVICE, CONFIGMAP]), [], []
            )

        assert len(exc_info.value) == 2

    @pytest.mark.asyncio
    async def test_already_deleted_orphan_counts_as_pruned(
        self, parent_object, service
    ):
        storage = VanishingStorage()
        await storage.create(parent_object)
        await create_child(storage, service(), parent_object.uid)

        result = await make_pruner(storage, parent_object).prune(
            CompositeState([SERVICE]), [], [SERVICE]
        )

        assert result.deployed_kinds == [SERVICE]

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(self, storage, parent_object, service):
        await storage.create(parent_object)
        await create_child(storage, service(), parent_object.uid)
        storage.reset_writes()

        result = await make_pruner(storage, parent_object, dry_run=True).prune(
            CompositeState([SERVICE]), [], []
        )

        assert result.deployed_kinds == []
        assert storage.writes == []
        assert len(await storage.list(SERVICE)) == 1
        assert parent_object.annotations is None


class TestPersist:
    """Tests for Pruner.persist()."""

    @pytest.mark.asyncio
    async def test_updates_parent(self, storage, parent_object):
        await storage.create(parent_object)
        version = parent_object.resource_version

        await make_pruner(storage, parent_object).persist(CompositeState([SERVICE]))

        assert parent_object.resource_version != version
        assert ANNOTATION in parent_object.annotations

    @pytest.mark.asyncio
    async def test_update_failure_propagates(self, flaky_storage, parent_object):
        await flaky_storage.create(parent_object)
        flaky_storage.fail_updates = True

        with pytest.raises(ServiceUnavailableError):
            await make_pruner(flaky_storage, parent_object).persist(
                CompositeState([SERVICE])
            )
