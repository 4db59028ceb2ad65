"""
In-memory storage backend.

Keeps objects in a dict keyed by (group, kind, namespace, name). Useful for
tests and for embedding the reconciler in processes that own their state.
Every persisted write is recorded in `writes` so callers can observe which
operations actually changed storage.
"""

import copy
import itertools
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from composite.errors import ConflictError, NotFoundError
from composite.kinds import GroupVersionKind
from composite.storage import apply
from composite.storage.base import PatchType, StorageClient, matches_labels

logger = logging.getLogger(__name__)

Key = Tuple[str, str, str, str]


@dataclass(frozen=True)
class WriteRecord:
    """A write that was persisted."""

    verb: str
    kind: str
    namespace: str
    name: str


class MemoryStorage(StorageClient):
    """Storage backend holding every object in process memory."""

    def __init__(self):
        self._objects: Dict[Key, Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self.writes: List[WriteRecord] = []

    def __len__(self) -> int:
        return len(self._objects)

    def reset_writes(self) -> None:
        self.writes.clear()

    @staticmethod
    def _key(gvk: GroupVersionKind, namespace: str, name: str) -> Key:
        return gvk.group, gvk.kind, namespace or "", name

    def _commit(
        self,
        verb: str,
        key: Key,
        live: Optional[Dict[str, Any]],
        new: Dict[str, Any],
        dry_run: bool,
    ) -> Dict[str, Any]:
        if live is not None and not apply.has_changes(live, new):
            return copy.deepcopy(live)

        uid = (live or {}).get("metadata", {}).get("uid") or str(uuid.uuid4())
        apply.stamp(new, uid, str(next(self._versions)))

        if dry_run:
            logger.debug(f"Dry run: {verb} {apply.describe(new)}")
            return copy.deepcopy(new)

        self._objects[key] = new
        self.writes.append(WriteRecord(verb, key[1], key[2], key[3]))
        logger.debug(f"{verb} {apply.describe(new)}")
        return copy.deepcopy(new)

    async def _get(
        self, gvk: GroupVersionKind, namespace: str, name: str
    ) -> Dict[str, Any]:
        obj = self._objects.get(self._key(gvk, namespace, name))
        if obj is None:
            raise NotFoundError(f'{gvk.kind} "{name}" not found')
        return copy.deepcopy(obj)

    async def _list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        label_selector: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        items = []
        for (group, kind, ns, _), obj in sorted(self._objects.items()):
            if group != gvk.group or kind != gvk.kind:
                continue
            if namespace is not None and ns != namespace:
                continue
            if not matches_labels(obj["metadata"].get("labels"), label_selector):
                continue
            items.append(copy.deepcopy(obj))
        return items

    async def _create(self, data: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        apply.validate(data)
        key = apply.object_key(data)
        if key in self._objects:
            raise ConflictError(f"{apply.describe(data)} already exists")
        new = apply.update_object({"metadata": {}}, data, "create")
        return self._commit("create", key, None, new, dry_run)

    async def _update(
        self, data: Dict[str, Any], field_manager: str, dry_run: bool
    ) -> Dict[str, Any]:
        apply.validate(data)
        key = apply.object_key(data)
        live = self._objects.get(key)
        if live is None:
            raise NotFoundError(f"{apply.describe(data)} not found")
        new = apply.update_object(live, data, field_manager)
        return self._commit("update", key, live, new, dry_run)

    async def _patch(
        self,
        data: Dict[str, Any],
        patch_type: PatchType,
        field_manager: str,
        force: bool,
        dry_run: bool,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        key = apply.object_key(data)
        live = self._objects.get(key)

        if patch_type is PatchType.APPLY:
            new = apply.apply_configuration(live, data, field_manager, force=force)
            verb = "create" if live is None else "apply"
            return self._commit(verb, key, live, new, dry_run)

        if live is None:
            raise NotFoundError(f"{apply.describe(data)} not found")
        patched = apply.merge_patch(live, body or {})
        new = apply.update_object(live, patched, field_manager)
        return self._commit("patch", key, live, new, dry_run)

    async def _delete(
        self, gvk: GroupVersionKind, namespace: str, name: str, dry_run: bool
    ) -> None:
        key = self._key(gvk, namespace, name)
        if key not in self._objects:
            raise NotFoundError(f'{gvk.kind} "{name}" not found')
        if dry_run:
            logger.debug(f"Dry run: delete {gvk.kind} {namespace}/{name}")
            return
        del self._objects[key]
        self.writes.append(WriteRecord("delete", gvk.kind, namespace or "", name))
        logger.debug(f"delete {gvk.kind} {namespace}/{name}")
