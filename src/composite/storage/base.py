"""
Storage Client Base - Abstract interface to the platform's object storage.

The reconciliation engine only talks to storage through this interface.
Backends implement the underscore methods on plain dicts; the public methods
take care of converting to and from the Resource capability and of
refreshing the caller's object with the server's response.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from composite.kinds import GroupVersionKind
from composite.resources import Resource, Unstructured, meta_accessor


class PatchType(Enum):
    """Supported patch encodings."""

    APPLY = "application/apply-patch+yaml"
    MERGE = "application/merge-patch+json"


def format_label_selector(selector: Optional[Dict[str, str]]) -> str:
    """Render an equality label selector as "k1=v1,k2=v2"."""
    if not selector:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def matches_labels(labels: Optional[Dict[str, str]], selector: Dict[str, str]) -> bool:
    labels = labels or {}
    return all(labels.get(k) == v for k, v in selector.items())


class StorageClient(ABC):
    """
    Abstract storage collaborator.

    Every write accepts dry_run, which performs validation and returns the
    would-be result without persisting anything.
    """

    # ==================== Public API ====================

    async def get(
        self, gvk: GroupVersionKind, namespace: str, name: str
    ) -> Unstructured:
        """
        Get a single object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        return Unstructured(await self._get(gvk, namespace or "", name))

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Unstructured]:
        """
        List objects of a kind.

        Args:
            gvk: Kind to list.
            namespace: Restrict to one namespace. None lists all namespaces.
            label_selector: Equality selector every result must match.
        """
        items = await self._list(gvk, namespace, label_selector or {})
        return [Unstructured(item) for item in items]

    async def create(self, obj: Any, dry_run: bool = False) -> Unstructured:
        """Create obj. Raises ConflictError if it already exists."""
        acc = meta_accessor(obj)
        data = await self._create(acc.to_dict(), dry_run=dry_run)
        return self._refresh(acc, data)

    async def update(
        self,
        obj: Any,
        field_manager: Optional[str] = None,
        dry_run: bool = False,
    ) -> Unstructured:
        """
        Replace obj.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If obj carries a stale resourceVersion.
        """
        acc = meta_accessor(obj)
        data = await self._update(
            acc.to_dict(), field_manager=field_manager or "update", dry_run=dry_run
        )
        return self._refresh(acc, data)

    async def patch(
        self,
        obj: Any,
        patch_type: PatchType,
        field_manager: Optional[str] = None,
        force: bool = False,
        dry_run: bool = False,
        body: Optional[Dict[str, Any]] = None,
    ) -> Unstructured:
        """
        Patch obj.

        With PatchType.APPLY, obj itself is the applied configuration and
        field_manager is required. With PatchType.MERGE, body is the merge
        patch and obj identifies the target.
        """
        acc = meta_accessor(obj)
        if patch_type is PatchType.APPLY and not field_manager:
            raise ValueError("field_manager is required for apply patches")
        data = await self._patch(
            acc.to_dict(),
            patch_type,
            field_manager=field_manager or "patch",
            force=force,
            dry_run=dry_run,
            body=body,
        )
        return self._refresh(acc, data)

    async def delete(self, obj: Any, dry_run: bool = False) -> None:
        """
        Delete obj.

        Raises:
            NotFoundError: If the object does not exist.
        """
        acc = meta_accessor(obj)
        gvk = acc.gvk
        if gvk is None:
            raise ValueError(f"cannot delete {acc.name}: kind is not set")
        await self._delete(gvk, acc.namespace, acc.name, dry_run=dry_run)

    @staticmethod
    def _refresh(acc: Resource, data: Dict[str, Any]) -> Unstructured:
        acc.update_from(data)
        return Unstructured(data)

    # ==================== Backend Hooks ====================

    @abstractmethod
    async def _get(
        self, gvk: GroupVersionKind, namespace: str, name: str
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        label_selector: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def _create(self, data: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _update(
        self, data: Dict[str, Any], field_manager: str, dry_run: bool
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _patch(
        self,
        data: Dict[str, Any],
        patch_type: PatchType,
        field_manager: str,
        force: bool,
        dry_run: bool,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def _delete(
        self, gvk: GroupVersionKind, namespace: str, name: str, dry_run: bool
    ) -> None:
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass
