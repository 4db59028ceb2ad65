"""
Resource capability used by the reconciliation engine.

The engine never inspects resource bodies. It only needs identity, labels,
annotations, owner references and the kind of an object, so every resource
representation is seen through the narrow Resource interface. Unstructured
is the dict-backed implementation used for storage responses and manifests.
"""

import copy
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from composite.kinds import GroupVersionKind


class OwnershipError(Exception):
    """Raised when an owner reference cannot be set."""


class AlreadyOwnedError(OwnershipError):
    """Raised when an object already has a different controller."""

    def __init__(self, obj_name: str, existing: Dict[str, Any]):
        self.existing = existing
        super().__init__(
            f"Object {obj_name} is already owned by another "
            f"{existing.get('kind')} controller {existing.get('name')}"
        )


class Resource(ABC):
    """Minimal metadata capability of a resource."""

    @property
    @abstractmethod
    def uid(self) -> str:
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def namespace(self) -> str:
        pass

    @property
    @abstractmethod
    def resource_version(self) -> str:
        pass

    @property
    @abstractmethod
    def labels(self) -> Optional[Dict[str, str]]:
        pass

    @property
    @abstractmethod
    def annotations(self) -> Optional[Dict[str, str]]:
        pass

    @property
    @abstractmethod
    def owner_references(self) -> List[Dict[str, Any]]:
        pass

    @property
    @abstractmethod
    def gvk(self) -> Optional[GroupVersionKind]:
        pass

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Return the full object as sent to storage."""
        pass

    @abstractmethod
    def update_from(self, data: Mapping) -> None:
        """Refresh this object from a storage response."""
        pass


class Unstructured(Resource):
    """A resource held as a plain dict, as found on the wire."""

    def __init__(self, obj: Optional[Dict[str, Any]] = None):
        self.object: Dict[str, Any] = obj if obj is not None else {}

    def __repr__(self) -> str:
        return f"Unstructured({self.object!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Unstructured):
            return NotImplemented
        return self.object == other.object

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.setdefault("metadata", {})

    def _get_meta(self, key: str, default: Any = "") -> Any:
        meta = self.object.get("metadata") or {}
        value = meta.get(key)
        return default if value is None else value

    def _set_meta(self, key: str, value: Any) -> None:
        if value is None:
            self.metadata.pop(key, None)
        else:
            self.metadata[key] = value

    @property
    def uid(self) -> str:
        return self._get_meta("uid")

    @uid.setter
    def uid(self, value: str) -> None:
        self._set_meta("uid", value)

    @property
    def name(self) -> str:
        return self._get_meta("name")

    @name.setter
    def name(self, value: str) -> None:
        self._set_meta("name", value)

    @property
    def namespace(self) -> str:
        return self._get_meta("namespace")

    @namespace.setter
    def namespace(self, value: str) -> None:
        self._set_meta("namespace", value or None)

    @property
    def resource_version(self) -> str:
        return self._get_meta("resourceVersion")

    @resource_version.setter
    def resource_version(self, value: str) -> None:
        self._set_meta("resourceVersion", value)

    @property
    def labels(self) -> Optional[Dict[str, str]]:
        return self._get_meta("labels", None)

    @labels.setter
    def labels(self, value: Optional[Dict[str, str]]) -> None:
        self._set_meta("labels", value)

    @property
    def annotations(self) -> Optional[Dict[str, str]]:
        return self._get_meta("annotations", None)

    @annotations.setter
    def annotations(self, value: Optional[Dict[str, str]]) -> None:
        self._set_meta("annotations", value)

    @property
    def owner_references(self) -> List[Dict[str, Any]]:
        return self._get_meta("ownerReferences", [])

    @owner_references.setter
    def owner_references(self, value: List[Dict[str, Any]]) -> None:
        self._set_meta("ownerReferences", value or None)

    @property
    def gvk(self) -> Optional[GroupVersionKind]:
        api_version = self.object.get("apiVersion")
        kind = self.object.get("kind")
        if not api_version or not kind:
            return None
        return GroupVersionKind.from_api_version(api_version, kind)

    @gvk.setter
    def gvk(self, value: GroupVersionKind) -> None:
        self.object["apiVersion"] = value.api_version
        self.object["kind"] = value.kind

    def to_dict(self) -> Dict[str, Any]:
        return self.object

    def update_from(self, data: Mapping) -> None:
        self.object.clear()
        self.object.update(copy.deepcopy(dict(data)))

    def deepcopy(self) -> "Unstructured":
        return Unstructured(copy.deepcopy(self.object))


def meta_accessor(obj: Any) -> Resource:
    """
    Return the Resource capability of obj.

    Mappings are wrapped without copying, so changes made through the
    returned accessor are visible in the original mapping.

    Raises:
        TypeError: If obj has no resource metadata.
    """
    if isinstance(obj, Resource):
        return obj
    if isinstance(obj, dict):
        return Unstructured(obj)
    raise TypeError(f"object of type {type(obj).__name__} is not a resource")


def set_controller_reference(
    owner: Resource,
    obj: Resource,
    owner_gvk: GroupVersionKind,
) -> None:
    """
    Make owner the managing controller of obj.

    The owner reference lets the platform garbage-collect obj when owner is
    deleted. A namespaced owner can only own objects in its own namespace.

    Raises:
        OwnershipError: If the owner and object scopes are incompatible.
        AlreadyOwnedError: If obj is controlled by a different owner.
    """
    if owner.namespace:
        if not obj.namespace:
            raise OwnershipError(
                f"cluster-scoped resource must not have a namespace-scoped "
                f"owner, owner's namespace {owner.namespace}"
            )
        if obj.namespace != owner.namespace:
            raise OwnershipError(
                f"cross-namespace owner references are disallowed, owner's "
                f"namespace {owner.namespace}, obj's namespace {obj.namespace}"
            )

    ref = {
        "apiVersion": owner_gvk.api_version,
        "kind": owner_gvk.kind,
        "name": owner.name,
        "uid": owner.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }

    refs = [dict(r) for r in obj.owner_references]
    for existing in refs:
        if existing.get("controller") and existing.get("uid") != owner.uid:
            raise AlreadyOwnedError(obj.name, existing)

    for idx, existing in enumerate(refs):
        if existing.get("uid") == owner.uid:
            refs[idx] = ref
            break
    else:
        refs.append(ref)

    obj.owner_references = refs
