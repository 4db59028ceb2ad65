"""
Field ownership bookkeeping for apply-style writes.

Each stored object records which field manager owns which fields in
metadata.managedFields. A field path is a list of keys from the object root
to a leaf value; lists are treated as atomic leaves. Only labels,
annotations, ownerReferences and the object body are tracked, identity and
server-populated metadata never are.

Applying a configuration as a manager claims every field it contains and
drops the fields it stopped applying. Fields owned by other managers are
left alone, unless the applied configuration contains them and force is set.
"""

import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from composite.errors import ConflictError, InvalidError


Path = Tuple[str, ...]
ManagedFields = Dict[str, Set[Path]]

_IDENTITY_KEYS = ("apiVersion", "kind", "metadata")
_TRACKED_METADATA = ("labels", "annotations")
_SERVER_METADATA = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "managedFields",
    "generation",
)

APPLY = "Apply"
UPDATE = "Update"


# ==================== Paths ====================


def _leaves(value: Any, prefix: Path) -> Iterator[Path]:
    if isinstance(value, dict) and value:
        for key, child in value.items():
            yield from _leaves(child, prefix + (key,))
    else:
        yield prefix


def field_paths(obj: Dict[str, Any]) -> Set[Path]:
    """Return the tracked leaf paths of obj."""
    paths: Set[Path] = set()
    meta = obj.get("metadata") or {}
    for key in _TRACKED_METADATA:
        for name in meta.get(key) or {}:
            paths.add(("metadata", key, name))
    if meta.get("ownerReferences"):
        paths.add(("metadata", "ownerReferences"))

    for key, value in obj.items():
        if key in _IDENTITY_KEYS:
            continue
        paths.update(_leaves(value, (key,)))
    return paths


_MISSING = object()


def get_path(obj: Dict[str, Any], path: Path) -> Any:
    current: Any = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def set_path(obj: Dict[str, Any], path: Path, value: Any) -> None:
    current = obj
    for key in path[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[path[-1]] = copy.deepcopy(value)


def delete_path(obj: Dict[str, Any], path: Path) -> None:
    """Remove the leaf at path and any parent it leaves empty."""
    parents = []
    current: Any = obj
    for key in path[:-1]:
        if not isinstance(current, dict) or key not in current:
            return
        parents.append((current, key))
        current = current[key]
    if not isinstance(current, dict):
        return
    current.pop(path[-1], None)

    for parent, key in reversed(parents):
        if parent[key] == {} and key != "metadata":
            del parent[key]
        else:
            break


# ==================== Managed Fields ====================


def read_managed_fields(obj: Optional[Dict[str, Any]]) -> ManagedFields:
    if not obj:
        return {}
    entries = (obj.get("metadata") or {}).get("managedFields") or []
    return {
        entry["manager"]: {tuple(p) for p in entry.get("fields", [])}
        for entry in entries
    }


def _operations(obj: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not obj:
        return {}
    entries = (obj.get("metadata") or {}).get("managedFields") or []
    return {entry["manager"]: entry.get("operation", UPDATE) for entry in entries}


def write_managed_fields(
    obj: Dict[str, Any], managed: ManagedFields, operations: Dict[str, str]
) -> None:
    entries = [
        {
            "manager": manager,
            "operation": operations.get(manager, UPDATE),
            "fields": [list(p) for p in sorted(paths)],
        }
        for manager, paths in sorted(managed.items())
        if paths
    ]
    meta = obj.setdefault("metadata", {})
    if entries:
        meta["managedFields"] = entries
    else:
        meta.pop("managedFields", None)


def strip_server_metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of obj without the metadata owned by storage."""
    result = copy.deepcopy(obj)
    meta = result.setdefault("metadata", {})
    for key in _SERVER_METADATA:
        meta.pop(key, None)
    return result


def validate(obj: Dict[str, Any]) -> None:
    """
    Check the identity fields every stored object needs.

    Raises:
        InvalidError: If apiVersion, kind or metadata.name is missing.
    """
    if not obj.get("apiVersion") or not obj.get("kind"):
        raise InvalidError("apiVersion and kind must be set")
    if not (obj.get("metadata") or {}).get("name"):
        raise InvalidError(f"{obj.get('kind')}: metadata.name must be set")


# ==================== Writes ====================


def apply_configuration(
    live: Optional[Dict[str, Any]],
    applied: Dict[str, Any],
    manager: str,
    force: bool = False,
) -> Dict[str, Any]:
    """
    Merge an applied configuration into the live object.

    Args:
        live: Current stored object, or None when the object is new.
        applied: Configuration sent by the manager.
        manager: Field manager name.
        force: Take ownership of fields owned by other managers.

    Returns:
        The resulting object with updated managedFields. Server metadata of
        live (uid, resourceVersion, creationTimestamp) is carried over.

    Raises:
        ConflictError: If force is not set and the configuration changes a
            field owned by another manager.
    """
    validate(applied)
    managed = read_managed_fields(live)
    operations = _operations(live)
    applied = strip_server_metadata(applied)
    applied_paths = field_paths(applied)

    if not force and live is not None:
        conflicts = [
            (other, path)
            for other, paths in managed.items()
            if other != manager
            for path in applied_paths & paths
            if get_path(live, path) != get_path(applied, path)
        ]
        if conflicts:
            described = ", ".join(
                f"{'.'.join(path)} (owned by {other})" for other, path in conflicts
            )
            raise ConflictError(f"Apply failed with conflicts: {described}")

    result = copy.deepcopy(live) if live is not None else {"metadata": {}}
    result["apiVersion"] = applied["apiVersion"]
    result["kind"] = applied["kind"]
    meta = result.setdefault("metadata", {})
    meta["name"] = applied["metadata"]["name"]
    if applied["metadata"].get("namespace"):
        meta["namespace"] = applied["metadata"]["namespace"]

    previous = managed.get(manager, set())
    still_owned = set().union(
        *(paths for other, paths in managed.items() if other != manager)
    )
    for path in previous - applied_paths - still_owned:
        delete_path(result, path)

    for path in applied_paths:
        set_path(result, path, get_path(applied, path))

    for other in list(managed):
        if other != manager:
            managed[other] -= applied_paths
    managed[manager] = applied_paths
    operations[manager] = APPLY

    write_managed_fields(result, managed, operations)
    return result


def update_object(
    live: Dict[str, Any], new: Dict[str, Any], manager: str
) -> Dict[str, Any]:
    """
    Replace live with new, attributing every changed field to manager.

    Raises:
        ConflictError: If new carries a resourceVersion other than live's.
    """
    validate(new)
    expected = (new.get("metadata") or {}).get("resourceVersion")
    current = (live.get("metadata") or {}).get("resourceVersion")
    if expected and expected != current:
        raise ConflictError(
            f"the object has been modified; please apply your changes to the "
            f"latest version (expected {expected}, found {current})"
        )

    managed = read_managed_fields(live)
    operations = _operations(live)
    result = strip_server_metadata(new)
    for key in _SERVER_METADATA:
        value = (live.get("metadata") or {}).get(key)
        if value is not None and key != "managedFields":
            result["metadata"][key] = value

    live_paths = field_paths(live)
    new_paths = field_paths(result)
    changed = {
        path
        for path in live_paths | new_paths
        if get_path(live, path) != get_path(result, path)
    }

    for other in list(managed):
        managed[other] -= changed
        managed[other] &= new_paths
    if changed & new_paths:
        managed.setdefault(manager, set()).update(changed & new_paths)
        operations.setdefault(manager, UPDATE)

    write_managed_fields(result, managed, operations)
    return result


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 JSON merge patch to target."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def has_changes(live: Optional[Dict[str, Any]], new: Dict[str, Any]) -> bool:
    """Return True if new differs from live in anything but resourceVersion."""
    if live is None:
        return True
    return _without_version(live) != _without_version(new)


def _without_version(obj: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(obj)
    meta = dict(result.get("metadata") or {})
    meta.pop("resourceVersion", None)
    result["metadata"] = meta
    return result


def stamp(
    obj: Dict[str, Any],
    uid: str,
    resource_version: str,
    creation_timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """Set the server-populated metadata of a persisted object."""
    meta = obj.setdefault("metadata", {})
    meta["uid"] = uid
    meta["resourceVersion"] = resource_version
    meta.setdefault(
        "creationTimestamp",
        creation_timestamp
        or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )
    return obj


def object_key(obj: Dict[str, Any]) -> Tuple[str, str, str, str]:
    """Return the (group, kind, namespace, name) storage key of obj."""
    api_version = obj.get("apiVersion", "")
    group = api_version.partition("/")[0] if "/" in api_version else ""
    meta = obj.get("metadata") or {}
    return group, obj.get("kind", ""), meta.get("namespace") or "", meta.get("name", "")


def describe(obj: Dict[str, Any]) -> str:
    group, kind, namespace, name = object_key(obj)
    qualified = f"{kind}.{group}" if group else kind
    if namespace:
        return f'{qualified} "{namespace}/{name}"'
    return f'{qualified} "{name}"'


def managers(obj: Dict[str, Any]) -> List[str]:
    return sorted(read_managed_fields(obj))
