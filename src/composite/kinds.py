"""
Resource kinds and kind resolution.

A kind is identified by its (group, version, kind) triple. The composite
state remembers kinds by (group, kind), so a version bump of an already
deployed kind replaces the tracked version rather than adding a new entry.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

logger = logging.getLogger(__name__)


class KindResolutionError(Exception):
    """Raised when an object cannot be mapped to a kind."""


@dataclass(frozen=True)
class GroupKind:
    group: str
    kind: str

    def __str__(self) -> str:
        if not self.group:
            return self.kind
        return f"{self.kind}.{self.group}"


@dataclass(frozen=True)
class GroupVersionKind:
    """Identifies the schema family of a resource."""

    group: str
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        """
        Build a kind from an apiVersion string.

        The core group has no prefix, so "v1" maps to group "" and
        "apps/v1" maps to group "apps".
        """
        if not api_version or not kind:
            raise KindResolutionError(
                f"apiVersion and kind are required, got {api_version!r}/{kind!r}"
            )
        if "/" in api_version:
            group, _, version = api_version.partition("/")
        else:
            group, version = "", api_version
        if not version:
            raise KindResolutionError(f"Invalid apiVersion: {api_version!r}")
        return cls(group=group, version=version, kind=kind)

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    def to_dict(self) -> Dict[str, str]:
        return {"group": self.group, "version": self.version, "kind": self.kind}

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


def kind_index(kinds: Sequence[GroupVersionKind], group_kind: GroupKind) -> int:
    """Return the position of group_kind in kinds, or -1."""
    for idx, k in enumerate(kinds):
        if k.group == group_kind.group and k.kind == group_kind.kind:
            return idx
    return -1


def merge_kind(
    kinds: List[GroupVersionKind], gvk: GroupVersionKind
) -> bool:
    """
    Record gvk in kinds, in place.

    Returns:
        True if kinds changed.
    """
    idx = kind_index(kinds, gvk.group_kind())
    if idx < 0:
        kinds.append(gvk)
        return True

    if kinds[idx].version != gvk.version:
        kinds[idx] = gvk
        return True

    return False


def ensure_kinds(
    historical: Sequence[GroupVersionKind],
    desired: Sequence[GroupVersionKind],
) -> Tuple[List[GroupVersionKind], bool]:
    """
    Merge newly desired kinds into the historical kind list.

    Existing entries keep their position, with their version replaced when
    it differs. Unknown kinds are appended in desired order.

    Args:
        historical: Kinds recorded so far. Not modified.
        desired: Kinds of the children about to be applied.

    Returns:
        The merged list and whether it differs from historical.
    """
    merged = list(historical)
    changed = False
    for gvk in desired:
        if merge_kind(merged, gvk):
            changed = True
    return merged, changed


class Scheme:
    """
    Maps concrete child values to their kinds.

    Mappings and unstructured objects carry their own apiVersion and kind.
    Typed objects are resolved through the classes registered here.
    """

    def __init__(self):
        self._types: Dict[Type, GroupVersionKind] = {}

    def register(self, cls: Type, gvk: GroupVersionKind) -> None:
        """Bind a Python type to a kind."""
        self._types[cls] = gvk
        logger.debug(f"Registered {cls.__name__} as {gvk}")

    def registered_kinds(self) -> List[GroupVersionKind]:
        return list(self._types.values())

    def gvk_for_object(self, obj: Any) -> GroupVersionKind:
        """
        Resolve the kind of obj.

        Raises:
            KindResolutionError: If the kind cannot be determined.
        """
        raw = _raw_content(obj)
        if raw is not None and raw.get("apiVersion") and raw.get("kind"):
            return GroupVersionKind.from_api_version(raw["apiVersion"], raw["kind"])

        for cls in type(obj).__mro__:
            gvk = self._types.get(cls)
            if gvk is not None:
                return gvk

        raise KindResolutionError(
            f"no kind is registered for the type {type(obj).__name__}"
        )


def _raw_content(obj: Any) -> Optional[Mapping]:
    if isinstance(obj, Mapping):
        return obj
    content = getattr(obj, "object", None)
    if isinstance(content, Mapping):
        return content
    return None
