"""
Child Applier - Upserts the desired children of a composite parent.

Every child is correlated with the parent through a label, owned by it when
namespaced, and written with an apply patch so that fields set by other
field managers survive. Failures of individual upserts are collected so one
bad child does not hold back its siblings.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from composite import errors
from composite.errors import PermanentError, StorageError
from composite.kinds import (
    GroupVersionKind,
    KindResolutionError,
    Scheme,
    merge_kind,
)
from composite.resources import (
    OwnershipError,
    Resource,
    meta_accessor,
    set_controller_reference,
)
from composite.state import parent_label
from composite.storage.base import PatchType, StorageClient

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    """Raised when storage returns an object without a uid."""


@dataclass
class ApplyResult:
    """Result of applying a list of children."""

    uids: List[str] = field(default_factory=list)
    error: Optional[Exception] = None


class ChildApplier:
    """Applies children on behalf of one parent."""

    def __init__(
        self,
        storage: StorageClient,
        resolver: Scheme,
        parent: Resource,
        parent_gvk: GroupVersionKind,
        field_manager: str,
        domain: str,
        dry_run: bool = False,
        log: Optional[logging.Logger] = None,
    ):
        self.storage = storage
        self.resolver = resolver
        self.parent = parent
        self.parent_gvk = parent_gvk
        self.field_manager = field_manager
        self.label = parent_label(domain)
        self.dry_run = dry_run
        self.log = log or logger

    def _resolve(self, child: Any) -> Tuple[Resource, GroupVersionKind]:
        try:
            gvk = self.resolver.gvk_for_object(child)
            acc = meta_accessor(child)
        except (KindResolutionError, TypeError) as e:
            raise PermanentError(e) from e
        return acc, gvk

    def prepare_child(self, child: Any) -> Tuple[Resource, GroupVersionKind]:
        """
        Associate child with the parent ahead of an upsert.

        Sets the correlation label, the controller owner reference for
        namespaced children, and the resolved kind.

        Raises:
            PermanentError: If the kind cannot be resolved or ownership
                cannot be assigned.
        """
        acc, gvk = self._resolve(child)

        labels = dict(acc.labels or {})
        labels[self.label] = self.parent.uid
        acc.labels = labels

        if acc.namespace:
            try:
                set_controller_reference(self.parent, acc, self.parent_gvk)
            except OwnershipError as e:
                self.log.error(f"Cannot set owner of {gvk.kind} {acc.name}: {e}")
                raise PermanentError(e) from e

        acc.gvk = gvk
        return acc, gvk

    def prepare(self, children: Sequence[Any]) -> List[GroupVersionKind]:
        """
        Prepare every child and return their distinct kinds.

        The result is ordered by first occurrence; a later version of an
        already listed (group, kind) replaces the earlier one.
        """
        kinds: List[GroupVersionKind] = []
        for child in children:
            _, gvk = self.prepare_child(child)
            merge_kind(kinds, gvk)
        return kinds

    async def apply(self, children: Sequence[Any]) -> ApplyResult:
        """
        Upsert every child, one at a time.

        Returns:
            The uids of the children applied successfully and the aggregated
            storage error, if any upsert failed.

        Raises:
            PermanentError: If a child cannot be prepared or an applied child
                comes back without a uid.
        """
        result = ApplyResult()

        for child in children:
            acc, gvk = self.prepare_child(child)

            try:
                applied = await self.storage.patch(
                    acc,
                    PatchType.APPLY,
                    field_manager=self.field_manager,
                    force=True,
                    dry_run=self.dry_run,
                )
            except StorageError as e:
                self.log.warning(f"Failed to apply {gvk.kind} {acc.name}: {e}")
                result.error = errors.append(result.error, e)
                continue

            if not applied.uid:
                self.log.error(f"Applied {gvk.kind} {acc.name} has no uid")
                raise PermanentError(
                    IdentityError(f"applied {gvk.kind} {acc.name} has no uid")
                )

            self.log.debug(f"Applied {gvk.kind} {acc.namespace}/{acc.name}")
            result.uids.append(applied.uid)

        return result

    async def current_uids(self, children: Sequence[Any]) -> ApplyResult:
        """
        Read the uids of children as they currently exist in storage.

        Children that no longer exist are skipped. Other read failures are
        aggregated into the result's error.
        """
        result = ApplyResult()

        for child in children:
            acc, gvk = self._resolve(child)

            try:
                current = await self.storage.get(gvk, acc.namespace, acc.name)
            except errors.NotFoundError:
                self.log.debug(f"{gvk.kind} {acc.name} no longer exists")
                continue
            except StorageError as e:
                self.log.warning(f"Failed to get {gvk.kind} {acc.name}: {e}")
                result.error = errors.append(result.error, e)
                continue

            if not current.uid:
                raise PermanentError(
                    IdentityError(f"{gvk.kind} {acc.name} has no uid")
                )
            result.uids.append(current.uid)

        return result
