"""
Composite Reconciler - Converges the children of a composite parent.

Each operation runs its phases in a fixed order:

    mark kinds -> apply children -> prune orphans

A kind is recorded on the parent before the first object of that kind is
written. Pruning needs the uids of the children that were just applied.

A reconciler is bound to one parent and must not be used concurrently.
"""

import logging
from typing import Any, List, Optional, Sequence

from composite.applier import ChildApplier
from composite.config import get_config
from composite.errors import PermanentError
from composite.kinds import (
    GroupVersionKind,
    KindResolutionError,
    Scheme,
    ensure_kinds,
)
from composite.pruner import Pruner
from composite.resources import Resource, meta_accessor
from composite.state import DEFAULT_DOMAIN, CompositeState, StateAccessor
from composite.storage.base import StorageClient

logger = logging.getLogger(__name__)


class Reconciler:
    """Reconciles the child resources of one composite parent."""

    def __init__(
        self,
        storage: StorageClient,
        resolver: Scheme,
        parent: Resource,
        parent_gvk: GroupVersionKind,
        field_manager: str,
        domain: str = DEFAULT_DOMAIN,
        dry_run: bool = False,
        log: Optional[logging.Logger] = None,
    ):
        self.storage = storage
        self.resolver = resolver
        self.parent = parent
        self.field_manager = field_manager
        self.domain = domain
        self.dry_run = dry_run
        self.log = log or logger

        self.accessor = StateAccessor(domain)
        self.applier = ChildApplier(
            storage,
            resolver,
            parent,
            parent_gvk,
            field_manager,
            domain,
            dry_run=dry_run,
            log=self.log,
        )
        self.pruner = Pruner(
            storage,
            parent,
            self.accessor,
            domain,
            field_manager,
            dry_run=dry_run,
            log=self.log,
        )

        self._last_children: List[Any] = []
        self._last_kinds: List[GroupVersionKind] = []

    async def reconcile(self, children: Sequence[Any]) -> List[str]:
        """
        Apply children and delete every other child of the parent.

        Returns:
            Uids of the children that were applied and kept.

        Raises:
            PermanentError: On malformed state, unresolvable kinds or invalid
                ownership. Must not be retried blindly.
            StorageError or CompositeError: On storage failures. Safe to
                retry by reconciling again.
        """
        state = self.accessor.get_state(self.parent)
        state, kinds = await self._mark_kinds(children, state)
        uids = await self._apply(children)
        await self.pruner.prune(state, uids, kinds)
        return uids

    async def reconcile_without_prune(self, children: Sequence[Any]) -> List[str]:
        """
        Apply children without removing anything.

        Used for create-before-destroy rollouts, followed by prune() once
        the new children are ready.
        """
        state = self.accessor.get_state(self.parent)
        await self._mark_kinds(children, state)
        return await self._apply(children)

    async def prune(self) -> List[str]:
        """
        Delete every child of the parent except the last applied ones.

        The uids to keep are read back from storage. A reconciler that has
        not applied anything yet keeps nothing, which removes every child
        and clears the deployed kinds.

        Returns:
            Uids of the children that were kept.
        """
        state = self.accessor.get_state(self.parent)

        current = await self.applier.current_uids(self._last_children)
        if current.error is not None:
            raise current.error

        await self.pruner.prune(state, current.uids, self._last_kinds)
        return current.uids

    async def _mark_kinds(
        self, children: Sequence[Any], state: CompositeState
    ):
        kinds = self.applier.prepare(children)

        merged, changed = ensure_kinds(state.deployed_kinds, kinds)
        state = CompositeState(deployed_kinds=merged)
        if changed:
            await self.pruner.persist(state)

        self._last_children = list(children)
        self._last_kinds = kinds
        return state, kinds

    async def _apply(self, children: Sequence[Any]) -> List[str]:
        result = await self.applier.apply(children)
        if result.error is not None:
            raise result.error

        mode = " (dry run)" if self.dry_run else ""
        self.log.info(
            f"Applied {len(result.uids)} children of {self.parent.name}{mode}"
        )
        return result.uids


def new(
    storage: StorageClient,
    resolver: Scheme,
    parent: Any,
    field_manager: str,
    domain: Optional[str] = None,
    dry_run: bool = False,
    log: Optional[logging.Logger] = None,
) -> Reconciler:
    """
    Create a reconciler for parent.

    Args:
        storage: Storage collaborator used for every read and write.
        resolver: Maps children (and the parent) to their kinds.
        parent: The composite parent. Its annotations are updated in place.
        field_manager: Name under which child fields are applied.
        domain: Prefix of the state annotation and correlation label.
        dry_run: Validate every write without persisting it.
        log: Logger receiving reconciliation messages.

    Raises:
        ValueError: If field_manager is empty.
        PermanentError: If parent is not a resource or its kind is unknown.
    """
    if not field_manager:
        raise ValueError("field_manager must not be empty")

    try:
        parent_meta = meta_accessor(parent)
        parent_gvk = resolver.gvk_for_object(parent)
    except (TypeError, KindResolutionError) as e:
        raise PermanentError(
            TypeError(f"unable to access parent metadata: {e}")
        ) from e

    return Reconciler(
        storage,
        resolver,
        parent_meta,
        parent_gvk,
        field_manager,
        domain=domain or DEFAULT_DOMAIN,
        dry_run=dry_run,
        log=log,
    )


def from_config(
    storage: StorageClient,
    resolver: Scheme,
    parent: Any,
    config=None,
    log: Optional[logging.Logger] = None,
) -> Reconciler:
    """
    Create a reconciler for parent using the configured engine settings.

    Args:
        config: A Config instance. Defaults to the global configuration.
    """
    settings = (config or get_config()).reconciler
    return new(
        storage,
        resolver,
        parent,
        settings.field_manager,
        domain=settings.domain,
        dry_run=settings.dry_run,
        log=log,
    )
