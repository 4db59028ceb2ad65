"""
Pruner - Deletes children a composite parent no longer wants.

Children are found by the parent correlation label, across every kind the
parent has ever deployed. This is what lets a kind be retired entirely: its
objects are still listed and deleted even though no desired child mentions
the kind anymore.
"""

import copy
import logging
from typing import Collection, Optional, Sequence

from composite import errors
from composite.errors import StorageError
from composite.kinds import GroupVersionKind
from composite.resources import Resource, Unstructured
from composite.state import CompositeState, StateAccessor, parent_label
from composite.storage.base import StorageClient

logger = logging.getLogger(__name__)


class Pruner:
    """Removes orphaned children of one parent."""

    def __init__(
        self,
        storage: StorageClient,
        parent: Resource,
        accessor: StateAccessor,
        domain: str,
        field_manager: str,
        dry_run: bool = False,
        log: Optional[logging.Logger] = None,
    ):
        self.storage = storage
        self.parent = parent
        self.accessor = accessor
        self.label = parent_label(domain)
        self.field_manager = field_manager
        self.dry_run = dry_run
        self.log = log or logger

    async def prune(
        self,
        state: CompositeState,
        keep_uids: Collection[str],
        new_kinds: Sequence[GroupVersionKind],
    ) -> CompositeState:
        """
        Delete every correlated child whose uid is not in keep_uids.

        When every deletion succeeded and the set of kinds in use shrank,
        the parent's state is replaced with new_kinds and persisted.

        Args:
            state: Current state of the parent.
            keep_uids: Uids of the children that must survive.
            new_kinds: Kinds still in use after this reconciliation.

        Returns:
            The state after pruning.

        Raises:
            StorageError: If listing a kind failed. Nothing after it is
                deleted.
            StorageError or CompositeError: If any delete failed. The state
                is left untouched so the same orphans are retried.
        """
        keep = set(keep_uids)
        selector = {self.label: self.parent.uid}
        failure: Optional[Exception] = None

        for gvk in state.deployed_kinds:
            try:
                items = await self.storage.list(gvk, label_selector=selector)
            except StorageError as e:
                self.log.warning(f"Failed to list {gvk.kind} children: {e}")
                raise

            for obj in items:
                obj.gvk = gvk
                if obj.uid in keep:
                    continue

                try:
                    await self.storage.delete(obj, dry_run=self.dry_run)
                except errors.NotFoundError:
                    # Counted as pruned, unlike other delete failures.
                    self.log.debug(f"{gvk.kind} {obj.name} was already deleted")
                    continue
                except StorageError as e:
                    self.log.warning(f"Failed to delete {gvk.kind} {obj.name}: {e}")
                    failure = errors.append(failure, e)
                    continue

                self.log.info(f"Pruned {gvk.kind} {obj.namespace}/{obj.name}")

        if failure is not None:
            raise failure

        if len(new_kinds) == len(state.deployed_kinds):
            return state

        new_state = CompositeState(deployed_kinds=list(new_kinds))
        await self.persist(new_state)
        return new_state

    async def persist(self, state: CompositeState) -> None:
        """
        Write state to the parent and update it in storage.

        In dry-run mode the update is validated against a copy, so the
        caller's parent object keeps its current annotations.
        """
        target = self.parent
        if self.dry_run:
            target = Unstructured(copy.deepcopy(self.parent.to_dict()))

        self.accessor.set_state(target, state)
        await self.storage.update(
            target, field_manager=self.field_manager, dry_run=self.dry_run
        )
        kinds = ", ".join(str(k) for k in state.deployed_kinds) or "none"
        self.log.info(f"Updated deployed kinds of {self.parent.name}: {kinds}")

