"""
Patch helpers that skip no-op writes.

A merge patch computed between two versions of an object is empty when
nothing changed; sending it anyway would still cost a round trip.
"""

import logging
from typing import Any, Dict

from composite.resources import meta_accessor
from composite.storage.base import PatchType, StorageClient

logger = logging.getLogger(__name__)


def create_merge_patch(original: Any, modified: Any) -> Dict[str, Any]:
    """
    Compute the RFC 7386 merge patch turning original into modified.

    Keys removed in modified are set to None. Lists are replaced whole.
    """
    if not isinstance(original, dict) or not isinstance(modified, dict):
        raise TypeError("merge patches can only be computed between objects")

    patch: Dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue

        old = original[key]
        if isinstance(old, dict) and isinstance(value, dict):
            nested = create_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif old != value:
            patch[key] = value

    return patch


def is_patch_required(original: Any, modified: Any) -> bool:
    """Return True if patching original into modified changes anything."""
    return create_merge_patch(
        meta_accessor(original).to_dict(), meta_accessor(modified).to_dict()
    ) != {}


async def maybe_patch(
    storage: StorageClient,
    original: Any,
    modified: Any,
    field_manager: str = "patch",
    dry_run: bool = False,
) -> bool:
    """
    Merge-patch modified into storage unless the patch is a no-op.

    Args:
        storage: Storage to write to.
        original: The object as last read.
        modified: The desired object. Refreshed from storage when patched.

    Returns:
        True if a patch was sent.
    """
    body = create_merge_patch(
        meta_accessor(original).to_dict(), meta_accessor(modified).to_dict()
    )
    if not body:
        logger.debug(f"No changes to {meta_accessor(modified).name}, skipping patch")
        return False

    await storage.patch(
        modified,
        PatchType.MERGE,
        field_manager=field_manager,
        dry_run=dry_run,
        body=body,
    )
    return True
