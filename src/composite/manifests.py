"""
Load child manifests from YAML or JSON documents.

Rendering manifests is left to the caller; this only turns already rendered
text into objects the reconciler can apply.
"""

import logging
from pathlib import Path
from typing import Any, List, Union

import yaml

from composite.resources import Unstructured

logger = logging.getLogger(__name__)


class ManifestError(ValueError):
    """Raised when a document is not a valid resource manifest."""


def _collect(doc: Any, index: int, out: List[Unstructured]) -> None:
    if not isinstance(doc, dict):
        raise ManifestError(f"document {index} is not a mapping")
    if not doc.get("apiVersion") or not doc.get("kind"):
        raise ManifestError(f"document {index} is missing apiVersion or kind")

    if doc["kind"].endswith("List") and isinstance(doc.get("items"), list):
        for item in doc["items"]:
            _collect(item, index, out)
        return

    out.append(Unstructured(doc))


def load_manifests(text: str) -> List[Unstructured]:
    """
    Parse one or more YAML documents into objects.

    JSON is accepted as well, being a subset of YAML. Empty documents are
    skipped and List kinds are flattened into their items.

    Raises:
        ManifestError: If the text is not valid YAML or a document is not a
            resource.
    """
    try:
        docs = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML: {e}") from e

    objects: List[Unstructured] = []
    for index, doc in enumerate(docs):
        if doc is None:
            continue
        _collect(doc, index, objects)

    logger.debug(f"Loaded {len(objects)} manifest(s)")
    return objects


def load_manifest_file(path: Union[str, Path]) -> List[Unstructured]:
    """Load every manifest in a YAML or JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return load_manifests(f.read())
