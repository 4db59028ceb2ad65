"""
Composite state persisted on the parent resource.

The state records every kind ever deployed under the parent, so that pruning
can find orphans of kinds which are no longer part of the desired children.
It is stored as JSON in a reserved annotation on the parent.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

from jsonschema import Draft7Validator

from composite.errors import PermanentError
from composite.kinds import GroupVersionKind
from composite.resources import Resource


DEFAULT_DOMAIN = "composite.no8s.io"

STATE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "deployedKinds": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "group": {"type": "string"},
                    "version": {"type": "string", "minLength": 1},
                    "kind": {"type": "string", "minLength": 1},
                },
                "required": ["version", "kind"],
            },
        },
    },
}

_state_validator = Draft7Validator(STATE_SCHEMA)


class StateDecodeError(ValueError):
    """Raised when the state annotation cannot be decoded."""


def state_annotation(domain: str = DEFAULT_DOMAIN) -> str:
    return f"{domain}/composite-state"


def parent_label(domain: str = DEFAULT_DOMAIN) -> str:
    return f"{domain}/composite-parent"


@dataclass
class CompositeState:
    """Kinds deployed under a composite parent, in first-seen order."""

    deployed_kinds: List[GroupVersionKind] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if not self.deployed_kinds:
            return {}
        return {"deployedKinds": [k.to_dict() for k in self.deployed_kinds]}

    @classmethod
    def from_dict(cls, data: Any) -> "CompositeState":
        """
        Build a state from its decoded JSON form.

        Raises:
            StateDecodeError: If data does not match STATE_SCHEMA.
        """
        errors = list(_state_validator.iter_errors(data))
        if errors:
            messages = []
            for error in errors:
                path = ".".join(str(p) for p in error.absolute_path) or "(root)"
                messages.append(f"{path}: {error.message}")
            raise StateDecodeError("; ".join(messages))

        return cls(
            deployed_kinds=[
                GroupVersionKind(
                    group=entry.get("group", ""),
                    version=entry["version"],
                    kind=entry["kind"],
                )
                for entry in data.get("deployedKinds") or []
            ]
        )


class StateAccessor:
    """Reads and writes the composite state annotation of a parent."""

    def __init__(self, domain: str = DEFAULT_DOMAIN):
        self.annotation = state_annotation(domain)

    def get_state(self, parent: Resource) -> CompositeState:
        """
        Decode the composite state of parent.

        A parent without the annotation has an empty state.

        Raises:
            PermanentError: If the annotation holds malformed content.
        """
        annotations = parent.annotations
        if not annotations or self.annotation not in annotations:
            return CompositeState()

        text = annotations[self.annotation]
        try:
            return CompositeState.from_dict(json.loads(text))
        except (json.JSONDecodeError, StateDecodeError) as e:
            raise PermanentError(
                StateDecodeError(
                    f"unable to decode {self.annotation} on {parent.name}: {e}"
                )
            ) from e

    def set_state(self, parent: Resource, state: CompositeState) -> None:
        """
        Encode state into the annotations of parent.

        Raises:
            PermanentError: If the state cannot be encoded.
        """
        try:
            text = json.dumps(state.to_dict(), separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise PermanentError(e) from e

        annotations = dict(parent.annotations or {})
        annotations[self.annotation] = text
        parent.annotations = annotations
