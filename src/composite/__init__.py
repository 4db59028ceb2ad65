"""
Composite reconciliation for declarative resources.

Converges the children of a composite parent: applies the desired children,
remembers every kind ever deployed under the parent, and prunes children
that are no longer desired.
"""

from composite.errors import (
    CompositeError,
    ErrorClass,
    PermanentError,
    StorageError,
    append,
    classify,
    is_permanent,
)
from composite.kinds import GroupVersionKind, Scheme, ensure_kinds
from composite.reconciler import Reconciler, from_config, new
from composite.resources import Unstructured
from composite.state import CompositeState, StateAccessor

__all__ = [
    "CompositeError",
    "CompositeState",
    "ErrorClass",
    "GroupVersionKind",
    "PermanentError",
    "Reconciler",
    "Scheme",
    "StateAccessor",
    "StorageError",
    "Unstructured",
    "append",
    "classify",
    "ensure_kinds",
    "from_config",
    "is_permanent",
    "new",
]
