"""Position assignment for ordered task lists.

This package provides the position key type, the key allocator, the
per-container ordered collection and its persistence boundary.  The
project-level :class:`~.engine.PositionEngine` lives in ``engine.py``.
"""

from .allocator import PositionAllocator, RebalancePolicy
from .collection import OrderedCollection
from .errors import (
    ContractViolation,
    DuplicateItemError,
    InvalidBoundsError,
    InvalidKeyError,
    InvalidTransitionError,
    KeyCollisionError,
    LoadSupersededError,
    PersistenceError,
    PositioningError,
    RebalanceError,
    UnknownItemError,
)
from .keys import PositionKey, compare
from .model import ItemState, Move, OrderedItem, check_placement, container_id_for
from .persistence import InMemoryPersistenceAdapter, PersistenceAdapter

__all__ = [
    "ContractViolation",
    "DuplicateItemError",
    "InMemoryPersistenceAdapter",
    "InvalidBoundsError",
    "InvalidKeyError",
    "InvalidTransitionError",
    "ItemState",
    "KeyCollisionError",
    "LoadSupersededError",
    "Move",
    "OrderedCollection",
    "OrderedItem",
    "PersistenceAdapter",
    "PersistenceError",
    "PositionAllocator",
    "PositionKey",
    "PositioningError",
    "RebalanceError",
    "RebalancePolicy",
    "UnknownItemError",
    "check_placement",
    "compare",
    "container_id_for",
]
