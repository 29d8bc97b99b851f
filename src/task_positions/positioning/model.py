"""Item model for ordered collections.

An item pairs an externally assigned id with exactly one current key.  Its
key moves through a small lifecycle (unassigned, assigned, reassigned,
removed); the collection drives every change through :meth:`OrderedItem.transition`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..utils import _now_iso
from .errors import ContractViolation, InvalidTransitionError
from .keys import PositionKey

PLACEMENTS = ("first", "last")


class ItemState(str, Enum):
    """Lifecycle of an item's key."""

    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    REMOVED = "removed"


_VALID_TRANSITIONS: dict[ItemState, set[ItemState]] = {
    ItemState.UNASSIGNED: {ItemState.ASSIGNED},
    ItemState.ASSIGNED: {ItemState.REASSIGNED, ItemState.REMOVED},
    ItemState.REASSIGNED: {ItemState.REASSIGNED, ItemState.REMOVED},
    ItemState.REMOVED: set(),
}


def container_id_for(job_id: str, parent_id: Optional[str] = None) -> str:
    """Container id for a job's top-level tasks or for one task's subtasks."""
    if parent_id:
        return f"job:{job_id}/parent:{parent_id}"
    return f"job:{job_id}"


def check_placement(after_id: Optional[str], before_id: Optional[str], position: Optional[str]) -> None:
    """Reject more than one placement, or a position other than first/last."""
    given = [name for name, value in (("after_id", after_id), ("before_id", before_id), ("position", position)) if value]
    if len(given) > 1:
        raise ContractViolation(f"Specify at most one of after_id, before_id, position (got {given})")
    if position is not None and position not in PLACEMENTS:
        raise ContractViolation(f"position must be one of {list(PLACEMENTS)}, got {position!r}")


@dataclass(frozen=True)
class Move:
    """Where to put an existing item; no placement means the end."""

    item_id: str
    after_id: Optional[str] = None
    before_id: Optional[str] = None
    position: Optional[str] = None

    def __post_init__(self) -> None:
        check_placement(self.after_id, self.before_id, self.position)


@dataclass
class OrderedItem:
    id: str
    key: Optional[PositionKey] = None
    state: ItemState = ItemState.UNASSIGNED
    repositioned_after_id: Optional[str] = None
    reordered_at: Optional[str] = None

    def transition(
        self,
        new_state: ItemState,
        key: Optional[PositionKey] = None,
        *,
        after_id: Optional[str] = None,
    ) -> None:
        """Move to *new_state*, replacing the key unless the item is being removed."""
        if new_state not in _VALID_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Item {self.id} cannot go from {self.state.value} to {new_state.value}"
            )
        if new_state == ItemState.REMOVED:
            self.key = None
        else:
            if key is None:
                raise InvalidTransitionError(f"Item {self.id} needs a key to enter {new_state.value}")
            self.key = key
            self.repositioned_after_id = after_id
            self.reordered_at = _now_iso()
        self.state = new_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key.encode() if self.key else None,
            "state": self.state.value,
            "repositioned_after_id": self.repositioned_after_id,
            "reordered_at": self.reordered_at,
        }
