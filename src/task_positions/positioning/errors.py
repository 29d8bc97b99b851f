"""Exception hierarchy for position assignment."""

from __future__ import annotations


class PositioningError(Exception):
    """Base class for all positioning errors."""


class ContractViolation(PositioningError):
    """The caller broke an operation's contract. Never retried."""


class InvalidBoundsError(ContractViolation, ValueError):
    """``between`` was called with ``low >= high``."""


class InvalidKeyError(ContractViolation, ValueError):
    """A serialized key could not be decoded."""


class UnknownItemError(ContractViolation, KeyError):
    """An operation referenced an item that is not in the collection."""

    def __init__(self, item_id: str, container_id: str | None = None) -> None:
        self.item_id = item_id
        self.container_id = container_id
        where = f" in {container_id}" if container_id else ""
        super().__init__(f"Item {item_id} not found{where}")

    def __str__(self) -> str:
        return str(self.args[0])


class DuplicateItemError(ContractViolation):
    """An item id is already present in the collection."""


class KeyCollisionError(ContractViolation):
    """Two distinct items would share the same key."""


class InvalidTransitionError(ContractViolation):
    """An item's key lifecycle was driven through an illegal transition."""


class PersistenceError(PositioningError):
    """The persistence boundary reported a failure."""


class RebalanceError(PersistenceError):
    """A rebalance could not be committed; no keys were changed."""


class LoadSupersededError(PositioningError):
    """A load finished after a newer load started and was discarded."""
