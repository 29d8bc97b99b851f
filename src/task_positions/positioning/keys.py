"""Position keys: arbitrary-precision fractions written in base 62.

A key ``"V3"`` stands for the fraction ``0.V3`` (base 62) and always lies in
the open interval (0, 1).  Digits are ``0-9A-Za-z``, whose ASCII order matches
their numeric order, and a key never ends in ``0``.  With trailing zeros ruled
out every fraction has exactly one spelling, so ordinary string comparison is
the same as numeric comparison and keys can be stored, indexed and sorted as
plain strings.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidKeyError

DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
BASE = len(DIGITS)
ZERO = DIGITS[0]
_DIGIT_VALUES = {ch: i for i, ch in enumerate(DIGITS)}


def digit_value(ch: str) -> int:
    return _DIGIT_VALUES[ch]


@dataclass(frozen=True, order=True)
class PositionKey:
    """Immutable, totally ordered sort key for one item."""

    digits: str

    def __post_init__(self) -> None:
        _validate(self.digits)

    @property
    def depth(self) -> int:
        """Number of digits, i.e. the key's resolution."""
        return len(self.digits)

    def encode(self) -> str:
        return self.digits

    @classmethod
    def decode(cls, raw: object) -> "PositionKey":
        if not isinstance(raw, str):
            raise InvalidKeyError(f"Position key must be a string, got {type(raw).__name__}")
        return cls(raw)

    def __str__(self) -> str:
        return self.digits


def _validate(digits: object) -> None:
    if not isinstance(digits, str) or not digits:
        raise InvalidKeyError("Position key must be a non-empty string")
    bad = sorted({ch for ch in digits if ch not in _DIGIT_VALUES})
    if bad:
        raise InvalidKeyError(f"Position key {digits!r} contains invalid characters: {''.join(bad)!r}")
    if digits.endswith(ZERO):
        raise InvalidKeyError(f"Position key {digits!r} must not end with {ZERO!r}")


def compare(a: PositionKey, b: PositionKey) -> int:
    """Return -1, 0 or 1 as *a* sorts before, equal to, or after *b*."""
    if a.digits < b.digits:
        return -1
    if a.digits > b.digits:
        return 1
    return 0
