"""Key allocation: between, first, last and rebalance.

``between`` works digit by digit.  Digits shared by both bounds are copied,
then the first differing digit is split in the middle.  When the two digits
are adjacent there is no room at that resolution, so the allocator either
takes the high bound's leading digit (if the high bound is longer) or keeps
the low digit and continues one level deeper against an open upper bound.
Going deeper is always possible, so ``between`` never runs out of keys; the
only cost is key length, which ``needs_rebalance`` watches.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from loguru import logger

from ..constants import DEFAULT_MAX_KEY_DEPTH, DEFAULT_MIN_ITEMS_FOR_REBALANCE
from .errors import InvalidBoundsError
from .keys import BASE, DIGITS, ZERO, PositionKey, digit_value


@dataclass(frozen=True)
class RebalancePolicy:
    """When to replace long keys with evenly spaced ones."""

    max_key_depth: int = DEFAULT_MAX_KEY_DEPTH
    min_items: int = DEFAULT_MIN_ITEMS_FOR_REBALANCE
    enabled: bool = True


def _midpoint(low: str, high: Optional[str]) -> str:
    """Digits strictly between ``0.low`` and ``0.high`` (``None`` means 1)."""
    out: list[str] = []
    while True:
        if high is not None:
            n = 0
            while n < len(high) and (low[n] if n < len(low) else ZERO) == high[n]:
                n += 1
            if n:
                if n == len(high):
                    raise InvalidBoundsError(f"No key fits between {low!r} and {high!r}")
                out.append(high[:n])
                low, high = low[n:], high[n:]
        lo = digit_value(low[0]) if low else 0
        hi = digit_value(high[0]) if high is not None else BASE
        if hi - lo > 1:
            out.append(DIGITS[(lo + hi + 1) // 2])
            return "".join(out)
        if high is not None and len(high) > 1:
            out.append(high[0])
            return "".join(out)
        out.append(DIGITS[lo])
        low, high = low[1:], None


def _to_digits(value: int, depth: int) -> str:
    chars = []
    for _ in range(depth):
        value, rem = divmod(value, BASE)
        chars.append(DIGITS[rem])
    return "".join(reversed(chars)).rstrip(ZERO)


class PositionAllocator:
    """Compute position keys relative to neighbours.

    All methods are deterministic: the same bounds always produce the same
    key, which keeps orderings reproducible across runs.
    """

    def __init__(self, policy: Optional[RebalancePolicy] = None) -> None:
        self.policy = policy or RebalancePolicy()

    def first(self, before: Optional[PositionKey] = None) -> PositionKey:
        """Key for an empty collection, or a key sorting before *before*."""
        if before is None:
            return PositionKey(_midpoint("", None))
        digits = before.digits
        for i, ch in enumerate(digits):
            value = digit_value(ch)
            if value >= 2:
                return PositionKey(digits[:i] + DIGITS[value - 1])
        return self.between(None, before)

    def last(self, after: PositionKey) -> PositionKey:
        """Key sorting after *after*, as short as possible."""
        digits = after.digits
        for i, ch in enumerate(digits):
            value = digit_value(ch)
            if value < BASE - 1:
                return PositionKey(digits[:i] + DIGITS[value + 1])
        return PositionKey(digits + _midpoint("", None))

    def between(self, low: Optional[PositionKey], high: Optional[PositionKey]) -> PositionKey:
        """Key strictly between *low* and *high*; ``None`` leaves that side open.

        Raises:
            InvalidBoundsError: if ``low >= high``.
        """
        if low is not None and high is not None and low >= high:
            raise InvalidBoundsError(f"between() requires low < high, got {low} >= {high}")
        return PositionKey(_midpoint(low.digits if low else "", high.digits if high else None))

    def rebalance(
        self,
        item_ids: Sequence[str],
        avoid: Iterable[PositionKey] = (),
    ) -> list[tuple[str, PositionKey]]:
        """Evenly spaced keys for *item_ids*, in the given order.

        Consecutive keys are at least one full digit apart so that the next
        ``BASE - 1`` insertions at any boundary stay at the same depth.  Keys in
        *avoid* are never handed out.
        """
        count = len(item_ids)
        if count == 0:
            return []
        depth = 1
        while BASE ** depth < (count + 1) * BASE:
            depth += 1
        span = BASE ** depth
        keys = [PositionKey(_to_digits((i + 1) * span // (count + 1), depth)) for i in range(count)]

        retired = set(avoid)
        if retired:
            for i, key in enumerate(keys):
                upper = keys[i + 1] if i + 1 < count else None
                while key in retired:
                    key = self.between(key, upper)
                keys[i] = key

        logger.debug("Rebalanced {} keys at depth {}", count, depth)
        return list(zip(item_ids, keys))

    def needs_rebalance(self, keys: Iterable[PositionKey]) -> bool:
        """True if the policy says the keys have grown too long."""
        if not self.policy.enabled:
            return False
        keys = list(keys)
        if len(keys) < self.policy.min_items:
            return False
        return any(key.depth > self.policy.max_key_depth for key in keys)
