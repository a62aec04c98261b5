"""Sorted map of pairwise disjoint ranges.

Lookup, neighbor search and splitting use binary search over the lower
bounds, so a single merging pass stays O(n log n).
"""
from __future__ import annotations

from bisect import bisect_right
from typing import Generic, Iterator, List, Optional, Tuple, TypeVar

from .tolerances import ToleranceRange

V = TypeVar("V")


def ranges_overlap(a: ToleranceRange, b: ToleranceRange) -> bool:
    if a.upper < b.lower or b.upper < a.lower:
        return False
    if a.upper == b.lower:
        return a.upper_closed and b.lower_closed
    if b.upper == a.lower:
        return b.upper_closed and a.lower_closed
    return True


def _lies_above(r: ToleranceRange, value: float) -> bool:
    return r.lower > value or (r.lower == value and not r.lower_closed)


class DisjointRangeMap(Generic[V]):
    def __init__(self) -> None:
        self._lowers: List[float] = []
        self._ranges: List[ToleranceRange] = []
        self._values: List[V] = []

    def __len__(self) -> int:
        return len(self._ranges)

    def items(self) -> Iterator[Tuple[ToleranceRange, V]]:
        return iter(list(zip(self._ranges, self._values)))

    def ranges(self) -> List[ToleranceRange]:
        return list(self._ranges)

    def _index_of(self, value: float) -> int:
        """Index of the range containing `value`, or -1."""
        i = bisect_right(self._lowers, value) - 1
        # an open lower bound equal to `value` can hide the previous range
        for j in (i, i - 1):
            if 0 <= j < len(self._ranges) and self._ranges[j].contains(value):
                return j
        return -1

    def get_entry(self, value: float) -> Optional[Tuple[ToleranceRange, V]]:
        i = self._index_of(value)
        if i < 0:
            return None
        return self._ranges[i], self._values[i]

    def get(self, value: float) -> Optional[V]:
        entry = self.get_entry(value)
        return None if entry is None else entry[1]

    def neighbors(self, value: float) -> Tuple[Optional[ToleranceRange], Optional[ToleranceRange]]:
        """Closest ranges strictly below and strictly above a value contained in no range."""
        i = bisect_right(self._lowers, value) - 1
        while i >= 0 and _lies_above(self._ranges[i], value):
            i -= 1
        lower = self._ranges[i] if i >= 0 else None
        upper = self._ranges[i + 1] if i + 1 < len(self._ranges) else None
        return lower, upper

    def clip_to_neighbors(self, proposed: ToleranceRange, anchor: float) -> ToleranceRange:
        """Shrink `proposed` so it overlaps no stored range.

        `anchor` lies inside `proposed` and inside no stored range. A clipped
        bound takes the neighbor's bound with the complementary open/closed
        type, so the two ranges abut without gap or overlap.
        """
        lower, upper = self.neighbors(anchor)
        lo, lo_closed = proposed.lower, proposed.lower_closed
        hi, hi_closed = proposed.upper, proposed.upper_closed
        if lower is not None and ranges_overlap(lower, ToleranceRange(lo, anchor, lo_closed, True)):
            lo, lo_closed = lower.upper, not lower.upper_closed
        if upper is not None and ranges_overlap(upper, ToleranceRange(anchor, hi, True, hi_closed)):
            hi, hi_closed = upper.lower, not upper.lower_closed
        return ToleranceRange(lo, hi, lo_closed, hi_closed)

    def put(self, rng: ToleranceRange, value: V) -> None:
        if rng.is_empty():
            raise ValueError(f"Cannot store empty range {rng!r}.")
        i = bisect_right(self._lowers, rng.lower)
        for j in (i - 1, i):
            if 0 <= j < len(self._ranges) and ranges_overlap(self._ranges[j], rng):
                raise ValueError(f"Range {rng!r} overlaps stored range {self._ranges[j]!r}.")
        # a closed lower bound sorts before an open one at the same value
        while (
            i > 0
            and self._lowers[i - 1] == rng.lower
            and rng.lower_closed
            and not self._ranges[i - 1].lower_closed
        ):
            i -= 1
        self._lowers.insert(i, rng.lower)
        self._ranges.insert(i, rng)
        self._values.insert(i, value)

    def remove(self, rng: ToleranceRange) -> V:
        for i in range(bisect_right(self._lowers, rng.lower) - 1, -1, -1):
            if self._ranges[i] == rng:
                self._lowers.pop(i)
                self._ranges.pop(i)
                return self._values.pop(i)
            if self._lowers[i] < rng.lower:
                break
        raise KeyError(rng)


__all__ = ["DisjointRangeMap", "ranges_overlap"]
