"""Sets of half-open integer ranges, kept sorted, disjoint and merged."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class Range:
    """A run of ``length`` positions beginning at ``start``."""

    start: int
    length: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.length < 0:
            raise ValueError(
                f"range start and length must be non-negative, got {self.start}, {self.length}"
            )

    def end(self) -> int:
        """Return the first position after the range."""
        return self.start + self.length

    def __str__(self) -> str:
        return f"[{self.start}, {self.end() - 1}]"


class RangeSet:
    """An ordered collection of non-overlapping, non-touching ranges."""

    def __init__(self, ranges: Iterable[Range] = ()) -> None:
        self._ranges: list[Range] = []
        for item in ranges:
            self.add_range(item)

    def __str__(self) -> str:
        return "(" + "".join(str(item) for item in self._ranges) + ")"

    def __repr__(self) -> str:
        return f"RangeSet({self._ranges!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def is_empty(self) -> bool:
        return not self._ranges

    def __len__(self) -> int:
        """Total number of positions covered by the set."""
        return sum(item.length for item in self._ranges)

    def get_range(self, index: int) -> Range:
        return self._ranges[index]

    def __iter__(self) -> Iterator[Range]:
        return iter(list(self._ranges))

    def contains(self, value: int) -> bool:
        for item in self._ranges:
            if value < item.start:
                return False
            if value < item.end():
                return True
        return False

    def __contains__(self, value: object) -> bool:
        return isinstance(value, int) and self.contains(value)

    def contained_length_from_value(self, value: int) -> int:
        """Length of the contiguous covered run starting at ``value``."""
        for item in self._ranges:
            if value < item.start:
                return 0
            if value < item.end():
                return item.end() - value
        return 0

    def contains_range_set(self, other: RangeSet) -> bool:
        return all(
            self.contained_length_from_value(item.start) >= item.length
            for item in other._ranges
        )

    def add_range(self, range: Range) -> None:
        if range.length == 0:
            return

        ranges = self._ranges
        for index, existing in enumerate(ranges):
            if range.end() < existing.start:
                ranges.insert(index, range)
                return
            if range.start <= existing.end() and existing.start <= range.end():
                new_start = range.start
                new_end = range.end()
                while index < len(ranges) and ranges[index].start <= new_end:
                    new_end = max(new_end, ranges[index].end())
                    new_start = min(new_start, ranges[index].start)
                    del ranges[index]
                ranges.insert(index, Range(new_start, new_end - new_start))
                return

        ranges.append(range)

    def add_range_set(self, other: RangeSet) -> None:
        for item in list(other._ranges):
            self.add_range(item)

    def union(self, other: RangeSet) -> RangeSet:
        result = self.copy()
        result.add_range_set(other)
        return result

    def subtract_range(self, range: Range) -> None:
        if range.length == 0:
            return

        ranges = self._ranges
        for index, existing in enumerate(ranges):
            if range.end() <= existing.start:
                return

            if range.start <= existing.start < range.end():
                while index < len(ranges) and ranges[index].end() <= range.end():
                    del ranges[index]
                if index < len(ranges) and ranges[index].start < range.end():
                    current = ranges[index]
                    ranges[index] = Range(range.end(), current.end() - range.end())
                return

            if range.end() < existing.end():
                first = Range(existing.start, range.start - existing.start)
                ranges[index] = Range(range.end(), existing.end() - range.end())
                ranges.insert(index, first)
                return

            if range.start < existing.end():
                ranges[index] = Range(existing.start, range.start - existing.start)

    def subtract_range_set(self, other: RangeSet) -> None:
        for item in list(other._ranges):
            self.subtract_range(item)

    def minus(self, other: RangeSet) -> RangeSet:
        result = self.copy()
        result.subtract_range_set(other)
        return result

    def intersection(self, other: RangeSet) -> RangeSet:
        result = RangeSet()
        mine, theirs = self._ranges, other._ranges
        i = j = 0
        while i < len(mine) and j < len(theirs):
            a, b = mine[i], theirs[j]
            if a.end() <= b.start:
                i += 1
            elif b.end() <= a.start:
                j += 1
            else:
                start = max(a.start, b.start)
                end = min(a.end(), b.end())
                result.add_range(Range(start, end - start))
                if a.end() <= b.end():
                    i += 1
                else:
                    j += 1
        return result

    def copy(self) -> RangeSet:
        result = RangeSet()
        result._ranges = list(self._ranges)
        return result