"""
Sorted set of non-overlapping half-open time ranges.
"""
import bisect
from datetime import datetime
from typing import Hashable, Iterator, List, Optional, Tuple


class IntervalSet:
    """
    Ranges are ``[start, end)``; touching ranges do not overlap.

    Every entry carries an optional owner tag so a caller can release all the
    ranges it reserved for one task.
    """

    def __init__(self):
        self._starts: List[datetime] = []
        self._entries: List[Tuple[datetime, datetime, Optional[Hashable]]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[datetime, datetime, Optional[Hashable]]]:
        return iter(list(self._entries))

    def overlapping(self, start: datetime, end: datetime) -> List[Tuple[datetime, datetime, Optional[Hashable]]]:
        """Entries intersecting ``[start, end)``."""
        if end <= start:
            return []
        # Only the entry just before ``start`` can reach into the range from the left
        index = max(bisect.bisect_right(self._starts, start) - 1, 0)
        hits = []
        for entry in self._entries[index:]:
            entry_start, entry_end, _ = entry
            if entry_start >= end:
                break
            if entry_end > start:
                hits.append(entry)
        return hits

    def is_free(self, start: datetime, end: datetime) -> bool:
        return not self.overlapping(start, end)

    def insert_if_free(self, start: datetime, end: datetime, tag: Optional[Hashable] = None) -> bool:
        """Insert ``[start, end)`` unless it overlaps an existing entry."""
        if end <= start:
            raise ValueError("Interval end must be after start")
        if not self.is_free(start, end):
            return False
        index = bisect.bisect_left(self._starts, start)
        self._starts.insert(index, start)
        self._entries.insert(index, (start, end, tag))
        return True

    def release(self, tag: Hashable) -> int:
        """Remove every entry owned by ``tag``; returns how many were removed."""
        kept = [entry for entry in self._entries if entry[2] != tag]
        removed = len(self._entries) - len(kept)
        self._entries = kept
        self._starts = [entry[0] for entry in kept]
        return removed

    def ranges(self, tag: Optional[Hashable] = None) -> List[Tuple[datetime, datetime]]:
        return [(s, e) for s, e, t in self._entries if tag is None or t == tag]
