from __future__ import annotations

"""
Model whitelist kept by the ledger.

Membership is a dict from name to its slot in a dense list, so `names()`
is a plain copy and `remove()` is O(1): the last entry is moved into the
freed slot. Listing order after a removal is therefore not insertion order.
"""

from typing import Dict, Iterable, Iterator, List


class ModelRegistry:
    __slots__ = ("_index", "_names")

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._index: Dict[str, int] = {}
        self._names: List[str] = []
        for n in names:
            self.add(n)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._names))

    def add(self, name: str) -> bool:
        """Append `name`; returns False when it was already present."""
        if name in self._index:
            return False
        self._index[name] = len(self._names)
        self._names.append(name)
        return True

    def remove(self, name: str) -> bool:
        """Drop `name` by swapping the last entry into its slot; False when absent."""
        idx = self._index.pop(name, None)
        if idx is None:
            return False
        last = self._names.pop()
        if last != name:
            self._names[idx] = last
            self._index[last] = idx
        return True

    def names(self) -> List[str]:
        return list(self._names)


__all__ = ["ModelRegistry"]
