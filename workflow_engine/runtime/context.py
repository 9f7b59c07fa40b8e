# workflow_engine/runtime/context.py
"""
Context Store - versioned key/value state carried through a run.

The shared Context is append-only: every merge appends entries to a history
log and bumps the generation counter. Steps never touch it directly; they read
through a ContextView and propose additions, which the orchestrator merges.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple


class _Absent:
    """Sentinel returned by reads of keys that were never written"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()

INITIAL_SOURCE = "__initial__"


@dataclass(frozen=True)
class ContextEntry:
    key: str
    value: Any
    generation: int
    source: str


class Context:
    """
    Append-only mapping with a generation counter.

    Only the orchestrator calls ``merge``; everything else reads.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._history: List[ContextEntry] = []
        self._latest: Dict[str, ContextEntry] = {}
        self.generation = 0
        if initial:
            self.merge(INITIAL_SOURCE, initial)

    def merge(self, source: str, writes: Mapping[str, Any]) -> int:
        """
        Append a batch of writes as one generation.

        Args:
            source: Step id (or INITIAL_SOURCE) that produced the writes
            writes: Key/value additions, applied in iteration order

        Returns:
            The new generation number (unchanged if ``writes`` is empty)
        """
        if not writes:
            return self.generation

        self.generation += 1
        for key, value in writes.items():
            entry = ContextEntry(key=str(key), value=copy.deepcopy(value), generation=self.generation, source=source)
            self._history.append(entry)
            self._latest[entry.key] = entry
        return self.generation

    def read(self, key: str) -> Any:
        entry = self._latest.get(key)
        return ABSENT if entry is None else entry.value

    def entry(self, key: str) -> Optional[ContextEntry]:
        return self._latest.get(key)

    def history(self, key: Optional[str] = None) -> List[ContextEntry]:
        if key is None:
            return list(self._history)
        return [entry for entry in self._history if entry.key == key]

    def __contains__(self, key: object) -> bool:
        return key in self._latest

    def __len__(self) -> int:
        return len(self._latest)

    def keys(self) -> List[str]:
        return list(self._latest)

    def to_dict(self) -> Dict[str, Any]:
        return {key: copy.deepcopy(entry.value) for key, entry in self._latest.items()}

    def view(self) -> ContextView:
        """Read-only snapshot of everything merged so far."""
        return ContextView(self.to_dict(), generation=self.generation)


class ContextView:
    """
    Read-only snapshot handed to a step, plus a buffer of proposed additions.

    Proposals are kept on the view and collected by the orchestrator after the
    step completes; they never reach the shared Context on their own.
    """

    def __init__(self, data: Mapping[str, Any], generation: int = 0):
        self._data = dict(data)
        self.generation = generation
        self._proposed: Dict[str, Any] = {}

    @classmethod
    def layered(cls, base: Mapping[str, Any], layers: Iterable[Mapping[str, Any]], generation: int = 0) -> ContextView:
        """Build a view from a base mapping with later layers overriding earlier ones."""
        data = dict(base)
        for layer in layers:
            data.update(layer)
        return cls(copy.deepcopy(data), generation=generation)

    def read(self, key: str) -> Any:
        return self._data.get(key, ABSENT)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def keys(self) -> List[str]:
        return list(self._data)

    def items(self) -> List[Tuple[str, Any]]:
        return list(self._data.items())

    def slice(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Subset of the view restricted to ``keys`` that are present."""
        return {key: self._data[key] for key in keys if key in self._data}

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def propose(self, key: str, value: Any) -> None:
        self._proposed[str(key)] = value

    @property
    def proposed(self) -> Dict[str, Any]:
        return dict(self._proposed)

    def child(self) -> ContextView:
        """Fresh view over the same data with an empty proposal buffer."""
        return ContextView(self._data, generation=self.generation)


def merge_group_writes(writes: List[Tuple[int, int, Mapping[str, Any]]]) -> Dict[str, Any]:
    """
    Merge writes proposed by members of one parallel group.

    Args:
        writes: ``(priority, declared_index, proposals)`` per member

    Returns:
        Combined proposals. When two members propose the same key, the
        higher priority wins; on equal priority the member declared earlier
        wins. Completion order never matters.
    """
    merged: Dict[str, Any] = {}
    # Apply lowest precedence first so higher precedence overwrites
    ordered = sorted(writes, key=lambda item: (item[0], -item[1]))
    for _priority, _index, proposals in ordered:
        merged.update(proposals)
    return merged
