"""Causal ordering primitives: vector clocks and Lamport counters."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ClockOrdering(StrEnum):
    """Relation of one vector clock to another."""

    EQUAL = "equal"
    BEFORE = "before"  # strictly happened-before the other clock
    AFTER = "after"  # strictly happened-after the other clock
    CONCURRENT = "concurrent"


@dataclass(frozen=True)
class VectorClock:
    """Immutable per-device counter map.

    Zero entries are dropped on construction, so a clock that never saw a
    device compares equal to one holding ``0`` for it.
    """

    counters: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        cleaned: dict[str, int] = {}
        for device_id, value in self.counters.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"Invalid vector clock entry {device_id!r}: {value!r}")
            if value:
                cleaned[str(device_id)] = value
        object.__setattr__(self, "counters", cleaned)

    def get(self, device_id: str) -> int:
        """Counter for a device, 0 if unknown."""
        return self.counters.get(device_id, 0)

    @property
    def is_empty(self) -> bool:
        return not self.counters

    def increment(self, device_id: str) -> VectorClock:
        """Return a copy with ``device_id``'s own entry advanced by one."""
        updated = dict(self.counters)
        updated[device_id] = updated.get(device_id, 0) + 1
        return VectorClock(updated)

    def merge(self, other: VectorClock) -> VectorClock:
        """Element-wise maximum of both clocks."""
        merged = dict(self.counters)
        for device_id, value in other.counters.items():
            if value > merged.get(device_id, 0):
                merged[device_id] = value
        return VectorClock(merged)

    def compare(self, other: VectorClock) -> ClockOrdering:
        """Compare this clock against ``other``."""
        has_less = False
        has_greater = False
        for device_id in self.counters.keys() | other.counters.keys():
            mine = self.get(device_id)
            theirs = other.get(device_id)
            if mine < theirs:
                has_less = True
            elif mine > theirs:
                has_greater = True
            if has_less and has_greater:
                return ClockOrdering.CONCURRENT

        if has_greater:
            return ClockOrdering.AFTER
        if has_less:
            return ClockOrdering.BEFORE
        return ClockOrdering.EQUAL

    def dominates(self, other: VectorClock) -> bool:
        """True when this clock is strictly after ``other``."""
        return self.compare(other) == ClockOrdering.AFTER

    def to_dict(self) -> dict[str, int]:
        return dict(self.counters)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> VectorClock:
        if not data:
            return cls()
        return cls({str(k): int(v) for k, v in data.items()})

    def __str__(self) -> str:
        inner = ", ".join(f"{k}:{v}" for k, v in sorted(self.counters.items()))
        return "{" + inner + "}"


@dataclass(frozen=True)
class LamportClock:
    """Single logical counter for one replica."""

    value: int = 0

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError(f"Lamport counter cannot be negative: {self.value}")

    def tick(self) -> LamportClock:
        """Advance for a local mutation."""
        return LamportClock(self.value + 1)

    def observe(self, remote: int) -> LamportClock:
        """Advance past a remote value greater than the local one.

        ``local = max(local, remote) + 1`` when the remote counter is ahead;
        an older or equal remote value leaves the counter unchanged.
        """
        if remote > self.value:
            return LamportClock(max(self.value, remote) + 1)
        return self
