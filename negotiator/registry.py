"""
Id keyed registry of live coordinators.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterator, List

from .coordinator import NegotiationCoordinator
from .errors import CoordinatorNotFound


class CoordinatorRegistry:
    """Track the coordinators of every connected peer."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._coordinators: Dict[str, NegotiationCoordinator] = {}

    def __len__(self) -> int:
        return self.count()

    def __iter__(self) -> Iterator[NegotiationCoordinator]:
        return iter(self.snapshot())

    def __contains__(self, coordinator_id: object) -> bool:
        with self._lock:
            return coordinator_id in self._coordinators

    def add(self, coordinator: NegotiationCoordinator) -> NegotiationCoordinator:
        with self._lock:
            self._coordinators[coordinator.id] = coordinator
        return coordinator

    def remove(self, coordinator: NegotiationCoordinator) -> bool:
        with self._lock:
            return self._coordinators.pop(coordinator.id, None) is not None

    def get(self, coordinator_id: str) -> NegotiationCoordinator:
        with self._lock:
            try:
                return self._coordinators[coordinator_id]
            except KeyError:
                raise CoordinatorNotFound(f"coordinator {coordinator_id!r} not found") from None

    def count(self) -> int:
        with self._lock:
            return len(self._coordinators)

    def snapshot(self) -> List[NegotiationCoordinator]:
        with self._lock:
            return list(self._coordinators.values())
