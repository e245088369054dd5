from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

from maintenance_controller.src.metrics import METRICS
from maintenance_controller.src.units import (
    MAINTENANCE_APPROVED_ANNOTATION,
    WorkerUnit,
    is_unavailable,
)

LOGGER = logging.getLogger(__name__)


class UnitLister(Protocol):
    def list(self) -> list[WorkerUnit]: ...


class AdmissionBudget:
    """Counts unavailable units in the cached fleet against ``max_unavailable``.

    The count is computed from the cache rather than the API server, which
    trades a short staleness window for not hammering the API during churn.

    Without ``strict`` the check is a plain read: several workers can see the
    same count before any of their approvals land, so the fleet can end up
    at most ``workers - 1`` units over budget.

    With ``strict`` the check-then-write in the reconciler runs under
    :meth:`admission`, a process-wide lock, and every approval written by
    this process is held as a reservation until the cache shows the
    ``maintenance-approved`` annotation or any newer ``resourceVersion`` of
    the unit.  Reservations count as unavailable, so the cache lag after a
    write cannot cause a second approval.  Stale reservations are released
    both by :meth:`unavailable_count` and by :meth:`observe`.
    """

    def __init__(self, cache: UnitLister, max_unavailable: int = 1, strict: bool = False) -> None:
        if max_unavailable < 1:
            raise ValueError("max_unavailable must be >= 1")
        self.cache = cache
        self.max_unavailable = max_unavailable
        self.strict = strict
        self._admission_lock = threading.Lock()
        # key -> resourceVersion of the snapshot the approval was written from
        self._reservations: dict[str, str | None] = {}
        self._reservations_lock = threading.Lock()

    @staticmethod
    def _settled(unit: WorkerUnit | None, reserved_version: str | None) -> bool:
        """True once the cache has moved past the snapshot an approval was written from."""
        if unit is None:
            return True
        if unit.has_annotation(MAINTENANCE_APPROVED_ANNOTATION):
            return True
        return unit.resource_version != reserved_version

    def unavailable_count(self) -> int:
        units = self.cache.list()
        unavailable = {unit.key for unit in units if is_unavailable(unit)}

        if self.strict:
            present = {unit.key: unit for unit in units}
            with self._reservations_lock:
                for key, version in list(self._reservations.items()):
                    if self._settled(present.get(key), version):
                        del self._reservations[key]
                unavailable |= self._reservations.keys()

        count = len(unavailable)
        METRICS.unavailable_units.set(count)
        return count

    def exceeded(self, unavailable: int | None = None) -> bool:
        """Compare *unavailable* (a fresh count when omitted) against ``max_unavailable``."""
        if unavailable is None:
            unavailable = self.unavailable_count()
        return unavailable >= self.max_unavailable

    def reserve(self, unit: WorkerUnit) -> None:
        """Record an approval written from *unit* that the cache may not show yet."""
        if not self.strict:
            return
        with self._reservations_lock:
            self._reservations[unit.key] = unit.resource_version

    def observe(self, unit: WorkerUnit) -> bool:
        """Drop the reservation for *unit* once the cache reflects a newer version.

        Returns True while a reservation for the unit is still outstanding.
        """
        with self._reservations_lock:
            if unit.key not in self._reservations:
                return False
            if self._settled(unit, self._reservations[unit.key]):
                del self._reservations[unit.key]
                return False
            return True

    def reservations(self) -> set[str]:
        with self._reservations_lock:
            return set(self._reservations)

    @contextmanager
    def admission(self) -> Iterator[None]:
        """Serialize check-then-write when strict, otherwise a no-op."""
        if not self.strict:
            yield
            return
        with self._admission_lock:
            yield
