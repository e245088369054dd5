from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Protocol

from kubernetes.client import ApiException, CoreV1Api

from maintenance_controller.src.budget import AdmissionBudget
from maintenance_controller.src.kube import patch_unit_annotations
from maintenance_controller.src.metrics import METRICS
from maintenance_controller.src.units import (
    MAINTENANCE_APPROVED_ANNOTATION,
    MAINTENANCE_IN_PROGRESS_ANNOTATION,
    NEEDS_MAINTENANCE_ANNOTATION,
    MalformedKeyError,
    WorkerUnit,
    split_key,
)


class ReconcileError(Exception):
    """Base class for reconciliation failures.

    ``retryable`` tells the controller loop whether re-queueing with backoff
    can possibly help.
    """

    retryable = True

    def __init__(self, key: str, message: str) -> None:
        super().__init__(message)
        self.key = key


class InvalidKeyError(ReconcileError):
    """The queued key is not ``namespace/name``; retrying cannot fix it."""

    retryable = False


class BudgetExceededError(ReconcileError):
    """Too many units are unavailable to admit another one right now."""

    def __init__(self, key: str, unavailable: int, max_unavailable: int) -> None:
        super().__init__(
            key,
            f"Too many units unavailable ({unavailable}/{max_unavailable}); "
            f"deferring maintenance of {key}",
        )
        self.unavailable = unavailable
        self.max_unavailable = max_unavailable


class UpdateFailedError(ReconcileError):
    """Writing the approval annotation failed (conflict, API outage, ...)."""

    def __init__(self, key: str, cause: ApiException) -> None:
        super().__init__(
            key,
            f"Failed to set {MAINTENANCE_APPROVED_ANNOTATION} annotation on {key}: "
            f"{cause.status} {cause.reason}",
        )
        self.status = cause.status


class Outcome(str, enum.Enum):
    NOT_FOUND = "not_found"
    NOT_REQUESTED = "not_requested"
    ALREADY_ADMITTED = "already_admitted"
    APPROVED = "approved"


@dataclass(frozen=True)
class ReconcileResult:
    """Successful outcome of one reconciliation."""

    key: str
    outcome: Outcome


class UnitReader(Protocol):
    def get(self, key: str) -> WorkerUnit | None: ...


UnitWriter = Callable[[WorkerUnit], None]


class Reconciler:
    """Decides, per unit, whether a maintenance request may proceed now.

    Reads only from the cache; the single side effect is one conditional
    patch adding ``maintenance-approved`` when the budget allows it.
    """

    def __init__(
        self,
        cache: UnitReader,
        budget: AdmissionBudget,
        core_api: CoreV1Api | None = None,
        writer: UnitWriter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if writer is None:
            if core_api is None:
                raise ValueError("either core_api or writer is required")
            writer = partial(patch_unit_annotations, core_api)
        self.cache = cache
        self.budget = budget
        self.writer = writer
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, key: str) -> ReconcileResult:
        try:
            split_key(key)
        except MalformedKeyError as exc:
            raise InvalidKeyError(key, str(exc)) from exc

        unit = self.cache.get(key)
        if unit is None:
            self.logger.debug("Unit %s no longer exists; nothing to do", key)
            return self._result(key, Outcome.NOT_FOUND)

        reserved = self.budget.observe(unit)

        if not unit.has_annotation(NEEDS_MAINTENANCE_ANNOTATION):
            return self._result(key, Outcome.NOT_REQUESTED)

        if (
            unit.has_annotation(MAINTENANCE_APPROVED_ANNOTATION)
            or unit.has_annotation(MAINTENANCE_IN_PROGRESS_ANNOTATION)
            or reserved
        ):
            self.logger.debug("Maintenance of %s already admitted", key)
            return self._result(key, Outcome.ALREADY_ADMITTED)

        with self.budget.admission():
            unavailable = self.budget.unavailable_count()
            if self.budget.exceeded(unavailable):
                METRICS.reconcile_total.labels(outcome="budget_exceeded").inc()
                raise BudgetExceededError(key, unavailable, self.budget.max_unavailable)

            approved = unit.with_annotations({MAINTENANCE_APPROVED_ANNOTATION: ""})
            self.logger.info(
                "Approving maintenance of %s (%d/%d unavailable)",
                key,
                unavailable,
                self.budget.max_unavailable,
            )
            try:
                self.writer(approved)
            except ApiException as exc:
                METRICS.reconcile_total.labels(outcome="update_failed").inc()
                raise UpdateFailedError(key, exc) from exc
            self.budget.reserve(unit)

        METRICS.approvals_total.inc()
        return self._result(key, Outcome.APPROVED)

    @staticmethod
    def _result(key: str, outcome: Outcome) -> ReconcileResult:
        METRICS.reconcile_total.labels(outcome=outcome.value).inc()
        return ReconcileResult(key=key, outcome=outcome)
