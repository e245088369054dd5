from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

NEEDS_MAINTENANCE_ANNOTATION = "needs-maintenance"
MAINTENANCE_APPROVED_ANNOTATION = "maintenance-approved"
MAINTENANCE_IN_PROGRESS_ANNOTATION = "maintenance-in-progress"


class MalformedKeyError(ValueError):
    """Raised when a reconciliation key cannot be split into namespace and name."""


@dataclass(frozen=True)
class WorkerUnit:
    """Immutable snapshot of one disruptable fleet member.

    Snapshots are shared between the cache and every worker, so they are
    never modified in place.  :meth:`with_annotations` returns a copy.
    """

    namespace: str
    name: str
    annotations: Mapping[str, str] = field(default_factory=dict)
    ready: bool = False
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def has_annotation(self, annotation: str) -> bool:
        return annotation in self.annotations

    def with_annotations(self, extra: Mapping[str, str]) -> WorkerUnit:
        return replace(self, annotations={**self.annotations, **extra})

    @classmethod
    def from_api_object(cls, obj: Any) -> WorkerUnit:
        """Build a snapshot from a Kubernetes object (``V1Pod`` or lookalike).

        ``metadata.annotations`` may be ``None`` on the wire; it is
        normalized to an empty mapping.
        """
        metadata = getattr(obj, "metadata", None)
        if metadata is None:
            raise ValueError("object has no metadata")
        name = getattr(metadata, "name", None)
        if not name:
            raise ValueError("object has no metadata.name")
        raw_annotations = getattr(metadata, "annotations", None)
        annotations = {
            str(k): ("" if v is None else str(v))
            for k, v in (raw_annotations or {}).items()
        }
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=name,
            annotations=annotations,
            ready=_ready_condition(obj),
            resource_version=getattr(metadata, "resource_version", None),
        )


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for a unit whose delete event was missed.

    Produced on re-list when a previously cached unit is gone.  Only the key
    is guaranteed to be meaningful; ``last_known`` is the stale snapshot.
    """

    key: str
    last_known: WorkerUnit | None = None


def _ready_condition(obj: Any) -> bool:
    status = getattr(obj, "status", None)
    conditions = getattr(status, "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "Ready":
            return getattr(condition, "status", None) == "True"
    return False


def split_key(key: str) -> tuple[str, str]:
    """Split ``namespace/name`` into its parts."""
    parts = key.split("/") if isinstance(key, str) else []
    if len(parts) != 2 or not all(parts):
        raise MalformedKeyError(f"unexpected key format: {key!r}")
    return parts[0], parts[1]


def deletion_handling_key(obj: Any) -> str:
    """Return the reconciliation key for a deleted object.

    Accepts a :class:`WorkerUnit`, a :class:`DeletedFinalStateUnknown`
    tombstone, or a raw API object carrying ``metadata``.
    """
    if isinstance(obj, (WorkerUnit, DeletedFinalStateUnknown)):
        return obj.key
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise ValueError(f"cannot derive key from {type(obj).__name__}")
    namespace = getattr(metadata, "namespace", None) or ""
    return f"{namespace}/{name}"


def is_unavailable(unit: WorkerUnit) -> bool:
    """Return True when *unit* counts against the admission budget.

    Approved-but-not-started units count too, so a burst of approvals cannot
    race ahead of the agent performing the maintenance.
    """
    if not unit.ready:
        return True
    if unit.has_annotation(MAINTENANCE_IN_PROGRESS_ANNOTATION):
        return True
    return unit.has_annotation(MAINTENANCE_APPROVED_ANNOTATION)
