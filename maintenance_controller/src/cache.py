from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from maintenance_controller.src.metrics import METRICS
from maintenance_controller.src.units import DeletedFinalStateUnknown, WorkerUnit


class UnitEventHandler(Protocol):
    def on_add(self, unit: WorkerUnit) -> None: ...

    def on_update(self, old: WorkerUnit, new: WorkerUnit) -> None: ...

    def on_delete(self, unit: WorkerUnit | DeletedFinalStateUnknown) -> None: ...


class FleetCache:
    """Watch-fed, read-only mirror of the Pods in one namespace.

    The cache lists the namespace once, then streams watch events from the
    list's ``resourceVersion``.  Every change is applied to the local store
    and then fanned out to the registered handlers.  Readers (workers and
    the admission budget) never call the API server.

    A separate resync thread re-delivers every cached unit through
    ``on_update(unit, unit)`` each ``resync_period_seconds``.  This is what
    guarantees convergence when a watch event is lost in transit.

    Only the thread running :meth:`run` mutates ``_store``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        label_selector: str | None = None,
        resync_period_seconds: float = 10.0,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.label_selector = label_selector
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, WorkerUnit] = {}
        self._store_lock = threading.RLock()
        self._handlers: list[UnitEventHandler] = []
        self._synced = threading.Event()
        self._run_exited = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(self, handler: UnitEventHandler) -> None:
        self._handlers.append(handler)

    def get(self, key: str) -> WorkerUnit | None:
        with self._store_lock:
            return self._store.get(key)

    def list(self) -> list[WorkerUnit]:
        with self._store_lock:
            return list(self._store.values())

    def keys(self) -> list[str]:
        with self._store_lock:
            return list(self._store)

    def synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float, stop_event: threading.Event | None = None) -> bool:
        """Block until the initial list completes, *timeout* elapses, or waiting is pointless.

        Returns early with ``False`` when *stop_event* is set or :meth:`run`
        exited without ever syncing (e.g. RBAC denial on the initial list).
        """
        deadline = time.monotonic() + timeout
        while not self._synced.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if stop_event is not None and stop_event.is_set():
                break
            if self._run_exited.is_set():
                break
            self._synced.wait(timeout=min(0.1, remaining))
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"namespace": self.namespace}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    # ------------------------------------------------------------------
    # Handler fan-out
    # ------------------------------------------------------------------

    def _notify(self, method: str, *args: Any) -> None:
        for handler in self._handlers:
            try:
                getattr(handler, method)(*args)
            except Exception:
                self.logger.exception("Event handler %s failed", method)

    # ------------------------------------------------------------------
    # Store mutation (watch thread only)
    # ------------------------------------------------------------------

    def _to_unit(self, obj: Any) -> WorkerUnit | None:
        try:
            return WorkerUnit.from_api_object(obj)
        except ValueError:
            self.logger.warning("Skipping object without usable metadata: %r", obj)
            return None

    def _replace_store(self, listing: Any) -> None:
        """Swap in a full listing, emitting add/update for present units and
        tombstone deletes for units that vanished since the previous list."""
        fresh: dict[str, WorkerUnit] = {}
        for obj in getattr(listing, "items", None) or []:
            unit = self._to_unit(obj)
            if unit is not None:
                fresh[unit.key] = unit

        with self._store_lock:
            previous = self._store
            self._store = fresh
            METRICS.cached_units.set(len(fresh))

        for key, unit in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_add", unit)
            else:
                self._notify("on_update", old, unit)
        for key, old in previous.items():
            if key not in fresh:
                self.logger.info("Unit %s vanished while the watch was down", key)
                self._notify("on_delete", DeletedFinalStateUnknown(key=key, last_known=old))

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return
        unit = self._to_unit(obj)
        if unit is None:
            return

        with self._store_lock:
            old = self._store.get(unit.key)
            if event_type == "DELETED":
                self._store.pop(unit.key, None)
            else:
                self._store[unit.key] = unit
            METRICS.cached_units.set(len(self._store))

        if event_type == "DELETED":
            self._notify("on_delete", old or unit)
        elif old is None:
            self._notify("on_add", unit)
        else:
            self._notify("on_update", old, unit)

    def resync(self) -> int:
        """Re-deliver every cached unit as an update; returns how many were sent."""
        units = self.list()
        for unit in units:
            self._notify("on_update", unit, unit)
        METRICS.resyncs_total.inc()
        self.logger.debug("Resynced %d cached unit(s)", len(units))
        return len(units)

    def _resync_loop(self, stop: threading.Event, watch_done: threading.Event) -> None:
        while not watch_done.wait(timeout=self.resync_period_seconds):
            if self._should_stop(stop):
                return
            self.resync()

    # ------------------------------------------------------------------
    # List-then-watch loop
    # ------------------------------------------------------------------

    def _initial_list(self, stop: threading.Event) -> tuple[bool, str | None]:
        """Retry the first list until it succeeds; returns ``(synced, resourceVersion)``."""
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self.core_api.list_namespaced_pod(**self._list_kwargs())
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._replace_store(initial)
                self._synced.set()
                self.logger.info(
                    "Fleet cache synced with %d unit(s); watching from resourceVersion %s",
                    len(self.keys()),
                    resource_version,
                )
                return True, resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return False, None
                self.logger.exception("Initial Pod list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Pod list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)
        return False, None

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch Pods until stopped.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash the controller.
        2. Seeds the store from that list, notifies handlers and marks the
           cache synced.
        3. Streams watch events from the list's ``resourceVersion``.
        4. On ``410 Gone`` re-lists; units missing from the fresh listing are
           delivered as :class:`DeletedFinalStateUnknown` tombstones.
        5. On transient errors, backs off with jitter (capped at 30 s).

        ``401`` / ``403`` responses are configuration errors (RBAC/auth) and
        terminate the loop.  If that happens before the first sync the
        controller's sync timeout turns it into a fatal startup error.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        self._run_exited.clear()

        watch_done = threading.Event()
        resync_thread: threading.Thread | None = None
        try:
            synced, resource_version = self._initial_list(stop)
            if not synced:
                return

            if self.resync_period_seconds > 0:
                resync_thread = threading.Thread(
                    target=self._resync_loop,
                    args=(stop, watch_done),
                    name="fleet-cache-resync",
                    daemon=True,
                )
                resync_thread.start()

            self._watch_loop(stop, resource_version)
        finally:
            watch_done.set()
            if resync_thread is not None:
                resync_thread.join(timeout=5)
            self._run_exited.set()

    def _watch_loop(self, stop: threading.Event, resource_version: str | None) -> None:
        # Exponential backoff counter (seconds) for transient API errors.
        # Reset to 1 after every clean stream; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_namespaced_pod,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_watch_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                # Re-list to get a fresh snapshot and resume from its version.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = self.core_api.list_namespaced_pod(**self._list_kwargs())
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._replace_store(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
