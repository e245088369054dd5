from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Hashable

from kubernetes.client import CoreV1Api

from maintenance_controller.src.budget import AdmissionBudget
from maintenance_controller.src.cache import FleetCache
from maintenance_controller.src.config import ControllerConfig
from maintenance_controller.src.metrics import METRICS
from maintenance_controller.src.reconciler import Reconciler, ReconcileError
from maintenance_controller.src.units import (
    DeletedFinalStateUnknown,
    WorkerUnit,
    deletion_handling_key,
)
from maintenance_controller.src.workqueue import RateLimitingQueue


class CacheSyncTimeoutError(RuntimeError):
    """Raised when the fleet cache does not finish its initial list in time."""


class CacheWatchStoppedError(RuntimeError):
    """Raised when the fleet cache stops watching while the controller is running."""


class ControllerState(str, enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class _EnqueueHandler:
    """Cache event handler that only turns notifications into queue keys."""

    def __init__(self, queue: RateLimitingQueue, logger: logging.Logger) -> None:
        self.queue = queue
        self.logger = logger

    def on_add(self, unit: WorkerUnit) -> None:
        self.queue.add(unit.key)

    def on_update(self, old: WorkerUnit, new: WorkerUnit) -> None:
        self.queue.add(new.key)

    def on_delete(self, unit: WorkerUnit | DeletedFinalStateUnknown) -> None:
        try:
            self.queue.add(deletion_handling_key(unit))
        except ValueError:
            self.logger.warning("Could not derive key for deleted object %r", unit)


class MaintenanceController:
    """Drains the work queue with a pool of workers and applies the retry policy.

    Lifecycle::

        CREATED -> STARTING -> RUNNING -> STOPPING -> STOPPED

    ``STARTING`` runs the fleet cache and blocks until its first list is in
    (bounded by ``cache_sync_timeout_seconds``).  ``RUNNING`` starts
    ``workers`` threads.  On stop the queue is shut down, workers finish the
    item in hand and whatever is still queued, and the cache watch is
    interrupted.

    If the cache thread exits on its own while ``RUNNING`` (for example the
    watch is rejected with 401/403), ``ready`` is cleared at once and
    :meth:`run` stops the controller and raises
    :class:`CacheWatchStoppedError`.

    The queue guarantees a key is held by at most one worker, so per-unit
    reconciliation is serialized no matter how many workers run.  There is
    no ordering between different keys.
    """

    supervise_interval_seconds = 1.0

    def __init__(
        self,
        cache: FleetCache,
        queue: RateLimitingQueue,
        reconciler: Reconciler,
        workers: int = 1,
        max_attempts: int = 5,
        cache_sync_timeout_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.cache = cache
        self.queue = queue
        self.reconciler = reconciler
        self.workers = workers
        self.max_attempts = max_attempts
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []
        self._cache_thread: threading.Thread | None = None
        self._cache_exited = threading.Event()

        self.cache.add_event_handler(_EnqueueHandler(queue, self.logger))

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def _transition(self, state: ControllerState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        self.logger.info("Controller state %s -> %s", previous.value, state.value)

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _run_worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self) -> bool:
        """Take one key from the queue, reconcile it and apply the retry policy.

        Returns ``False`` once the queue is shut down and drained.
        """
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        # done() must run for every get(); it releases the key for other workers.
        try:
            error: Exception | None = None
            started = time.monotonic()
            try:
                self.reconciler.reconcile(str(key))
            except ReconcileError as exc:
                error = exc
            except Exception as exc:
                self.logger.exception("Unexpected error reconciling %s", key)
                error = exc
            finally:
                METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.handle_result(key, error)
        finally:
            self.queue.done(key)
        return True

    def handle_result(self, key: Hashable, error: Exception | None) -> None:
        """Apply the retry policy for one finished reconciliation.

        * success: clear the key's backoff history;
        * non-retryable error: drop immediately;
        * retryable error under ``max_attempts`` requeues: re-add with backoff;
        * otherwise: drop, until a fresh event or resync brings the key back.
        """
        if error is None:
            self.queue.forget(key)
            return

        if not getattr(error, "retryable", True):
            self.queue.forget(key)
            METRICS.dropped_total.labels(reason="invalid").inc()
            self.logger.error("Dropping %r out of the queue: %s", key, error)
            return

        requeues = self.queue.num_requeues(key)
        if requeues < self.max_attempts:
            delay = self.queue.add_rate_limited(key)
            METRICS.retries_total.inc()
            self.logger.info(
                "Error processing unit %s (attempt %d/%d, retrying in %.3fs): %s",
                key,
                requeues + 1,
                self.max_attempts,
                delay,
                error,
            )
            return

        self.queue.forget(key)
        METRICS.dropped_total.labels(reason="retries_exhausted").inc()
        self.logger.error(
            "Dropping unit %s out of the queue after %d retries: %s", key, requeues, error
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def cache_stopped(self) -> bool:
        """True once the cache thread has returned, for whatever reason."""
        return self._cache_exited.is_set()

    def _run_cache(self, stop_event: threading.Event) -> None:
        try:
            self.cache.run(stop_event)
        finally:
            self._cache_exited.set()
            if self.state is ControllerState.RUNNING:
                self.ready.clear()
                self.logger.error("Fleet cache stopped watching while the controller was running")

    def start(self, stop_event: threading.Event) -> None:
        """Warm the cache and start the worker pool; returns once RUNNING.

        Raises :class:`CacheSyncTimeoutError` when the cache is not synced
        within ``cache_sync_timeout_seconds``.
        """
        self._transition(ControllerState.STARTING)
        self._cache_exited.clear()
        self._cache_thread = threading.Thread(
            target=self._run_cache, args=(stop_event,), name="fleet-cache", daemon=True
        )
        self._cache_thread.start()

        if not self.cache.wait_for_sync(self.cache_sync_timeout_seconds, stop_event):
            if stop_event.is_set():
                self.logger.info("Stop requested before the fleet cache synced")
                return
            self.logger.error(
                "Timed out after %.0fs waiting for the fleet cache to sync",
                self.cache_sync_timeout_seconds,
            )
            self.stop()
            raise CacheSyncTimeoutError(
                f"fleet cache did not sync within {self.cache_sync_timeout_seconds}s"
            )

        for index in range(self.workers):
            thread = threading.Thread(
                target=self._run_worker, name=f"maintenance-worker-{index}", daemon=True
            )
            thread.start()
            self._worker_threads.append(thread)

        self._transition(ControllerState.RUNNING)
        self.ready.set()
        # The cache may have exited between sync and the RUNNING transition.
        if self._cache_exited.is_set():
            self.ready.clear()
        self.logger.info("Started %d worker(s)", self.workers)

    def stop(self, join_timeout_seconds: float = 30.0) -> None:
        """Shut the queue down, let in-flight reconciles finish, and stop the cache."""
        if self.state in {ControllerState.STOPPING, ControllerState.STOPPED}:
            return
        self._transition(ControllerState.STOPPING)
        self.ready.clear()
        self.queue.shutdown()
        for thread in self._worker_threads:
            thread.join(timeout=join_timeout_seconds)
            if thread.is_alive():
                self.logger.error(
                    "Worker %s did not stop within %ss", thread.name, join_timeout_seconds
                )
        self._worker_threads = []
        self.cache.request_stop()
        if self._cache_thread is not None:
            self._cache_thread.join(timeout=join_timeout_seconds)
            self._cache_thread = None
        self._transition(ControllerState.STOPPED)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run until *stop_event* is set.

        Cache sync failure raises :class:`CacheSyncTimeoutError` and losing
        the cache watch afterwards raises :class:`CacheWatchStoppedError`;
        the entrypoint treats both as fatal.
        """
        stop = stop_event or threading.Event()
        try:
            self.start(stop)
            while not stop.wait(timeout=self.supervise_interval_seconds):
                if self._cache_exited.is_set():
                    raise CacheWatchStoppedError("fleet cache stopped watching")
        finally:
            self.stop()
        self.logger.info("Controller stopped")


def build_controller(core_api: CoreV1Api, config: ControllerConfig) -> MaintenanceController:
    """Wire cache, queue, budget and reconciler from *config*."""
    cache = FleetCache(
        core_api=core_api,
        namespace=config.namespace,
        label_selector=config.label_selector,
        resync_period_seconds=config.resync_period_seconds,
    )
    budget = AdmissionBudget(
        cache,
        max_unavailable=config.max_unavailable,
        strict=config.strict_admission,
    )
    reconciler = Reconciler(cache=cache, budget=budget, core_api=core_api)
    return MaintenanceController(
        cache=cache,
        queue=RateLimitingQueue(),
        reconciler=reconciler,
        workers=config.workers,
        max_attempts=config.max_attempts,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )
