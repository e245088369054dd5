from __future__ import annotations

import threading
import time
from collections.abc import Hashable
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from maintenance_controller.src.budget import AdmissionBudget
from maintenance_controller.src.cache import FleetCache
from maintenance_controller.src.config import ControllerConfig
from maintenance_controller.src.controller import (
    CacheSyncTimeoutError,
    CacheWatchStoppedError,
    ControllerState,
    MaintenanceController,
    _EnqueueHandler,
    build_controller,
)
from maintenance_controller.src.ratelimit import ItemExponentialFailureRateLimiter
from maintenance_controller.src.reconciler import BudgetExceededError, Reconciler
from maintenance_controller.src.units import (
    NEEDS_MAINTENANCE_ANNOTATION,
    DeletedFinalStateUnknown,
    WorkerUnit,
)
from maintenance_controller.src.workqueue import RateLimitingQueue, WorkQueue


class FakeCache:
    """Stands in for FleetCache: a dict store plus controllable sync."""

    def __init__(self, *units: WorkerUnit, syncs: bool = True) -> None:
        self.units = {unit.key: unit for unit in units}
        self.syncs = syncs
        self.handlers: list[Any] = []
        self._synced = threading.Event()
        self._stopped = threading.Event()
        self.watch_lost = threading.Event()
        self.run_calls = 0

    def add_event_handler(self, handler: Any) -> None:
        self.handlers.append(handler)

    def get(self, key: str) -> WorkerUnit | None:
        return self.units.get(key)

    def list(self) -> list[WorkerUnit]:
        return list(self.units.values())

    def run(self, stop_event: threading.Event) -> None:
        self.run_calls += 1
        if self.syncs:
            for unit in self.units.values():
                for handler in self.handlers:
                    handler.on_add(unit)
            self._synced.set()
        while not (stop_event.is_set() or self._stopped.is_set()):
            if self.watch_lost.is_set():
                return
            self._stopped.wait(timeout=0.01)

    def wait_for_sync(self, timeout: float, stop_event: threading.Event | None = None) -> bool:
        deadline = time.monotonic() + timeout
        while not self._synced.is_set() and time.monotonic() < deadline:
            if stop_event is not None and stop_event.is_set():
                break
            self._synced.wait(timeout=0.01)
        return self._synced.is_set()

    def request_stop(self) -> None:
        self._stopped.set()


class RecordingQueue(RateLimitingQueue):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.delays: list[float] = []

    def add_rate_limited(self, item: Hashable) -> float:
        delay = super().add_rate_limited(item)
        self.delays.append(delay)
        return delay


def requested(name: str) -> WorkerUnit:
    return WorkerUnit(
        namespace="default",
        name=name,
        annotations={NEEDS_MAINTENANCE_ANNOTATION: ""},
        ready=True,
    )


def fast_queue() -> RecordingQueue:
    return RecordingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=0.01)
    )


def wait_until(predicate: Any, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def test_success_forgets_backoff_history() -> None:
    queue = MagicMock()
    controller = MaintenanceController(FakeCache(), queue, MagicMock())

    controller.handle_result("default/a", None)

    queue.forget.assert_called_once_with("default/a")
    queue.add_rate_limited.assert_not_called()


def test_retryable_error_is_requeued_with_backoff() -> None:
    queue = MagicMock()
    queue.num_requeues.return_value = 2
    queue.add_rate_limited.return_value = 0.02
    controller = MaintenanceController(FakeCache(), queue, MagicMock(), max_attempts=5)

    controller.handle_result("default/a", BudgetExceededError("default/a", 1, 1))

    queue.add_rate_limited.assert_called_once_with("default/a")
    queue.forget.assert_not_called()


def test_unexpected_exception_is_treated_as_retryable() -> None:
    queue = MagicMock()
    queue.num_requeues.return_value = 0
    queue.add_rate_limited.return_value = 0.005
    controller = MaintenanceController(FakeCache(), queue, MagicMock())

    controller.handle_result("default/a", RuntimeError("boom"))

    queue.add_rate_limited.assert_called_once_with("default/a")


def test_failing_key_is_retried_max_attempts_times_then_dropped() -> None:
    queue = fast_queue()
    reconciler = MagicMock()
    reconciler.reconcile.side_effect = BudgetExceededError("default/a", 1, 1)
    controller = MaintenanceController(FakeCache(), queue, reconciler, max_attempts=3)

    queue.add("default/a")
    for _ in range(4):
        assert controller.process_next_item() is True

    assert reconciler.reconcile.call_count == 4
    assert len(queue.delays) == 3
    assert queue.delays == sorted(queue.delays)
    assert queue.delays[0] < queue.delays[-1]
    assert queue.num_requeues("default/a") == 0
    assert len(queue) == 0
    assert queue.pending_delayed() == 0
    queue.shutdown()


def test_zero_max_attempts_drops_on_first_failure() -> None:
    queue = fast_queue()
    reconciler = MagicMock()
    reconciler.reconcile.side_effect = RuntimeError("boom")
    controller = MaintenanceController(FakeCache(), queue, reconciler, max_attempts=0)

    queue.add("default/a")
    controller.process_next_item()

    assert queue.delays == []
    assert queue.pending_delayed() == 0
    queue.shutdown()


def test_malformed_key_is_dropped_without_retry() -> None:
    queue = fast_queue()
    cache = FakeCache()
    reconciler = Reconciler(cache, AdmissionBudget(cache), writer=MagicMock())
    controller = MaintenanceController(cache, queue, reconciler)

    queue.add("not-a-valid-key")
    controller.process_next_item()

    assert queue.delays == []
    assert queue.num_requeues("not-a-valid-key") == 0
    assert len(queue) == 0
    assert queue.pending_delayed() == 0
    queue.shutdown()


def test_deleted_unit_reconciles_as_success() -> None:
    queue = fast_queue()
    cache = FakeCache()
    writer = MagicMock()
    reconciler = Reconciler(cache, AdmissionBudget(cache), writer=writer)
    controller = MaintenanceController(cache, queue, reconciler)

    queue.add("default/gone")
    controller.process_next_item()

    writer.assert_not_called()
    assert queue.delays == []
    queue.shutdown()


def test_process_next_item_returns_false_after_shutdown() -> None:
    queue = WorkQueue()
    controller = MaintenanceController(FakeCache(), queue, MagicMock())  # type: ignore[arg-type]

    queue.shutdown()

    assert controller.process_next_item() is False


def test_process_next_item_releases_key_even_when_handling_fails() -> None:
    queue = MagicMock()
    queue.get.return_value = ("default/a", False)
    queue.num_requeues.side_effect = RuntimeError("queue broken")
    reconciler = MagicMock()
    reconciler.reconcile.side_effect = RuntimeError("boom")
    controller = MaintenanceController(FakeCache(), queue, reconciler)

    with pytest.raises(RuntimeError, match="queue broken"):
        controller.process_next_item()

    queue.done.assert_called_once_with("default/a")


@pytest.mark.parametrize(("workers", "max_attempts"), [(0, 5), (1, -1)])
def test_rejects_invalid_pool_settings(workers: int, max_attempts: int) -> None:
    with pytest.raises(ValueError):
        MaintenanceController(
            FakeCache(), MagicMock(), MagicMock(), workers=workers, max_attempts=max_attempts
        )


# ---------------------------------------------------------------------------
# Event handler
# ---------------------------------------------------------------------------


def test_enqueue_handler_turns_events_into_keys() -> None:
    queue = WorkQueue()
    handler = _EnqueueHandler(queue, MagicMock())  # type: ignore[arg-type]
    unit = requested("a")

    handler.on_add(unit)
    handler.on_update(unit, unit)
    handler.on_delete(DeletedFinalStateUnknown(key="default/b"))

    assert len(queue) == 2
    assert queue.get(timeout=0)[0] == "default/a"
    assert queue.get(timeout=0)[0] == "default/b"


def test_enqueue_handler_skips_unrecognized_deletes() -> None:
    queue = WorkQueue()
    logger = MagicMock()
    handler = _EnqueueHandler(queue, logger)  # type: ignore[arg-type]

    handler.on_delete(object())  # type: ignore[arg-type]

    assert len(queue) == 0
    logger.warning.assert_called_once()


def test_controller_registers_enqueue_handler_on_cache() -> None:
    cache = FakeCache()
    MaintenanceController(cache, MagicMock(), MagicMock())

    assert len(cache.handlers) == 1
    assert isinstance(cache.handlers[0], _EnqueueHandler)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_start_and_stop_walk_through_lifecycle_states() -> None:
    cache = FakeCache(requested("a"), requested("b"))
    seen: list[str] = []
    lock = threading.Lock()

    def reconcile(key: str) -> None:
        with lock:
            seen.append(key)

    reconciler = MagicMock()
    reconciler.reconcile.side_effect = reconcile
    controller = MaintenanceController(cache, fast_queue(), reconciler, workers=2)
    stop = threading.Event()

    assert controller.state is ControllerState.CREATED
    controller.start(stop)

    assert controller.state is ControllerState.RUNNING
    assert controller.ready.is_set()
    assert wait_until(lambda: sorted(seen) == ["default/a", "default/b"])

    controller.stop(join_timeout_seconds=5)

    assert controller.state is ControllerState.STOPPED
    assert not controller.ready.is_set()
    assert controller.queue.shutting_down()


def test_stop_is_idempotent() -> None:
    controller = MaintenanceController(FakeCache(), fast_queue(), MagicMock())
    controller.start(threading.Event())

    controller.stop(join_timeout_seconds=5)
    controller.stop(join_timeout_seconds=5)

    assert controller.state is ControllerState.STOPPED


def test_start_raises_when_cache_never_syncs() -> None:
    controller = MaintenanceController(
        FakeCache(syncs=False),
        fast_queue(),
        MagicMock(),
        cache_sync_timeout_seconds=0.05,
    )

    with pytest.raises(CacheSyncTimeoutError):
        controller.start(threading.Event())

    assert controller.state is ControllerState.STOPPED
    assert not controller.ready.is_set()


def test_run_returns_when_stop_requested_before_sync() -> None:
    controller = MaintenanceController(FakeCache(syncs=False), fast_queue(), MagicMock())
    stop = threading.Event()
    stop.set()

    controller.run(stop_event=stop)

    assert controller.state is ControllerState.STOPPED


def test_run_blocks_until_stop_event() -> None:
    controller = MaintenanceController(FakeCache(), fast_queue(), MagicMock())
    stop = threading.Event()
    thread = threading.Thread(target=controller.run, args=(stop,))
    thread.start()

    assert controller.ready.wait(timeout=5)
    stop.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert controller.state is ControllerState.STOPPED


def test_losing_cache_watch_after_sync_clears_ready() -> None:
    cache = FakeCache()
    controller = MaintenanceController(cache, fast_queue(), MagicMock())
    controller.start(threading.Event())
    assert controller.ready.is_set()

    cache.watch_lost.set()

    assert wait_until(lambda: not controller.ready.is_set())
    assert controller.cache_stopped
    controller.stop(join_timeout_seconds=5)
    assert controller.state is ControllerState.STOPPED


def test_run_raises_and_stops_when_cache_watch_is_lost() -> None:
    cache = FakeCache()
    controller = MaintenanceController(cache, fast_queue(), MagicMock())
    controller.supervise_interval_seconds = 0.01
    stop = threading.Event()
    errors: list[BaseException] = []

    def run() -> None:
        try:
            controller.run(stop_event=stop)
        except CacheWatchStoppedError as exc:
            errors.append(exc)

    thread = threading.Thread(target=run)
    thread.start()
    assert controller.ready.wait(timeout=5)

    cache.watch_lost.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(errors) == 1
    assert not stop.is_set()
    assert not controller.ready.is_set()
    assert controller.state is ControllerState.STOPPED


def test_stop_does_not_count_as_lost_cache_watch() -> None:
    controller = MaintenanceController(FakeCache(), fast_queue(), MagicMock())
    controller.supervise_interval_seconds = 0.01
    stop = threading.Event()
    thread = threading.Thread(target=controller.run, args=(stop,))
    thread.start()
    assert controller.ready.wait(timeout=5)

    stop.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert controller.state is ControllerState.STOPPED


def test_one_key_is_never_reconciled_concurrently_by_the_pool() -> None:
    cache = FakeCache()
    in_flight: set[str] = set()
    overlap: list[str] = []
    calls = 0
    lock = threading.Lock()

    def reconcile(key: str) -> None:
        nonlocal calls
        with lock:
            if key in in_flight:
                overlap.append(key)
            in_flight.add(key)
            calls += 1
        time.sleep(0.002)
        with lock:
            in_flight.discard(key)

    reconciler = MagicMock()
    reconciler.reconcile.side_effect = reconcile
    queue = fast_queue()
    controller = MaintenanceController(cache, queue, reconciler, workers=4)
    stop = threading.Event()
    controller.start(stop)

    deadline = time.monotonic() + 0.3
    while time.monotonic() < deadline:
        for name in ("a", "b"):
            queue.add(f"default/{name}")

    controller.stop(join_timeout_seconds=5)

    assert overlap == []
    assert calls >= 2


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def test_build_controller_wires_components_from_config() -> None:
    config = ControllerConfig(
        namespace="fleet",
        label_selector="role=worker",
        max_unavailable=3,
        resync_period_seconds=5.0,
        workers=2,
        max_attempts=7,
        cache_sync_timeout_seconds=12.0,
        strict_admission=True,
    )

    controller = build_controller(core_api=SimpleNamespace(), config=config)  # type: ignore[arg-type]

    assert isinstance(controller.cache, FleetCache)
    assert controller.cache.namespace == "fleet"
    assert controller.cache.label_selector == "role=worker"
    assert controller.cache.resync_period_seconds == 5.0
    assert isinstance(controller.queue, RateLimitingQueue)
    assert controller.reconciler.budget.max_unavailable == 3
    assert controller.reconciler.budget.strict is True
    assert controller.reconciler.cache is controller.cache
    assert controller.workers == 2
    assert controller.max_attempts == 7
    assert controller.cache_sync_timeout_seconds == 12.0
    controller.queue.shutdown()
