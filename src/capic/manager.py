"""Controller manager: watch feed, work queues and worker pool.

One work queue per reconciled kind feeds a pool of asyncio workers. Each
pass runs in a worker thread so blocking cloud I/O for one key never
stalls other keys. The queue guarantees a key is processed by at most one
worker at a time, which is the single-writer discipline the Request
Tracker relies on.

WRITE PATH:
read -> reconcile -> forward-progress guard -> optimistic update.
Conflicts re-run the pass from a fresh read; tracker entries named by the
outcome are cleared only after the write succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from .cloud import CloudClientFactory
from .cluster import ClusterReconciler
from .config import Config
from .machine import MachineReconciler
from .models import (
    ClusterResource,
    MachineResource,
    Resource,
    ResourceKey,
    ResourceKind,
    StatusRegressionError,
    check_forward_progress,
)
from .outcome import ReconcileOutcome
from .spec_loader import SpecLoadError, sync_manifests
from .store import ConflictError, MemoryResourceStore, ResourceNotFoundError
from .teardown import TeardownCoordinator
from .tracker import RequestTracker
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

RECONCILED_KINDS = (ResourceKind.CLUSTER, ResourceKind.MACHINE)


class Manager:
    """Runs the cluster and machine reconcilers against the store."""

    def __init__(
        self,
        config: Config,
        store: MemoryResourceStore,
        tracker: RequestTracker,
        clients: CloudClientFactory,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._tracker = tracker
        self._teardown = TeardownCoordinator(store, self.enqueue)
        self._clusters = ClusterReconciler(store, tracker, clients, self._teardown, config, clock)
        self._machines = MachineReconciler(store, tracker, clients, config, clock)

        self._queues: dict[ResourceKind, WorkQueue] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown_event = asyncio.Event()

        store.subscribe(self._on_change)

    @property
    def teardown(self) -> TeardownCoordinator:
        return self._teardown

    # =========================================================================
    # Synchronous reconcile entry point
    # =========================================================================

    def reconcile_key(self, key: ResourceKey) -> ReconcileOutcome | None:
        """Run one pass for ``key`` and write the result.

        Returns:
            The outcome of the last attempt, or None if the object is gone.
        """
        resource: Resource | None = None
        for attempt in range(1, self._config.conflict_retries + 1):
            resource = self._store.find(key)
            if resource is None:
                return None

            outcome = self._reconcile(resource)
            try:
                self._write(resource, outcome)
            except ConflictError:
                logger.debug(
                    f"Conflict writing {key}, retrying",
                    extra={"resource": str(key), "attempt": attempt},
                )
                continue
            except ResourceNotFoundError:
                return None
            except StatusRegressionError as e:
                logger.error(
                    f"Refusing status write for {key}: {e}",
                    extra={"resource": str(key)},
                )
                return ReconcileOutcome.retry(resource)

            self._after_write(resource, outcome)
            return outcome

        logger.warning(
            f"Conflict retries exhausted for {key}",
            extra={"resource": str(key), "attempts": self._config.conflict_retries},
        )
        return ReconcileOutcome.retry(resource) if resource is not None else None

    def _reconcile(self, resource: Resource) -> ReconcileOutcome:
        if isinstance(resource, ClusterResource):
            return self._clusters.reconcile(resource)
        if isinstance(resource, MachineResource):
            return self._machines.reconcile(resource)
        raise TypeError(f"{resource.key} is not reconciled")

    def _write(self, current: Resource, outcome: ReconcileOutcome) -> None:
        proposed = outcome.resource
        if proposed == current:
            return
        check_forward_progress(current.status, proposed.status)  # type: ignore[union-attr]
        self._store.update(proposed)

    def _after_write(self, resource: Resource, outcome: ReconcileOutcome) -> None:
        for request in outcome.clear:
            self._tracker.clear(request)
        if outcome.removed and isinstance(resource, MachineResource):
            self._teardown.on_machine_removed(resource.cluster_key)

    # =========================================================================
    # Event routing
    # =========================================================================

    def enqueue(self, key: ResourceKey) -> None:
        """Schedule a pass for ``key``; safe to call from any thread."""
        loop = self._loop
        if loop is None:
            return
        if _in_loop(loop):
            self._route(key)
        else:
            loop.call_soon_threadsafe(self._route, key)

    def _on_change(self, key: ResourceKey) -> None:
        self.enqueue(key)

    def _route(self, key: ResourceKey) -> None:
        match key.kind:
            case ResourceKind.MACHINE:
                self._queues[ResourceKind.MACHINE].add(key)
                machine = self._store.find(key)
                if isinstance(machine, MachineResource) and machine.cluster_key is not None:
                    self._queues[ResourceKind.CLUSTER].add(machine.cluster_key)
            case ResourceKind.CLUSTER:
                self._queues[ResourceKind.CLUSTER].add(key)
                # Machines wait for their cluster to become ready
                for machine in self._teardown.dependent_machines(key):
                    self._queues[ResourceKind.MACHINE].add(machine.key)
            case ResourceKind.SECRET:
                self._route_secret(key)

    def _route_secret(self, key: ResourceKey) -> None:
        for cluster in self._store.list(ResourceKind.CLUSTER):
            if not isinstance(cluster, ClusterResource):
                continue
            ref = cluster.spec.credentials_ref
            namespace = ref.namespace or cluster.metadata.namespace
            if ref.name == key.name and namespace == key.namespace:
                self._queues[ResourceKind.CLUSTER].add(cluster.key)

        for machine in self._store.list(ResourceKind.MACHINE, key.namespace):
            if (
                isinstance(machine, MachineResource)
                and machine.spec.bootstrap.data_secret_name == key.name
            ):
                self._queues[ResourceKind.MACHINE].add(machine.key)

    def resync(self) -> None:
        """Queue every cluster and machine."""
        for kind in RECONCILED_KINDS:
            for resource in self._store.list(kind):
                self._queues[kind].add(resource.key)

    def sync_manifests(self, manifests_dir: Path) -> None:
        try:
            sync_manifests(self._store, manifests_dir)
        except SpecLoadError as e:
            logger.error("Manifest sync failed", extra={"error": str(e)})

    # =========================================================================
    # Run loop
    # =========================================================================

    async def run(self) -> None:
        """Process keys until ``shutdown`` is called."""
        self._loop = asyncio.get_running_loop()
        for kind in RECONCILED_KINDS:
            self._queues[kind] = WorkQueue(
                kind.value,
                max_keys=self._config.queue_max_keys,
                backoff_base_seconds=self._config.backoff_base_seconds,
                backoff_max_seconds=self._config.backoff_max_seconds,
            )

        logger.info(
            "Starting manager",
            extra={
                "workers": self._config.workers,
                "resync_interval_seconds": self._config.resync_interval_seconds,
                "manifests_dir": str(self._config.manifests_dir or ""),
            },
        )

        workers = [
            asyncio.create_task(self._worker(queue, index), name=f"{kind.value}-{index}")
            for kind, queue in self._queues.items()
            for index in range(self._config.workers)
        ]

        while not self._shutdown_event.is_set():
            if self._config.manifests_dir is not None:
                await asyncio.to_thread(self.sync_manifests, self._config.manifests_dir)
            self.resync()

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.resync_interval_seconds,
                )
            except TimeoutError:
                pass

        for queue in self._queues.values():
            queue.shutdown()
        await asyncio.gather(*workers)
        logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop after in-flight passes finish."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _worker(self, queue: WorkQueue, index: int) -> None:
        while True:
            key = await queue.get()
            if key is None:
                return
            try:
                outcome = await asyncio.to_thread(self.reconcile_key, key)
            except Exception:
                delay = queue.add_rate_limited(key)
                logger.exception(
                    f"Reconcile of {key} raised",
                    extra={"resource": str(key), "worker": index, "retry_in_seconds": delay},
                )
            else:
                self._schedule(queue, key, outcome)
            finally:
                queue.done(key)

    def _schedule(
        self, queue: WorkQueue, key: ResourceKey, outcome: ReconcileOutcome | None
    ) -> None:
        if outcome is None:
            queue.forget(key)
            return
        if outcome.backoff:
            delay = queue.add_rate_limited(key)
            logger.debug(
                f"Requeue {key} with backoff",
                extra={"resource": str(key), "delay_seconds": delay},
            )
            return
        queue.forget(key)
        if outcome.requeue_after is not None:
            queue.add_after(key, outcome.requeue_after)


def _in_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
