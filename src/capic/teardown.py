"""Finalizer / teardown ordering between clusters and their machines.

A cluster keeps its finalizer until no machine references it any more.
Machines must fully deprovision first, otherwise their servers and IP
blocks would outlive the cluster that holds the credentials to remove them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .models import MachineResource, ResourceKey, ResourceKind
from .store import MemoryResourceStore, ResourceNotFoundError

logger = logging.getLogger(__name__)


class TeardownCoordinator:
    """Answers "may this cluster go?" and wakes clusters waiting on machines."""

    def __init__(
        self,
        store: MemoryResourceStore,
        enqueue_cluster: Callable[[ResourceKey], None] | None = None,
    ) -> None:
        self._store = store
        self._enqueue_cluster = enqueue_cluster

    def set_enqueue(self, enqueue_cluster: Callable[[ResourceKey], None]) -> None:
        self._enqueue_cluster = enqueue_cluster

    def dependent_machines(self, cluster_key: ResourceKey) -> list[MachineResource]:
        """Machines still present in the store that reference ``cluster_key``."""
        return [
            machine
            for machine in self._store.list(ResourceKind.MACHINE, cluster_key.namespace)
            if isinstance(machine, MachineResource) and machine.cluster_name == cluster_key.name
        ]

    def can_delete(self, cluster_key: ResourceKey) -> bool:
        """True iff no machine references the cluster.

        A machine that is deleting still counts until it has been removed.
        """
        return not self.dependent_machines(cluster_key)

    def cascade(self, cluster_key: ResourceKey) -> int:
        """Request deletion of every dependent machine not yet deleting.

        Returns:
            Number of machines newly marked for deletion.
        """
        marked = 0
        for machine in self.dependent_machines(cluster_key):
            if machine.is_deleting:
                continue
            try:
                self._store.request_deletion(machine.key)
            except ResourceNotFoundError:
                continue
            marked += 1

        if marked:
            logger.info(
                f"Requested deletion of {marked} machines of {cluster_key}",
                extra={"cluster": str(cluster_key), "machines": marked},
            )
        return marked

    def on_machine_removed(self, cluster_key: ResourceKey | None) -> None:
        """Re-evaluate the owning cluster now instead of at the next resync."""
        if cluster_key is None or self._enqueue_cluster is None:
            return
        logger.debug(
            f"Machine of {cluster_key} removed, requeueing cluster",
            extra={"cluster": str(cluster_key)},
        )
        self._enqueue_cluster(cluster_key)
