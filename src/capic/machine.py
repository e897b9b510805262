"""Machine Reconciler: lifecycle of one cloud VM.

Phases::

    Pending -> Creating -> NetworkAttaching -> Bootstrapping -> Running
    (any) -> Deleting -> Deleted
    (any) -> Failed

Each pass is a function of (resource, tracker entries, cloud observations)
and returns the next resource value plus a requeue decision. Progress is
derived from durable status fields (instance id, IP block id, NIC id), so a
pass that runs after a crash resumes from the furthest recorded point.

Every cloud mutation goes through the Request Tracker: a pass that finds an
in-flight entry polls it instead of issuing the call again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from . import conditions
from .cloud import (
    CloudAuthError,
    CloudClient,
    CloudClientFactory,
    CloudError,
    CloudNotFoundError,
    CloudOperation,
)
from .config import Config
from .models import (
    PROVIDER_ID_PREFIX,
    ClusterPhase,
    ClusterResource,
    ConditionSeverity,
    MachinePhase,
    MachineResource,
    ResourceKey,
    ResourceKind,
    SecretResource,
)
from .outcome import ReconcileOutcome
from .security import CredentialsError, resolve_credentials
from .store import MemoryResourceStore
from .tracker import OperationKind, PollResult, ProvisioningRequest, RequestTracker

logger = logging.getLogger(__name__)

# Key of the rendered bootstrap data inside the bootstrap Secret
BOOTSTRAP_DATA_KEY = "value"

# Requests settled before teardown starts, in issue order
_IN_FLIGHT_BEFORE_DELETE = (
    OperationKind.CREATE_SERVER,
    OperationKind.ALLOCATE_IP,
    OperationKind.ATTACH_NIC,
)


class _Requeue(Exception):
    """Ends a pass early with the given outcome."""

    def __init__(self, outcome: ReconcileOutcome) -> None:
        super().__init__()
        self.outcome = outcome


class MachineReconciler:
    """Drives one IonosCloudMachine toward its spec."""

    def __init__(
        self,
        store: MemoryResourceStore,
        tracker: RequestTracker,
        clients: CloudClientFactory,
        config: Config,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._clients = clients
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))

    def reconcile(self, machine: MachineResource) -> ReconcileOutcome:
        """Run one pass for ``machine``."""
        cluster = self._find_cluster(machine)
        if machine.is_paused or (cluster is not None and cluster.is_paused):
            logger.debug(f"{machine.key} is paused, skipping", extra={"resource": str(machine.key)})
            return ReconcileOutcome.done(machine)

        try:
            if machine.is_deleting:
                return self._reconcile_delete(machine, cluster)
            return self._reconcile_normal(machine, cluster)
        except _Requeue as stop:
            return stop.outcome

    # =========================================================================
    # Provisioning
    # =========================================================================

    def _reconcile_normal(
        self, machine: MachineResource, cluster: ClusterResource | None
    ) -> ReconcileOutcome:
        if not machine.has_finalizer():
            # Claim the machine before any cloud mutation can happen
            return ReconcileOutcome.requeue(machine.with_finalizer(), after=0)

        status = machine.status
        generation = machine.metadata.generation
        if status.phase == MachinePhase.FAILED:
            if generation <= status.observed_generation:
                return ReconcileOutcome.done(machine)
            logger.info(
                f"Spec of failed machine {machine.key} changed, resuming",
                extra={"resource": str(machine.key), "generation": generation},
            )
            ready = conditions.get_condition(status.conditions, conditions.READY)
            if ready is not None and ready.reason == conditions.INSTANCE_NOT_FOUND:
                # The operator asked for a new server in place of the vanished one
                machine = machine.with_status(
                    instance_id=None, provider_id=None, nic_id=None, addresses=()
                )
            machine = machine.with_status(
                phase=MachinePhase.PENDING,
                failure_reason=None,
                failure_message=None,
                conditions=conditions.clear_condition(status.conditions, conditions.DEGRADED),
            )
        machine = machine.with_status(observed_generation=generation)

        if machine.cluster_key is None:
            return self._fail(
                machine,
                conditions.CREATE_ERROR,
                "machine has no cluster.x-k8s.io/cluster-name label",
            )
        if cluster is None or cluster.is_deleting or cluster.status.phase != ClusterPhase.READY:
            return self._wait(
                machine,
                conditions.INSTANCE_PROVISIONED,
                conditions.WAITING_FOR_CLUSTER,
                f"cluster {machine.cluster_name} is not ready",
            )

        client = self._client_for(machine, cluster)
        clear: list[ProvisioningRequest] = []

        machine = self._ensure_server(machine, client, clear)
        machine = self._ensure_network(machine, cluster, client, clear)
        return self._ensure_running(machine, client, clear)

    def _ensure_server(
        self,
        machine: MachineResource,
        client: CloudClient,
        clear: list[ProvisioningRequest],
    ) -> MachineResource:
        if machine.status.instance_id:
            return machine

        user_data = None
        data_secret = machine.spec.bootstrap.data_secret_name
        if data_secret:
            user_data = self._bootstrap_data(machine, data_secret)
            if not user_data:
                raise _Requeue(
                    self._wait(
                        machine,
                        conditions.INSTANCE_PROVISIONED,
                        conditions.WAITING_FOR_BOOTSTRAP_DATA,
                        f"bootstrap data secret {data_secret} is not available yet",
                    )
                )

        spec = machine.spec
        request = self._submit(
            machine,
            OperationKind.CREATE_SERVER,
            lambda: client.create_server(
                spec.datacenter_id, machine.metadata.name, spec, user_data
            ),
            conditions.CREATE_ERROR,
            clear,
        )
        machine = machine.with_status(phase=MachinePhase.CREATING)
        request = self._await(
            machine,
            request,
            client,
            conditions.INSTANCE_PROVISIONED,
            conditions.CREATE_ERROR,
            clear,
        )

        instance_id = request.target_id

        logger.info(
            f"Server {instance_id} created for {machine.key}",
            extra={"resource": str(machine.key), "instance_id": instance_id},
        )
        clear.append(request)
        now = self._clock()
        return machine.with_status(
            phase=MachinePhase.NETWORK_ATTACHING,
            instance_id=instance_id,
            provider_id=f"{PROVIDER_ID_PREFIX}{instance_id}",
            conditions=conditions.mark_true(
                conditions.clear_condition(machine.status.conditions, conditions.DEGRADED),
                conditions.INSTANCE_PROVISIONED,
                now,
            ),
        )

    def _ensure_network(
        self,
        machine: MachineResource,
        cluster: ClusterResource,
        client: CloudClient,
        clear: list[ProvisioningRequest],
    ) -> MachineResource:
        status = machine.status
        if status.nic_id and status.addresses:
            return machine

        instance_id = status.instance_id
        datacenter_id = machine.spec.datacenter_id
        machine = machine.with_status(phase=MachinePhase.NETWORK_ATTACHING)

        if not status.ip_block_id:
            request = self._submit(
                machine,
                OperationKind.ALLOCATE_IP,
                lambda: client.reserve_ip_block(
                    cluster.spec.location, name=f"{machine.metadata.name}-ip"
                ),
                conditions.NETWORK_ERROR,
                clear,
            )
            request = self._await(
                machine,
                request,
                client,
                conditions.NETWORK_ATTACHED,
                conditions.NETWORK_ERROR,
                clear,
            )
            clear.append(request)
            machine = machine.with_status(ip_block_id=request.target_id)

        ip_block_id = machine.status.ip_block_id
        if not machine.status.nic_id:

            def attach() -> CloudOperation:
                reserved = client.get_ip_block(ip_block_id)
                return client.attach_nic(
                    datacenter_id,
                    instance_id,
                    machine.spec.lan_id,
                    ips=reserved.ips,
                    name=f"{machine.metadata.name}-nic",
                )

            request = self._submit(
                machine, OperationKind.ATTACH_NIC, attach, conditions.NETWORK_ERROR, clear
            )
            request = self._await(
                machine,
                request,
                client,
                conditions.NETWORK_ATTACHED,
                conditions.NETWORK_ERROR,
                clear,
            )
            clear.append(request)
            machine = machine.with_status(nic_id=request.target_id)

        try:
            addresses = client.get_nic(datacenter_id, instance_id, machine.status.nic_id).ips
            if not addresses:
                addresses = client.get_ip_block(ip_block_id).ips
        except CloudError as e:
            raise _Requeue(self._cloud_error(machine, e, conditions.NETWORK_ERROR, clear)) from e

        logger.info(
            f"Network attached to {machine.key}",
            extra={"resource": str(machine.key), "addresses": list(addresses)},
        )
        return machine.with_status(
            phase=MachinePhase.BOOTSTRAPPING,
            addresses=tuple(addresses),
            conditions=conditions.mark_true(
                conditions.clear_condition(machine.status.conditions, conditions.DEGRADED),
                conditions.NETWORK_ATTACHED,
                self._clock(),
            ),
        )

    def _ensure_running(
        self,
        machine: MachineResource,
        client: CloudClient,
        clear: list[ProvisioningRequest],
    ) -> ReconcileOutcome:
        status = machine.status
        try:
            client.describe_server(machine.spec.datacenter_id, status.instance_id)
        except CloudNotFoundError:
            logger.warning(
                f"Server {status.instance_id} of {machine.key} disappeared",
                extra={"resource": str(machine.key), "instance_id": status.instance_id},
            )
            return self._fail(
                machine,
                conditions.INSTANCE_NOT_FOUND,
                f"server {status.instance_id} no longer exists (external deletion)",
                clear,
            )
        except CloudError as e:
            return self._cloud_error(machine, e, conditions.TRANSIENT_ERROR, clear)

        now = self._clock()
        resync = self._config.resync_interval_seconds
        conds = conditions.clear_condition(status.conditions, conditions.DEGRADED)

        if status.phase != MachinePhase.RUNNING and not machine.spec.bootstrap.ready:
            conds = conditions.mark_false(
                conds,
                conditions.BOOTSTRAP_READY,
                conditions.WAITING_FOR_BOOTSTRAP,
                ConditionSeverity.INFO,
                now=now,
            )
            conds = conditions.mark_false(
                conds,
                conditions.READY,
                conditions.WAITING_FOR_BOOTSTRAP,
                ConditionSeverity.INFO,
                now=now,
            )
            return ReconcileOutcome.requeue(
                machine.with_status(phase=MachinePhase.BOOTSTRAPPING, conditions=conds),
                after=resync,
                clear=tuple(clear),
            )

        if status.phase != MachinePhase.RUNNING:
            logger.info(
                f"Machine {machine.key} is running",
                extra={"resource": str(machine.key), "instance_id": status.instance_id},
            )
        conds = conditions.mark_true(conds, conditions.BOOTSTRAP_READY, now)
        conds = conditions.mark_true(conds, conditions.READY, now)
        return ReconcileOutcome.requeue(
            machine.with_status(phase=MachinePhase.RUNNING, ready=True, conditions=conds),
            after=resync,
            clear=tuple(clear),
        )

    # =========================================================================
    # Deletion
    # =========================================================================

    def _reconcile_delete(
        self, machine: MachineResource, cluster: ClusterResource | None
    ) -> ReconcileOutcome:
        if not machine.has_finalizer():
            return ReconcileOutcome.done(machine)

        now = self._clock()
        if machine.status.phase != MachinePhase.DELETING:
            logger.info(f"Deleting machine {machine.key}", extra={"resource": str(machine.key)})
        machine = machine.with_status(
            phase=MachinePhase.DELETING,
            ready=False,
            conditions=conditions.mark_false(
                machine.status.conditions,
                conditions.READY,
                conditions.DELETING,
                ConditionSeverity.INFO,
                now=now,
            ),
        )

        tracked = self._tracker.list(machine.key)
        status = machine.status
        if not tracked and not status.instance_id and not status.ip_block_id:
            return self._finish_delete(machine)

        if cluster is None:
            return self._degraded(
                machine,
                conditions.DELETE_ERROR,
                f"cluster {machine.cluster_name} not found, cannot resolve credentials",
            )
        client = self._client_for(machine, cluster)
        clear: list[ProvisioningRequest] = []

        # Let already-issued mutations finish and record what they created
        for kind in _IN_FLIGHT_BEFORE_DELETE:
            request = self._tracker.get(machine.key, kind)
            if request is None:
                continue
            result = self._poll(machine, request, client, conditions.DELETE_ERROR, clear)
            if result.pending:
                return self._pending(machine, result.request, None, clear)
            clear.append(result.request)
            if result.failed:
                continue
            target_id = result.request.target_id
            match kind:
                case OperationKind.CREATE_SERVER if not machine.status.instance_id:
                    machine = machine.with_status(instance_id=target_id)
                case OperationKind.ALLOCATE_IP if not machine.status.ip_block_id:
                    machine = machine.with_status(ip_block_id=target_id)
                case OperationKind.ATTACH_NIC if not machine.status.nic_id:
                    machine = machine.with_status(nic_id=target_id)

        if machine.status.instance_id:
            instance_id = machine.status.instance_id
            self._delete_tracked(
                machine,
                OperationKind.DELETE_SERVER,
                lambda: client.delete_server(machine.spec.datacenter_id, instance_id),
                client,
                clear,
            )
            logger.info(
                f"Server {instance_id} of {machine.key} deleted",
                extra={"resource": str(machine.key), "instance_id": instance_id},
            )
            machine = machine.with_status(
                instance_id=None, provider_id=None, nic_id=None, addresses=()
            )

        if machine.status.ip_block_id:
            ip_block_id = machine.status.ip_block_id
            self._delete_tracked(
                machine,
                OperationKind.RELEASE_IP,
                lambda: client.release_ip_block(ip_block_id),
                client,
                clear,
            )
            logger.info(
                f"IP block {ip_block_id} of {machine.key} released",
                extra={"resource": str(machine.key), "ip_block_id": ip_block_id},
            )
            machine = machine.with_status(ip_block_id=None)

        return self._finish_delete(machine)

    def _delete_tracked(
        self,
        machine: MachineResource,
        kind: OperationKind,
        issue_fn: Callable[[], CloudOperation],
        client: CloudClient,
        clear: list[ProvisioningRequest],
    ) -> None:
        """Issue or poll a delete; returns once the cloud resource is gone."""
        try:
            request, _ = self._tracker.submit(machine.key, kind, issue_fn)
        except CloudNotFoundError:
            return
        except CloudError as e:
            raise _Requeue(self._delete_error(machine, e, clear)) from e

        result = self._poll(machine, request, client, conditions.DELETE_ERROR, clear)
        if result.pending:
            raise _Requeue(self._pending(machine, result.request, None, clear))
        clear.append(result.request)
        if result.succeeded or isinstance(result.error, CloudNotFoundError):
            return
        raise _Requeue(self._delete_error(machine, result.error, clear))

    def _delete_error(
        self, machine: MachineResource, error: CloudError, clear: list[ProvisioningRequest]
    ) -> ReconcileOutcome:
        # The finalizer stays until the cloud confirms the deletion
        return self._degraded(machine, conditions.DELETE_ERROR, error.message, clear)

    def _finish_delete(self, machine: MachineResource) -> ReconcileOutcome:
        logger.info(f"Machine {machine.key} deleted", extra={"resource": str(machine.key)})
        return ReconcileOutcome.done(
            machine.without_finalizer().with_status(phase=MachinePhase.DELETED),
            clear=tuple(self._tracker.list(machine.key)),
            removed=True,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _find_cluster(self, machine: MachineResource) -> ClusterResource | None:
        key = machine.cluster_key
        if key is None:
            return None
        cluster = self._store.find(key)
        return cluster if isinstance(cluster, ClusterResource) else None

    def _bootstrap_data(self, machine: MachineResource, secret_name: str) -> str | None:
        key = ResourceKey(ResourceKind.SECRET, machine.metadata.namespace, secret_name)
        secret = self._store.find(key)
        if not isinstance(secret, SecretResource):
            return None
        return secret.data.get(BOOTSTRAP_DATA_KEY) or None

    def _client_for(self, machine: MachineResource, cluster: ClusterResource) -> CloudClient:
        try:
            credentials = resolve_credentials(
                self._store,
                cluster.spec.credentials_ref,
                cluster.metadata.namespace,
                requested_by=str(machine.key),
            )
        except CredentialsError as e:
            raise _Requeue(self._degraded(machine, conditions.WAITING_FOR_SECRET, str(e))) from e
        return self._clients.for_credentials(credentials)

    def _submit(
        self,
        machine: MachineResource,
        kind: OperationKind,
        issue_fn: Callable[[], CloudOperation],
        reason: str,
        clear: list[ProvisioningRequest],
    ) -> ProvisioningRequest:
        try:
            request, _ = self._tracker.submit(machine.key, kind, issue_fn)
        except CloudError as e:
            raise _Requeue(self._cloud_error(machine, e, reason, clear)) from e
        return request

    def _poll(
        self,
        machine: MachineResource,
        request: ProvisioningRequest,
        client: CloudClient,
        reason: str,
        clear: list[ProvisioningRequest] | None = None,
    ) -> PollResult:
        try:
            return self._tracker.poll(request, client)
        except CloudError as e:
            # The request may still complete; keep the entry and look again
            logger.warning(
                f"Polling {request.operation_kind.value} for {machine.key} failed: {e}",
                extra={
                    "resource": str(machine.key),
                    "cloud_request_id": request.cloud_request_id,
                },
            )
            raise _Requeue(self._degraded(machine, reason, str(e), clear)) from e

    def _await(
        self,
        machine: MachineResource,
        request: ProvisioningRequest,
        client: CloudClient,
        condition_type: str,
        reason: str,
        clear: list[ProvisioningRequest],
    ) -> ProvisioningRequest:
        """Return the finished request or end the pass with a requeue."""
        result = self._poll(machine, request, client, reason, clear)
        if result.succeeded:
            if not result.request.target_id:
                clear.append(result.request)
                raise _Requeue(
                    self._fail(
                        machine,
                        reason,
                        f"{request.operation_kind.value} finished without a resource id",
                        clear,
                    )
                )
            return result.request

        if result.failed:
            # Kept until the failure is written
            clear.append(result.request)
            raise _Requeue(self._cloud_error(machine, result.error, reason, clear))

        raise _Requeue(self._pending(machine, result.request, condition_type, clear))

    def _pending(
        self,
        machine: MachineResource,
        request: ProvisioningRequest,
        condition_type: str | None,
        clear: list[ProvisioningRequest],
    ) -> ReconcileOutcome:
        """Requeue behind an in-flight request, backing off once it is stale.

        With no ``condition_type`` (deletion) the conditions are left alone
        while the request is young and a stale one is reported as Degraded.
        """
        now = self._clock()
        if self._tracker.is_stale(request, self._config.request_stale_after_seconds):
            age = int(request.age_seconds(now))
            logger.warning(
                f"{request.operation_kind.value} for {machine.key} pending for {age}s",
                extra={
                    "resource": str(machine.key),
                    "operation": request.operation_kind.value,
                    "cloud_request_id": request.cloud_request_id,
                    "age_seconds": age,
                },
            )
            message = f"request {request.cloud_request_id} pending for {age}s"
            if condition_type is None:
                conds = conditions.mark_degraded(
                    machine.status.conditions, conditions.REQUEST_STALE, message, now
                )
            else:
                conds = conditions.mark_false(
                    machine.status.conditions,
                    condition_type,
                    conditions.REQUEST_STALE,
                    ConditionSeverity.WARNING,
                    message,
                    now,
                )
            return ReconcileOutcome.retry(machine.with_status(conditions=conds), clear=tuple(clear))

        if condition_type is not None:
            machine = machine.with_status(
                conditions=conditions.mark_false(
                    machine.status.conditions,
                    condition_type,
                    conditions.REQUEST_IN_PROGRESS,
                    ConditionSeverity.INFO,
                    f"waiting for request {request.cloud_request_id}",
                    now,
                )
            )
        return ReconcileOutcome.requeue(
            machine, after=self._config.poll_interval_seconds, clear=tuple(clear)
        )

    def _wait(
        self, machine: MachineResource, condition_type: str, reason: str, message: str
    ) -> ReconcileOutcome:
        conds = conditions.mark_false(
            machine.status.conditions,
            condition_type,
            reason,
            ConditionSeverity.INFO,
            message,
            self._clock(),
        )
        return ReconcileOutcome.requeue(
            machine.with_status(conditions=conds), after=self._config.poll_interval_seconds
        )

    def _cloud_error(
        self,
        machine: MachineResource,
        error: CloudError,
        reason: str,
        clear: list[ProvisioningRequest] | None = None,
    ) -> ReconcileOutcome:
        # Credentials belong to the cluster; fixing them must not need a machine edit
        if error.retryable or isinstance(error, CloudAuthError):
            return self._degraded(machine, reason, error.message, clear)
        return self._fail(machine, reason, error.message, clear)

    def _degraded(
        self,
        machine: MachineResource,
        reason: str,
        message: str,
        clear: list[ProvisioningRequest] | None = None,
    ) -> ReconcileOutcome:
        logger.warning(
            f"Reconcile of {machine.key} degraded: {message}",
            extra={"resource": str(machine.key), "reason": reason},
        )
        conds = conditions.mark_degraded(machine.status.conditions, reason, message, self._clock())
        return ReconcileOutcome.retry(
            machine.with_status(conditions=conds), clear=tuple(clear or ())
        )

    def _fail(
        self,
        machine: MachineResource,
        reason: str,
        message: str,
        clear: list[ProvisioningRequest] | None = None,
    ) -> ReconcileOutcome:
        logger.error(
            f"Machine {machine.key} failed: {message}",
            extra={"resource": str(machine.key), "reason": reason},
        )
        conds = conditions.mark_false(
            machine.status.conditions,
            conditions.READY,
            reason,
            ConditionSeverity.ERROR,
            message,
            self._clock(),
        )
        return ReconcileOutcome.done(
            machine.with_status(
                phase=MachinePhase.FAILED,
                ready=False,
                failure_reason=message,
                failure_message=f"{reason}: {message}",
                conditions=conditions.clear_condition(conds, conditions.DEGRADED),
                observed_generation=machine.metadata.generation,
            ),
            clear=tuple(clear or ()),
        )
