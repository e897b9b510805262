"""Cluster Reconciler: cluster-wide resources shared by all machines.

Phases::

    Pending -> Provisioning -> Ready
    (any) -> Deleting -> Deleted
    (any) -> Failed

Ready means credentials resolve, the location exists and the control-plane
endpoint is published. It says nothing about machines.
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
)
from .config import Config
from .models import (
    ClusterPhase,
    ClusterResource,
    ConditionSeverity,
    ControlPlaneEndpoint,
)
from .outcome import ReconcileOutcome
from .security import CredentialsError, resolve_credentials
from .store import MemoryResourceStore
from .teardown import TeardownCoordinator
from .tracker import OperationKind, ProvisioningRequest, RequestTracker

logger = logging.getLogger(__name__)


class ClusterReconciler:
    """Drives one IonosCloudCluster toward its spec."""

    def __init__(
        self,
        store: MemoryResourceStore,
        tracker: RequestTracker,
        clients: CloudClientFactory,
        teardown: TeardownCoordinator,
        config: Config,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._clients = clients
        self._teardown = teardown
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))

    def reconcile(self, cluster: ClusterResource) -> ReconcileOutcome:
        """Run one pass for ``cluster``."""
        if cluster.is_paused:
            logger.debug(f"{cluster.key} is paused, skipping", extra={"resource": str(cluster.key)})
            return ReconcileOutcome.done(cluster)
        if cluster.is_deleting:
            return self._reconcile_delete(cluster)
        return self._reconcile_normal(cluster)

    # =========================================================================
    # Provisioning
    # =========================================================================

    def _reconcile_normal(self, cluster: ClusterResource) -> ReconcileOutcome:
        if not cluster.has_finalizer():
            return ReconcileOutcome.requeue(cluster.with_finalizer(), after=0)

        status = cluster.status
        generation = cluster.metadata.generation
        if status.phase == ClusterPhase.FAILED:
            if generation <= status.observed_generation:
                return ReconcileOutcome.done(cluster)
            logger.info(
                f"Spec of failed cluster {cluster.key} changed, resuming",
                extra={"resource": str(cluster.key), "generation": generation},
            )
            cluster = cluster.with_status(failure_reason=None, failure_message=None)

        phase = status.phase
        if phase in (ClusterPhase.PENDING, ClusterPhase.FAILED):
            phase = ClusterPhase.PROVISIONING
        cluster = cluster.with_status(phase=phase, observed_generation=generation)
        now = self._clock()

        # Credentials
        try:
            credentials = resolve_credentials(
                self._store,
                cluster.spec.credentials_ref,
                cluster.metadata.namespace,
                requested_by=str(cluster.key),
            )
        except CredentialsError as e:
            if e.retryable:
                reason, severity = conditions.WAITING_FOR_SECRET, ConditionSeverity.INFO
            else:
                reason, severity = conditions.INVALID_CREDENTIALS, ConditionSeverity.ERROR
            return self._not_ready(
                cluster, conditions.CREDENTIALS_RESOLVED, reason, severity, str(e)
            )

        client = self._clients.for_credentials(credentials)
        try:
            client.verify_credentials()
        except CloudAuthError as e:
            return self._not_ready(
                cluster,
                conditions.CREDENTIALS_RESOLVED,
                conditions.INVALID_CREDENTIALS,
                ConditionSeverity.ERROR,
                e.message,
            )
        except CloudError as e:
            return self._degraded(cluster, conditions.TRANSIENT_ERROR, e.message)
        cluster = cluster.with_status(
            conditions=conditions.mark_true(
                cluster.status.conditions, conditions.CREDENTIALS_RESOLVED, now
            )
        )

        # Location
        try:
            client.get_location(cluster.spec.location)
        except CloudNotFoundError:
            return self._fail(
                cluster,
                conditions.LOCATION_NOT_FOUND,
                f"location {cluster.spec.location} not found",
            )
        except CloudError as e:
            return self._cloud_error(cluster, e, conditions.LOCATION_NOT_FOUND)
        cluster = cluster.with_status(
            conditions=conditions.mark_true(
                cluster.status.conditions, conditions.LOCATION_AVAILABLE, now
            )
        )

        # Control-plane endpoint
        clear: tuple[ProvisioningRequest, ...] = ()
        if cluster.spec.control_plane_endpoint.is_set:
            endpoint = cluster.spec.control_plane_endpoint
        else:
            outcome, cluster, clear = self._ensure_endpoint_ip(cluster, client)
            if outcome is not None:
                return outcome
            try:
                ips = client.get_ip_block(cluster.status.endpoint_ip_block_id).ips
            except CloudError as e:
                return self._cloud_error(cluster, e, conditions.TRANSIENT_ERROR, clear)
            if not ips:
                return self._degraded(
                    cluster,
                    conditions.TRANSIENT_ERROR,
                    f"IP block {cluster.status.endpoint_ip_block_id} has no address yet",
                    clear,
                )
            endpoint = ControlPlaneEndpoint(
                host=ips[0], port=cluster.spec.control_plane_endpoint.port
            )

        if cluster.status.phase != ClusterPhase.READY:
            logger.info(
                f"Cluster {cluster.key} is ready",
                extra={
                    "resource": str(cluster.key),
                    "endpoint": f"{endpoint.host}:{endpoint.port}",
                },
            )
        conds = conditions.clear_condition(cluster.status.conditions, conditions.DEGRADED)
        conds = conditions.mark_true(conds, conditions.ENDPOINT_PUBLISHED, now)
        conds = conditions.mark_true(conds, conditions.READY, now)
        return ReconcileOutcome.requeue(
            cluster.with_status(
                phase=ClusterPhase.READY,
                ready=True,
                control_plane_endpoint=endpoint,
                conditions=conds,
            ),
            after=self._config.resync_interval_seconds,
            clear=clear,
        )

    def _ensure_endpoint_ip(
        self, cluster: ClusterResource, client: CloudClient
    ) -> tuple[ReconcileOutcome | None, ClusterResource, tuple[ProvisioningRequest, ...]]:
        """Reserve the endpoint address through the tracker.

        Returns an outcome to end the pass with, or None once the IP block id
        is recorded in the returned cluster.
        """
        if cluster.status.endpoint_ip_block_id:
            return None, cluster, ()

        try:
            request, _ = self._tracker.submit(
                cluster.key,
                OperationKind.ALLOCATE_IP,
                lambda: client.reserve_ip_block(
                    cluster.spec.location, name=f"{cluster.metadata.name}-endpoint"
                ),
            )
            result = self._tracker.poll(request, client)
        except CloudError as e:
            return self._cloud_error(cluster, e, conditions.TRANSIENT_ERROR), cluster, ()

        if result.pending:
            outcome = self._pending(cluster, result.request, conditions.ENDPOINT_PUBLISHED, ())
            return outcome, cluster, ()

        if result.failed or not result.request.target_id:
            error = result.error or CloudNotFoundError("IP block reservation returned no id")
            # Kept until the failure is written
            outcome = self._cloud_error(
                cluster, error, conditions.TRANSIENT_ERROR, (result.request,)
            )
            return outcome, cluster, ()

        ip_block_id = result.request.target_id
        logger.info(
            f"Reserved endpoint IP block {ip_block_id} for {cluster.key}",
            extra={"resource": str(cluster.key), "ip_block_id": ip_block_id},
        )
        return None, cluster.with_status(endpoint_ip_block_id=ip_block_id), (result.request,)

    # =========================================================================
    # Deletion
    # =========================================================================

    def _reconcile_delete(self, cluster: ClusterResource) -> ReconcileOutcome:
        if not cluster.has_finalizer():
            return ReconcileOutcome.done(cluster)

        now = self._clock()
        if cluster.status.phase != ClusterPhase.DELETING:
            logger.info(f"Deleting cluster {cluster.key}", extra={"resource": str(cluster.key)})
        cluster = cluster.with_status(phase=ClusterPhase.DELETING, ready=False)

        self._teardown.cascade(cluster.key)
        if not self._teardown.can_delete(cluster.key):
            remaining = self._teardown.dependent_machines(cluster.key)
            conds = conditions.mark_false(
                cluster.status.conditions,
                conditions.READY,
                conditions.WAITING_FOR_MACHINES,
                ConditionSeverity.INFO,
                f"{len(remaining)} machines still present",
                now,
            )
            return ReconcileOutcome.requeue(
                cluster.with_status(conditions=conds),
                after=self._config.resync_interval_seconds,
            )

        conds = conditions.mark_false(
            cluster.status.conditions,
            conditions.READY,
            conditions.DELETING,
            ConditionSeverity.INFO,
            now=now,
        )
        cluster = cluster.with_status(conditions=conds)

        tracked = self._tracker.list(cluster.key)
        if not tracked and not cluster.status.endpoint_ip_block_id:
            return self._finish_delete(cluster)

        try:
            credentials = resolve_credentials(
                self._store,
                cluster.spec.credentials_ref,
                cluster.metadata.namespace,
                requested_by=str(cluster.key),
            )
        except CredentialsError as e:
            return self._degraded(cluster, conditions.DELETE_ERROR, str(e))
        client = self._clients.for_credentials(credentials)
        clear: list[ProvisioningRequest] = []

        try:
            allocation = self._tracker.get(cluster.key, OperationKind.ALLOCATE_IP)
            if allocation is not None:
                result = self._tracker.poll(allocation, client)
                if result.pending:
                    return self._pending(cluster, result.request, None, clear)
                if result.succeeded and not cluster.status.endpoint_ip_block_id:
                    cluster = cluster.with_status(endpoint_ip_block_id=result.request.target_id)
                clear.append(result.request)

            ip_block_id = cluster.status.endpoint_ip_block_id
            if ip_block_id:
                try:
                    request, _ = self._tracker.submit(
                        cluster.key,
                        OperationKind.RELEASE_IP,
                        lambda: client.release_ip_block(ip_block_id),
                    )
                except CloudNotFoundError:
                    request = None
                if request is not None:
                    result = self._tracker.poll(request, client)
                    if result.pending:
                        return self._pending(cluster, result.request, None, clear)
                    clear.append(result.request)
                    if result.failed and not isinstance(result.error, CloudNotFoundError):
                        return self._degraded(
                            cluster, conditions.DELETE_ERROR, result.error.message, clear
                        )
                logger.info(
                    f"Released endpoint IP block {ip_block_id} of {cluster.key}",
                    extra={"resource": str(cluster.key), "ip_block_id": ip_block_id},
                )
        except CloudError as e:
            return self._degraded(cluster, conditions.DELETE_ERROR, e.message, clear)

        return self._finish_delete(cluster.with_status(endpoint_ip_block_id=None))

    def _finish_delete(self, cluster: ClusterResource) -> ReconcileOutcome:
        logger.info(f"Cluster {cluster.key} deleted", extra={"resource": str(cluster.key)})
        return ReconcileOutcome.done(
            cluster.without_finalizer().with_status(phase=ClusterPhase.DELETED),
            clear=tuple(self._tracker.list(cluster.key)),
            removed=True,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _not_ready(
        self,
        cluster: ClusterResource,
        condition_type: str,
        reason: str,
        severity: ConditionSeverity,
        message: str,
    ) -> ReconcileOutcome:
        """Record why the cluster cannot become ready and retry with backoff.

        The phase is left as it is: a Ready cluster whose credentials stop
        working reports phase Ready with ``ready`` False and the cause on the
        Ready condition until the credentials are fixed.
        """
        logger.warning(
            f"Cluster {cluster.key} not ready: {message}",
            extra={"resource": str(cluster.key), "reason": reason},
        )
        now = self._clock()
        conds = conditions.mark_false(
            cluster.status.conditions, condition_type, reason, severity, message, now
        )
        conds = conditions.mark_false(conds, conditions.READY, reason, severity, message, now)
        return ReconcileOutcome.retry(cluster.with_status(ready=False, conditions=conds))

    def _pending(
        self,
        cluster: ClusterResource,
        request: ProvisioningRequest,
        condition_type: str | None,
        clear: tuple[ProvisioningRequest, ...] | list[ProvisioningRequest],
    ) -> ReconcileOutcome:
        """Requeue behind an in-flight request, backing off once it is stale.

        With no ``condition_type`` (deletion) the conditions are left alone
        while the request is young and a stale one is reported as Degraded.
        """
        now = self._clock()
        if self._tracker.is_stale(request, self._config.request_stale_after_seconds):
            age = int(request.age_seconds(now))
            logger.warning(
                f"{request.operation_kind.value} for {cluster.key} pending for {age}s",
                extra={
                    "resource": str(cluster.key),
                    "operation": request.operation_kind.value,
                    "cloud_request_id": request.cloud_request_id,
                    "age_seconds": age,
                },
            )
            message = f"request {request.cloud_request_id} pending for {age}s"
            if condition_type is None:
                conds = conditions.mark_degraded(
                    cluster.status.conditions, conditions.REQUEST_STALE, message, now
                )
            else:
                conds = conditions.mark_false(
                    cluster.status.conditions,
                    condition_type,
                    conditions.REQUEST_STALE,
                    ConditionSeverity.WARNING,
                    message,
                    now,
                )
            return ReconcileOutcome.retry(cluster.with_status(conditions=conds), clear=tuple(clear))

        if condition_type is not None:
            cluster = cluster.with_status(
                conditions=conditions.mark_false(
                    cluster.status.conditions,
                    condition_type,
                    conditions.REQUEST_IN_PROGRESS,
                    ConditionSeverity.INFO,
                    f"waiting for request {request.cloud_request_id}",
                    now,
                )
            )
        return ReconcileOutcome.requeue(
            cluster, after=self._config.poll_interval_seconds, clear=tuple(clear)
        )

    def _cloud_error(
        self,
        cluster: ClusterResource,
        error: CloudError,
        reason: str,
        clear: tuple[ProvisioningRequest, ...] | list[ProvisioningRequest] = (),
    ) -> ReconcileOutcome:
        if error.retryable or isinstance(error, CloudAuthError):
            return self._degraded(cluster, reason, error.message, clear)
        return self._fail(cluster, reason, error.message, clear)

    def _degraded(
        self,
        cluster: ClusterResource,
        reason: str,
        message: str,
        clear: tuple[ProvisioningRequest, ...] | list[ProvisioningRequest] = (),
    ) -> ReconcileOutcome:
        logger.warning(
            f"Reconcile of {cluster.key} degraded: {message}",
            extra={"resource": str(cluster.key), "reason": reason},
        )
        conds = conditions.mark_degraded(cluster.status.conditions, reason, message, self._clock())
        return ReconcileOutcome.retry(cluster.with_status(conditions=conds), clear=tuple(clear))

    def _fail(
        self,
        cluster: ClusterResource,
        reason: str,
        message: str,
        clear: tuple[ProvisioningRequest, ...] | list[ProvisioningRequest] = (),
    ) -> ReconcileOutcome:
        logger.error(
            f"Cluster {cluster.key} failed: {message}",
            extra={"resource": str(cluster.key), "reason": reason},
        )
        now = self._clock()
        conds = conditions.clear_condition(cluster.status.conditions, conditions.DEGRADED)
        if reason == conditions.LOCATION_NOT_FOUND:
            conds = conditions.mark_false(
                conds, conditions.LOCATION_AVAILABLE, reason, ConditionSeverity.ERROR, message, now
            )
        conds = conditions.mark_false(
            conds, conditions.READY, reason, ConditionSeverity.ERROR, message, now
        )
        return ReconcileOutcome.done(
            cluster.with_status(
                phase=ClusterPhase.FAILED,
                ready=False,
                failure_reason=message,
                failure_message=f"{reason}: {message}",
                conditions=conds,
                observed_generation=cluster.metadata.generation,
            ),
            clear=tuple(clear),
        )
