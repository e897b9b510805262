"""Request Tracker: durable record of in-flight cloud mutations.

Maps a logical operation ``(resource key, operation kind)`` to the
cloud-side asynchronous request id and its last observed state.

IDEMPOTENCY INVARIANT:
At most one entry exists per ``(resource key, operation kind)``. ``submit``
returns an existing entry unchanged instead of calling the cloud again, so
repeated reconcile passes, requeues and crash-restarts collapse into a
single outstanding cloud operation.

LIFECYCLE:
- Created by ``submit`` when the mutation is first issued. A mutation that
  completes synchronously is recorded as already DONE.
- Updated by every ``poll``.
- Removed by ``clear``. Successful entries are cleared only once the status
  that records their result has been written, so a crash in between never
  loses an instance id. Failed entries are cleared by the reconciler.

The tracker is only safe under single-writer-per-key scheduling; the
backing store serializes writes across keys.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from .cloud import CloudError, CloudOperation, RequestState, RequestStatus, classify_request_failure
from .models import ResourceKey
from .store import atomic_write_json

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class OperationKind(str, Enum):
    """Logical cloud mutations tracked per resource."""

    CREATE_SERVER = "CreateServer"
    ATTACH_NIC = "AttachNIC"
    ALLOCATE_IP = "AllocateIP"
    DELETE_SERVER = "DeleteServer"
    RELEASE_IP = "ReleaseIP"


class ProvisioningRequest(BaseModel):
    """Tracked handle for one outstanding asynchronous cloud mutation."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    resource_key: str = Field(alias="resourceKey")
    operation_kind: OperationKind = Field(alias="operationKind")
    cloud_request_id: str | None = Field(None, alias="cloudRequestID")
    last_observed_state: RequestState = Field(RequestState.QUEUED, alias="lastObservedState")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    target_id: str | None = Field(None, alias="targetID")
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.last_observed_state.is_terminal

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


class PollOutcome(str, Enum):
    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class PollResult:
    """Result of polling a tracked request.

    ``error`` is set for FAILED and carries the classified cloud error.
    """

    outcome: PollOutcome
    request: ProvisioningRequest
    error: CloudError | None = None

    @property
    def pending(self) -> bool:
        return self.outcome == PollOutcome.PENDING

    @property
    def succeeded(self) -> bool:
        return self.outcome == PollOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome == PollOutcome.FAILED


class StatusSource(Protocol):
    """Anything that can look up a cloud request status."""

    def get_request_status(self, request_id: str) -> RequestStatus: ...


# =============================================================================
# Backing stores
# =============================================================================


class MemoryTrackerStore:
    """Volatile tracker store, used in tests and dry runs."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, OperationKind], ProvisioningRequest] = {}
        self._lock = threading.Lock()

    def get(self, resource_key: str, kind: OperationKind) -> ProvisioningRequest | None:
        with self._lock:
            return self._entries.get((resource_key, kind))

    def put(self, request: ProvisioningRequest) -> None:
        with self._lock:
            self._entries[(request.resource_key, request.operation_kind)] = request
            self._flush_locked()

    def delete(self, resource_key: str, kind: OperationKind) -> bool:
        with self._lock:
            removed = self._entries.pop((resource_key, kind), None) is not None
            if removed:
                self._flush_locked()
            return removed

    def list(self) -> list[ProvisioningRequest]:
        with self._lock:
            return [self._entries[k] for k in sorted(self._entries)]

    def _flush_locked(self) -> None:
        pass


class JsonFileTrackerStore(MemoryTrackerStore):
    """Tracker store persisted to a JSON file on every change."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        if path.exists():
            with open(path, encoding="utf-8") as f:
                for item in json.load(f):
                    request = ProvisioningRequest.model_validate(item)
                    self._entries[(request.resource_key, request.operation_kind)] = request
            logger.info(
                f"Loaded {len(self._entries)} tracked requests from {path}",
                extra={"state_path": str(path)},
            )

    def _flush_locked(self) -> None:
        atomic_write_json(
            self._path,
            [
                self._entries[k].model_dump(mode="json", by_alias=True)
                for k in sorted(self._entries)
            ],
        )


TrackerStore = MemoryTrackerStore


# =============================================================================
# Tracker
# =============================================================================


class RequestTracker:
    """Deduplicates cloud mutations per ``(resource key, operation kind)``."""

    def __init__(self, store: TrackerStore | None = None, clock: Clock | None = None) -> None:
        self._store = store if store is not None else MemoryTrackerStore()
        self._clock = clock or (lambda: datetime.now(UTC))

    def submit(
        self,
        key: ResourceKey,
        kind: OperationKind,
        issue_fn: Callable[[], CloudOperation],
    ) -> tuple[ProvisioningRequest, bool]:
        """Return the tracked request for ``(key, kind)``, issuing it if absent.

        ``issue_fn`` is called at most once, and only when no entry exists.
        If it raises, nothing is recorded and the error propagates.

        Returns:
            ``(request, is_new)``; ``is_new`` is False when an existing entry
            was found and the caller must poll it instead.
        """
        resource_key = str(key)
        existing = self._store.get(resource_key, kind)
        if existing is not None:
            return existing, False

        operation = issue_fn()
        now = self._clock()
        request = ProvisioningRequest(
            resource_key=resource_key,
            operation_kind=kind,
            cloud_request_id=operation.request_id,
            last_observed_state=RequestState.DONE if operation.completed else RequestState.QUEUED,
            created_at=now,
            updated_at=now,
            target_id=operation.target_id,
        )
        self._store.put(request)

        logger.info(
            f"Submitted {kind.value} for {resource_key}",
            extra={
                "resource": resource_key,
                "operation": kind.value,
                "cloud_request_id": operation.request_id,
                "target_id": operation.target_id,
            },
        )
        return request, True

    def poll(self, request: ProvisioningRequest, client: StatusSource) -> PollResult:
        """Refresh ``request`` from the cloud and classify the outcome.

        Terminal entries are answered from the record without a cloud call.

        Raises:
            CloudError: If the status lookup itself fails.
        """
        if not request.is_terminal and request.cloud_request_id is not None:
            status = client.get_request_status(request.cloud_request_id)
            request = request.model_copy(
                update={
                    "last_observed_state": status.state,
                    "updated_at": self._clock(),
                    "target_id": request.target_id or status.target_id,
                    "message": status.message,
                }
            )
            self._store.put(request)
            if request.is_terminal:
                logger.info(
                    f"{request.operation_kind.value} for {request.resource_key} "
                    f"finished: {status.state.value}",
                    extra={
                        "resource": request.resource_key,
                        "operation": request.operation_kind.value,
                        "cloud_request_id": request.cloud_request_id,
                        "state": status.state.value,
                        "cloud_message": status.message,
                    },
                )

        match request.last_observed_state:
            case RequestState.DONE:
                return PollResult(PollOutcome.SUCCEEDED, request)
            case RequestState.FAILED:
                message = request.message or f"{request.operation_kind.value} request failed"
                return PollResult(PollOutcome.FAILED, request, classify_request_failure(message))
            case _:
                return PollResult(PollOutcome.PENDING, request)

    def clear(self, request: ProvisioningRequest) -> None:
        """Forget ``request``; the next submit for its key and kind issues anew."""
        if self._store.delete(request.resource_key, request.operation_kind):
            logger.debug(
                f"Cleared {request.operation_kind.value} for {request.resource_key}",
                extra={
                    "resource": request.resource_key,
                    "operation": request.operation_kind.value,
                },
            )

    def get(self, key: ResourceKey, kind: OperationKind) -> ProvisioningRequest | None:
        return self._store.get(str(key), kind)

    def list(self, key: ResourceKey | None = None) -> list[ProvisioningRequest]:
        requests = self._store.list()
        if key is None:
            return requests
        return [r for r in requests if r.resource_key == str(key)]

    def is_stale(self, request: ProvisioningRequest, threshold_seconds: float) -> bool:
        """True if a non-terminal request has been in flight past the threshold."""
        return not request.is_terminal and request.age_seconds(self._clock()) > threshold_seconds
