"""Pydantic models for cluster, machine and secret resources.

These models provide:
1. Type-safe parsing of manifests and persisted state
2. Validation at the boundary (fail fast, fail loudly)
3. Immutable values: a reconcile pass returns a new resource instead of
   mutating the one it read
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Self

from pydantic import BaseModel, Field, field_validator

API_VERSION = "infrastructure.cluster.x-k8s.io/v1alpha1"

# Finalizer claimed by this provider on clusters and machines
FINALIZER = "ionoscloud.infrastructure.cluster.x-k8s.io"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"

PROVIDER_ID_PREFIX = "ionos://"

_MODEL_CONFIG = {"extra": "ignore", "frozen": True, "populate_by_name": True}


class ResourceKind(str, Enum):
    """Kinds of objects held in the resource store."""

    CLUSTER = "IonosCloudCluster"
    MACHINE = "IonosCloudMachine"
    SECRET = "Secret"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of one stored object."""

    kind: ResourceKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceKey:
        """Parse the ``kind/namespace/name`` form produced by ``str()``."""
        parts = value.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid resource key: {value!r}")
        return cls(kind=ResourceKind(parts[0]), namespace=parts[1], name=parts[2])


class StatusRegressionError(Exception):
    """Raised when a pass would move status backwards."""

    pass


# =============================================================================
# Conditions
# =============================================================================


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


class Condition(BaseModel):
    """Observation of one aspect of a resource, Cluster API style."""

    model_config = _MODEL_CONFIG

    type: Annotated[str, Field(min_length=1)]
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    severity: ConditionSeverity = ConditionSeverity.NONE
    message: str = ""
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")


# =============================================================================
# Metadata
# =============================================================================


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the provider relies on."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: Annotated[str, Field(min_length=1)] = "default"
    uid: str = Field(default_factory=lambda: str(uuid.uuid4()))
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    resource_version: int = Field(0, alias="resourceVersion")
    generation: int = 1


class _Resource(BaseModel):
    """Behaviour shared by every stored object."""

    model_config = _MODEL_CONFIG

    metadata: ObjectMeta

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(
            kind=ResourceKind(self.kind),  # type: ignore[attr-defined]
            namespace=self.metadata.namespace,
            name=self.metadata.name,
        )

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def is_paused(self) -> bool:
        return PAUSED_ANNOTATION in self.metadata.annotations

    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    def with_finalizer(self) -> Self:
        if self.has_finalizer():
            return self
        finalizers = (*self.metadata.finalizers, FINALIZER)
        return self.model_copy(
            update={"metadata": self.metadata.model_copy(update={"finalizers": finalizers})}
        )

    def without_finalizer(self) -> Self:
        finalizers = tuple(f for f in self.metadata.finalizers if f != FINALIZER)
        return self.model_copy(
            update={"metadata": self.metadata.model_copy(update={"finalizers": finalizers})}
        )


# =============================================================================
# Secret
# =============================================================================


class SecretResource(_Resource):
    """Credentials or bootstrap data; values are already decoded."""

    api_version: str = Field("v1", alias="apiVersion")
    kind: Literal["Secret"] = "Secret"
    data: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Cluster
# =============================================================================


class ClusterPhase(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    DELETING = "Deleting"
    DELETED = "Deleted"
    FAILED = "Failed"


class ControlPlaneEndpoint(BaseModel):
    """Host and port the workload cluster API server is reachable on."""

    model_config = _MODEL_CONFIG

    host: str = ""
    port: Annotated[int, Field(ge=1, le=65535)] = 6443

    @property
    def is_set(self) -> bool:
        return bool(self.host)


class CredentialsRef(BaseModel):
    """Reference to the Secret holding the cloud API token."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    namespace: str | None = None


class ClusterSpec(BaseModel):
    model_config = _MODEL_CONFIG

    location: Annotated[str, Field(min_length=1)]
    control_plane_endpoint: ControlPlaneEndpoint = Field(
        default_factory=ControlPlaneEndpoint, alias="controlPlaneEndpoint"
    )
    credentials_ref: CredentialsRef = Field(alias="credentialsRef")

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        # Locations are region/site pairs, e.g. de/fra
        if v.count("/") != 1 or v.startswith("/") or v.endswith("/"):
            raise ValueError("location must have the form <region>/<site>, e.g. de/fra")
        return v


class ClusterStatus(BaseModel):
    model_config = _MODEL_CONFIG

    phase: ClusterPhase = ClusterPhase.PENDING
    ready: bool = False
    control_plane_endpoint: ControlPlaneEndpoint | None = Field(
        None, alias="controlPlaneEndpoint"
    )
    endpoint_ip_block_id: str | None = Field(None, alias="endpointIPBlockID")
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")
    conditions: tuple[Condition, ...] = ()
    observed_generation: int = Field(0, alias="observedGeneration")


class ClusterResource(_Resource):
    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: Literal["IonosCloudCluster"] = "IonosCloudCluster"
    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    def with_status(self, **updates: object) -> ClusterResource:
        return self.model_copy(update={"status": self.status.model_copy(update=updates)})


# =============================================================================
# Machine
# =============================================================================


class MachinePhase(str, Enum):
    PENDING = "Pending"
    CREATING = "Creating"
    NETWORK_ATTACHING = "NetworkAttaching"
    BOOTSTRAPPING = "Bootstrapping"
    RUNNING = "Running"
    DELETING = "Deleting"
    DELETED = "Deleted"
    FAILED = "Failed"


class ImageRef(BaseModel):
    model_config = _MODEL_CONFIG

    id: Annotated[str, Field(min_length=1)]


class DiskSpec(BaseModel):
    """Boot volume created together with the server."""

    model_config = _MODEL_CONFIG

    image: ImageRef
    size_gb: Annotated[int, Field(ge=10, le=4096, alias="sizeGB")] = 20
    disk_type: str = Field("HDD", alias="diskType")
    availability_zone: str = Field("AUTO", alias="availabilityZone")

    @field_validator("disk_type")
    @classmethod
    def validate_disk_type(cls, v: str) -> str:
        valid_types = {"HDD", "SSD", "SSD Standard", "SSD Premium"}
        if v not in valid_types:
            raise ValueError(f"diskType must be one of {sorted(valid_types)}")
        return v


class BootstrapSpec(BaseModel):
    """Inputs from the bootstrap provider; consumed, never produced here."""

    model_config = _MODEL_CONFIG

    data_secret_name: str | None = Field(None, alias="dataSecretName")
    ready: bool = False


class MachineSpec(BaseModel):
    model_config = _MODEL_CONFIG

    datacenter_id: Annotated[str, Field(min_length=1, alias="datacenterID")]
    num_cores: Annotated[int, Field(ge=1, le=64, alias="numCores")] = 1
    memory_mb: Annotated[int, Field(ge=1024, alias="memoryMB")] = 3072
    cpu_family: str | None = Field(None, alias="cpuFamily")
    availability_zone: str = Field("AUTO", alias="availabilityZone")
    disk: DiskSpec
    lan_id: Annotated[int, Field(ge=1, alias="lanID")] = 1
    bootstrap: BootstrapSpec = Field(default_factory=BootstrapSpec)

    @field_validator("memory_mb")
    @classmethod
    def validate_memory(cls, v: int) -> int:
        if v % 256 != 0:
            raise ValueError("memoryMB must be a multiple of 256")
        return v

    @field_validator("availability_zone")
    @classmethod
    def validate_availability_zone(cls, v: str) -> str:
        valid_zones = {"AUTO", "ZONE_1", "ZONE_2"}
        if v not in valid_zones:
            raise ValueError(f"availabilityZone must be one of {sorted(valid_zones)}")
        return v


class MachineStatus(BaseModel):
    model_config = _MODEL_CONFIG

    phase: MachinePhase = MachinePhase.PENDING
    ready: bool = False
    instance_id: str | None = Field(None, alias="instanceID")
    provider_id: str | None = Field(None, alias="providerID")
    nic_id: str | None = Field(None, alias="nicID")
    ip_block_id: str | None = Field(None, alias="ipBlockID")
    addresses: tuple[str, ...] = ()
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")
    conditions: tuple[Condition, ...] = ()
    observed_generation: int = Field(0, alias="observedGeneration")


class MachineResource(_Resource):
    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: Literal["IonosCloudMachine"] = "IonosCloudMachine"
    spec: MachineSpec
    status: MachineStatus = Field(default_factory=MachineStatus)

    @property
    def cluster_name(self) -> str | None:
        return self.metadata.labels.get(CLUSTER_NAME_LABEL)

    @property
    def cluster_key(self) -> ResourceKey | None:
        if not self.cluster_name:
            return None
        return ResourceKey(ResourceKind.CLUSTER, self.metadata.namespace, self.cluster_name)

    def with_status(self, **updates: object) -> MachineResource:
        return self.model_copy(update={"status": self.status.model_copy(update=updates)})


Resource = ClusterResource | MachineResource | SecretResource

RESOURCE_MODELS: dict[ResourceKind, type[_Resource]] = {
    ResourceKind.CLUSTER: ClusterResource,
    ResourceKind.MACHINE: MachineResource,
    ResourceKind.SECRET: SecretResource,
}


# =============================================================================
# Forward-only progress
# =============================================================================

_PHASE_ORDER: dict[type[Enum], tuple[Enum, ...]] = {
    MachinePhase: (
        MachinePhase.PENDING,
        MachinePhase.CREATING,
        MachinePhase.NETWORK_ATTACHING,
        MachinePhase.BOOTSTRAPPING,
        MachinePhase.RUNNING,
    ),
    ClusterPhase: (
        ClusterPhase.PENDING,
        ClusterPhase.PROVISIONING,
        ClusterPhase.READY,
    ),
}


def check_forward_progress(
    stored: MachineStatus | ClusterStatus,
    proposed: MachineStatus | ClusterStatus,
) -> None:
    """Reject a status write that would move a resource backwards.

    Forward phases may only advance. Failed, Deleting and Deleted are
    reachable from anywhere, Deleting only leads to Deleted, and Failed is
    only left after the spec was edited (observed generation advanced).

    Raises:
        StatusRegressionError: If ``proposed`` regresses ``stored``.
    """
    old, new = stored.phase, proposed.phase
    if old == new:
        return

    names = {phase.value for phase in type(old)}
    deleting, deleted, failed = "Deleting", "Deleted", "Failed"
    if not {deleting, deleted, failed} <= names:
        raise TypeError(f"Unsupported phase type: {type(old).__name__}")

    if old.value == deleted:
        raise StatusRegressionError(f"resource already {deleted}, cannot move to {new.value}")
    if old.value == deleting:
        if new.value != deleted:
            raise StatusRegressionError(f"{deleting} can only move to {deleted}, not {new.value}")
        return
    if new.value in (deleting, deleted, failed):
        return
    if old.value == failed:
        if proposed.observed_generation > stored.observed_generation:
            return
        raise StatusRegressionError(
            f"{failed} can only be left after the spec changes (generation "
            f"{stored.observed_generation} already observed)"
        )

    order = _PHASE_ORDER[type(old)]
    if order.index(new) < order.index(old):
        raise StatusRegressionError(f"phase would regress from {old.value} to {new.value}")
