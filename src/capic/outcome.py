"""Return value of a reconcile pass."""

from __future__ import annotations

from dataclasses import dataclass

from .models import Resource
from .tracker import ProvisioningRequest


@dataclass(frozen=True)
class ReconcileOutcome:
    """New desired state of a resource plus what the scheduler should do next.

    Attributes:
        resource: Resource to write back; the caller skips the write when it
            equals what was read.
        requeue_after: Seconds until the next pass, None for no requeue.
        backoff: Requeue with the per-key exponential backoff instead of
            ``requeue_after``.
        clear: Tracker entries to forget once the write succeeded.
        removed: The write drops the last finalizer of a deleting resource.
    """

    resource: Resource
    requeue_after: float | None = None
    backoff: bool = False
    clear: tuple[ProvisioningRequest, ...] = ()
    removed: bool = False

    @classmethod
    def done(cls, resource: Resource, **kwargs: object) -> ReconcileOutcome:
        return cls(resource=resource, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def requeue(cls, resource: Resource, after: float, **kwargs: object) -> ReconcileOutcome:
        return cls(resource=resource, requeue_after=after, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def retry(cls, resource: Resource, **kwargs: object) -> ReconcileOutcome:
        return cls(resource=resource, backoff=True, **kwargs)  # type: ignore[arg-type]
