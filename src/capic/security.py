"""Credential resolution for the cloud API.

Clusters reference a Secret holding the API token (key ``token``, optional
``apiURL``). Tokens are resolved per reconcile pass and never logged: log
lines and status messages only ever carry a short SHA-256 fingerprint.

SECURITY INVARIANTS:
1. Token values never appear in logs, status or reprs
2. Every credential resolution is recorded as a security audit event
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Protocol

from .models import CredentialsRef, ResourceKey, ResourceKind, SecretResource

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
API_URL_KEY = "apiURL"


class CredentialsError(Exception):
    """Raised when a credentials reference cannot be resolved.

    ``retryable`` is True when the problem may fix itself, e.g. the Secret
    has not been created yet.
    """

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class CloudCredentials:
    token: str = field(repr=False)
    api_url: str | None = None

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.token.encode("utf-8")).hexdigest()[:12]


class SecretReader(Protocol):
    """Read interface of the resource store used here."""

    def find(self, key: ResourceKey) -> object | None: ...


def resolve_credentials(
    store: SecretReader,
    ref: CredentialsRef,
    namespace: str,
    *,
    requested_by: str = "",
) -> CloudCredentials:
    """Look up the Secret named by ``ref`` and return its token.

    The Secret namespace defaults to the referencing object's namespace.

    Raises:
        CredentialsError: retryable if the Secret is missing, permanent if it
            exists without a usable token.
    """
    secret_key = ResourceKey(ResourceKind.SECRET, ref.namespace or namespace, ref.name)
    secret = store.find(secret_key)

    if not isinstance(secret, SecretResource):
        log_security_audit_event(
            event_type="credentials_resolution",
            requested_by=requested_by,
            target_resource=str(secret_key),
            action="read_secret",
            result="not_found",
        )
        raise CredentialsError(f"Secret {secret_key} not found", retryable=True)

    token = secret.data.get(TOKEN_KEY, "").strip()
    if not token:
        log_security_audit_event(
            event_type="credentials_resolution",
            requested_by=requested_by,
            target_resource=str(secret_key),
            action="read_secret",
            result="invalid",
        )
        raise CredentialsError(
            f"Secret {secret_key} has no '{TOKEN_KEY}' key", retryable=False
        )

    credentials = CloudCredentials(token=token, api_url=secret.data.get(API_URL_KEY) or None)
    log_security_audit_event(
        event_type="credentials_resolution",
        requested_by=requested_by,
        target_resource=str(secret_key),
        action="read_secret",
        result="success",
        fingerprint=credentials.fingerprint,
    )
    return credentials


def log_security_audit_event(
    event_type: str,
    requested_by: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
    fingerprint: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (credentials_resolution, auth, ...).
        requested_by: Resource on whose behalf the event happened.
        target_resource: Object being accessed.
        action: Action being performed.
        result: Result of the action (success, not_found, invalid, denied).
        fingerprint: Token fingerprint, never the token itself.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "requested_by": requested_by,
            "target_resource": target_resource,
            "action": action,
            "result": result,
            "credentials": fingerprint,
        },
    )
