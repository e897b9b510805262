"""Cloud API client for the IONOS Cloud v6 REST API.

Wraps the asynchronous VM/network primitives of the cloud API behind a
small synchronous interface built on the azure-core HTTP pipeline:

- Mutations (create server, attach NIC, reserve/release IP block, delete
  server) return a CloudOperation holding the cloud-side request id parsed
  from the ``Location`` header, or complete immediately.
- Request status is polled through ``get_request_status``.
- Reads (describe server, NIC, IP block, location) complete synchronously.

ERROR CLASSIFICATION:
Every failure leaving this module is a CloudError subclass. Reconcilers only
branch on TransientCloudError / PermanentCloudError / CloudNotFoundError /
CloudAuthError, never on raw transport exceptions.

IDEMPOTENCY: The client does not deduplicate. Mutations are sent with
transport retries disabled; deduplication is the Request Tracker's job.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError, ServiceRequestError, ServiceResponseError
from azure.core.pipeline.policies import (
    AzureKeyCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest, HttpResponse

from .config import Config

if TYPE_CHECKING:
    from .models import MachineSpec
    from .security import CloudCredentials

logger = logging.getLogger(__name__)

USER_AGENT = "capic-operator"

# Status codes worth retrying later; everything else in 4xx is permanent
TRANSIENT_STATUS_CODES = frozenset({408, 409, 423, 425, 429, 500, 502, 503, 504})

# Failed request messages that describe a temporary condition
TRANSIENT_MESSAGE_MARKERS: tuple[str, ...] = (
    "temporar",
    "try again",
    "timed out",
    "timeout",
    "capacity",
    "throttl",
    "rate limit",
)

_REQUEST_ID_PATTERN = re.compile(r"/requests/([^/?]+)/status")


# =============================================================================
# Error taxonomy
# =============================================================================


class CloudError(Exception):
    """Base class for classified cloud API failures."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientCloudError(CloudError):
    """Network timeout, rate limit or temporary capacity shortage."""

    retryable = True


class PermanentCloudError(CloudError):
    """Invalid configuration or a permanently denied request."""

    pass


class CloudNotFoundError(PermanentCloudError):
    """The addressed cloud resource does not exist."""

    pass


class CloudAuthError(PermanentCloudError):
    """The credentials were rejected."""

    pass


def classify_status(status_code: int, message: str) -> CloudError:
    """Map an HTTP error status to the error taxonomy."""
    if status_code in (401, 403):
        return CloudAuthError(message, status_code)
    if status_code == 404:
        return CloudNotFoundError(message, status_code)
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return TransientCloudError(message, status_code)
    return PermanentCloudError(message, status_code)


def classify_request_failure(message: str) -> CloudError:
    """Classify an asynchronous request that ended in FAILED."""
    lowered = message.lower()
    if any(marker in lowered for marker in TRANSIENT_MESSAGE_MARKERS):
        return TransientCloudError(message)
    if "not found" in lowered or "does not exist" in lowered:
        return CloudNotFoundError(message)
    return PermanentCloudError(message)


def classify_exception(exc: Exception) -> CloudError:
    """Convert an azure-core exception into the error taxonomy."""
    if isinstance(exc, CloudError):
        return exc
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return TransientCloudError(f"Cloud API unreachable: {exc}")
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return classify_status(status_code, str(exc))
    if isinstance(exc, AzureError):
        return TransientCloudError(f"Cloud API error: {exc}")
    return PermanentCloudError(str(exc))


# =============================================================================
# Results
# =============================================================================


class RequestState(str, Enum):
    """Cloud-side states of an asynchronous request."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.DONE, RequestState.FAILED)


@dataclass(frozen=True)
class CloudOperation:
    """Handle returned by a mutating call.

    ``request_id`` is None when the call completed synchronously.
    ``target_id`` is the id of the created resource when the API returns it.
    """

    request_id: str | None
    target_id: str | None = None

    @property
    def completed(self) -> bool:
        return self.request_id is None


@dataclass(frozen=True)
class RequestStatus:
    state: RequestState
    message: str = ""
    target_id: str | None = None


@dataclass(frozen=True)
class ServerInfo:
    id: str
    name: str = ""
    state: str = ""
    vm_state: str = ""


@dataclass(frozen=True)
class NicInfo:
    id: str
    ips: tuple[str, ...] = ()
    lan_id: int | None = None


@dataclass(frozen=True)
class IPBlockInfo:
    id: str
    location: str = ""
    ips: tuple[str, ...] = ()


@dataclass(frozen=True)
class LocationInfo:
    id: str
    name: str = ""


# =============================================================================
# Client
# =============================================================================


class CloudClient:
    """Synchronous cloud API client bound to one API token."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str,
        timeout_seconds: int = 60,
        retry_total: int = 3,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = PipelineClient(
            base_url=self._api_url,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(retry_total=retry_total),
                AzureKeyCredentialPolicy(
                    AzureKeyCredential(token), "Authorization", prefix="Bearer"
                ),
            ],
        )

    def close(self) -> None:
        self._client.close()

    # -- mutations -----------------------------------------------------------

    def create_server(
        self,
        datacenter_id: str,
        name: str,
        spec: MachineSpec,
        user_data: str | None = None,
    ) -> CloudOperation:
        """Create a server with its boot volume in one request."""
        volume: dict[str, Any] = {
            "name": f"{name}-boot",
            "type": spec.disk.disk_type,
            "size": spec.disk.size_gb,
            "image": spec.disk.image.id,
            "availabilityZone": spec.disk.availability_zone,
        }
        if user_data:
            volume["userData"] = base64.b64encode(user_data.encode("utf-8")).decode("ascii")

        server: dict[str, Any] = {
            "name": name,
            "cores": spec.num_cores,
            "ram": spec.memory_mb,
            "availabilityZone": spec.availability_zone,
        }
        if spec.cpu_family:
            server["cpuFamily"] = spec.cpu_family

        body = {
            "properties": server,
            "entities": {"volumes": {"items": [{"properties": volume}]}},
        }
        response = self._send(
            "POST", f"/datacenters/{_q(datacenter_id)}/servers", body=body, mutating=True
        )
        return self._operation(response)

    def attach_nic(
        self,
        datacenter_id: str,
        server_id: str,
        lan_id: int,
        ips: tuple[str, ...] = (),
        name: str = "",
    ) -> CloudOperation:
        properties: dict[str, Any] = {"lan": lan_id, "dhcp": True}
        if name:
            properties["name"] = name
        if ips:
            properties["ips"] = list(ips)
        response = self._send(
            "POST",
            f"/datacenters/{_q(datacenter_id)}/servers/{_q(server_id)}/nics",
            body={"properties": properties},
            mutating=True,
        )
        return self._operation(response)

    def reserve_ip_block(self, location: str, name: str, size: int = 1) -> CloudOperation:
        response = self._send(
            "POST",
            "/ipblocks",
            body={"properties": {"name": name, "location": location, "size": size}},
            mutating=True,
        )
        return self._operation(response)

    def delete_server(self, datacenter_id: str, server_id: str) -> CloudOperation:
        """Delete a server together with its attached volumes."""
        response = self._send(
            "DELETE",
            f"/datacenters/{_q(datacenter_id)}/servers/{_q(server_id)}",
            params={"deleteVolumes": "true"},
            mutating=True,
        )
        return self._operation(response)

    def release_ip_block(self, ip_block_id: str) -> CloudOperation:
        response = self._send("DELETE", f"/ipblocks/{_q(ip_block_id)}", mutating=True)
        return self._operation(response)

    # -- reads ---------------------------------------------------------------

    def get_request_status(self, request_id: str) -> RequestStatus:
        body = self._json(self._send("GET", f"/requests/{_q(request_id)}/status"))
        metadata = body.get("metadata") or {}
        try:
            state = RequestState(str(metadata.get("status", "")).upper())
        except ValueError as e:
            raise TransientCloudError(
                f"Unknown status for request {request_id}: {metadata.get('status')!r}"
            ) from e

        target_id = None
        for target in metadata.get("targets") or []:
            target_id = (target.get("target") or {}).get("id")
            if target_id:
                break

        return RequestStatus(
            state=state,
            message=str(metadata.get("message") or ""),
            target_id=target_id,
        )

    def describe_server(self, datacenter_id: str, server_id: str) -> ServerInfo:
        body = self._json(
            self._send("GET", f"/datacenters/{_q(datacenter_id)}/servers/{_q(server_id)}")
        )
        properties = body.get("properties") or {}
        return ServerInfo(
            id=body.get("id", server_id),
            name=properties.get("name", ""),
            state=(body.get("metadata") or {}).get("state", ""),
            vm_state=properties.get("vmState", ""),
        )

    def get_nic(self, datacenter_id: str, server_id: str, nic_id: str) -> NicInfo:
        body = self._json(
            self._send(
                "GET",
                f"/datacenters/{_q(datacenter_id)}/servers/{_q(server_id)}/nics/{_q(nic_id)}",
            )
        )
        properties = body.get("properties") or {}
        return NicInfo(
            id=body.get("id", nic_id),
            ips=tuple(properties.get("ips") or ()),
            lan_id=properties.get("lan"),
        )

    def get_ip_block(self, ip_block_id: str) -> IPBlockInfo:
        body = self._json(self._send("GET", f"/ipblocks/{_q(ip_block_id)}"))
        properties = body.get("properties") or {}
        return IPBlockInfo(
            id=body.get("id", ip_block_id),
            location=properties.get("location", ""),
            ips=tuple(properties.get("ips") or ()),
        )

    def get_location(self, location: str) -> LocationInfo:
        """Look up a ``region/site`` location.

        Raises:
            CloudNotFoundError: If the location does not exist.
        """
        region, _, site = location.partition("/")
        body = self._json(self._send("GET", f"/locations/{_q(region)}/{_q(site)}"))
        return LocationInfo(
            id=body.get("id", location),
            name=(body.get("properties") or {}).get("name", ""),
        )

    def verify_credentials(self) -> None:
        """Issue a cheap authenticated read.

        Raises:
            CloudAuthError: If the token is rejected.
        """
        self._send("GET", "/locations", params={"depth": "0"})

    # -- transport -----------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        mutating: bool = False,
    ) -> HttpResponse:
        request = HttpRequest(method, f"{self._api_url}{path}", json=body, params=params)
        options: dict[str, Any] = {
            "connection_timeout": self._timeout_seconds,
            "read_timeout": self._timeout_seconds,
        }
        if mutating:
            # A retried POST could create a second server
            options["retry_total"] = 0

        try:
            response = self._client.send_request(request, **options)
        except AzureError as e:
            error = classify_exception(e)
            logger.warning(
                "Cloud API call failed",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise error from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.debug(
                "Cloud API error response",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise classify_status(response.status_code, message)

        logger.debug(
            "Cloud API call",
            extra={"method": method, "path": path, "status_code": response.status_code},
        )
        return response

    @staticmethod
    def _json(response: HttpResponse) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise TransientCloudError(f"Invalid JSON from cloud API: {e}") from e
        if not isinstance(body, dict):
            raise TransientCloudError("Cloud API returned a non-object body")
        return body

    def _operation(self, response: HttpResponse) -> CloudOperation:
        target_id = None
        if response.text():
            target_id = self._json(response).get("id")

        location = response.headers.get("Location", "")
        match = _REQUEST_ID_PATTERN.search(location)
        if match is None:
            return CloudOperation(request_id=None, target_id=target_id)
        return CloudOperation(request_id=match.group(1), target_id=target_id)


def _q(value: str) -> str:
    return quote(value, safe="")


def _error_message(response: HttpResponse) -> str:
    """Extract the human-readable message from an error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text() or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        messages = [
            str(m.get("message"))
            for m in body.get("messages") or []
            if isinstance(m, dict) and m.get("message")
        ]
        if messages:
            return "; ".join(messages)
    return f"HTTP {response.status_code}"


class CloudClientFactory:
    """Creates and caches one CloudClient per credential."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._clients: dict[str, CloudClient] = {}
        self._lock = threading.Lock()

    def for_credentials(self, credentials: CloudCredentials) -> CloudClient:
        api_url = credentials.api_url or self._config.api_url
        cache_key = hashlib.sha256(f"{api_url}\0{credentials.token}".encode()).hexdigest()
        with self._lock:
            client = self._clients.get(cache_key)
            if client is None:
                client = CloudClient(
                    credentials.token,
                    api_url=api_url,
                    timeout_seconds=self._config.http_timeout_seconds,
                    retry_total=self._config.http_retries,
                )
                self._clients[cache_key] = client
                logger.info(
                    "Created cloud API client",
                    extra={"api_url": api_url, "credentials": credentials.fingerprint},
                )
            return client

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
