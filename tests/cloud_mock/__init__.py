"""IONOS Cloud API mock for integration testing.

Provides an in-memory implementation of the cloud API surface the
reconcilers use, so provisioning and teardown flows can be exercised
without network access.

Key Features:
- Asynchronous request lifecycle (QUEUED -> RUNNING -> DONE/FAILED)
- Error injection for synchronous call failures and failed requests
- Call counters for idempotency assertions
- External deletion of servers

Usage:
    from cloud_mock import build_harness, make_cluster, make_secret

    h = build_harness(tmp_path)
    h.add(make_secret())
    key = h.add(make_cluster())
    h.reconcile(key, passes=2)

    assert h.cloud.calls["reserve_ip_block"] == 1
"""

from .builders import (
    CREDENTIALS_SECRET,
    NAMESPACE,
    TEST_TOKEN,
    Harness,
    build_harness,
    make_cluster,
    make_machine,
    make_secret,
)
from .cloud import FakeClientFactory, FakeClock, FakeCloud

__all__ = [
    "CREDENTIALS_SECRET",
    "NAMESPACE",
    "TEST_TOKEN",
    "FakeClientFactory",
    "FakeClock",
    "FakeCloud",
    "Harness",
    "build_harness",
    "make_cluster",
    "make_machine",
    "make_secret",
]
