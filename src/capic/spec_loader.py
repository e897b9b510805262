"""Manifest loading and sync into the resource store.

Manifests are Kubernetes style YAML documents (``apiVersion``, ``kind``,
``metadata``, ``spec``), several per file. Only IonosCloudCluster,
IonosCloudMachine and Secret are loaded; other kinds in the same files
(Cluster, KubeadmControlPlane, templates, ...) are skipped.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import (
    RESOURCE_MODELS,
    Resource,
    ResourceKey,
    ResourceKind,
    SecretResource,
)
from .store import ConflictError, MemoryResourceStore, ResourceNotFoundError

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _format_validation_error(source: str, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def _decode_secret_data(document: dict[str, Any], source: str) -> dict[str, str]:
    """Merge ``data`` (base64) and ``stringData`` (plain), the latter winning."""
    data: dict[str, str] = {}
    for key, value in (document.get("data") or {}).items():
        try:
            data[key] = base64.b64decode(str(value), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SpecLoadError(f"Secret key '{key}' in {source} is not valid base64: {e}") from e
    for key, value in (document.get("stringData") or {}).items():
        data[key] = str(value)
    return data


def parse_document(document: Any, source: str) -> Resource | None:
    """Validate one YAML document.

    Returns:
        The parsed resource, or None for empty documents and unknown kinds.

    Raises:
        SpecLoadError: If the document is malformed or fails validation.
    """
    if document is None:
        return None
    if not isinstance(document, dict):
        raise SpecLoadError(f"Manifest document must be a YAML mapping: {source}")

    kind = document.get("kind")
    try:
        resource_kind = ResourceKind(kind)
    except ValueError:
        logger.debug(f"Skipping {kind} document in {source}", extra={"kind": kind})
        return None

    if resource_kind == ResourceKind.SECRET:
        payload: dict[str, Any] = {
            "metadata": document.get("metadata"),
            "data": _decode_secret_data(document, source),
        }
    else:
        # Status is observed state; manifests only carry desired state
        payload = {k: v for k, v in document.items() if k != "status"}

    try:
        return RESOURCE_MODELS[resource_kind].model_validate(payload)  # type: ignore[return-value]
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(source, e)) from e


def load_manifest_file(path: Path) -> list[Resource]:
    """Load every supported resource from one YAML file.

    Raises:
        SpecLoadError: If the file cannot be read, parsed or validated.
    """
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    resources = []
    for index, document in enumerate(documents):
        resource = parse_document(document, f"{path}#{index}")
        if resource is not None:
            resources.append(resource)
    return resources


def load_manifests(directory: Path) -> list[Resource]:
    """Load all manifests below ``directory``.

    Raises:
        SpecLoadError: On the first invalid file, or if two documents
            declare the same object.
    """
    if not directory.is_dir():
        raise SpecLoadError(f"Manifests directory not found: {directory}")

    resources: dict[ResourceKey, Resource] = {}
    paths = sorted(p for p in directory.rglob("*") if p.suffix in MANIFEST_SUFFIXES and p.is_file())
    for path in paths:
        for resource in load_manifest_file(path):
            if resource.key in resources:
                raise SpecLoadError(f"Duplicate object {resource.key} in {path}")
            resources[resource.key] = resource

    logger.info(
        f"Loaded {len(resources)} objects from {len(paths)} manifest files",
        extra={"manifests_dir": str(directory)},
    )
    return list(resources.values())


@dataclass
class SyncResult:
    """Keys touched by one manifest sync."""

    created: list[ResourceKey] = field(default_factory=list)
    updated: list[ResourceKey] = field(default_factory=list)
    deleted: list[ResourceKey] = field(default_factory=list)
    conflicts: list[ResourceKey] = field(default_factory=list)


def _desired_changes(current: Resource, desired: Resource) -> Resource | None:
    """Apply the desired fields of ``desired`` onto ``current``, if they differ.

    A spec change bumps ``metadata.generation``; status is kept.
    """
    meta = current.metadata
    if isinstance(desired, SecretResource):
        spec_changed = current.data != desired.data  # type: ignore[union-attr]
        spec_update = {"data": desired.data}
    else:
        spec_changed = current.spec != desired.spec  # type: ignore[union-attr]
        spec_update = {"spec": desired.spec}

    labels_changed = meta.labels != desired.metadata.labels
    annotations_changed = meta.annotations != desired.metadata.annotations
    if not (spec_changed or labels_changed or annotations_changed):
        return None

    metadata = meta.model_copy(
        update={
            "labels": desired.metadata.labels,
            "annotations": desired.metadata.annotations,
            "generation": meta.generation + 1 if spec_changed else meta.generation,
        }
    )
    return current.model_copy(update={**spec_update, "metadata": metadata})


def sync_manifests(store: MemoryResourceStore, directory: Path) -> SyncResult:
    """Make the store match the manifests in ``directory``.

    New objects are created, changed objects updated, and objects without a
    manifest get a deletion timestamp. Nothing is touched if any manifest is
    invalid.

    Raises:
        SpecLoadError: If the manifests cannot be loaded.
    """
    desired = {resource.key: resource for resource in load_manifests(directory)}
    result = SyncResult()

    for key, resource in desired.items():
        current = store.find(key)
        try:
            if current is None:
                store.create(resource)
                result.created.append(key)
                continue
            if current.is_deleting:
                continue
            updated = _desired_changes(current, resource)
            if updated is not None:
                store.update(updated)
                result.updated.append(key)
        except ConflictError:
            # A reconciler wrote in between; the next sync picks it up
            result.conflicts.append(key)

    for kind in ResourceKind:
        for resource in store.list(kind):
            if resource.key in desired or resource.is_deleting:
                continue
            try:
                store.request_deletion(resource.key)
            except ResourceNotFoundError:
                continue
            result.deleted.append(resource.key)

    if result.created or result.updated or result.deleted:
        logger.info(
            "Manifests synced",
            extra={
                "created": len(result.created),
                "updated": len(result.updated),
                "deleted": len(result.deleted),
                "conflicts": len(result.conflicts),
            },
        )
    return result
