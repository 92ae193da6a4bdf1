"""Validation of imported cluster documents.

Imports come from user-supplied JSON, so the document is checked for size,
shape and reserved keys before any entity is built from it.
"""

from __future__ import annotations

import json
from typing import Any

from superpod_sim.domain.entities.cluster import FabricTopology
from superpod_sim.domain.exceptions import ClusterValidationError

DEFAULT_MAX_IMPORT_BYTES = 5 * 1024 * 1024

FORBIDDEN_KEYS = frozenset({"__proto__", "constructor", "prototype"})


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def find_forbidden_keys(data: Any, path: str = "root") -> list[str]:
    """Walk a decoded document and report every reserved key."""
    errors: list[str] = []
    if isinstance(data, dict):
        for key, value in data.items():
            if key in FORBIDDEN_KEYS:
                errors.append(f"Forbidden key {key!r} found at {path}")
            errors.extend(find_forbidden_keys(value, f"{path}.{key}"))
    elif isinstance(data, list):
        for index, item in enumerate(data):
            errors.extend(find_forbidden_keys(item, f"{path}[{index}]"))
    return errors


def validate_cluster_document(data: Any) -> list[str]:
    """Check the structure of a decoded cluster document.

    Args:
        data: Result of ``json.loads``.

    Returns:
        Every problem found. Empty when the document is acceptable.
    """
    forbidden = find_forbidden_keys(data)
    if forbidden:
        return forbidden

    if not isinstance(data, dict):
        return ["Cluster document must be a JSON object"]

    errors: list[str] = []
    if not _is_non_empty_string(data.get("name")):
        errors.append('Missing or invalid required field "name" (must be a non-empty string)')

    nodes = data.get("nodes")
    if not isinstance(nodes, list):
        errors.append('Missing or invalid required field "nodes" (must be an array)')
    elif not nodes:
        errors.append('Field "nodes" must contain at least one node')
    else:
        for index, node in enumerate(nodes):
            if not isinstance(node, dict):
                errors.append(f"nodes[{index}] must be an object")
                continue
            if not _is_non_empty_string(node.get("id")):
                errors.append(f"nodes[{index}].id is missing or invalid")
            if not _is_non_empty_string(node.get("hostname")):
                errors.append(f"nodes[{index}].hostname is missing or invalid")
            if not isinstance(node.get("gpus"), list):
                errors.append(f"nodes[{index}].gpus is missing or invalid (must be an array)")

    topology = data.get("fabric_topology")
    valid_topologies = [t.value for t in FabricTopology]
    if topology is not None and topology not in valid_topologies:
        errors.append(
            f"Invalid fabric_topology {topology!r} (must be one of: {', '.join(valid_topologies)})"
        )

    bcm_ha = data.get("bcm_ha")
    if bcm_ha is not None:
        if not isinstance(bcm_ha, dict):
            errors.append('Field "bcm_ha" must be an object')
        elif not isinstance(bcm_ha.get("enabled"), bool):
            errors.append("bcm_ha.enabled must be a boolean")

    slurm_config = data.get("slurm_config")
    if slurm_config is not None:
        if not isinstance(slurm_config, dict):
            errors.append('Field "slurm_config" must be an object')
        elif "partitions" in slurm_config and not isinstance(slurm_config["partitions"], list):
            errors.append("slurm_config.partitions must be an array")

    return errors


def parse_cluster_json(raw: str, max_bytes: int = DEFAULT_MAX_IMPORT_BYTES) -> dict[str, Any]:
    """Decode and validate a cluster JSON document.

    Args:
        raw: JSON text.
        max_bytes: Size limit of the UTF-8 encoded text.

    Returns:
        The decoded document.

    Raises:
        ClusterValidationError: If the text is too large, not JSON, or
            structurally invalid.
    """
    size = len(raw.encode("utf-8"))
    if size > max_bytes:
        raise ClusterValidationError(
            [
                f"Document size ({size / (1024 * 1024):.2f}MB) exceeds maximum allowed size "
                f"({max_bytes / (1024 * 1024):.2f}MB)"
            ]
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ClusterValidationError([f"Invalid JSON: {e}"]) from e

    errors = validate_cluster_document(data)
    if errors:
        raise ClusterValidationError(errors)
    return data
