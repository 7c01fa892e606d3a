"""
kubeforge/utils/cluster_config.py

Reading and writing cluster documents. YAML is a superset of JSON, so both
formats go through yaml.safe_load; the parsed mapping is validated into a
ClusterSpec with pydantic.
"""

from __future__ import annotations

from typing import Any

import aiofiles
import yaml

from kubeforge.models.cluster import ClusterSpec
from kubeforge.models.validator import validate_type


def parse_cluster_spec(text: str) -> ClusterSpec:
    """
    Parse a YAML or JSON cluster document.

    Raises:
        ValueError: If the document is not a mapping or does not validate.
    """
    try:
        data: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Cluster document is not valid YAML/JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Cluster document must be a mapping at the top level")
    return validate_type(data, ClusterSpec)


def dump_cluster_spec(spec: ClusterSpec) -> str:
    """Render a ClusterSpec as YAML, keeping field order."""
    return yaml.safe_dump(spec.model_dump(mode="json"), default_flow_style=False, sort_keys=False)


async def load_cluster_spec(path: str) -> ClusterSpec:
    async with aiofiles.open(path, "r") as f:
        content = await f.read()
    return parse_cluster_spec(content)


async def write_cluster_spec(spec: ClusterSpec, path: str) -> None:
    async with aiofiles.open(path, "w") as f:
        await f.write(dump_cluster_spec(spec))


__all__ = [
    "parse_cluster_spec",
    "dump_cluster_spec",
    "load_cluster_spec",
    "write_cluster_spec",
]
