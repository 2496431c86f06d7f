"""ImageBuild manifest import/export.

Manifests use the API server layout:

    apiVersion: imagebuild.dev/v1
    kind: ImageBuild
    metadata:
      name: app
      namespace: builds
    spec:
      context: https://example.com/context.tgz
      images: [registry.example.com/team/app:1.0]
"""

import json
from pathlib import Path
from typing import Any

import yaml

from imagebuild.schema import IMAGEBUILD_KIND, ImageBuild


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_manifest(data: dict[str, Any]) -> ImageBuild:
    """Validate a manifest and convert it to an ImageBuild.

    Args:
        data: Manifest content.

    Returns:
        Validated ImageBuild.

    Raises:
        ValueError: If kind or metadata are wrong.
        pydantic.ValidationError: If the spec or status are invalid.
    """
    kind = data.get("kind", IMAGEBUILD_KIND)
    if kind != IMAGEBUILD_KIND:
        raise ValueError(f"Expected kind {IMAGEBUILD_KIND}, got {kind!r}")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be a mapping")

    payload: dict[str, Any] = {
        "name": metadata.get("name"),
        "annotations": metadata.get("annotations") or {},
        "spec": data.get("spec"),
    }
    if metadata.get("namespace"):
        payload["namespace"] = metadata["namespace"]
    if data.get("status") is not None:
        payload["status"] = data["status"]
    return ImageBuild.model_validate(payload)


def load_manifest(path: Path) -> ImageBuild:
    """Load and validate an ImageBuild manifest (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Raises:
        ValueError: If the file extension is not supported.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return parse_manifest(load_yaml(path))
    if suffix == ".json":
        return parse_manifest(load_json(path))
    raise ValueError(f"Unsupported file extension: {suffix}")


def object_to_manifest(
    obj: ImageBuild, api_version: str = "imagebuild.dev/v1"
) -> dict[str, Any]:
    """Render an ImageBuild in manifest layout."""
    metadata: dict[str, Any] = {"name": obj.name, "namespace": obj.namespace}
    if obj.annotations:
        metadata["annotations"] = dict(obj.annotations)
    return {
        "apiVersion": api_version,
        "kind": IMAGEBUILD_KIND,
        "metadata": metadata,
        "spec": obj.spec.model_dump(mode="json", by_alias=True, exclude_none=True),
        "status": obj.status.model_dump(mode="json", by_alias=True, exclude_none=True),
    }


def manifest_to_yaml_string(manifest: dict[str, Any]) -> str:
    """Serialize a manifest to a YAML string."""
    result: str = yaml.dump(
        manifest,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )
    return result


__all__ = [
    "load_json",
    "load_manifest",
    "load_yaml",
    "manifest_to_yaml_string",
    "object_to_manifest",
    "parse_manifest",
]
