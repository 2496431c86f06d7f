"""Shared type definitions for imagebuild.

This module contains enums shared across subpackages to avoid
circular imports.
"""

from enum import Enum


class Phase(str, Enum):
    """Lifecycle phase of an ImageBuild object."""

    UNSET = ""
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class ExporterType(str, Enum):
    """Exporters understood by the build daemon."""

    IMAGE = "image"
    OCI = "oci"


class CacheType(str, Enum):
    """Cache backends used for cache import/export entries."""

    INLINE = "inline"
    REGISTRY = "registry"


__all__ = [
    "CacheType",
    "ExporterType",
    "Phase",
]
