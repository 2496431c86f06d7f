"""ImageBuild object storage module.

This module handles:
- Persisting ImageBuild objects and their transition logs
- Applying targeted status patches
- Loading ImageBuild manifests from YAML/JSON
"""

from imagebuild.imagebuilds.models import ImageBuildRecord

__all__ = ["ImageBuildRecord"]
