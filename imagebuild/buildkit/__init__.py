"""Remote build orchestration module.

This module handles:
- Fetching and extracting build contexts
- Assembling solve requests (exports, cache options, credentials)
- Running a solve alongside its progress display
"""

from imagebuild.buildkit.client import BuildOptions, RemoteClient
from imagebuild.buildkit.runner import SolveError, run_solve

__all__ = ["BuildOptions", "RemoteClient", "SolveError", "run_solve"]
