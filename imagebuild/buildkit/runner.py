"""Solve runner.

Runs a solve and the display of its progress as two tasks in one task
group. A failure in either task cancels the other; the runner waits for
both and raises the first error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from imagebuild.buildkit.solve import StatusChannel

if TYPE_CHECKING:
    from imagebuild.buildkit.progress import ProgressDisplay
    from imagebuild.buildkit.solve import BuildDaemon, SolveRequest

logger = logging.getLogger(__name__)


class SolveError(Exception):
    """Raised when a solve or its progress display fails."""

    def __init__(self, message: str, code: str = "solve_error") -> None:
        super().__init__(message)
        self.code = code


async def run_solve(
    daemon: BuildDaemon,
    request: SolveRequest,
    display: ProgressDisplay,
) -> dict[str, str]:
    """Execute a solve while draining its progress stream.

    Args:
        daemon: Build daemon client.
        request: Assembled solve request.
        display: Sink consuming the progress events.

    Returns:
        Exporter response metadata from the daemon.

    Raises:
        SolveError: If the solve or the display fails. The original error is
            chained as the cause.
    """
    channel = StatusChannel()
    response: dict[str, str] = {}

    async def solve() -> None:
        try:
            response.update(await daemon.solve(request, channel))
        finally:
            channel.close()

    try:
        async with asyncio.TaskGroup() as group:
            group.create_task(solve(), name="solve")
            group.create_task(display.display(channel), name="progress")
    except ExceptionGroup as eg:
        first = eg.exceptions[0]
        logger.error("Solve failed: %s", first)
        raise SolveError(f"buildkit solve issue: {first}") from first

    logger.debug("Solve finished with %d exporter response entries", len(response))
    return response


__all__ = ["SolveError", "run_solve"]
