"""Plain-text display of solve progress.

Renders the status stream of a solve the way ``buildctl --progress=plain``
does, one line per event:

    #3 [2/4] RUN make
    #3 0.412 compiling...
    #3 DONE 3.2s

Lines go to a logger and, when given, a Rich console.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

    from imagebuild.buildkit.solve import StatusChannel, Vertex, VertexLog

logger = logging.getLogger(__name__)


@dataclass
class _VertexState:
    index: int
    announced: bool = False
    finished: bool = False


@dataclass
class ProgressDisplay:
    """Display sink draining a solve's status channel.

    Attributes:
        log: Logger receiving one INFO record per rendered line.
        console: Optional Rich console that also receives each line.
        lines: Number of lines rendered so far.
    """

    log: logging.Logger = field(default_factory=lambda: logger)
    console: Console | None = None
    lines: int = 0
    _vertexes: dict[str, _VertexState] = field(default_factory=dict)

    def _emit(self, line: str) -> None:
        self.lines += 1
        self.log.info("%s", line)
        if self.console is not None:
            self.console.print(line, markup=False, highlight=False)

    def _state(self, digest: str) -> _VertexState:
        state = self._vertexes.get(digest)
        if state is None:
            state = _VertexState(index=len(self._vertexes) + 1)
            self._vertexes[digest] = state
        return state

    def _render_vertex(self, vertex: Vertex) -> None:
        state = self._state(vertex.digest)
        if not state.announced and (vertex.started or vertex.cached):
            state.announced = True
            self._emit(f"#{state.index} {vertex.name}")
        if state.finished:
            return

        if vertex.cached:
            state.finished = True
            self._emit(f"#{state.index} CACHED")
        elif vertex.error:
            state.finished = True
            self._emit(f"#{state.index} ERROR: {vertex.error}")
        elif vertex.completed is not None:
            state.finished = True
            duration = ""
            if vertex.started is not None:
                seconds = (vertex.completed - vertex.started).total_seconds()
                duration = f" {seconds:.1f}s"
            self._emit(f"#{state.index} DONE{duration}")

    def _render_log(self, entry: VertexLog) -> None:
        state = self._state(entry.vertex)
        text = entry.data.decode("utf-8", errors="replace")
        for line in text.splitlines():
            if line:
                self._emit(f"#{state.index} {line}")

    async def display(self, channel: StatusChannel) -> None:
        """Consume every event on ``channel`` until it is closed."""
        async for status in channel:
            for vertex in status.vertexes:
                self._render_vertex(vertex)
            for entry in status.logs:
                self._render_log(entry)


__all__ = ["ProgressDisplay"]
