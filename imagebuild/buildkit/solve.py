"""Solve request types and the build daemon contract.

A solve is one build-and-export operation executed by the remote daemon.
The daemon's wire protocol lives behind :class:`BuildDaemon`; this module
only describes what is handed to it and what it streams back.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, BinaryIO, Protocol, cast

if TYPE_CHECKING:
    from imagebuild.buildkit.auth import DockerAuthProvider

DOCKERFILE_FRONTEND = "dockerfile.v0"


@dataclass
class ExportEntry:
    """Destination and method for a build's output.

    Attributes:
        type: Exporter name (``image``, ``oci``, ...).
        attrs: Exporter attributes (e.g. ``push``/``name`` for images).
        output: Factory for the writer receiving a tarball export. Called with
            the exporter's metadata; ``None`` for exporters that do not
            produce a stream.
    """

    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    output: Callable[[dict[str, str]], BinaryIO] | None = None


@dataclass
class CacheOptionsEntry:
    """A cache import or export backend."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class SolveRequest:
    """Everything the daemon needs to run one solve.

    Attributes:
        frontend: Build-definition interpreter.
        frontend_attrs: Frontend options, including ``build-arg:*`` entries.
        local_dirs: Local directories exposed to the daemon by name.
        exports: Export entries, in order.
        cache_exports: Cache export backends.
        cache_imports: Cache import backends.
        session: Session attachables (credential providers).
    """

    frontend: str = DOCKERFILE_FRONTEND
    frontend_attrs: dict[str, str] = field(default_factory=dict)
    local_dirs: dict[str, str] = field(default_factory=dict)
    exports: list[ExportEntry] = field(default_factory=list)
    cache_exports: list[CacheOptionsEntry] = field(default_factory=list)
    cache_imports: list[CacheOptionsEntry] = field(default_factory=list)
    session: list[DockerAuthProvider] = field(default_factory=list)


@dataclass
class Vertex:
    """One node of the build graph as reported by the daemon."""

    digest: str
    name: str
    started: datetime | None = None
    completed: datetime | None = None
    cached: bool = False
    error: str | None = None


@dataclass
class VertexLog:
    """A chunk of output produced while executing a vertex."""

    vertex: str
    data: bytes
    stream: int = 1


@dataclass
class SolveStatus:
    """A single progress event from a running solve."""

    vertexes: list[Vertex] = field(default_factory=list)
    logs: list[VertexLog] = field(default_factory=list)


class ChannelClosedError(Exception):
    """Raised when sending on a closed status channel."""


class StatusChannel:
    """Single-producer, single-consumer stream of solve status events.

    The producer sends events and closes the channel when it is done;
    iterating the channel yields events until it is closed. A channel can
    be consumed once.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, status: SolveStatus) -> None:
        if self._closed:
            raise ChannelClosedError("send on closed status channel")
        await self._queue.put(status)

    def close(self) -> None:
        """Close the channel. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[SolveStatus]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield cast(SolveStatus, item)


class BuildDaemon(Protocol):
    """Contract of a remote build daemon client."""

    async def solve(
        self, request: SolveRequest, status: StatusChannel
    ) -> dict[str, str]:
        """Run a solve, sending progress events on ``status``.

        Returns:
            Exporter response metadata (e.g. pushed image digests).
        """
        ...


__all__ = [
    "BuildDaemon",
    "CacheOptionsEntry",
    "ChannelClosedError",
    "DOCKERFILE_FRONTEND",
    "ExportEntry",
    "SolveRequest",
    "SolveStatus",
    "StatusChannel",
    "Vertex",
    "VertexLog",
]
