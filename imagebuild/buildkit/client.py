"""Remote build orchestration.

This module provides the high-level build API:
- RemoteClient.build(): fetch a context, push images, manage layer cache
- RemoteClient.cache(): warm the daemon's cache with a base image

Every call runs in a fresh temporary directory that is removed when the
call returns, whether it succeeded or not.
"""

from __future__ import annotations

import io
import logging
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from imagebuild.buildkit.auth import DockerAuthProvider
from imagebuild.buildkit.fetch import CONTEXT_FETCH_TIMEOUT, ContextFetcher
from imagebuild.buildkit.progress import ProgressDisplay
from imagebuild.buildkit.runner import run_solve
from imagebuild.buildkit.solve import CacheOptionsEntry, ExportEntry, SolveRequest
from imagebuild.reference import InvalidReferenceError, Named, parse_normalized_named
from imagebuild.types import CacheType, ExporterType

if TYPE_CHECKING:
    from rich.console import Console

    from imagebuild.buildkit.solve import BuildDaemon
    from imagebuild.schema import ImageBuildSpec

logger = logging.getLogger(__name__)

BUILD_DIR_PREFIX = "imagebuild-"
BUILD_ARG_PREFIX = "build-arg:"


class BuildError(Exception):
    """Base error for remote build operations."""

    def __init__(self, message: str, code: str = "build_error") -> None:
        super().__init__(message)
        self.code = code


class BuildOptionsError(BuildError):
    """Raised when build options are invalid."""

    def __init__(self, message: str, code: str = "invalid_options") -> None:
        super().__init__(message, code=code)


class BuildDirError(BuildError):
    """Raised when the per-build working directory cannot be prepared."""

    def __init__(self, message: str, code: str = "build_dir") -> None:
        super().__init__(message, code=code)


@dataclass
class BuildOptions:
    """Options for a single image build.

    Attributes:
        context: Locator of the build context archive.
        images: Image references to push, in order. The first one also
            names the registry cache to import from.
        build_args: Build arguments as ``KEY=value`` strings.
        disable_cache_export: Skip exporting inline layer cache.
        disable_cache_import: Skip importing layer cache from the registry.
    """

    context: str
    images: list[str]
    build_args: list[str] = field(default_factory=list)
    disable_cache_export: bool = False
    disable_cache_import: bool = False

    @classmethod
    def from_spec(cls, spec: ImageBuildSpec) -> BuildOptions:
        """Create build options from an ImageBuild spec."""
        return cls(
            context=spec.context,
            images=list(spec.images),
            build_args=list(spec.build_args),
            disable_cache_export=spec.disable_cache_export,
            disable_cache_import=spec.disable_cache_import,
        )


class DiscardWriter(io.RawIOBase):
    """Writable stream that drops everything written to it."""

    def writable(self) -> bool:
        return True

    def write(self, b: bytes) -> int:  # type: ignore[override]
        return len(b)


def discard_output(metadata: dict[str, str]) -> DiscardWriter:
    """Export output factory that discards the exported tarball."""
    return DiscardWriter()


def parse_build_args(build_args: list[str]) -> dict[str, str]:
    """Translate ``KEY=value`` build arguments into frontend attributes.

    Args:
        build_args: Build arguments.

    Returns:
        Mapping of ``build-arg:KEY`` to value.

    Raises:
        BuildOptionsError: If an argument is not of the form ``KEY=value``.
    """
    attrs: dict[str, str] = {}
    for arg in build_args:
        key, sep, value = arg.partition("=")
        if not sep or not key.strip():
            raise BuildOptionsError(
                f"build arg {arg!r} must have the form KEY=value",
                code="invalid_build_arg",
            )
        attrs[f"{BUILD_ARG_PREFIX}{key.strip()}"] = value
    return attrs


def parse_images(images: list[str]) -> list[Named]:
    """Validate and normalize the requested image references.

    Raises:
        BuildOptionsError: If the list is empty or a reference is malformed.
    """
    if not images:
        raise BuildOptionsError(
            "at least one image reference is required", code="empty_images"
        )
    try:
        return [parse_normalized_named(image) for image in images]
    except InvalidReferenceError as e:
        raise BuildOptionsError(str(e), code="invalid_image") from e


def cache_import_ref(images: list[str]) -> str:
    """Derive the registry cache reference for a build.

    Only the first image is considered: its repository name, without tag or
    digest, is assumed to hold the cache. Builds pushing to several
    repositories import cache from the first one only.

    Args:
        images: Requested image references.

    Returns:
        Fully qualified repository name of the first image.

    Raises:
        BuildOptionsError: If the list is empty or the first image is malformed.
    """
    return parse_images(images[:1])[0].name


class RemoteClient:
    """Client driving builds on a remote build daemon.

    Args:
        daemon: Build daemon client used to run solves.
        fetcher: Context fetcher; a default ContextFetcher when omitted.
        auth_config: Directory holding the Docker ``config.json`` used for
            registry credentials.
        tmp_dir: Parent directory for per-build temporary directories.
        console: Optional Rich console echoing build progress.
    """

    def __init__(
        self,
        daemon: BuildDaemon,
        fetcher: ContextFetcher | None = None,
        auth_config: Path | str | None = None,
        tmp_dir: Path | None = None,
        console: Console | None = None,
    ) -> None:
        self.daemon = daemon
        self.fetcher = fetcher or ContextFetcher()
        self.auth_config = auth_config
        self.tmp_dir = tmp_dir
        self.console = console

    async def cache(self, image: str) -> dict[str, str]:
        """Pull ``image`` into the daemon's cache without pushing anything.

        Args:
            image: Base image reference to warm.

        Returns:
            Exporter response metadata.

        Raises:
            BuildOptionsError: If the reference is malformed.
            BuildDirError: If the working directory cannot be prepared.
            SolveError: If the solve fails.
        """
        parse_images([image])
        logger.info("Caching image %s", image)

        async def modify(build_dir: Path, request: SolveRequest) -> None:
            dockerfile = build_dir / "Dockerfile"
            try:
                dockerfile.write_text(f"FROM {image}", encoding="utf-8")
            except OSError as e:
                raise BuildDirError(
                    f"failed to create dockerfile: {e}", code="dockerfile"
                ) from e

            request.local_dirs = {
                "context": str(build_dir),
                "dockerfile": str(build_dir),
            }
            request.exports = [
                ExportEntry(type=ExporterType.OCI.value, output=discard_output)
            ]

        return await self._solve_with(modify)

    async def build(self, opts: BuildOptions) -> dict[str, str]:
        """Build the context in ``opts`` and push every requested image.

        Args:
            opts: Build options.

        Returns:
            Exporter response metadata.

        Raises:
            BuildOptionsError: If images or build args are invalid.
            BuildDirError: If the working directory cannot be prepared.
            ContextFetchError: If the context cannot be retrieved.
            ExtractionError: If the context archive cannot be extracted.
            SolveError: If the solve fails.
        """
        parse_images(opts.images)
        frontend_attrs = parse_build_args(opts.build_args)

        cache_ref: str | None = None
        if not opts.disable_cache_import:
            cache_ref = cache_import_ref(opts.images)

        logger.info("Building %s from %s", ", ".join(opts.images), opts.context)

        async def modify(build_dir: Path, request: SolveRequest) -> None:
            extract = await self.fetcher.fetch_and_extract(
                opts.context, build_dir, CONTEXT_FETCH_TIMEOUT
            )

            request.local_dirs = {
                "context": str(extract.contents_dir),
                "dockerfile": str(extract.contents_dir),
            }
            request.frontend_attrs.update(frontend_attrs)

            for name in opts.images:
                request.exports.append(
                    ExportEntry(
                        type=ExporterType.IMAGE.value,
                        attrs={"push": "true", "name": name},
                    )
                )

            if not opts.disable_cache_export:
                request.cache_exports = [
                    CacheOptionsEntry(type=CacheType.INLINE.value)
                ]
            if cache_ref is not None:
                logger.debug("Importing layer cache from %s", cache_ref)
                request.cache_imports = [
                    CacheOptionsEntry(
                        type=CacheType.REGISTRY.value, attrs={"ref": cache_ref}
                    )
                ]

        return await self._solve_with(modify)

    async def _solve_with(
        self,
        modify: Callable[[Path, SolveRequest], Awaitable[None]],
    ) -> dict[str, str]:
        try:
            workdir = tempfile.TemporaryDirectory(
                prefix=BUILD_DIR_PREFIX, dir=self.tmp_dir
            )
        except OSError as e:
            raise BuildDirError(f"failed to create build dir: {e}") from e

        with workdir as build_dir:
            logger.debug("Using build directory %s", build_dir)
            request = SolveRequest(session=[DockerAuthProvider(self.auth_config)])

            await modify(Path(build_dir), request)

            return await run_solve(
                self.daemon, request, ProgressDisplay(console=self.console)
            )


__all__ = [
    "BuildDirError",
    "BuildError",
    "BuildOptions",
    "BuildOptionsError",
    "DiscardWriter",
    "RemoteClient",
    "cache_import_ref",
    "discard_output",
    "parse_build_args",
    "parse_images",
]
