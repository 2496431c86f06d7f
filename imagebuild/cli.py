"""Thin CLI wrapper for imagebuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from imagebuild import __version__
from imagebuild.config import get_settings, print_settings_json
from imagebuild.types import Phase

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

app = typer.Typer(
    name="imagebuild",
    help="ImageBuild - remote container image builds and status messaging",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"imagebuild version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """ImageBuild - remote container image builds and status messaging."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    tmp_dir_display = str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
    auth_display = "(docker default)"
    if settings.auth_config_dir:
        auth_display = str(settings.auth_config_dir)
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Storage:[/bold]")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Temp directory:      {tmp_dir_display}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Build daemon:[/bold]")
    console.print(f"  Address:             {settings.buildkit_address}")
    console.print(f"  Auth config:         {auth_display}")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print()
    console.print("[bold]Messaging:[/bold]")
    console.print(f"  Enabled:             {settings.messaging_enabled}")
    console.print(f"  Exchange:            {settings.amqp_exchange or '(default)'}")
    console.print(f"  Queue:               {settings.amqp_queue}")


@app.command()
def refs(
    images: Annotated[list[str], typer.Argument(help="Image references")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show how image references are normalized for a build.

    Prints the URL reported in status messages for each image and the
    registry cache reference derived from the first image.
    """
    from imagebuild.buildkit.client import BuildOptionsError, cache_import_ref
    from imagebuild.messaging.status import StatusMessengerError, image_urls

    try:
        urls = image_urls(images)
        cache_ref = cache_import_ref(images)
    except (BuildOptionsError, StatusMessengerError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps({"imageURLs": urls, "cacheRef": cache_ref}, indent=2))
        return

    for image, url in zip(images, urls, strict=True):
        console.print(f"  {image} -> [green]{url}[/green]")
    console.print(f"  Cache import ref: [cyan]{cache_ref}[/cyan]")


builds_app = typer.Typer(help="Manage ImageBuild objects")
app.add_typer(builds_app, name="builds")


def _session_factory() -> "sessionmaker[Session]":
    from imagebuild.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


@builds_app.command("create")
def builds_create(
    path: Annotated[Path, typer.Argument(help="Path to an ImageBuild manifest")],
) -> None:
    """Create an ImageBuild from a YAML/JSON manifest."""
    from pydantic import ValidationError

    from imagebuild.imagebuilds.io import load_manifest
    from imagebuild.imagebuilds.service import (
        ImageBuildExistsError,
        create_image_build,
    )

    if not path.exists():
        console.print(f"[red]Path not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        obj = load_manifest(path)
    except (ValueError, ValidationError) as e:
        console.print(f"[red]Invalid manifest {path}: {e}[/red]")
        raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        try:
            create_image_build(session, obj)
        except ImageBuildExistsError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

    console.print(f"[green]Created ImageBuild {obj.key}[/green]")


@builds_app.command("list")
def builds_list(
    namespace: Annotated[
        str | None,
        typer.Option("--namespace", "-n", help="Filter by namespace"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List ImageBuild objects."""
    from imagebuild.imagebuilds.service import list_image_builds, record_to_object

    factory = _session_factory()
    with factory() as session:
        objects = [record_to_object(r) for r in list_image_builds(session, namespace)]

    if not objects:
        if json_output:
            console.print("[]")
        else:
            console.print("[yellow]No ImageBuilds found[/yellow]")
        return

    if json_output:
        output = [o.model_dump(mode="json", by_alias=True) for o in objects]
        console.print(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Found {len(objects)} ImageBuild(s):[/bold]")
    console.print()
    for o in objects:
        pending = sum(1 for t in o.status.transitions if not t.processed)
        console.print(f"  [green]{o.key}[/green]")
        console.print(f"    Phase: {o.status.phase.value or '(none)'}")
        console.print(f"    Images: {', '.join(o.spec.images)}")
        console.print(
            f"    Transitions: {len(o.status.transitions)} ({pending} unpublished)"
        )
        console.print()


@builds_app.command("show")
def builds_show(
    name: Annotated[str, typer.Argument(help="ImageBuild name")],
    namespace: Annotated[
        str,
        typer.Option("--namespace", "-n", help="ImageBuild namespace"),
    ] = "default",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show an ImageBuild, including its transition log."""
    from imagebuild.imagebuilds.io import manifest_to_yaml_string, object_to_manifest
    from imagebuild.imagebuilds.service import (
        ImageBuildNotFoundError,
        get_image_build,
        record_to_object,
    )

    settings = get_settings()
    factory = _session_factory()
    with factory() as session:
        try:
            obj = record_to_object(get_image_build(session, namespace, name))
        except ImageBuildNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

    manifest = object_to_manifest(
        obj, api_version=f"{settings.api_group}/{settings.api_version}"
    )
    if json_output:
        console.print(json.dumps(manifest, indent=2))
    else:
        console.print(manifest_to_yaml_string(manifest))


@builds_app.command("transition")
def builds_transition(
    name: Annotated[str, typer.Argument(help="ImageBuild name")],
    phase: Annotated[Phase, typer.Argument(help="New phase")],
    namespace: Annotated[
        str,
        typer.Option("--namespace", "-n", help="ImageBuild namespace"),
    ] = "default",
) -> None:
    """Record a phase transition for an ImageBuild."""
    from imagebuild.imagebuilds.service import (
        ImageBuildNotFoundError,
        record_phase_transition,
    )

    factory = _session_factory()
    with factory() as session:
        try:
            transition = record_phase_transition(session, namespace, name, phase)
        except ImageBuildNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

    console.print(
        f"[green]{namespace}/{name}: "
        f"{transition.previous_phase.value or '(none)'} -> "
        f"{transition.phase.value}[/green]"
    )


if __name__ == "__main__":
    app()
