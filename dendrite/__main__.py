"""Command line entry point for dendrite.

Run as a module or through the installed script:

    python -m dendrite write-flake
    dendrite build --system x86_64-linux

Commands:
    write-flake   regenerate the aggregate flake.nix
    check         exit 1 when flake.nix is out of date
    build         fetch referenced inputs and print the artifacts as JSON
    show          print the merged config, or one option of it
    systems       print the configured platform set

Configuration comes from DendriteSettings (DENDRITE_* env vars / .env file);
--root overrides the fragment directory for a single run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import logfire
import typer

from dendrite.build.evaluate import supported_systems
from dendrite.build.generator import check_flake, write_flake
from dendrite.config import get_settings
from dendrite.errors import DendriteError
from dendrite.pipeline import build, current_system, load_config
from dendrite.tree.models import format_path

logger = logging.getLogger(__name__)

_UNDEFINED = object()

app = typer.Typer(
    help="Compose configuration fragments into a flake, dev shells and packages.",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)

RootOption = Annotated[
    Path | None,
    typer.Option(
        "--root",
        "-r",
        help="Fragment directory (default: DENDRITE_ROOT or ./nix).",
        file_okay=False,
    ),
]


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, indent=2, sort_keys=True))


@contextmanager
def _reporting_errors() -> Iterator[None]:
    """Turn a DendriteError into a one-line message on stderr and exit code 1."""
    try:
        yield
    except DendriteError as e:
        logger.debug("Command failed", exc_info=True)
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


# ── Setup ────────────────────────────────────────────────────────────────────


@app.callback()
def configure(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output to stderr."),
    ] = False,
) -> None:
    """Set up logging and Logfire tracing once per invocation."""
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=logging.DEBUG if verbose else logging.INFO,
    )
    # Token is optional; without one logfire stays local. Console output is
    # off so spans never interleave with JSON on stdout.
    token = get_settings().logfire_token
    logfire.configure(
        token=token.get_secret_value() if token else None,
        service_name="dendrite",
        send_to_logfire="if-token-present",
        console=False,
    )


# ── Commands ─────────────────────────────────────────────────────────────────


@app.command("write-flake")
def write_flake_command(root: RootOption = None) -> None:
    """Regenerate the aggregate flake file from the fragment tree."""
    settings = get_settings()
    with _reporting_errors():
        config = load_config(root, settings=settings)
        changed = write_flake(config, settings.output_path)
    typer.echo(f"{settings.output_path}: {'written' if changed else 'up to date'}")


@app.command("check")
def check_command(root: RootOption = None) -> None:
    """Exit non-zero when the flake file does not match the fragments."""
    settings = get_settings()
    with _reporting_errors():
        config = load_config(root, settings=settings)
        current = check_flake(config, settings.output_path)
    if not current:
        typer.echo(
            f"{settings.output_path} is out of date. Run `dendrite write-flake`.",
            err=True,
        )
        raise typer.Exit(code=1)
    typer.echo(f"{settings.output_path}: up to date")


@app.command("build")
def build_command(
    system: Annotated[
        str | None,
        typer.Option("--system", "-s", help="Target platform (default: this host)."),
    ] = None,
    root: RootOption = None,
) -> None:
    """Fetch referenced inputs and print the materialized artifacts as JSON."""
    with _reporting_errors():
        artifacts = asyncio.run(build(system or current_system(), root=root))
    _echo_json(
        [{**artifact.model_dump(mode="json"), "digest": artifact.digest()} for artifact in artifacts]
    )


@app.command("show")
def show_command(
    path: Annotated[
        str | None,
        typer.Argument(help="Dotted option path, e.g. perSystem.treefmt."),
    ] = None,
    origins: Annotated[
        bool,
        typer.Option("--origins", help="Show which fragments defined each option."),
    ] = False,
    root: RootOption = None,
) -> None:
    """Print the merged configuration, or a single option of it."""
    with _reporting_errors():
        config = load_config(root)

    if origins:
        _echo_json({format_path(p): list(srcs) for p, srcs in sorted(config.origins.items())})
        return

    if path is None:
        _echo_json({**config.to_dict(), "digest": config.digest()})
        return

    try:
        value = config.get(path, _UNDEFINED)
    except ValueError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    if value is _UNDEFINED:
        typer.echo(f"error: option '{path}' is not defined", err=True)
        raise typer.Exit(code=1)
    _echo_json(value)


@app.command("systems")
def systems_command(root: RootOption = None) -> None:
    """Print the platforms artifacts can be built for."""
    with _reporting_errors():
        config = load_config(root)
        systems = supported_systems(config, get_settings().default_systems)
    for system in systems:
        typer.echo(system)


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
