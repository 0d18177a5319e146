"""One invocation, end to end: discover → resolve imports → merge → fetch → materialize.

Every call is independent. Nothing is carried over between calls except the
per-url fetch cache in dendrite.build.fetch.
"""

from __future__ import annotations

import logging
import platform
from pathlib import Path

import logfire

from dendrite.build.artifacts import Artifact
from dendrite.build.evaluate import materialize, referenced_inputs, supported_systems
from dendrite.build.fetch import fetch_inputs
from dendrite.config import DendriteSettings, get_settings
from dendrite.errors import UnsupportedPlatformError
from dendrite.tree.discovery import discover
from dendrite.tree.imports import resolve_imports
from dendrite.tree.merge import MergedConfig, merge_fragments

logger = logging.getLogger(__name__)

_MACHINES = {"x86_64": "x86_64", "amd64": "x86_64", "arm64": "aarch64", "aarch64": "aarch64"}


def current_system() -> str:
    """The Nix system double for this host, e.g. "x86_64-linux"."""
    machine = _MACHINES.get(platform.machine().lower(), platform.machine().lower())
    return f"{machine}-{platform.system().lower()}"


def load_config(
    root: Path | None = None,
    *,
    settings: DendriteSettings | None = None,
) -> MergedConfig:
    """Discover, order and merge every fragment under root.

    Args:
        root: Fragment directory. Defaults to settings.root.
        settings: Defaults to get_settings().
    """
    settings = settings or get_settings()
    root = root if root is not None else settings.root

    with logfire.span("pipeline.load_config", root=str(root)):
        fragments = discover(
            root,
            suffix=settings.fragment_suffix,
            exclude=[settings.output_path],
        )
        ordered = resolve_imports(fragments)
        logger.info("Merging %d fragment(s) from %s", len(ordered), root)
        return merge_fragments(ordered)


async def build(
    system: str | None = None,
    *,
    root: Path | None = None,
    settings: DendriteSettings | None = None,
) -> list[Artifact]:
    """Load the config, fetch what it references and materialize for system.

    Args:
        system: Target platform. Defaults to current_system().
    """
    settings = settings or get_settings()
    system = system or current_system()
    config = load_config(root, settings=settings)

    # Fail before touching the network.
    supported = supported_systems(config, settings.default_systems)
    if system not in supported:
        raise UnsupportedPlatformError(system, supported)

    with logfire.span("pipeline.build", system=system):
        specs = config.input_specs()
        sources = await fetch_inputs(
            specs,
            referenced_inputs(config),
            timeout_seconds=settings.fetch_timeout_seconds,
        )
        return materialize(config, system, sources, default_systems=settings.default_systems)
