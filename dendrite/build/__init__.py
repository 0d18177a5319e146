"""Materialization — from a merged config to artifacts and the generated flake.

Public API:
  materialize        — artifacts (shells, packages, formatter) for one system
  referenced_inputs  — inputs a build needs fetched
  fetch_inputs       — fetch inputs concurrently through the nix CLI
  render_flake       — the generated flake.nix text
  write_flake        — write it, reporting whether anything changed
  check_flake        — whether the file on disk is current
"""

from dendrite.build.artifacts import (
    Artifact,
    FormatterArtifact,
    PackageArtifact,
    ResolvedPackage,
    ShellArtifact,
)
from dendrite.build.evaluate import materialize, referenced_inputs, supported_systems
from dendrite.build.fetch import FetchedSource, fetch_inputs
from dendrite.build.generator import check_flake, render_flake, write_flake

__all__ = [
    "Artifact",
    "FetchedSource",
    "FormatterArtifact",
    "PackageArtifact",
    "ResolvedPackage",
    "ShellArtifact",
    "check_flake",
    "fetch_inputs",
    "materialize",
    "referenced_inputs",
    "render_flake",
    "supported_systems",
    "write_flake",
]
