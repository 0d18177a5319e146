"""Artifact models — what materializing a merged config produces.

Artifacts are plain data: they describe a development shell, a wrapped
binary package or a formatter for one system, with every package reference
already pinned to the store path of a fetched input. Building them is left
to Nix; dendrite only decides what to build.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Inputs exposing packages under legacyPackages.<system> rather than packages.<system>.
_LEGACY_PACKAGE_INPUTS = frozenset({"nixpkgs"})


class ResolvedPackage(BaseModel):
    """A package reference pinned to a fetched input."""

    model_config = ConfigDict(frozen=True)

    input: str
    attribute: str
    system: str
    source_path: str
    """Store path of the fetched input the package comes from."""

    @property
    def attr_path(self) -> str:
        top = "legacyPackages" if self.input in _LEGACY_PACKAGE_INPUTS else "packages"
        return f"{top}.{self.system}.{self.attribute}"

    @property
    def installable(self) -> str:
        """A `nix build` installable, e.g. `path:/nix/store/...#legacyPackages.x86_64-linux.git`."""
        return f"path:{self.source_path}#{self.attr_path}"


class _Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    system: str

    def digest(self) -> str:
        """sha256 over the canonical JSON form. Equal configs give equal digests."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ShellArtifact(_Artifact):
    """A development shell (devenv.shells.<name>)."""

    kind: Literal["shell"] = "shell"
    name: str
    packages: list[ResolvedPackage] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    nix_config: dict[str, Any] = Field(default_factory=dict)
    """Trusted-source settings (substituters, public keys), forwarded verbatim."""


class PackageArtifact(_Artifact):
    """A packaged binary, optionally wrapped with extra tools on its PATH."""

    kind: Literal["package"] = "package"
    name: str
    program: str
    src: str | None = None
    path_prefix: list[ResolvedPackage] = Field(default_factory=list)

    @property
    def wrapped(self) -> bool:
        return bool(self.path_prefix)


class FormatterArtifact(_Artifact):
    """The treefmt formatter with its enabled programs."""

    kind: Literal["formatter"] = "formatter"
    programs: dict[str, ResolvedPackage] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)


Artifact = ShellArtifact | PackageArtifact | FormatterArtifact
