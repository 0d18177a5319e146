"""Evaluator/materializer — turns a MergedConfig into artifacts for one system.

Reads three option subtrees under `perSystem`:

    perSystem.devenv.shells.<name>   → ShellArtifact
        languages.<lang>.enable, packages, env
    perSystem.packages.<name>        → PackageArtifact
        program, src, wrap.prefixPath
    perSystem.treefmt                → FormatterArtifact (if any program is enabled)
        programs.<prog>.enable, programs.<prog>.package, settings

Package references are strings: "input#attribute", or a bare "attribute"
which means "nixpkgs#attribute". Every referenced input must be declared
and present in the fetched sources.

This is a pure, single pass: no I/O, no state kept between calls. Fetching
is the caller's job (see dendrite.build.fetch); referenced_inputs() tells it
what to fetch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import logfire

from dendrite.build.artifacts import (
    Artifact,
    FormatterArtifact,
    PackageArtifact,
    ResolvedPackage,
    ShellArtifact,
)
from dendrite.config import DEFAULT_SYSTEMS
from dendrite.errors import InvalidOptionError, UnresolvedDependencyError, UnsupportedPlatformError

if TYPE_CHECKING:
    from dendrite.build.fetch import FetchedSource
    from dendrite.tree.merge import MergedConfig
    from dendrite.tree.models import InputSpec

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_INPUT = "nixpkgs"

_SHELLS = "perSystem.devenv.shells"
_PACKAGES = "perSystem.packages"
_TREEFMT = "perSystem.treefmt"


# ── Option readers ───────────────────────────────────────────────────────────


def _mapping(config: MergedConfig, path: str) -> dict[str, Any]:
    value = config.get(path, {})
    if not isinstance(value, dict):
        raise InvalidOptionError(path, "an attribute set")
    return value


def _string_list(value: Any, path: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidOptionError(path, "a list of strings")
    return value


def _enabled(value: Any) -> bool:
    return isinstance(value, dict) and value.get("enable") is True


def parse_package_ref(ref: str) -> tuple[str, str]:
    """Split "input#attr" into (input, attr). A bare "attr" comes from nixpkgs.

    Raises:
        ValueError: empty input or attribute part.
    """
    input_name, sep, attr = ref.partition("#")
    if not sep:
        input_name, attr = DEFAULT_PACKAGE_INPUT, ref
    if not input_name or not attr:
        msg = f"Invalid package reference '{ref}' (expected 'input#attribute' or 'attribute')"
        raise ValueError(msg)
    return input_name, attr


def supported_systems(
    config: MergedConfig,
    default: Iterable[str] = DEFAULT_SYSTEMS,
) -> list[str]:
    """The platform set: the `systems` option, or the default when unset."""
    systems = config.get("systems")
    if systems is None:
        return list(default)
    return _string_list(systems, "systems")


def _shell_refs(config: MergedConfig) -> Iterable[tuple[str, str]]:
    for name, shell in sorted(_mapping(config, _SHELLS).items()):
        path = f"{_SHELLS}.{name}.packages"
        for ref in _string_list(shell.get("packages") if isinstance(shell, dict) else None, path):
            yield path, ref


def _package_refs(config: MergedConfig) -> Iterable[tuple[str, str]]:
    for name, package in sorted(_mapping(config, _PACKAGES).items()):
        wrap = package.get("wrap", {}) if isinstance(package, dict) else {}
        path = f"{_PACKAGES}.{name}.wrap.prefixPath"
        for ref in _string_list(wrap.get("prefixPath") if isinstance(wrap, dict) else None, path):
            yield path, ref


def _formatter_programs(config: MergedConfig) -> list[tuple[str, str, str]]:
    """(program name, option path, package reference) for every enabled treefmt program."""
    enabled = []
    for name, program in sorted(_mapping(config, f"{_TREEFMT}.programs").items()):
        if not _enabled(program):
            continue
        path = f"{_TREEFMT}.programs.{name}"
        ref = program.get("package", name)
        if not isinstance(ref, str):
            raise InvalidOptionError(f"{path}.package", "a package reference string")
        enabled.append((name, path, ref))
    return enabled


def _formatter_refs(config: MergedConfig) -> Iterable[tuple[str, str]]:
    for _, path, ref in _formatter_programs(config):
        yield path, ref


def _all_refs(config: MergedConfig) -> Iterable[tuple[str, str]]:
    yield from _shell_refs(config)
    yield from _package_refs(config)
    yield from _formatter_refs(config)


def referenced_inputs(config: MergedConfig) -> set[str]:
    """Names of every input some artifact needs. Only these have to be fetched."""
    names: set[str] = set()
    for path, ref in _all_refs(config):
        try:
            names.add(parse_package_ref(ref)[0])
        except ValueError as e:
            raise InvalidOptionError(path, f"a valid package reference ({e})") from e
    return names


# ── Resolution ───────────────────────────────────────────────────────────────


def check_follows(specs: Mapping[str, InputSpec]) -> None:
    """Every `follows` target must be a declared top-level input.

    Raises:
        UnresolvedDependencyError: naming the missing target.
    """
    for name, spec in specs.items():
        for nested, target in sorted(spec.follows.items()):
            if target not in specs:
                raise UnresolvedDependencyError(
                    target,
                    f"is followed by '{name}.inputs.{nested}' but is not declared",
                )


class _Resolver:
    def __init__(
        self,
        specs: Mapping[str, InputSpec],
        sources: Mapping[str, FetchedSource],
        system: str,
    ) -> None:
        self.specs = specs
        self.sources = sources
        self.system = system

    def resolve(self, ref: str, path: str) -> ResolvedPackage:
        try:
            input_name, attr = parse_package_ref(ref)
        except ValueError as e:
            raise InvalidOptionError(path, f"a valid package reference ({e})") from e
        if input_name not in self.specs:
            raise UnresolvedDependencyError(input_name, f"is not declared (referenced by {path})")
        source = self.sources.get(input_name)
        if source is None:
            raise UnresolvedDependencyError(input_name, "has no fetched source")
        return ResolvedPackage(
            input=input_name,
            attribute=attr,
            system=self.system,
            source_path=source.store_path,
        )


# ── Artifact builders ────────────────────────────────────────────────────────


def _build_shells(config: MergedConfig, resolver: _Resolver) -> list[ShellArtifact]:
    shells = []
    for name, shell in sorted(_mapping(config, _SHELLS).items()):
        base = f"{_SHELLS}.{name}"
        if not isinstance(shell, dict):
            raise InvalidOptionError(base, "an attribute set")

        languages = shell.get("languages", {})
        if not isinstance(languages, dict):
            raise InvalidOptionError(f"{base}.languages", "an attribute set")

        env = shell.get("env", {})
        if not isinstance(env, dict) or any(isinstance(v, (dict, list)) for v in env.values()):
            raise InvalidOptionError(f"{base}.env", "an attribute set of scalars")

        packages = _string_list(shell.get("packages"), f"{base}.packages")
        shells.append(
            ShellArtifact(
                system=resolver.system,
                name=name,
                packages=[resolver.resolve(ref, f"{base}.packages") for ref in packages],
                languages=sorted(lang for lang, opts in languages.items() if _enabled(opts)),
                env={key: _env_string(value) for key, value in sorted(env.items())},
                nix_config=dict(config.nix_config),
            )
        )
    return shells


def _env_string(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else ""
    return "" if value is None else str(value)


def _build_packages(config: MergedConfig, resolver: _Resolver) -> list[PackageArtifact]:
    packages = []
    for name, package in sorted(_mapping(config, _PACKAGES).items()):
        base = f"{_PACKAGES}.{name}"
        if not isinstance(package, dict):
            raise InvalidOptionError(base, "an attribute set")

        display_name = package.get("name", name)
        if not isinstance(display_name, str) or not display_name:
            raise InvalidOptionError(f"{base}.name", "a non-empty string")
        program = package.get("program", name)
        if not isinstance(program, str) or not program:
            raise InvalidOptionError(f"{base}.program", "a non-empty string")
        src = package.get("src")
        if src is not None and not isinstance(src, str):
            raise InvalidOptionError(f"{base}.src", "a string")

        wrap = package.get("wrap", {})
        if not isinstance(wrap, dict):
            raise InvalidOptionError(f"{base}.wrap", "an attribute set")
        prefix = _string_list(wrap.get("prefixPath"), f"{base}.wrap.prefixPath")

        packages.append(
            PackageArtifact(
                system=resolver.system,
                name=display_name,
                program=program,
                src=src,
                path_prefix=[resolver.resolve(ref, f"{base}.wrap.prefixPath") for ref in prefix],
            )
        )
    return packages


def _build_formatter(config: MergedConfig, resolver: _Resolver) -> FormatterArtifact | None:
    programs = {name: resolver.resolve(ref, path) for name, path, ref in _formatter_programs(config)}
    if not programs:
        return None
    settings = _mapping(config, f"{_TREEFMT}.settings")
    return FormatterArtifact(system=resolver.system, programs=programs, settings=settings)


def materialize(
    config: MergedConfig,
    system: str,
    sources: Mapping[str, FetchedSource],
    *,
    default_systems: Iterable[str] = DEFAULT_SYSTEMS,
) -> list[Artifact]:
    """Produce every declared artifact for one system.

    Args:
        config: The merged configuration.
        system: Target platform, e.g. "x86_64-linux".
        sources: Fetched inputs by name; must cover referenced_inputs(config).
        default_systems: Platform set used when `systems` is unset.

    Returns:
        Shells, then packages, then the formatter; each group sorted by name.

    Raises:
        UnsupportedPlatformError: system is not in the platform set. Raised
            before anything is resolved.
        UnresolvedDependencyError: a reference or `follows` names an input that
            is not declared or was not fetched.
        InvalidOptionError: an option read here has the wrong shape.
    """
    supported = supported_systems(config, default_systems)
    if system not in supported:
        raise UnsupportedPlatformError(system, supported)

    with logfire.span("build.materialize", system=system):
        specs = config.input_specs()
        check_follows(specs)
        resolver = _Resolver(specs, sources, system)

        artifacts: list[Artifact] = []
        artifacts.extend(_build_shells(config, resolver))
        artifacts.extend(_build_packages(config, resolver))
        formatter = _build_formatter(config, resolver)
        if formatter is not None:
            artifacts.append(formatter)

        logger.info("Materialized %d artifact(s) for %s", len(artifacts), system)
        return artifacts
