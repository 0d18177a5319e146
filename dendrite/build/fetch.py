"""Input fetching — resolves declared inputs to store paths via the Nix CLI.

This is the collaborator the materializer delegates network and cache access
to. Each input is fetched with `nix flake prefetch --json <url>`, which
downloads it into the store (or finds it there) and prints:

    {"hash": "sha256-…", "locked": {…}, "original": {…}, "storePath": "/nix/store/…"}

Inputs are fetched concurrently; the materializer only ever sees the
finished mapping, so the parallelism is invisible to it.

Results are cached per url for the process lifetime. Nothing invalidates the
cache short of clear_cache(). A url pointing at a moving branch is fetched
once per run, which matches how one evaluation sees one lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

import logfire

from dendrite.errors import FetchError, UnresolvedDependencyError
from dendrite.tools.cli import CommandResult, run_command
from dendrite.tree.models import InputSpec


@dataclass(frozen=True)
class FetchedSource:
    """A fetched input: where it came from and where it landed."""

    name: str
    url: str
    store_path: str
    nar_hash: str = ""


_cache: dict[str, FetchedSource] = {}


async def run_prefetch(url: str, *, timeout_seconds: float) -> CommandResult:
    """Run `nix flake prefetch --json <url>`.

    Kept separate from fetch_input so tests can patch it.
    """
    return await run_command(
        "nix",
        "flake",
        "prefetch",
        "--json",
        url,
        timeout_seconds=timeout_seconds,
    )


async def fetch_input(
    name: str,
    spec: InputSpec,
    *,
    timeout_seconds: float = 120.0,
    use_cache: bool = True,
) -> FetchedSource:
    """Fetch one input and return its store path.

    Raises:
        FetchError: the prefetch failed, timed out, or printed something
            other than the expected JSON object.
    """
    cached = _cache.get(spec.url) if use_cache else None
    if cached is not None:
        return replace(cached, name=name)

    with logfire.span("build.fetch", input=name, url=spec.url):
        try:
            result = await run_prefetch(spec.url, timeout_seconds=timeout_seconds)
        except TimeoutError as e:
            raise FetchError(f"Fetching input '{name}' timed out: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            # nix missing from PATH, or output that is not UTF-8.
            logfire.error("Fetching input '{name}' failed", name=name, error=str(e))
            raise FetchError(f"Fetching input '{name}' failed: {e}") from e

        if not result.success:
            logfire.error("Fetching input '{name}' failed", name=name, stderr=result.stderr)
            raise FetchError(f"Fetching input '{name}' failed: {result.describe_failure()}")

        try:
            data = result.json()
        except ValueError as e:
            raise FetchError(f"Fetching input '{name}': {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("storePath"), str):
            raise FetchError(f"Fetching input '{name}': output has no storePath")

        source = FetchedSource(
            name=name,
            url=spec.url,
            store_path=data["storePath"],
            nar_hash=data.get("hash", ""),
        )

    if use_cache:
        _cache[spec.url] = source
    return source


async def fetch_inputs(
    specs: Mapping[str, InputSpec],
    names: Iterable[str],
    *,
    timeout_seconds: float = 120.0,
    use_cache: bool = True,
) -> dict[str, FetchedSource]:
    """Fetch the named inputs concurrently.

    Raises:
        UnresolvedDependencyError: a name is not among the declared inputs.
        FetchError: any single fetch failed.
    """
    wanted = sorted(set(names))
    for name in wanted:
        if name not in specs:
            raise UnresolvedDependencyError(name)

    fetched = await asyncio.gather(
        *(
            fetch_input(name, specs[name], timeout_seconds=timeout_seconds, use_cache=use_cache)
            for name in wanted
        )
    )
    return {source.name: source for source in fetched}


def clear_cache() -> None:
    """Forget every fetched input. Used by tests."""
    _cache.clear()
