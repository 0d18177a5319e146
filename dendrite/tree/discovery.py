"""Fragment discovery — walks the fragment tree and loads every fragment file.

Follows the import-tree conventions the Nix side uses:
  - every file under the root ending with the fragment suffix is a fragment
  - any path component starting with "_" is skipped (private helpers)
  - hidden entries (starting with ".") are skipped

Entries are visited in lexicographic order at each directory level, so the
discovery order (which decides last-write-wins during merging) is stable
across runs on an unchanged tree.

The generated output file is always excluded: it is a build artifact and must
never be read back as an input.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

import logfire

from dendrite.errors import DiscoveryError, FragmentFormatError
from dendrite.tree.models import Fragment

logger = logging.getLogger(__name__)


def _is_skipped(name: str) -> bool:
    return name.startswith(("_", "."))


def collect_fragments(
    root: Path,
    *,
    suffix: str = ".json",
    exclude: Iterable[Path] = (),
) -> list[Path]:
    """Return the fragment files under root in discovery order.

    Args:
        root: Directory to walk.
        suffix: File suffix identifying a fragment.
        exclude: Paths never returned (e.g. the generated output file).

    Raises:
        DiscoveryError: root does not exist or is not a directory.
    """
    if not root.exists():
        raise DiscoveryError(f"Fragment root does not exist: {root}")
    if not root.is_dir():
        raise DiscoveryError(f"Fragment root is not a directory: {root}")

    excluded = {p.resolve() for p in exclude}
    found: list[Path] = []

    def walk(directory: Path) -> None:
        for entry in sorted(directory.iterdir(), key=lambda p: p.name):
            if _is_skipped(entry.name):
                continue
            if entry.is_dir():
                walk(entry)
            elif entry.name.endswith(suffix) and entry.resolve() not in excluded:
                found.append(entry)

    walk(root)
    logger.debug("Collected %d fragment(s) under %s", len(found), root)
    return found


def load_fragment(path: Path) -> Fragment:
    """Read and decode one fragment file.

    Raises:
        FragmentFormatError: unreadable file, invalid JSON, or invalid fragment.
    """
    source = str(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FragmentFormatError(source, f"cannot read file: {e.strerror or e}") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise FragmentFormatError(source, f"invalid JSON: {e}") from e

    return Fragment.from_mapping(data, source)


def discover(
    root: Path,
    *,
    suffix: str = ".json",
    exclude: Iterable[Path] = (),
) -> list[Fragment]:
    """Collect and load every fragment under root, in discovery order."""
    with logfire.span("tree.discover", root=str(root)):
        paths = collect_fragments(root, suffix=suffix, exclude=exclude)
        fragments = [load_fragment(p) for p in paths]
        logfire.info("Discovered {count} fragment(s)", count=len(fragments))
        return fragments
