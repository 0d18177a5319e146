"""Import graph resolution.

A fragment may list other fragment files under "imports", relative to its
own location. Before merging, the import graph is flattened into a single
ordered list:

  - every fragment appears exactly once
  - an imported fragment comes before the fragment importing it
  - otherwise the discovery order is kept (DFS post-order)

Imported files outside the discovered set (e.g. under a "_"-prefixed
directory) are loaded on demand. Cycles are rejected rather than followed.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

from dendrite.errors import DiscoveryError, ImportCycleError
from dendrite.tree.discovery import load_fragment
from dendrite.tree.models import Fragment


def _key(path: Path) -> str:
    return str(path.resolve())


def _import_target(fragment: Fragment, ref: str) -> Path:
    target = Path(ref)
    if not target.is_absolute():
        target = Path(fragment.source).parent / target
    return target


def resolve_imports(
    fragments: Sequence[Fragment],
    *,
    loader: Callable[[Path], Fragment] = load_fragment,
) -> list[Fragment]:
    """Order fragments so every import precedes its importer.

    Args:
        fragments: Fragments in discovery order.
        loader: Loads an imported file that was not discovered.

    Raises:
        ImportCycleError: fragments import each other in a loop.
        DiscoveryError: an import points to a file that does not exist.
    """
    known: dict[str, Fragment] = {_key(Path(f.source)): f for f in fragments}
    ordered: list[Fragment] = []
    done: set[str] = set()
    # Current DFS stack, for cycle detection and error reporting.
    stack: list[str] = []

    def visit(key: str) -> None:
        if key in done:
            return
        if key in stack:
            start = stack.index(key)
            raise ImportCycleError([*stack[start:], key])

        fragment = known[key]
        stack.append(key)
        for ref in fragment.imports:
            target = _import_target(fragment, ref)
            target_key = _key(target)
            if target_key not in known:
                if not target.exists():
                    raise DiscoveryError(
                        f"{fragment.source} imports {ref}, which does not exist ({target})"
                    )
                if not target.is_file():
                    raise DiscoveryError(
                        f"{fragment.source} imports {ref}, which is not a fragment file ({target})"
                    )
                known[target_key] = loader(target)
            visit(target_key)
        stack.pop()

        done.add(key)
        ordered.append(fragment)

    for fragment in fragments:
        visit(_key(Path(fragment.source)))

    return ordered
