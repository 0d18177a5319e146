"""Fragment tree — discovery, import resolution and merging.

Public API:
  discover          — collect and load every fragment under a root directory
  resolve_imports   — order fragments so imports precede their importers
  merge_fragments   — fold ordered fragments into one MergedConfig
  Fragment          — one loaded, immutable configuration fragment
  MergedConfig      — the resolved configuration
  force             — mark a value as force-marked

Typical usage:
    from dendrite.tree import discover, merge_fragments, resolve_imports
    config = merge_fragments(resolve_imports(discover(Path("nix"))))
"""

from dendrite.tree.discovery import collect_fragments, discover, load_fragment
from dendrite.tree.imports import resolve_imports
from dendrite.tree.merge import MergedConfig, merge_fragments, merge_values
from dendrite.tree.models import Forced, Fragment, InputSpec, force, format_path, parse_path

__all__ = [
    "Forced",
    "Fragment",
    "InputSpec",
    "MergedConfig",
    "collect_fragments",
    "discover",
    "force",
    "format_path",
    "load_fragment",
    "merge_fragments",
    "merge_values",
    "parse_path",
    "resolve_imports",
]
