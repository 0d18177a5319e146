"""Fragment merger — folds an ordered list of fragments into one MergedConfig.

Merge rules, applied key path by key path:

    mapping  + mapping   → union of keys, recurse on shared keys
    sequence + sequence  → concatenation, in fragment order
    scalar   + scalar    → the later fragment wins
    forced   + unforced  → the forced value wins, whichever came first
    forced   + forced    → fine if equal, MergeConflictError otherwise
    mapping/sequence + other kind (neither forced) → MergeTypeError

A forced value replaces its whole subtree. A forced value nested below
another forced value at a different path is treated as a conflict, since
one of the two would otherwise be dropped silently.

Paths nobody declared up front pass through verbatim: there is no schema.
The merger does no I/O and never mutates the fragments it reads.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import logfire
from pydantic import ValidationError

from dendrite.errors import (
    InvalidOptionError,
    MergeConflictError,
    MergeTypeError,
    UnresolvedDependencyError,
)
from dendrite.tree.models import (
    Forced,
    Fragment,
    InputSpec,
    OptionPath,
    format_path,
    kind_of,
    parse_path,
    unwrap,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def _nested_forced(value: Any, path: OptionPath) -> OptionPath | None:
    """Path of the first Forced value strictly inside value, or None."""
    if isinstance(value, Forced):
        value = value.content
    if isinstance(value, dict):
        for key, sub in value.items():
            if isinstance(sub, Forced):
                return path + (key,)
            found = _nested_forced(sub, path + (key,))
            if found is not None:
                return found
    return None


class _Merger:
    """Folds values one at a time, remembering who wrote and who forced each path."""

    def __init__(self, section: str = "") -> None:
        self.section = section
        self.result: Any = _MISSING
        self.forced_by: dict[OptionPath, str] = {}
        self.written_by: dict[OptionPath, str] = {}

    def add(self, value: Any, origin: str) -> None:
        self.result = self.merge(self.result, value, (), origin)
        for leaf, _ in _leaves(value):
            # Prefixes too, so a type error at an inner mapping can name the
            # fragment that last wrote beneath it.
            for depth in range(len(leaf) + 1):
                self.written_by[leaf[:depth]] = origin

    def _label(self, path: OptionPath) -> str:
        full = (self.section, *path) if self.section else path
        return format_path(full) or "<root>"

    def _record_forced(self, value: Any, path: OptionPath, origin: str) -> None:
        if isinstance(value, Forced):
            self.forced_by[path] = origin
            value = value.content
        if isinstance(value, dict):
            for key, sub in value.items():
                self._record_forced(sub, path + (key,), origin)

    def merge(self, current: Any, incoming: Any, path: OptionPath, origin: str) -> Any:
        if current is _MISSING:
            self._record_forced(incoming, path, origin)
            return incoming

        current_forced = isinstance(current, Forced)
        incoming_forced = isinstance(incoming, Forced)

        if current_forced and incoming_forced:
            if _canonical(current) != _canonical(incoming):
                raise MergeConflictError(self._label(path), self.forced_by[path], origin)
            return current

        if current_forced:
            nested = _nested_forced(incoming, path)
            if nested is not None:
                raise MergeConflictError(self._label(nested), self.forced_by[path], origin)
            return current

        if incoming_forced:
            nested = _nested_forced(current, path)
            if nested is not None:
                raise MergeConflictError(self._label(nested), self.forced_by[nested], origin)
            self._record_forced(incoming, path, origin)
            return incoming

        current_kind = kind_of(current)
        incoming_kind = kind_of(incoming)

        if current_kind == incoming_kind == "mapping":
            merged = dict(current)
            for key, value in incoming.items():
                merged[key] = self.merge(current.get(key, _MISSING), value, path + (key,), origin)
            return merged

        if current_kind == incoming_kind == "sequence":
            return [*current, *incoming]

        if current_kind == incoming_kind == "scalar":
            return incoming

        raise MergeTypeError(
            self._label(path),
            current_kind,
            self.written_by.get(path, "an earlier fragment"),
            incoming_kind,
            origin,
        )


def merge_values(
    left: Any,
    right: Any,
    *,
    left_origin: str = "left",
    right_origin: str = "right",
) -> Any:
    """Merge two option values with the fragment merge rules.

    Forced markers are kept in the result so merges can be chained:
    merge_values(merge_values(a, b), c).

    Raises:
        MergeConflictError: two different forced values at the same path.
        MergeTypeError: incompatible kinds at the same path.
    """
    merger = _Merger()
    merger.add(left, left_origin)
    merger.add(right, right_origin)
    return merger.result


def _canonical(value: Any) -> str:
    """Type-aware comparison key: 1, 1.0 and true all differ."""
    return json.dumps(unwrap(value), sort_keys=True, separators=(",", ":"), default=str)


def _leaves(value: Any, path: OptionPath = ()) -> Iterator[tuple[OptionPath, Any]]:
    if isinstance(value, Forced):
        value = value.content
    if isinstance(value, dict) and value:
        for key, sub in value.items():
            yield from _leaves(sub, path + (key,))
    else:
        yield path, value


# ── MergedConfig ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MergedConfig:
    """The single resolved configuration produced by one merge pass.

    All values are plain Python (force markers stripped). Read-only by
    convention; build a new one by merging again.
    """

    options: dict[str, Any]
    inputs: dict[str, Any] = field(default_factory=dict)
    nix_config: dict[str, Any] = field(default_factory=dict)
    sources: tuple[str, ...] = ()
    origins: dict[OptionPath, tuple[str, ...]] = field(default_factory=dict)
    """Leaf option path → every fragment that defined it, in merge order."""

    def get(self, path: str | OptionPath, default: Any = None) -> Any:
        """Look up an option by dotted path or segment tuple."""
        segments = parse_path(path) if isinstance(path, str) else path
        node: Any = self.options
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return default
            node = node[segment]
        return node

    def paths(self) -> list[OptionPath]:
        """Every leaf option path, exactly once, in tree order."""
        return [path for path, _ in _leaves(self.options) if path]

    def flatten(self) -> dict[str, Any]:
        """Dotted leaf path → value."""
        return {format_path(path): value for path, value in _leaves(self.options) if path}

    def input_specs(self) -> dict[str, InputSpec]:
        """Validate the merged input trees into InputSpec objects.

        Raises:
            UnresolvedDependencyError: an input was declared without a url.
            InvalidOptionError: an input attribute has the wrong type.
        """
        specs: dict[str, InputSpec] = {}
        for name, tree in sorted(self.inputs.items()):
            if not isinstance(tree, Mapping) or not tree.get("url"):
                raise UnresolvedDependencyError(name, "has no url")
            try:
                specs[name] = InputSpec.from_tree(tree)
            except ValidationError as e:
                first = e.errors()[0]
                where = ".".join(str(part) for part in first["loc"])
                raise InvalidOptionError(
                    format_path(("inputs", name)),
                    f"a valid flake input ({where}: {first['msg']})",
                ) from e
            except ValueError as e:
                raise InvalidOptionError(
                    format_path(("inputs", name)), f"a valid flake input ({e})"
                ) from e
        return specs

    def to_dict(self) -> dict[str, Any]:
        return {"options": self.options, "inputs": self.inputs, "nixConfig": self.nix_config}

    def digest(self) -> str:
        """sha256 of the canonical JSON form; changes whenever the content does."""
        return hashlib.sha256(_canonical(self.to_dict()).encode("utf-8")).hexdigest()


def _merge_section(fragments: Sequence[Fragment], attr: str, section: str) -> dict[str, Any]:
    merger = _Merger(section)
    merger.add({}, "<empty>")
    for fragment in fragments:
        merger.add(getattr(fragment, attr), fragment.source)
    return merger.result


def merge_fragments(fragments: Sequence[Fragment]) -> MergedConfig:
    """Merge fragments, in order, into one MergedConfig.

    Raises:
        MergeConflictError: two different forced values at the same path.
        MergeTypeError: incompatible kinds at the same path.
    """
    with logfire.span("tree.merge", fragments=len(fragments)):
        options = unwrap(_merge_section(fragments, "options", ""))
        inputs = unwrap(_merge_section(fragments, "inputs", "inputs"))
        nix_config = unwrap(_merge_section(fragments, "nix_config", "nixConfig"))

        final_paths = {path for path, _ in _leaves(options) if path}
        origins: dict[OptionPath, list[str]] = {}
        for fragment in fragments:
            for path, _ in _leaves(fragment.options):
                if path in final_paths:
                    origins.setdefault(path, []).append(fragment.source)

        config = MergedConfig(
            options=options,
            inputs=inputs,
            nix_config=nix_config,
            sources=tuple(f.source for f in fragments),
            origins={path: tuple(srcs) for path, srcs in origins.items()},
        )
        logger.debug("Merged %d fragment(s) into %d option(s)", len(fragments), len(final_paths))
        return config
