"""Pydantic models for configuration fragments.

A fragment file is a JSON object with up to four keys:

    {
      "imports": ["./rust.json"],
      "inputs": {
        "nixpkgs": "github:cachix/devenv-nixpkgs/rolling",
        "rust-overlay": {
          "url": "github:oxalica/rust-overlay",
          "inputs": {"nixpkgs": {"follows": "nixpkgs"}}
        }
      },
      "nixConfig": {"extra-substituters": "https://devenv.cachix.org"},
      "config": {
        "perSystem.treefmt.programs.rustfmt.enable": true,
        "flake-file.outputs": {"_type": "force", "content": "inputs: ..."}
      }
    }

Keys inside "config" (and "inputs") may be dotted option paths. They are
expanded at load time, so `"a.b": 1` and `{"a": {"b": 1}}` are the same
fragment. Defining the same leaf twice inside one fragment is an error, the
same way a Nix attrset rejects a duplicate attribute.

`{"_type": "force", "content": X}` marks X as force-marked (lib.mkForce).
It is decoded into a Forced wrapper that the merger understands.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from dendrite.errors import FragmentFormatError

OptionPath = tuple[str, ...]

FORCE_TYPE = "force"

# A path segment is either a double-quoted string (may contain dots) or a
# run of anything except dots.
_SEGMENT_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|([^."]+)')

_FRAGMENT_KEYS = frozenset({"imports", "inputs", "nixConfig", "config"})


def parse_path(dotted: str) -> OptionPath:
    """Split a dotted option path into segments.

    `'packages."foo.bar".name'` → ("packages", "foo.bar", "name")

    Raises:
        ValueError: empty path, empty segment, or stray quote.
    """
    if not dotted:
        msg = "Option path must not be empty"
        raise ValueError(msg)

    segments: list[str] = []
    pos = 0
    while True:
        match = _SEGMENT_RE.match(dotted, pos)
        if match is None:
            msg = f"Invalid option path '{dotted}' at position {pos}"
            raise ValueError(msg)
        quoted, bare = match.groups()
        segments.append(bare if bare is not None else re.sub(r"\\(.)", r"\1", quoted))
        pos = match.end()
        if pos == len(dotted):
            return tuple(segments)
        if dotted[pos] != ".":
            msg = f"Invalid option path '{dotted}' at position {pos}"
            raise ValueError(msg)
        pos += 1


def format_path(path: OptionPath) -> str:
    """Inverse of parse_path. Segments containing dots or quotes are quoted."""
    parts = []
    for segment in path:
        if not segment or "." in segment or '"' in segment:
            escaped = segment.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'"{escaped}"')
        else:
            parts.append(segment)
    return ".".join(parts)


@dataclass(frozen=True)
class Forced:
    """A force-marked value. Wins over unmarked definitions regardless of order."""

    content: Any


def force(value: Any) -> Forced:
    """Mark a value as forced, the Python spelling of `lib.mkForce`."""
    if isinstance(value, Forced):
        return value
    return Forced(value)


def unwrap(value: Any) -> Any:
    """Strip every Forced marker from a value tree."""
    if isinstance(value, Forced):
        return unwrap(value.content)
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    return value


def kind_of(value: Any) -> str:
    """Classify a value as "mapping", "sequence" or "scalar" (Forced is looked through)."""
    if isinstance(value, Forced):
        return kind_of(value.content)
    if isinstance(value, dict):
        return "mapping"
    if isinstance(value, list):
        return "sequence"
    return "scalar"


# ── Decoding ─────────────────────────────────────────────────────────────────


def _decode_value(value: Any, source: str, path: OptionPath) -> Any:
    if isinstance(value, Mapping):
        if value.get("_type") == FORCE_TYPE:
            if set(value) != {"_type", "content"}:
                raise FragmentFormatError(
                    source,
                    f"force marker at '{format_path(path)}' must only have "
                    "'_type' and 'content' keys",
                )
            return force(_decode_value(value["content"], source, path))
        return expand_tree(value, source, path)
    # Sequences and scalars are opaque data: stored verbatim.
    return value


def _insert(
    tree: dict[str, Any],
    path: OptionPath,
    value: Any,
    source: str,
    full: OptionPath,
) -> None:
    head, rest = path[0], path[1:]
    existing = tree.get(head)

    if not rest:
        if head not in tree:
            tree[head] = value
            return
        if isinstance(existing, dict) and isinstance(value, dict):
            for key, sub in value.items():
                _insert(existing, (key,), sub, source, full + (key,))
            return
        raise FragmentFormatError(source, f"'{format_path(full)}' is defined more than once")

    if head not in tree:
        tree[head] = {}
    elif not isinstance(existing, dict):
        prefix = full[: len(full) - len(rest)]
        raise FragmentFormatError(source, f"'{format_path(prefix)}' is defined more than once")
    _insert(tree[head], rest, value, source, full)


def expand_tree(raw: Mapping[str, Any], source: str, prefix: OptionPath = ()) -> dict[str, Any]:
    """Decode a raw option mapping: expand dotted keys and parse force markers.

    Raises:
        FragmentFormatError: non-string key, malformed path, malformed force
            marker, or a leaf defined twice.
    """
    tree: dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise FragmentFormatError(source, f"option key {key!r} is not a string")
        try:
            path = parse_path(key)
        except ValueError as e:
            raise FragmentFormatError(source, str(e)) from e
        full = prefix + path
        _insert(tree, path, _decode_value(value, source, full), source, full)
    return tree


# ── Models ───────────────────────────────────────────────────────────────────


class InputSpec(BaseModel):
    """A declared external dependency, as it appears in the generated flake.

    `follows` maps a nested input of this input to a top-level input name:
    {"nixpkgs": "nixpkgs"} renders as `inputs.nixpkgs.follows = "nixpkgs"`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: StrictStr
    follows: dict[str, StrictStr] = Field(default_factory=dict)
    flake: StrictBool = True
    attributes: dict[str, StrictStr | StrictBool | StrictInt] = Field(default_factory=dict)
    """Other flake input attributes (`ref`, `dir`, `rev`, ...), rendered verbatim."""

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.strip():
            msg = "Input url must not be empty"
            raise ValueError(msg)
        return v

    @classmethod
    def from_tree(cls, tree: Mapping[str, Any]) -> InputSpec:
        """Build from the merged flake-style shape (`url`, `flake`, `inputs.<n>.follows`).

        Raises:
            ValueError: nested inputs that are not `{"follows": ...}`, or
                attributes of the wrong type.
        """
        nested_inputs = tree.get("inputs") or {}
        if not isinstance(nested_inputs, Mapping):
            msg = "'inputs' must be an attribute set"
            raise ValueError(msg)
        follows: dict[str, Any] = {}
        for nested, spec in nested_inputs.items():
            if not isinstance(spec, Mapping) or set(spec) != {"follows"}:
                msg = f"nested input '{nested}' only supports 'follows'"
                raise ValueError(msg)
            follows[nested] = spec["follows"]
        data: dict[str, Any] = {
            "url": tree.get("url", ""),
            "follows": follows,
            "attributes": {k: v for k, v in tree.items() if k not in ("url", "flake", "inputs")},
        }
        if "flake" in tree:
            data["flake"] = tree["flake"]
        return cls.model_validate(data)


def _normalize_inputs(raw: Any, source: str) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise FragmentFormatError(source, "'inputs' must be an object")
    tree = expand_tree(raw, source, ("inputs",))
    for name, spec in tree.items():
        # Shorthand: "nixpkgs": "github:NixOS/nixpkgs" → {"url": ...}
        if isinstance(spec, str):
            tree[name] = {"url": spec}
        elif not isinstance(spec, (dict, Forced)):
            raise FragmentFormatError(source, f"input '{name}' must be a url or an object")
    return tree


class Fragment(BaseModel):
    """One loaded configuration fragment. Immutable once loaded.

    `options` is the expanded option tree; values may be Forced.
    `inputs` holds flake-style input trees keyed by input name; they are only
    validated into InputSpec after merging, since one fragment may declare
    the url and another the follows constraints.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    source: str
    imports: tuple[str, ...] = ()
    inputs: dict[str, Any] = Field(default_factory=dict)
    nix_config: dict[str, Any] = Field(default_factory=dict, alias="nixConfig")
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("imports")
    @classmethod
    def validate_imports(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if any(not item for item in v):
            msg = "Import paths must not be empty"
            raise ValueError(msg)
        return v

    @classmethod
    def from_mapping(cls, data: Any, source: str) -> Fragment:
        """Build a Fragment from a decoded fragment file.

        Raises:
            FragmentFormatError: if the data is not a valid fragment.
        """
        if not isinstance(data, Mapping):
            raise FragmentFormatError(source, f"expected an object, got {type(data).__name__}")

        unknown = sorted(set(data) - _FRAGMENT_KEYS)
        if unknown:
            raise FragmentFormatError(source, f"unknown top-level keys: {', '.join(unknown)}")

        nix_config = data.get("nixConfig", {})
        if not isinstance(nix_config, Mapping):
            raise FragmentFormatError(source, "'nixConfig' must be an object")
        config = data.get("config", {})
        if not isinstance(config, Mapping):
            raise FragmentFormatError(source, "'config' must be an object")
        imports = data.get("imports", [])
        if not isinstance(imports, list) or not all(isinstance(i, str) for i in imports):
            raise FragmentFormatError(source, "'imports' must be a list of paths")

        try:
            return cls(
                source=source,
                imports=tuple(imports),
                inputs=_normalize_inputs(data.get("inputs", {}), source),
                nix_config=dict(nix_config),
                options=expand_tree(config, source),
            )
        except ValidationError as e:
            raise FragmentFormatError(source, str(e)) from e
