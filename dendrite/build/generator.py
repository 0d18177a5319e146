"""Flake generator — renders the aggregate flake.nix from a MergedConfig.

The generated file is a build artifact. It is written, and it may be compared
against what would be written (check_flake), but it is never read back as an
input: discovery always excludes it.

Generated file structure:

    # DO-NOT-EDIT. This file was auto-generated by dendrite.
    # Use `dendrite write-flake` to regenerate it.
    {

      outputs = inputs: inputs.flake-parts.lib.mkFlake { inherit inputs; } (inputs.import-tree ./nix);

      nixConfig = {
        extra-substituters = "https://devenv.cachix.org";
      };

      inputs = {
        nixpkgs = {
          url = "github:cachix/devenv-nixpkgs/rolling";
        };
      };

    }

Attribute names are sorted, so the output only changes when the config does.
"""

from __future__ import annotations

import logging
import math
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dendrite.errors import InvalidOptionError

if TYPE_CHECKING:
    from dendrite.tree.merge import MergedConfig
    from dendrite.tree.models import InputSpec

logger = logging.getLogger(__name__)

HEADER = (
    "# DO-NOT-EDIT. This file was auto-generated by dendrite.\n"
    "# Use `dendrite write-flake` to regenerate it.\n"
)

DEFAULT_OUTPUTS = (
    "inputs: inputs.flake-parts.lib.mkFlake { inherit inputs; } (inputs.import-tree ./nix)"
)

OUTPUTS_OPTION = "flake-file.outputs"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")
_INDENT = "  "


def _nix_string(value: str) -> str:
    """Wrap a Python string as a Nix string literal.

    Escapes Nix special characters within double-quoted strings:
      \\  →  \\\\   (must be first to avoid double-escaping)
      "   →  \\"
      $   →  \\$    (prevents Nix string interpolation)
      newline → \\n
    """
    escaped = (
        value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("\n", "\\n")
    )
    return f'"{escaped}"'


def _nix_name(name: str) -> str:
    """An attribute name, quoted unless it is a plain identifier."""
    return name if _IDENTIFIER_RE.match(name) else _nix_string(name)


def _nix_float(value: float) -> str:
    """A Nix float literal. Nix needs a digit before the dot and has no inf or nan."""
    if not math.isfinite(value):
        msg = f"Cannot render {value!r} as a Nix float"
        raise ValueError(msg)
    mantissa, e, exponent = repr(value).partition("e")
    if "." not in mantissa:
        mantissa += ".0"
    return f"{mantissa}{e}{exponent}"


def _nix_value(value: Any, depth: int) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, int):
        return repr(value)
    if isinstance(value, float):
        return _nix_float(value)
    if isinstance(value, str):
        return _nix_string(value)
    if isinstance(value, list):
        return "[ " + " ".join(_nix_value(item, depth) for item in value) + " ]" if value else "[ ]"
    if isinstance(value, dict):
        return _nix_attrset(value, depth)
    msg = f"Cannot render {type(value).__name__} as a Nix value"
    raise TypeError(msg)


def _nix_attrset(attrs: dict[str, Any], depth: int) -> str:
    """Render a mapping as a multi-line attrset, one attribute per line, names sorted."""
    if not attrs:
        return "{ }"
    inner = _INDENT * (depth + 1)
    lines = ["{"]
    for name in sorted(attrs):
        lines.append(f"{inner}{_nix_name(name)} = {_nix_value(attrs[name], depth + 1)};")
    lines.append(_INDENT * depth + "}")
    return "\n".join(lines)


def _input_attrs(spec: InputSpec) -> dict[str, Any]:
    attrs: dict[str, Any] = {**spec.attributes, "url": spec.url}
    if not spec.flake:
        attrs["flake"] = False
    if spec.follows:
        attrs["inputs"] = {nested: {"follows": target} for nested, target in spec.follows.items()}
    return attrs


def render_flake(config: MergedConfig) -> str:
    """Render the flake.nix text for a merged configuration.

    Raises:
        InvalidOptionError: `flake-file.outputs` is set but is not a string, a
            `nixConfig` value cannot be written as Nix, or an input is malformed.
        UnresolvedDependencyError: an input is declared without a url.
    """
    outputs = config.get(OUTPUTS_OPTION, DEFAULT_OUTPUTS)
    if not isinstance(outputs, str) or not outputs.strip():
        raise InvalidOptionError(OUTPUTS_OPTION, "a non-empty Nix expression string")

    sections = [f"{_INDENT}outputs = {outputs.strip()};"]

    if config.nix_config:
        try:
            nix_config = _nix_attrset(config.nix_config, 1)
        except (TypeError, ValueError) as e:
            raise InvalidOptionError("nixConfig", f"renderable as Nix ({e})") from e
        sections.append(f"{_INDENT}nixConfig = {nix_config};")

    specs = config.input_specs()
    if specs:
        inputs = {name: _input_attrs(spec) for name, spec in specs.items()}
        sections.append(f"{_INDENT}inputs = {_nix_attrset(inputs, 1)};")

    body = "\n\n".join(sections)
    return f"{HEADER}{{\n\n{body}\n\n}}\n"


def write_flake(config: MergedConfig, path: Path) -> bool:
    """Write the rendered flake to path.

    Returns:
        True if the file changed, False if it was already up to date.
    """
    rendered = render_flake(config)
    if path.is_file() and path.read_text(encoding="utf-8") == rendered:
        logger.info("%s is up to date", path)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(rendered, encoding="utf-8")
    logger.info("Wrote %s", path)
    return True


def check_flake(config: MergedConfig, path: Path) -> bool:
    """True if path holds exactly what render_flake would write."""
    if not path.is_file():
        return False
    return path.read_text(encoding="utf-8") == render_flake(config)
