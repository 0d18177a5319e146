"""Error taxonomy for dendrite.

Every failure in a run surfaces as one of these. They are all fatal for the
invocation that raised them: nothing in the pipeline catches and recovers,
the CLI reports the message and exits non-zero.

    DendriteError
    ├── DiscoveryError              bad root, unreadable fragment, bad import
    │   ├── FragmentFormatError     fragment file is not a valid fragment
    │   └── ImportCycleError        fragments import each other in a loop
    ├── MergeError
    │   ├── MergeConflictError      two different force-marked values collide
    │   └── MergeTypeError          mapping/sequence meets a different kind
    ├── InvalidOptionError          option has the wrong shape for materializing
    ├── UnresolvedDependencyError   reference to an input with no source
    ├── UnsupportedPlatformError    system not in the configured platform set
    └── FetchError                  `nix flake prefetch` failed
"""

from __future__ import annotations

from collections.abc import Iterable


class DendriteError(Exception):
    """Base class for all dendrite errors."""


class DiscoveryError(DendriteError):
    """Raised when fragments cannot be discovered or loaded."""


class FragmentFormatError(DiscoveryError):
    """Raised when a fragment file cannot be decoded into a Fragment."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid fragment {source}: {reason}")


class ImportCycleError(DiscoveryError):
    """Raised when the fragment import graph contains a cycle."""

    def __init__(self, chain: Iterable[str]) -> None:
        self.chain = list(chain)
        super().__init__("Import cycle detected: " + " -> ".join(self.chain))


class MergeError(DendriteError):
    """Base class for merge failures. Always carries the offending path."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(message)


class MergeConflictError(MergeError):
    """Raised when two force-marked values at the same path disagree."""

    def __init__(self, path: str, first_origin: str, second_origin: str) -> None:
        self.first_origin = first_origin
        self.second_origin = second_origin
        super().__init__(
            path,
            f"Conflicting forced values for '{path}': "
            f"defined in {first_origin} and {second_origin}",
        )


class MergeTypeError(MergeError):
    """Raised when a mapping or sequence is merged with a value of another kind."""

    def __init__(
        self,
        path: str,
        first_kind: str,
        first_origin: str,
        second_kind: str,
        second_origin: str,
    ) -> None:
        self.first_origin = first_origin
        self.second_origin = second_origin
        super().__init__(
            path,
            f"Cannot merge '{path}': {first_kind} from {first_origin} "
            f"with {second_kind} from {second_origin}",
        )


class InvalidOptionError(DendriteError):
    """Raised when an option the materializer reads has the wrong shape."""

    def __init__(self, path: str, expected: str) -> None:
        self.path = path
        super().__init__(f"Option '{path}' must be {expected}")


class UnresolvedDependencyError(DendriteError):
    """Raised when a referenced external input has no satisfying entry."""

    def __init__(self, name: str, reason: str = "is not declared") -> None:
        self.name = name
        super().__init__(f"Input '{name}' {reason}")


class UnsupportedPlatformError(DendriteError):
    """Raised when materialization is requested for an unconfigured system."""

    def __init__(self, requested: str, supported: Iterable[str]) -> None:
        self.requested = requested
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported system '{requested}'. "
            f"Supported systems: {', '.join(self.supported) or '(none)'}"
        )


class FetchError(DendriteError):
    """Raised when an external input cannot be fetched."""
