"""dendrite configuration — centralized environment variable management.

All runtime configuration is read from the environment (or a .env file in
the working directory). This module is the single place where those
variables are declared, validated, and typed.

No module should call os.environ directly; import settings from here instead.

Usage:
    from dendrite.config import get_settings

    settings = get_settings()
    root = settings.root
    systems = settings.default_systems

Environment variables (all optional):

    DENDRITE_ROOT                   — Directory holding the fragment tree.
                                      Default: "nix".
    DENDRITE_FRAGMENT_SUFFIX        — File suffix that marks a fragment.
                                      Default: ".json".
    DENDRITE_OUTPUT_PATH            — Where the generated flake file is written.
                                      Default: "flake.nix". Always excluded
                                      from discovery.
    DENDRITE_DEFAULT_SYSTEMS        — JSON list of platforms used when the
                                      merged config declares no `systems`.
    DENDRITE_FETCH_TIMEOUT_SECONDS  — Timeout for each `nix flake prefetch`.
    DENDRITE_LOGFIRE_TOKEN          — Logfire project token. If unset, logfire
                                      runs in local mode (no remote export).
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Same platform list github:nix-systems/default exposes.
DEFAULT_SYSTEMS: tuple[str, ...] = (
    "aarch64-darwin",
    "aarch64-linux",
    "x86_64-darwin",
    "x86_64-linux",
)


class DendriteSettings(BaseSettings):
    """Centralized configuration for dendrite.

    Field names map to env vars by uppercasing and prefixing:
    root → DENDRITE_ROOT.

    Instantiate via get_settings() to benefit from caching.
    """

    model_config = SettingsConfigDict(
        env_prefix="DENDRITE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Fragment tree ────────────────────────────────────────────────────────

    root: Path = Path("nix")
    """Directory walked by the fragment collector."""

    fragment_suffix: str = ".json"
    """Files ending with this suffix are loaded as fragments."""

    # ── Output ───────────────────────────────────────────────────────────────

    output_path: Path = Path("flake.nix")
    """Generated aggregate file. Written, compared, never read as input."""

    # ── Evaluation ───────────────────────────────────────────────────────────

    default_systems: list[str] = list(DEFAULT_SYSTEMS)
    """Platform set used when the merged config has no `systems` option."""

    fetch_timeout_seconds: float = 120.0
    """A cold prefetch downloads the whole input; 60s is too tight for nixpkgs."""

    # ── Observability ────────────────────────────────────────────────────────

    logfire_token: SecretStr | None = None
    """Logfire project token. If unset, logfire runs in local mode."""

    # ── Validators ───────────────────────────────────────────────────────────

    @field_validator("fragment_suffix")
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        if not v.startswith(".") or len(v) < 2:
            msg = f"Fragment suffix must look like '.json', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("default_systems")
    @classmethod
    def validate_systems(cls, v: list[str]) -> list[str]:
        if not v:
            msg = "At least one default system must be configured"
            raise ValueError(msg)
        return v


@lru_cache(maxsize=1)
def get_settings() -> DendriteSettings:
    """Return the cached DendriteSettings instance.

    Reads from environment on first call, then caches for the process lifetime.
    Call clear_settings_cache() in tests to reset between test cases.
    """
    return DendriteSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Use in tests that need to vary environment variables between cases:

        def test_something(monkeypatch):
            monkeypatch.setenv("DENDRITE_ROOT", "fragments")
            clear_settings_cache()
            settings = get_settings()
            ...
    """
    get_settings.cache_clear()
