"""Async subprocess runner for dendrite.

The only place dendrite shells out is the fetch collaborator, which asks the
`nix` CLI to prefetch flake inputs. All invocations go through run_command()
so that timeouts, output decoding and failure reporting behave the same way
everywhere, and so tests have a single seam to patch.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# A prefetch of a small flake finishes in seconds. Callers fetching
# large inputs (nixpkgs) pass their own timeout from settings.
DEFAULT_TIMEOUT_SECONDS = 60


@dataclass
class CommandResult:
    """Outcome of one command invocation, with output already stripped."""

    args: tuple[str, ...]
    stdout: str
    stderr: str
    returncode: int
    cwd: Path | None = field(default=None)

    def __post_init__(self) -> None:
        self.stdout = self.stdout.strip()
        self.stderr = self.stderr.strip()

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return " ".join(self.args)

    def describe_failure(self) -> str:
        """One-line summary for error messages: command, exit code, first stderr line."""
        first_line = self.stderr.splitlines()[0] if self.stderr else "no output"
        return f"`{self.command_line}` exited {self.returncode}: {first_line}"

    def json(self) -> Any:
        """Decode stdout as JSON.

        Raises:
            ValueError: stdout is empty or not valid JSON.
        """
        if not self.stdout:
            msg = f"`{self.command_line}` produced no output"
            raise ValueError(msg)
        try:
            return json.loads(self.stdout)
        except json.JSONDecodeError as e:
            msg = f"`{self.command_line}` produced invalid JSON: {e}"
            raise ValueError(msg) from e


async def run_command(
    *args: str,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    cwd: Path | None = None,
) -> CommandResult:
    """Run a command and collect its output.

    Args:
        *args: Program and arguments, e.g. ("nix", "flake", "prefetch", "--json", url).
        timeout_seconds: The process is killed once this elapses.
        cwd: Working directory; defaults to the current one.

    Raises:
        TimeoutError: The command ran longer than timeout_seconds.
    """
    logger.debug("Running %s (timeout %ss)", " ".join(args), timeout_seconds)
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        msg = f"Command timed out after {timeout_seconds}s: {' '.join(args)}"
        raise TimeoutError(msg) from None

    return CommandResult(
        args=args,
        stdout=out.decode() if out else "",
        stderr=err.decode() if err else "",
        returncode=proc.returncode or 0,
        cwd=cwd,
    )
