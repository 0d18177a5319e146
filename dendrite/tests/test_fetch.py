"""Tests for input fetching.

run_prefetch is the seam: every test patches it, so nothing here touches
the network or the Nix store.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from dendrite.build import fetch
from dendrite.build.fetch import FetchedSource, fetch_input, fetch_inputs
from dendrite.errors import FetchError, UnresolvedDependencyError
from dendrite.tools.cli import CommandResult
from dendrite.tree.models import InputSpec

NIXPKGS = InputSpec(url="github:cachix/devenv-nixpkgs/rolling")
DEVENV = InputSpec(url="github:cachix/devenv", follows={"nixpkgs": "nixpkgs"})


def prefetch_result(store_path="/nix/store/abc-source", returncode=0, stdout=None, stderr=""):
    if stdout is None:
        stdout = json.dumps({"hash": "sha256-AAAA", "storePath": store_path})
    return CommandResult(
        args=("nix", "flake", "prefetch", "--json"),
        stdout=stdout,
        stderr=stderr,
        returncode=returncode,
    )


@pytest.fixture(autouse=True)
def empty_cache():
    fetch.clear_cache()
    yield
    fetch.clear_cache()


class TestFetchInput:
    """fetch_input turns one prefetch into a FetchedSource."""

    async def test_fetches_store_path(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result()

            source = await fetch_input("nixpkgs", NIXPKGS)

        assert source == FetchedSource(
            name="nixpkgs",
            url="github:cachix/devenv-nixpkgs/rolling",
            store_path="/nix/store/abc-source",
            nar_hash="sha256-AAAA",
        )
        mock_prefetch.assert_awaited_once_with(
            "github:cachix/devenv-nixpkgs/rolling", timeout_seconds=120.0
        )

    async def test_timeout_passed_through(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result()
            await fetch_input("nixpkgs", NIXPKGS, timeout_seconds=5)

        assert mock_prefetch.await_args.kwargs["timeout_seconds"] == 5

    async def test_cached_per_url(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result()

            first = await fetch_input("nixpkgs", NIXPKGS)
            second = await fetch_input("pkgs", NIXPKGS)

        assert mock_prefetch.await_count == 1
        assert second.store_path == first.store_path
        assert second.name == "pkgs"

    async def test_cache_can_be_bypassed(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result()

            await fetch_input("nixpkgs", NIXPKGS, use_cache=False)
            await fetch_input("nixpkgs", NIXPKGS, use_cache=False)

        assert mock_prefetch.await_count == 2

    async def test_clear_cache(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result()

            await fetch_input("nixpkgs", NIXPKGS)
            fetch.clear_cache()
            await fetch_input("nixpkgs", NIXPKGS)

        assert mock_prefetch.await_count == 2

    async def test_failure_raises(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result(
                returncode=1, stdout="", stderr="error: cannot find flake 'github:nope/nope'"
            )

            with pytest.raises(FetchError, match="cannot find flake"):
                await fetch_input("nope", InputSpec(url="github:nope/nope"))

    async def test_failure_not_cached(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.side_effect = [
                prefetch_result(returncode=1, stdout="", stderr="error: network"),
                prefetch_result(),
            ]

            with pytest.raises(FetchError):
                await fetch_input("nixpkgs", NIXPKGS)
            source = await fetch_input("nixpkgs", NIXPKGS)

        assert source.store_path == "/nix/store/abc-source"

    async def test_timeout_raises_fetch_error(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.side_effect = TimeoutError("Command timed out after 1s")

            with pytest.raises(FetchError, match="timed out"):
                await fetch_input("nixpkgs", NIXPKGS, timeout_seconds=1)

    async def test_invalid_json(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result(stdout="warning: dirty tree")

            with pytest.raises(FetchError, match="invalid JSON"):
                await fetch_input("nixpkgs", NIXPKGS)

    async def test_missing_store_path(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result(stdout='{"hash": "sha256-AAAA"}')

            with pytest.raises(FetchError, match="no storePath"):
                await fetch_input("nixpkgs", NIXPKGS)

    async def test_missing_nix_binary(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.side_effect = FileNotFoundError(2, "No such file or directory", "nix")

            with pytest.raises(FetchError, match="No such file"):
                await fetch_input("nixpkgs", NIXPKGS)

    async def test_undecodable_output(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.side_effect = UnicodeDecodeError(
                "utf-8", b"\xff", 0, 1, "invalid start byte"
            )

            with pytest.raises(FetchError, match="utf-8"):
                await fetch_input("nixpkgs", NIXPKGS)


class TestFetchInputs:
    """fetch_inputs fetches a set of named inputs concurrently."""

    async def test_fetches_each_named_input(self):
        specs = {"nixpkgs": NIXPKGS, "devenv": DEVENV}

        async def fake_prefetch(url, *, timeout_seconds):
            return prefetch_result(store_path=f"/nix/store/{url.split('/')[1]}")

        with patch("dendrite.build.fetch.run_prefetch", side_effect=fake_prefetch):
            fetched = await fetch_inputs(specs, ["nixpkgs", "devenv"])

        assert set(fetched) == {"nixpkgs", "devenv"}
        assert fetched["devenv"].store_path == "/nix/store/devenv"
        assert fetched["nixpkgs"].store_path == "/nix/store/devenv-nixpkgs"

    async def test_only_named_inputs_fetched(self):
        specs = {"nixpkgs": NIXPKGS, "devenv": DEVENV}

        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            mock_prefetch.return_value = prefetch_result()
            fetched = await fetch_inputs(specs, {"nixpkgs"})

        assert list(fetched) == ["nixpkgs"]
        mock_prefetch.assert_awaited_once()

    async def test_nothing_to_fetch(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            assert await fetch_inputs({"nixpkgs": NIXPKGS}, []) == {}
        mock_prefetch.assert_not_awaited()

    async def test_undeclared_name_rejected_before_fetching(self):
        with patch("dendrite.build.fetch.run_prefetch", new_callable=AsyncMock) as mock_prefetch:
            with pytest.raises(UnresolvedDependencyError, match="'devenv' is not declared"):
                await fetch_inputs({"nixpkgs": NIXPKGS}, ["nixpkgs", "devenv"])

        mock_prefetch.assert_not_awaited()

    async def test_one_failure_fails_all(self):
        specs = {"nixpkgs": NIXPKGS, "devenv": DEVENV}

        async def fake_prefetch(url, *, timeout_seconds):
            if "devenv-nixpkgs" in url:
                return prefetch_result()
            return prefetch_result(returncode=1, stdout="", stderr="error: 404")

        with patch("dendrite.build.fetch.run_prefetch", side_effect=fake_prefetch):
            with pytest.raises(FetchError, match="devenv"):
                await fetch_inputs(specs, ["nixpkgs", "devenv"])
