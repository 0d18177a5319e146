"""Tests for fragment discovery: walking the fragment tree and loading files.

Discovery order decides which fragment wins a scalar merge, so these tests
pin it down exactly: lexicographic per directory level, "_" and "." entries
skipped, the generated output file never returned.
"""

import json
from pathlib import Path

import pytest

from dendrite.errors import DiscoveryError, FragmentFormatError
from dendrite.tree.discovery import collect_fragments, discover, load_fragment


def write(root: Path, relative: str, data: object) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


class TestCollectFragments:
    """collect_fragments returns fragment paths in a deterministic order."""

    def test_lexicographic_within_directory(self, tmp_path):
        for name in ["devenv.json", "dendritic.json", "treefmt.json"]:
            write(tmp_path, name, {})

        names = [p.name for p in collect_fragments(tmp_path)]

        assert names == ["dendritic.json", "devenv.json", "treefmt.json"]

    def test_recurses_in_name_order(self, tmp_path):
        write(tmp_path, "b.json", {})
        write(tmp_path, "a/z.json", {})
        write(tmp_path, "c/a.json", {})

        found = [p.relative_to(tmp_path).as_posix() for p in collect_fragments(tmp_path)]

        assert found == ["a/z.json", "b.json", "c/a.json"]

    def test_only_matching_suffix(self, tmp_path):
        write(tmp_path, "a.json", {})
        write(tmp_path, "notes.md", "hello")
        write(tmp_path, "b.nix", "{ }")

        assert [p.name for p in collect_fragments(tmp_path)] == ["a.json"]

    def test_custom_suffix(self, tmp_path):
        write(tmp_path, "a.json", {})
        write(tmp_path, "b.frag.json", {})

        assert [p.name for p in collect_fragments(tmp_path, suffix=".frag.json")] == ["b.frag.json"]

    def test_underscore_entries_skipped(self, tmp_path):
        write(tmp_path, "_private.json", {})
        write(tmp_path, "_lib/helper.json", {})
        write(tmp_path, "public.json", {})

        assert [p.name for p in collect_fragments(tmp_path)] == ["public.json"]

    def test_hidden_entries_skipped(self, tmp_path):
        write(tmp_path, ".hidden.json", {})
        write(tmp_path, ".git/config.json", {})
        write(tmp_path, "a.json", {})

        assert [p.name for p in collect_fragments(tmp_path)] == ["a.json"]

    def test_excluded_paths_skipped(self, tmp_path):
        generated = write(tmp_path, "generated.json", {})
        write(tmp_path, "a.json", {})

        found = collect_fragments(tmp_path, exclude=[generated])

        assert [p.name for p in found] == ["a.json"]

    def test_empty_tree(self, tmp_path):
        assert collect_fragments(tmp_path) == []

    def test_same_order_across_runs(self, tmp_path):
        for name in ["c.json", "a/b.json", "b.json", "a/a.json"]:
            write(tmp_path, name, {})

        assert collect_fragments(tmp_path) == collect_fragments(tmp_path)

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(DiscoveryError, match="does not exist"):
            collect_fragments(tmp_path / "nope")

    def test_root_must_be_directory(self, tmp_path):
        file = write(tmp_path, "a.json", {})
        with pytest.raises(DiscoveryError, match="not a directory"):
            collect_fragments(file)


class TestLoadFragment:
    """load_fragment decodes one JSON file into a Fragment."""

    def test_loads_fragment(self, tmp_path):
        path = write(tmp_path, "treefmt.json", {"config": {"perSystem.treefmt.settings.on-unmatched": "warn"}})

        fragment = load_fragment(path)

        assert fragment.source == str(path)
        assert fragment.options == {"perSystem": {"treefmt": {"settings": {"on-unmatched": "warn"}}}}

    def test_invalid_json(self, tmp_path):
        path = write(tmp_path, "bad.json", "{not json")
        with pytest.raises(FragmentFormatError, match="invalid JSON"):
            load_fragment(path)

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(FragmentFormatError, match="cannot read file"):
            load_fragment(tmp_path / "missing.json")

    def test_format_error_is_discovery_error(self, tmp_path):
        path = write(tmp_path, "bad.json", [1, 2])
        with pytest.raises(DiscoveryError):
            load_fragment(path)


class TestDiscover:
    """discover = collect + load, preserving order."""

    def test_returns_fragments_in_order(self, tmp_path):
        write(tmp_path, "b.json", {"config": {"x": 2}})
        write(tmp_path, "a.json", {"config": {"x": 1}})

        fragments = discover(tmp_path)

        assert [f.options["x"] for f in fragments] == [1, 2]

    def test_bad_fragment_aborts(self, tmp_path):
        write(tmp_path, "a.json", {})
        write(tmp_path, "b.json", {"bogus": True})

        with pytest.raises(FragmentFormatError, match="b.json"):
            discover(tmp_path)
