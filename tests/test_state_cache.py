"""Unit tests for StateCache."""

import json
import os
from ipaddress import IPv4Address
from pathlib import Path

import pytest

from ddns_firewall.cli import CacheState, CacheWriteFailure, Rule, StateCache


def make_state(ip: str = "1.2.3.4", generation: int = 1) -> CacheState:
    return CacheState(
        generation=generation,
        entries={("a.ddns.net", 22): IPv4Address(ip)},
        rules={Rule(IPv4Address(ip), 22)},
        updated_at=1700000000.0,
    )


class TestStateCacheLoad:
    """Tests for StateCache load functionality."""

    def test_load_returns_empty_state_when_file_missing(self, tmp_path: Path) -> None:
        """Test a missing cache is a first run, not an error."""
        cache = StateCache(str(tmp_path / "nonexistent" / "service.cache"))

        state = cache.load()

        assert state == CacheState()
        assert state.generation == 0

    def test_load_returns_file_contents(self, tmp_path: Path) -> None:
        """Test load parses entries, rules and generation."""
        cache_file = tmp_path / "service.cache"
        cache_file.write_text(
            json.dumps(
                {
                    "version": 1,
                    "generation": 7,
                    "updated_at": 1700000000.0,
                    "entries": {"a.ddns.net:22": "1.2.3.4", "b.ddns.net:5432": "5.6.7.8"},
                    "rules": ["1.2.3.4:22", "5.6.7.8:5432"],
                }
            )
        )

        state = StateCache(str(cache_file)).load()

        assert state.generation == 7
        assert state.entries == {
            ("a.ddns.net", 22): IPv4Address("1.2.3.4"),
            ("b.ddns.net", 5432): IPv4Address("5.6.7.8"),
        }
        assert state.rules == {
            Rule(IPv4Address("1.2.3.4"), 22),
            Rule(IPv4Address("5.6.7.8"), 5432),
        }

    def test_load_returns_empty_on_invalid_json(self, tmp_path: Path) -> None:
        """Test a corrupt cache degrades to an empty one."""
        cache_file = tmp_path / "service.cache"
        cache_file.write_text("not valid json {{{")

        assert StateCache(str(cache_file)).load() == CacheState()

    def test_load_returns_empty_on_non_object(self, tmp_path: Path) -> None:
        cache_file = tmp_path / "service.cache"
        cache_file.write_text("[1, 2, 3]")

        assert StateCache(str(cache_file)).load() == CacheState()

    def test_load_returns_empty_on_wrong_shapes(self, tmp_path: Path) -> None:
        """Test entries that is not an object, or rules that is not a list, degrade to empty."""
        cache_file = tmp_path / "service.cache"
        cache = StateCache(str(cache_file))

        for payload in (
            {"generation": 3, "entries": ["x"]},
            {"generation": 3, "entries": "a.ddns.net:22"},
            {"generation": 3, "rules": {"1.2.3.4:22": True}},
            {"generation": 3, "rules": 7},
        ):
            cache_file.write_text(json.dumps(payload))
            assert cache.load() == CacheState()

    def test_load_skips_malformed_items(self, tmp_path: Path) -> None:
        """Test bad entries and rules are dropped individually."""
        cache_file = tmp_path / "service.cache"
        cache_file.write_text(
            json.dumps(
                {
                    "generation": 2,
                    "entries": {"a.ddns.net:22": "1.2.3.4", "b.ddns.net:22": "not-an-ip"},
                    "rules": ["1.2.3.4:22", "garbage", "1.2.3.4:99999"],
                }
            )
        )

        state = StateCache(str(cache_file)).load()

        assert state.entries == {("a.ddns.net", 22): IPv4Address("1.2.3.4")}
        assert state.rules == {Rule(IPv4Address("1.2.3.4"), 22)}


class TestStateCacheSave:
    """Tests for StateCache save functionality."""

    def test_save_creates_parent_directories(self, tmp_path: Path) -> None:
        cache_file = tmp_path / "nested" / "path" / "service.cache"

        StateCache(str(cache_file)).save(make_state())

        assert cache_file.exists()

    def test_save_round_trips(self, tmp_path: Path) -> None:
        cache = StateCache(str(tmp_path / "service.cache"))
        state = make_state()

        cache.save(state)

        assert cache.load() == state

    def test_save_writes_documented_format(self, tmp_path: Path) -> None:
        """Test the on-disk layout: sorted keys, indentation, host:port keys."""
        cache_file = tmp_path / "service.cache"

        StateCache(str(cache_file)).save(make_state())

        content = cache_file.read_text()
        assert json.loads(content) == {
            "version": 1,
            "generation": 1,
            "updated_at": 1700000000.0,
            "entries": {"a.ddns.net:22": "1.2.3.4"},
            "rules": ["1.2.3.4:22"],
        }
        assert "\n" in content
        assert content.find('"entries"') < content.find('"generation"') < content.find('"rules"')

    def test_save_atomic_via_temp_file(self, tmp_path: Path) -> None:
        """Test save goes through a temp file that is renamed away."""
        cache_file = tmp_path / "service.cache"

        StateCache(str(cache_file)).save(make_state())

        assert cache_file.exists()
        assert not cache_file.with_suffix(".cache.tmp").exists()

    def test_save_restricts_permissions(self, tmp_path: Path) -> None:
        cache_file = tmp_path / "service.cache"

        StateCache(str(cache_file)).save(make_state())

        assert oct(cache_file.stat().st_mode & 0o777) == oct(0o600)

    def test_save_overwrites_existing_file(self, tmp_path: Path) -> None:
        cache = StateCache(str(tmp_path / "service.cache"))
        cache.save(make_state("1.2.3.4", generation=1))

        cache.save(make_state("5.6.7.8", generation=2))

        state = cache.load()
        assert state.generation == 2
        assert state.entries == {("a.ddns.net", 22): IPv4Address("5.6.7.8")}

    def test_save_failure_raises_cache_write_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")

        with pytest.raises(CacheWriteFailure):
            StateCache(str(blocker / "service.cache")).save(make_state())


class TestStateCacheCrashSafety:
    """A crash during persistence leaves the old or the new snapshot."""

    def test_crash_before_rename_keeps_previous_state(
        self, tmp_path: Path, monkeypatch
    ) -> None:
        cache = StateCache(str(tmp_path / "service.cache"))
        old_state = make_state("1.2.3.4", generation=1)
        cache.save(old_state)

        def crash(src, dst):
            raise OSError("simulated power loss")

        monkeypatch.setattr(os, "replace", crash)
        with pytest.raises(CacheWriteFailure):
            cache.save(make_state("5.6.7.8", generation=2))
        monkeypatch.undo()

        assert cache.load() == old_state

    def test_failed_rename_removes_temp_file(self, tmp_path: Path, monkeypatch) -> None:
        """Test a failed save does not leave a stale temp file behind."""
        cache_file = tmp_path / "service.cache"
        cache = StateCache(str(cache_file))

        def crash(src, dst):
            raise OSError("simulated rename failure")

        monkeypatch.setattr(os, "replace", crash)
        with pytest.raises(CacheWriteFailure):
            cache.save(make_state())
        monkeypatch.undo()

        assert not cache_file.with_suffix(".cache.tmp").exists()
        assert not cache_file.exists()

    def test_partial_temp_file_at_any_offset_never_corrupts_cache(self, tmp_path: Path) -> None:
        """Truncate the new snapshot at every byte; the live file stays readable."""
        cache_file = tmp_path / "service.cache"
        cache = StateCache(str(cache_file))
        old_state = make_state("1.2.3.4", generation=1)
        cache.save(old_state)
        new_bytes = json.dumps(make_state("5.6.7.8", generation=2).to_dict()).encode()
        tmp_file = cache_file.with_suffix(".cache.tmp")

        for offset in range(len(new_bytes) + 1):
            tmp_file.write_bytes(new_bytes[:offset])
            assert cache.load() == old_state

        # A later successful save replaces the leftover temp file.
        cache.save(make_state("5.6.7.8", generation=2))
        assert cache.load().generation == 2
        assert not tmp_file.exists()
