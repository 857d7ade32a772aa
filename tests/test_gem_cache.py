from __future__ import annotations

import hashlib
import os

import pytest

from stager.gem_cache import GemCache


@pytest.fixture
def gem(tmp_path):
    p = tmp_path / "rack-1.2.1.gem"
    p.write_bytes(b"rack gem bytes")
    return p


@pytest.fixture
def unpacked(tmp_path):
    d = tmp_path / "install"
    (d / "gems" / "rack-1.2.1" / "lib").mkdir(parents=True)
    (d / "gems" / "rack-1.2.1" / "lib" / "rack.rb").write_text("module Rack; end\n")
    (d / "specifications").mkdir()
    os.symlink("../gems/rack-1.2.1/lib/rack.rb", d / "specifications" / "link.rb")
    return d


def test_key_is_content_hash(tmp_path, gem):
    cache = GemCache(tmp_path / "cache")
    assert cache.key_for(gem) == hashlib.sha256(b"rack gem bytes").hexdigest()


def test_miss_then_hit(tmp_path, gem, unpacked):
    cache = GemCache(tmp_path / "cache")
    assert cache.get(gem) is None

    entry = cache.put(gem, unpacked)

    assert cache.get(gem) == entry
    assert (entry / "gems" / "rack-1.2.1" / "lib" / "rack.rb").read_text() == "module Rack; end\n"
    assert (entry / "specifications" / "link.rb").is_symlink()
    key = cache.key_for(gem)
    assert entry.parent.name == key[:2]
    assert cache.manifest(key)["gem"] == "rack-1.2.1.gem"


def test_put_leaves_source_in_place(tmp_path, gem, unpacked):
    GemCache(tmp_path / "cache").put(gem, unpacked)
    assert (unpacked / "gems").is_dir()


def test_second_put_keeps_first_entry(tmp_path, gem, unpacked):
    cache = GemCache(tmp_path / "cache")
    entry = cache.put(gem, unpacked)

    other = tmp_path / "other"
    other.mkdir()
    (other / "marker").write_text("second")

    assert cache.put(gem, other) == entry
    assert not (entry / "marker").exists()


def test_lost_rename_race_uses_winner(tmp_path, gem, unpacked, monkeypatch):
    cache = GemCache(tmp_path / "cache")
    entry = cache.entry_path(cache.key_for(gem))
    real_rename = os.rename

    def racing_rename(src, dst):
        # another job publishes the same key just before we do
        os.mkdir(dst)
        (dst / "winner").write_text("")
        return real_rename(src, dst)

    monkeypatch.setattr(os, "rename", racing_rename)

    assert cache.put(gem, unpacked) == entry
    assert (entry / "winner").exists()
    assert [p.name for p in entry.parent.iterdir() if p.name.endswith(".tmp")] == []


def test_same_content_different_name_shares_entry(tmp_path, gem, unpacked):
    cache = GemCache(tmp_path / "cache")
    entry = cache.put(gem, unpacked)

    copy = tmp_path / "renamed.gem"
    copy.write_bytes(gem.read_bytes())

    assert cache.get(copy) == entry


def test_missing_manifest_is_empty(tmp_path):
    assert GemCache(tmp_path / "cache").manifest("ab" * 32) == {}
