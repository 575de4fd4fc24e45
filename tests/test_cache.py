"""Tests for the ciphertext cache."""

from __future__ import annotations

from pathlib import Path

import pytest

from mist.cache import CiphertextCache, default_cache_root, sha256_file


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "a.txt.gpg"
    path.write_bytes(b"ciphertext-bytes")
    return path


class TestCiphertextCache:
    """Tests for CiphertextCache."""

    def test_default_root(self, home: Path):
        assert default_cache_root(home) == home / ".cache" / "mist" / "ciphertext"

    def test_miss_on_empty_cache(self, tmp_path: Path):
        assert CiphertextCache(tmp_path / "c").lookup("a.txt", "abc", "KEYID") is None

    def test_hit_after_store(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)

        blob = cache.lookup("a.txt", "abc", "KEYID")
        assert blob is not None
        assert blob.read_bytes() == b"ciphertext-bytes"
        assert blob.name == sha256_file(artifact)

    def test_miss_on_changed_plaintext(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)
        assert cache.lookup("a.txt", "def", "KEYID") is None

    def test_miss_on_other_recipient(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)
        assert cache.lookup("a.txt", "abc", "OTHER") is None

    def test_survives_reload(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)
        cache.save()

        reloaded = CiphertextCache(tmp_path / "c")
        assert reloaded.lookup("a.txt", "abc", "KEYID") is not None

    def test_unsaved_entries_are_lost(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)
        assert CiphertextCache(tmp_path / "c").lookup("a.txt", "abc", "KEYID") is None

    def test_forget_and_prune(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)
        cache.forget("a.txt")
        cache.save()

        assert cache.lookup("a.txt", "abc", "KEYID") is None
        assert list(cache.objects.iterdir()) == []

    def test_retain_drops_other_paths(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        cache.store("a.txt", "abc", "KEYID", artifact)
        cache.store("b.txt", "abc", "KEYID", artifact)
        cache.retain({"b.txt"})

        assert cache.lookup("a.txt", "abc", "KEYID") is None
        assert cache.lookup("b.txt", "abc", "KEYID") is not None

    def test_missing_blob_is_a_miss(self, tmp_path: Path, artifact: Path):
        cache = CiphertextCache(tmp_path / "c")
        blob_name = sha256_file(artifact)
        cache.store("a.txt", "abc", "KEYID", artifact)
        (cache.objects / blob_name).unlink()
        assert cache.lookup("a.txt", "abc", "KEYID") is None

    def test_corrupt_index_is_ignored(self, tmp_path: Path, caplog):
        root = tmp_path / "c"
        root.mkdir()
        (root / "index.json").write_text("{not json")

        cache = CiphertextCache(root)

        assert cache.index.entries == {}
        assert "Ignoring unreadable cache index" in caplog.text
