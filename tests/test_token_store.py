"""Tests for the file-backed token store."""

import stat

import pytest

from token_store import TokenStore, TokenStoreError, sanitize_profile


@pytest.fixture
def store(tmp_path):
    return TokenStore("work", base_dir=tmp_path, prefer_keyring=False)


def test_missing_token(store):
    assert store.load() is None
    assert store.backend_name() == "file"


def test_save_and_load(store):
    token = {"access_token": "a", "refresh_token": "r", "expires_at": 123}

    assert store.save(token) == "file"

    assert store.load() == token
    assert stat.S_IMODE(store.token_file.stat().st_mode) == 0o600


def test_delete(store):
    store.save({"access_token": "a"})
    store.delete()

    assert not store.token_file.exists()
    assert store.load() is None


def test_corrupt_file_reads_as_missing(store, tmp_path):
    store.token_file.write_text("{not json", encoding="utf-8")

    assert store.load() is None


def test_cache_dir_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("GMAIL_TOKEN_CACHE_DIR", str(tmp_path / "cache"))

    store = TokenStore("default", prefer_keyring=False)

    assert store.token_file == tmp_path / "cache" / "default.json"


def test_required_keyring_without_backend(monkeypatch, tmp_path):
    monkeypatch.setattr("token_store._load_keyring", lambda: None)

    with pytest.raises(TokenStoreError):
        TokenStore("default", base_dir=tmp_path, require_keyring=True)


@pytest.mark.parametrize(
    "profile, expected",
    [("work", "work"), ("me@example.com", "me_example.com"), ("", "default"), ("../..", "default")],
)
def test_sanitize_profile(profile, expected):
    assert sanitize_profile(profile) == expected
