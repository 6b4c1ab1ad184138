from __future__ import annotations

import json

import pytest

from shelfwise.catalog.credentials import CredentialStore, normalize_host
from shelfwise.utils import load_config, save_config


def test_normalize_host_accepts_urls_and_ports() -> None:
    assert normalize_host("https://Lib.Example.org:8443/opds") == "lib.example.org"
    assert normalize_host("lib.example.org:8080") == "lib.example.org"
    assert normalize_host("  ") == ""


def test_saved_credentials_persist_in_the_settings_dir(isolated_settings_dir) -> None:
    store = CredentialStore()
    store.save_credential("https://lib.example.org/opds", "reader", "secret")

    path = isolated_settings_dir / "opds_credentials.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "lib.example.org": {"username": "reader", "password": "secret"}
    }
    reloaded = CredentialStore().find_credential("lib.example.org")
    assert reloaded is not None
    assert (reloaded.username, reloaded.password) == ("reader", "secret")


def test_saving_again_overwrites_the_host(tmp_path) -> None:
    store = CredentialStore(tmp_path / "creds.json")
    store.save_credential("lib.example.org", "old", "one")
    store.save_credential("LIB.example.org", "new", "two")

    assert [item.to_dict() for item in store.all_credentials()] == [
        {"host": "lib.example.org", "username": "new", "password": "two"}
    ]


def test_longest_matching_host_wins(tmp_path) -> None:
    store = CredentialStore(tmp_path / "creds.json")
    store.save_credential("example.org", "parent", "p")
    store.save_credential("books.example.org", "child", "c")

    assert store.find_credential_for_url("https://cdn.books.example.org/loan/1").username == "child"
    assert store.find_credential_for_url("https://www.example.org/loan/1").username == "parent"
    assert store.find_credential_for_url("https://notexample.org/loan/1") is None


def test_delete_credential(tmp_path) -> None:
    store = CredentialStore(tmp_path / "creds.json")
    store.save_credential("lib.example.org", "reader", "secret")

    assert store.delete_credential("lib.example.org") is True
    assert store.delete_credential("lib.example.org") is False
    assert store.find_credential("lib.example.org") is None


def test_save_requires_a_host(tmp_path) -> None:
    with pytest.raises(ValueError):
        CredentialStore(tmp_path / "creds.json").save_credential("", "reader", "secret")


def test_corrupt_store_reads_as_empty(tmp_path) -> None:
    path = tmp_path / "creds.json"
    path.write_text("{broken", encoding="utf-8")

    assert CredentialStore(path).all_credentials() == []


def test_legacy_config_credentials_are_migrated(tmp_path) -> None:
    save_config(
        {
            "language": "en",
            "opds_credentials": [
                {"host": "lib.example.org", "username": "legacy", "password": "pw"},
                {"host": "kept.example.org", "username": "ignored", "password": "x"},
                {"host": "", "username": "nobody"},
            ],
        }
    )
    store = CredentialStore(tmp_path / "creds.json")
    store.save_credential("kept.example.org", "current", "y")

    assert store.migrate_from_config() == 1
    assert store.find_credential("lib.example.org").username == "legacy"
    assert store.find_credential("kept.example.org").username == "current"
    assert load_config() == {"language": "en"}
    assert store.migrate_from_config() == 0
