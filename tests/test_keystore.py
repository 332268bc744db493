import json
import os
import stat

import pytest

from parley import crypto
from parley.errors import KeyFormatError
from parley.keystore import (
    KEY_PREFIX,
    FileKeyStore,
    MemoryKeyStore,
    identity_path,
    load_or_create_identity,
)


class TestMemoryKeyStore:

    def test_save_get_remove(self):
        store = MemoryKeyStore()
        key = crypto.generate_key()
        assert store.get("c1") is None
        store.save("c1", key)
        assert store.get("c1") == key
        store.remove("c1")
        assert store.get("c1") is None
        store.remove("c1")  # already gone

    def test_rejects_wrong_size(self):
        with pytest.raises(KeyFormatError):
            MemoryKeyStore().save("c1", b"short")


class TestFileKeyStore:

    def test_survives_a_new_instance(self, tmp_path):
        path = tmp_path / "keys.json"
        key = crypto.generate_key()
        FileKeyStore(path).save("conv1", key)
        assert FileKeyStore(path).get("conv1") == key

    def test_layout_uses_prefixed_exported_keys(self, tmp_path):
        path = tmp_path / "keys.json"
        key = crypto.generate_key()
        FileKeyStore(path).save("conv1", key)
        data = json.loads(path.read_text())
        assert data == {KEY_PREFIX + "conv1": crypto.export_key(key)}

    def test_file_is_private(self, tmp_path):
        path = tmp_path / "keys.json"
        FileKeyStore(path).save("conv1", crypto.generate_key())
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_remove(self, tmp_path):
        store = FileKeyStore(tmp_path / "keys.json")
        store.save("a", crypto.generate_key())
        store.save("b", crypto.generate_key())
        store.remove("a")
        assert store.get("a") is None
        assert store.get("b") is not None

    def test_corrupted_entry_is_treated_as_missing(self, tmp_path):
        path = tmp_path / "keys.json"
        path.write_text(json.dumps({KEY_PREFIX + "conv1": "@@not-a-key@@"}))
        assert FileKeyStore(path).get("conv1") is None

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "keys.json"
        path.write_text("{ this is not json")
        store = FileKeyStore(path)
        assert store.get("conv1") is None
        key = crypto.generate_key()
        store.save("conv1", key)
        assert store.get("conv1") == key

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "keys.json"
        FileKeyStore(path).save("c", crypto.generate_key())
        assert path.exists()


class TestIdentity:

    def test_path_is_per_user(self, tmp_path):
        assert identity_path("alice", tmp_path) == tmp_path / "alice_identity.pem"
        # no escaping the home directory
        assert identity_path("../evil", tmp_path).parent == tmp_path

    def test_created_once_then_loaded(self, tmp_path):
        path = identity_path("alice", tmp_path)
        first = load_or_create_identity(path)
        second = load_or_create_identity(path)
        assert crypto.export_public_key(first.public_key()) == crypto.export_public_key(second.public_key())
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_corrupt_identity_file(self, tmp_path):
        path = tmp_path / "bob_identity.pem"
        path.write_bytes(b"garbage")
        with pytest.raises(KeyFormatError):
            load_or_create_identity(path)
