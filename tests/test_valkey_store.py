"""
Tests for the Valkey-backed cache store against a mocked client
"""
import hashlib
import pytest
from unittest.mock import MagicMock, patch
from valkey.exceptions import ConnectionError as ValkeyConnectionError
from crossbroker.cache.store import ValkeyCacheStore
from crossbroker.errors import CacheCorruptError, CacheError


def sha(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client):
    return ValkeyCacheStore(namespace="ci", client=client)


def test_put_writes_blob_meta_and_index_in_one_transaction(store, client):
    pipe = client.pipeline.return_value
    entry = store.put("cargo-cache-x86_64-main", b"payload")

    client.pipeline.assert_called_once_with(transaction=True)
    pipe.set.assert_called_once_with("ci:blob:cargo-cache-x86_64-main", b"payload")
    meta_key = pipe.hset.call_args.args[0]
    assert meta_key == "ci:meta:cargo-cache-x86_64-main"
    assert pipe.hset.call_args.kwargs['mapping']['sha256'] == sha(b"payload")
    pipe.zadd.assert_called_once_with("ci:index", {"cargo-cache-x86_64-main": entry.created_at})
    pipe.execute.assert_called_once()


def test_get_verifies_checksum(store, client):
    client.hgetall.return_value = {b'created_at': b'1.5', b'size': b'7', b'sha256': sha(b"payload").encode()}
    client.get.return_value = b"payload"
    assert store.get("k") == b"payload"
    client.get.assert_called_once_with("ci:blob:k")

    client.get.return_value = b"tampered"
    with pytest.raises(CacheCorruptError, match="checksum"):
        store.get("k")


def test_get_missing_entry(store, client):
    client.hgetall.return_value = {}
    assert store.get("k") is None
    client.get.assert_not_called()


def test_get_incomplete_entry(store, client):
    client.hgetall.return_value = {b'created_at': b'1.5', b'size': b'7', b'sha256': b'abc'}
    client.get.return_value = None
    with pytest.raises(CacheCorruptError, match="incomplete"):
        store.get("k")


def test_entries_filtered_and_sorted(store, client):
    client.zrevrange.return_value = [(b"fuzz-state-2", 2.0), (b"fuzz-state-1", 1.0), (b"cargo-cache", 0.5)]
    client.pipeline.return_value.execute.return_value = [
        {b'created_at': b'2.0', b'size': b'3', b'sha256': b'aa'},
        {b'created_at': b'1.0', b'size': b'4', b'sha256': b'bb'},
    ]
    entries = store.entries("fuzz-state")

    assert [entry.key for entry in entries] == ["fuzz-state-2", "fuzz-state-1"]
    assert entries[1].size == 4
    client.pipeline.assert_called_once_with(transaction=False)


def test_entries_skip_unreadable_metadata(store, client):
    client.zrevrange.return_value = [(b"a", 2.0), (b"b", 1.0)]
    client.pipeline.return_value.execute.return_value = [{}, {b'created_at': b'1.0', b'size': b'1', b'sha256': b'x'}]
    assert [entry.key for entry in store.entries()] == ["b"]


def test_entries_empty(store, client):
    client.zrevrange.return_value = []
    assert store.entries() == []
    client.pipeline.assert_not_called()


def test_exists(store, client):
    client.exists.return_value = 1
    assert store.exists("k")
    client.exists.assert_called_once_with("ci:meta:k")


def test_connection_errors_become_cache_errors(store, client):
    client.hgetall.side_effect = ValkeyConnectionError("Connection refused")
    with pytest.raises(CacheError, match="unavailable"):
        store.get("k")


def test_client_created_and_closed_per_operation():
    with patch('crossbroker.cache.store.valkey.Valkey') as mock_valkey:
        instance = mock_valkey.return_value
        instance.exists.return_value = 0
        store = ValkeyCacheStore(host="cache.internal", port=6380, timeout=3.0)

        assert not store.exists("k")
        mock_valkey.assert_called_once_with(
            host="cache.internal", port=6380, socket_timeout=3.0,
            socket_connect_timeout=3.0, decode_responses=False,
        )
        instance.close.assert_called_once()
