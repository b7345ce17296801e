# tests/test_storage.py
import sqlite3
import threading
import pytest
from pathlib import Path

from kvledger.core.canon import sign_payload_str
from kvledger.core.errors import ConflictingUpdate, StorageUnavailable
from kvledger.core.types import Challenge, LedgerEntry, Scope
from kvledger.storage import MemoryStorage, SQLiteStorage, StorageBackend, create_storage


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, temp_db_path: Path) -> StorageBackend:
    backend = MemoryStorage() if request.param == "memory" else SQLiteStorage(temp_db_path)
    yield backend
    backend.close()


@pytest.fixture
def scope(keys) -> Scope:
    return Scope(avatar=keys.public_key_hex(), platform="twitter", identity="alice")


def make_challenge(scope: Scope, uuid: str = "c-1", created_at: int = 100, ttl: int = 60) -> Challenge:
    patch = {"a": {"b": None}, "c": [1, 2]}
    return Challenge(
        uuid=uuid,
        created_at=created_at,
        expires_at=created_at + ttl,
        scope=scope,
        patch=patch,
        sign_payload=sign_payload_str(scope, patch, created_at, uuid, None),
        prev=None,
    )


def entry_factory(keys, scope, uuid, patch):
    def make_entry(sequence, current):
        payload = sign_payload_str(scope, patch, 1, uuid, None)
        prev = None
        entry = LedgerEntry(
            uuid=uuid, scope=scope, sequence=sequence, created_at=1, patch=patch,
            signature=keys.sign(payload.encode()), sign_payload=payload, prev=prev,
        )
        return entry, {**current, **patch}
    return make_entry


def test_create_storage_routing(temp_db_path: Path):
    sqlite_backend = create_storage(f"sqlite://{temp_db_path}")
    assert isinstance(sqlite_backend, SQLiteStorage)
    assert str(sqlite_backend.db_path) == str(temp_db_path.resolve())
    sqlite_backend.close()

    assert isinstance(create_storage("memory://"), MemoryStorage)
    assert isinstance(create_storage("sqlite://:memory:"), SQLiteStorage)

    with pytest.raises(ValueError, match="Unsupported"):
        create_storage("postgres://nope")


def test_sqlite_default_path_from_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("KV_DB_PATH", str(tmp_path / "env.db"))
    with SQLiteStorage() as backend:
        assert backend.db_path == (tmp_path / "env.db").resolve()


def test_sqlite_schema_creation(temp_db_path: Path):
    with SQLiteStorage(temp_db_path) as backend:
        columns = {row[1] for row in backend.conn.execute("PRAGMA table_info(entries)")}
    assert columns == {
        "avatar", "platform", "identity", "sequence", "uuid", "created_at",
        "patch_json", "signature", "sign_payload", "prev",
    }


def test_challenge_roundtrip(storage, scope):
    ch = make_challenge(scope)
    storage.save_challenge(ch)
    assert storage.take_challenge("c-1") == ch
    assert storage.take_challenge("c-1") is None


def test_get_challenge_does_not_consume(storage, scope):
    ch = make_challenge(scope)
    storage.save_challenge(ch)
    assert storage.get_challenge("c-1") == ch
    assert storage.get_challenge("c-1") == ch
    assert storage.get_challenge("missing") is None


def test_take_challenge_only_when_parameters_match(storage, scope):
    ch = make_challenge(scope)
    storage.save_challenge(ch)

    assert storage.take_challenge("c-1", scope=Scope(scope.avatar, "github", "alice"), created_at=100) is None
    assert storage.take_challenge("c-1", scope=scope, created_at=101) is None
    assert storage.get_challenge("c-1") == ch

    assert storage.take_challenge("c-1", scope=scope, created_at=100) == ch
    assert storage.get_challenge("c-1") is None


def test_purge_challenges(storage, scope):
    storage.save_challenge(make_challenge(scope, "old", created_at=0, ttl=10))
    storage.save_challenge(make_challenge(scope, "new", created_at=100, ttl=10))
    assert storage.purge_challenges(now=10) == 1
    assert storage.take_challenge("old") is None
    assert storage.take_challenge("new") is not None


def test_take_challenge_is_at_most_once_under_threads(storage, scope):
    storage.save_challenge(make_challenge(scope))
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(storage.take_challenge("c-1", scope=scope, created_at=100))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r is not None) == 1


def test_compare_and_append(storage, keys, scope):
    content = storage.compare_and_append(scope, None, entry_factory(keys, scope, "u-0", {"a": 1}))
    assert content == {"a": 1}

    head = storage.head(scope)
    assert head.uuid == "u-0"
    assert head.sequence == 0
    assert storage.get_content(scope) == {"a": 1}

    content = storage.compare_and_append(scope, head.link, entry_factory(keys, scope, "u-1", {"b": 2}))
    assert content == {"a": 1, "b": 2}
    assert [e.uuid for e in storage.load_entries(scope)] == ["u-0", "u-1"]


def test_compare_and_append_rejects_stale_prev(storage, keys, scope):
    storage.compare_and_append(scope, None, entry_factory(keys, scope, "u-0", {"a": 1}))
    with pytest.raises(ConflictingUpdate):
        storage.compare_and_append(scope, None, entry_factory(keys, scope, "u-1", {"a": 2}))
    assert len(storage.load_entries(scope)) == 1
    assert storage.get_content(scope) == {"a": 1}


def test_failed_factory_leaves_no_trace(storage, scope):
    def boom(sequence, current):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        storage.compare_and_append(scope, None, boom)
    assert storage.head(scope) is None
    assert storage.list_scopes() == []


def test_indexes(storage, keys, other_keys, scope):
    other_avatar = Scope(other_keys.public_key_hex(), "twitter", "alice")
    github = Scope(scope.avatar, "github", "alice")
    for s, uuid in ((scope, "u-0"), (other_avatar, "u-1"), (github, "u-2")):
        storage.compare_and_append(s, None, entry_factory(keys, s, uuid, {"x": uuid}))

    assert storage.scopes_for_avatar(scope.avatar) == [github, scope]
    assert set(storage.scopes_for_proof("twitter", "alice")) == {scope, other_avatar}
    assert len(storage.list_scopes()) == 3
    assert storage.get_content(Scope(scope.avatar, "twitter", "bob")) is None


def test_closed_storage_is_unavailable(storage, scope):
    storage.close()
    with pytest.raises(StorageUnavailable, match="closed"):
        storage.take_challenge("x")
    with pytest.raises(StorageUnavailable):
        storage.head(scope)


def test_sqlite_persists_across_reopen(temp_db_path: Path, keys, scope):
    with SQLiteStorage(temp_db_path) as backend:
        backend.save_challenge(make_challenge(scope))
        backend.compare_and_append(scope, None, entry_factory(keys, scope, "u-0", {"a": 1}))

    with SQLiteStorage(temp_db_path) as backend:
        assert backend.get_content(scope) == {"a": 1}
        assert backend.take_challenge("c-1").patch == {"a": {"b": None}, "c": [1, 2]}
        entry = backend.load_entries(scope)[0]
        assert isinstance(entry.signature, bytes)
        assert len(entry.signature) == 64


def test_sqlite_refuses_forks_at_the_schema_level(temp_db_path: Path, keys, scope):
    with SQLiteStorage(temp_db_path) as backend:
        backend.compare_and_append(scope, None, entry_factory(keys, scope, "u-0", {"a": 1}))

    conn = sqlite3.connect(temp_db_path)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("""
            INSERT INTO entries (avatar, platform, identity, sequence, uuid, created_at,
                                 patch_json, signature, sign_payload, prev)
            VALUES (?, ?, ?, 0, 'fork', 1, '{}', x'00', '{}', NULL)
        """, (scope.avatar, scope.platform, scope.identity))
    conn.close()


def test_sqlite_unopenable_path_is_storage_unavailable(tmp_path: Path):
    target = tmp_path / "dir.db"
    target.mkdir()
    with pytest.raises(StorageUnavailable):
        SQLiteStorage(target)
