import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from kvledger.core.errors import ConflictingUpdate, StorageUnavailable
from kvledger.core.types import Challenge, LedgerEntry, Scope
from kvledger.telemetry import get_logger
from . import EntryFactory, StorageBackend

log = get_logger(__name__)


def _dump(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SQLiteStorage(StorageBackend):
    """SQLite persistence for challenges, the per-scope ledger and the head/content index."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            env_path = os.environ.get("KV_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "kvledger.db"

        if str(db_path) == ":memory:":
            self.db_path = Path(":memory:")
            conn_str = ":memory:"
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = self.db_path.resolve()
            conn_str = str(self.db_path)

        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self._connect(conn_str)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open database {self.db_path}: {e}") from e

    def _connect(self, conn_str: str):
        self._conn = sqlite3.connect(conn_str, isolation_level=None, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()
        log.debug("storage_opened", backend="sqlite", path=conn_str)

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS challenges (
                uuid            TEXT    PRIMARY KEY,
                avatar          TEXT    NOT NULL,
                platform        TEXT    NOT NULL,
                identity        TEXT    NOT NULL,
                created_at      INTEGER NOT NULL,
                expires_at      INTEGER NOT NULL,
                patch_json      TEXT    NOT NULL,
                sign_payload    TEXT    NOT NULL,
                prev            TEXT
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                avatar          TEXT    NOT NULL,
                platform        TEXT    NOT NULL,
                identity        TEXT    NOT NULL,
                sequence        INTEGER NOT NULL,
                uuid            TEXT    NOT NULL UNIQUE,
                created_at      INTEGER NOT NULL,
                patch_json      TEXT    NOT NULL,
                signature       BLOB    NOT NULL,
                sign_payload    TEXT    NOT NULL,
                prev            TEXT,
                PRIMARY KEY (avatar, platform, identity, sequence),
                UNIQUE (avatar, platform, identity, prev)
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS heads (
                avatar          TEXT    NOT NULL,
                platform        TEXT    NOT NULL,
                identity        TEXT    NOT NULL,
                head_sequence   INTEGER NOT NULL,
                head_link       TEXT    NOT NULL,
                content_json    TEXT    NOT NULL,
                PRIMARY KEY (avatar, platform, identity)
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_challenge_expiry ON challenges(expires_at)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_heads_proof ON heads(platform, identity)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageUnavailable("Storage connection is closed")
        return self._conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE so the write lock is taken before the first read."""
        with self._lock:
            conn = self.conn
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e
            try:
                yield conn
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise ConflictingUpdate(f"ledger constraint violated: {e}") from e
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StorageUnavailable(str(e)) from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ── challenges

    def save_challenge(self, challenge: Challenge) -> None:
        s = challenge.scope
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO challenges
                (uuid, avatar, platform, identity, created_at, expires_at,
                 patch_json, sign_payload, prev)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                challenge.uuid, s.avatar, s.platform, s.identity,
                challenge.created_at, challenge.expires_at,
                _dump(challenge.patch), challenge.sign_payload, challenge.prev,
            ))

    _CHALLENGE_COLUMNS = """
        uuid, avatar, platform, identity, created_at, expires_at,
        patch_json, sign_payload, prev
    """

    @staticmethod
    def _challenge_from_row(row: tuple) -> Challenge:
        cid, avatar, platform, identity, created_at, expires_at, pjson, payload, prev = row
        return Challenge(
            uuid=cid,
            created_at=created_at,
            expires_at=expires_at,
            scope=Scope(avatar, platform, identity),
            patch=json.loads(pjson),
            sign_payload=payload,
            prev=prev,
        )

    def get_challenge(self, uuid: str) -> Optional[Challenge]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {self._CHALLENGE_COLUMNS} FROM challenges WHERE uuid = ?", (uuid,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def take_challenge(
        self,
        uuid: str,
        scope: Optional[Scope] = None,
        created_at: Optional[int] = None,
    ) -> Optional[Challenge]:
        where = "uuid = ?"
        params: list = [uuid]
        if scope is not None:
            where += " AND avatar = ? AND platform = ? AND identity = ?"
            params += [scope.avatar, scope.platform, scope.identity]
        if created_at is not None:
            where += " AND created_at = ?"
            params.append(created_at)

        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {self._CHALLENGE_COLUMNS} FROM challenges WHERE {where}", params
            ).fetchone()
            if row is None:
                return None
            conn.execute(f"DELETE FROM challenges WHERE {where}", params)

        return self._challenge_from_row(row)

    def purge_challenges(self, now: int) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM challenges WHERE expires_at <= ?", (now,))
            return cursor.rowcount

    # ── ledger

    @staticmethod
    def _entry_from_row(scope: Scope, row) -> LedgerEntry:
        seq, uuid, created_at, pjson, signature, payload, prev = row
        return LedgerEntry(
            uuid=uuid,
            scope=scope,
            sequence=seq,
            created_at=created_at,
            patch=json.loads(pjson),
            signature=bytes(signature),
            sign_payload=payload,
            prev=prev,
        )

    def head(self, scope: Scope) -> Optional[LedgerEntry]:
        with self._read() as conn:
            row = conn.execute("""
                SELECT e.sequence, e.uuid, e.created_at, e.patch_json, e.signature,
                       e.sign_payload, e.prev
                FROM heads h JOIN entries e
                  ON e.avatar = h.avatar AND e.platform = h.platform
                 AND e.identity = h.identity AND e.sequence = h.head_sequence
                WHERE h.avatar = ? AND h.platform = ? AND h.identity = ?
            """, (scope.avatar, scope.platform, scope.identity)).fetchone()
        return self._entry_from_row(scope, row) if row else None

    def compare_and_append(
        self, scope: Scope, prev: Optional[str], make_entry: EntryFactory
    ) -> Dict[str, Any]:
        key = (scope.avatar, scope.platform, scope.identity)
        with self._transaction() as conn:
            row = conn.execute("""
                SELECT head_sequence, head_link, content_json FROM heads
                WHERE avatar = ? AND platform = ? AND identity = ?
            """, key).fetchone()

            if row is None:
                head_link, next_seq, current = None, 0, {}
            else:
                head_link, next_seq, current = row[1], row[0] + 1, json.loads(row[2])

            if head_link != prev:
                raise ConflictingUpdate("scope head moved since the challenge was issued")

            entry, content = make_entry(next_seq, current)
            conn.execute("""
                INSERT INTO entries
                (avatar, platform, identity, sequence, uuid, created_at,
                 patch_json, signature, sign_payload, prev)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, key + (
                entry.sequence, entry.uuid, entry.created_at, _dump(entry.patch),
                entry.signature, entry.sign_payload, entry.prev,
            ))
            conn.execute("""
                INSERT INTO heads (avatar, platform, identity, head_sequence, head_link, content_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (avatar, platform, identity) DO UPDATE SET
                    head_sequence = excluded.head_sequence,
                    head_link     = excluded.head_link,
                    content_json  = excluded.content_json
            """, key + (entry.sequence, entry.link, _dump(content)))
        return content

    def load_entries(self, scope: Scope) -> List[LedgerEntry]:
        with self._read() as conn:
            cursor = conn.execute("""
                SELECT sequence, uuid, created_at, patch_json, signature, sign_payload, prev
                FROM entries
                WHERE avatar = ? AND platform = ? AND identity = ?
                ORDER BY sequence ASC
            """, (scope.avatar, scope.platform, scope.identity))
            return [self._entry_from_row(scope, row) for row in cursor]

    def get_content(self, scope: Scope) -> Optional[Dict[str, Any]]:
        with self._read() as conn:
            row = conn.execute("""
                SELECT content_json FROM heads
                WHERE avatar = ? AND platform = ? AND identity = ?
            """, (scope.avatar, scope.platform, scope.identity)).fetchone()
        return json.loads(row[0]) if row else None

    def put_content(self, scope: Scope, content: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE heads SET content_json = ?
                WHERE avatar = ? AND platform = ? AND identity = ?
            """, (_dump(content), scope.avatar, scope.platform, scope.identity))
            if cursor.rowcount == 0:
                raise KeyError(f"no ledger for scope {scope}")

    # ── indexes

    def scopes_for_avatar(self, avatar: str) -> List[Scope]:
        with self._read() as conn:
            cursor = conn.execute("""
                SELECT avatar, platform, identity FROM heads
                WHERE avatar = ? ORDER BY platform, identity
            """, (avatar,))
            return [Scope(*row) for row in cursor]

    def scopes_for_proof(self, platform: str, identity: str) -> List[Scope]:
        with self._read() as conn:
            cursor = conn.execute("""
                SELECT avatar, platform, identity FROM heads
                WHERE platform = ? AND identity = ? ORDER BY avatar
            """, (platform, identity))
            return [Scope(*row) for row in cursor]

    def list_scopes(self) -> List[Scope]:
        with self._read() as conn:
            cursor = conn.execute("""
                SELECT avatar, platform, identity FROM heads
                ORDER BY avatar, platform, identity
            """)
            return [Scope(*row) for row in cursor]

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                log.debug("storage_closed", backend="sqlite", path=str(self.db_path))
