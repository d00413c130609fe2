"""
Persistence for password -> LM/NT hash records.

Two backends share one contract (RecordStore):
  SqliteStore  table HashedPasswords, UNIQUE(password), indexes on lmHash/ntHash.
               exists() and lookup_by_hash() are index probes.
  CsvStore     quoted "Password","LMHash","NTHash" file, append-only.
               exists() and lookup_by_hash() read the whole file each call, so
               it is only reasonable for small lists. Check
               store.supports_indexed_lookup before feeding it millions of lines.

All queries bind parameters; nothing is spliced into SQL text.
"""
import csv
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, Iterator, NamedTuple, Optional, Tuple

from .errors import (DuplicateRecordError, StoreCreateError, StoreNotFoundError, StoreReadError,
                     StoreWriteError)
from .hashes import HashKind, normalize_hash

log = logging.getLogger(__name__)

BACKEND_SQLITE = "sqlite"
BACKEND_CSV = "csv"
BACKENDS = (BACKEND_SQLITE, BACKEND_CSV)

TABLE = "HashedPasswords"
CSV_HEADER = ["Password", "LMHash", "NTHash"]


class PasswordRecord(NamedTuple):
    id: int
    password: str
    lm_hash: Optional[str]
    nt_hash: Optional[str]


# (id, lm_hash, nt_hash); None leaves a column as it is
HashUpdate = Tuple[int, Optional[str], Optional[str]]


class RecordStore:
    """Backend-agnostic store contract."""

    backend = None
    supports_indexed_lookup = False

    def __init__(self, path):
        self.path = Path(path)

    # lifecycle
    def initialize(self, overwrite: bool = False) -> "RecordStore":
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        self.close()
        return False

    # queries
    def exists(self, password: str) -> bool:
        raise NotImplementedError

    def insert(self, password: str, lm_hash: Optional[str] = None, nt_hash: Optional[str] = None,
               checked: bool = False) -> int:
        """
        Add a record. checked=True tells a scanning backend the caller has just
        run exists() for this password, so it need not scan again.
        """
        raise NotImplementedError

    def lookup_by_hash(self, kind, value: Optional[str]) -> Optional[str]:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError

    def iter_records(self) -> Iterator[PasswordRecord]:
        raise NotImplementedError

    def iter_missing_hashes(self, only_empty: bool = True) -> Iterator[PasswordRecord]:
        """Records lacking both hashes (only_empty) or lacking either one."""
        raise NotImplementedError

    def update_hashes(self, updates: Iterable[HashUpdate]) -> int:
        raise NotImplementedError

    def release_idle(self) -> int:
        return 0

    def __repr__(self):
        return f"{type(self).__name__}({str(self.path)!r})"


# ---------- SQLite ----------

_SCHEMA = [
    f"""CREATE TABLE IF NOT EXISTS {TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        password TEXT NOT NULL UNIQUE,
        lmHash TEXT,
        ntHash TEXT
    )""",
    f"CREATE INDEX IF NOT EXISTS idx_lmHash ON {TABLE} (lmHash)",
    f"CREATE INDEX IF NOT EXISTS idx_ntHash ON {TABLE} (ntHash)",
]

_HASH_COLUMN = {HashKind.LM: "lmHash", HashKind.NT: "ntHash"}


class SqliteStore(RecordStore):
    """
    SQLite backend. Each thread gets its own connection so read-only lookups
    can fan out across a thread pool; writes are expected from one thread.
    """

    backend = BACKEND_SQLITE
    supports_indexed_lookup = True

    def __init__(self, path):
        super().__init__(path)
        self._local = threading.local()
        self._conns: Dict[threading.Thread, sqlite3.Connection] = {}
        self._conns_lock = threading.Lock()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
            self._local.conn = conn
            with self._conns_lock:
                self._conns[threading.current_thread()] = conn
        return conn

    def _query(self, sql, params=()) -> sqlite3.Cursor:
        try:
            return self._conn().execute(sql, params)
        except sqlite3.Error as e:
            raise StoreReadError(f"query failed on {self.path}: {e}") from e

    def release_idle(self) -> int:
        """Close connections owned by threads that have exited (e.g. a finished pool)."""
        with self._conns_lock:
            dead = [t for t in self._conns if not t.is_alive()]
            conns = [self._conns.pop(t) for t in dead]
        for conn in conns:
            conn.close()
        return len(conns)

    def initialize(self, overwrite: bool = False) -> "SqliteStore":
        if overwrite and self.path.exists():
            log.info("overwrite requested; removing %s", self.path)
            try:
                self.path.unlink()
            except OSError as e:
                raise StoreCreateError(f"cannot remove existing store {self.path}: {e}") from e
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True)
            conn = self._conn()
            for stmt in _SCHEMA:
                conn.execute(stmt)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreCreateError(f"cannot create store {self.path}: {e}") from e
        log.debug("sqlite store ready at %s", self.path)
        return self

    def commit(self) -> None:
        try:
            self._conn().commit()
        except sqlite3.Error as e:
            raise StoreWriteError(f"commit failed on {self.path}: {e}") from e

    def rollback(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.rollback()

    def close(self) -> None:
        with self._conns_lock:
            conns, self._conns = list(self._conns.values()), {}
        for conn in conns:
            conn.close()
        self._local = threading.local()

    def exists(self, password: str) -> bool:
        row = self._query(
            f"SELECT 1 FROM {TABLE} WHERE password = ? LIMIT 1", (password,)
        ).fetchone()
        return row is not None

    def insert(self, password: str, lm_hash: Optional[str] = None, nt_hash: Optional[str] = None,
               checked: bool = False) -> int:
        # the UNIQUE constraint guards duplicates whether or not the caller checked
        try:
            cur = self._conn().execute(
                f"INSERT INTO {TABLE} (password, lmHash, ntHash) VALUES (?, ?, ?)",
                (password, normalize_hash(lm_hash), normalize_hash(nt_hash)),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(password) from e
        except sqlite3.Error as e:
            raise StoreWriteError(f"insert failed on {self.path}: {e}") from e
        return cur.lastrowid

    def lookup_by_hash(self, kind, value: Optional[str]) -> Optional[str]:
        value = normalize_hash(value)
        if value is None:
            return None
        column = _HASH_COLUMN[HashKind.parse(kind)]
        row = self._query(
            f"SELECT password FROM {TABLE} WHERE {column} = ? ORDER BY id LIMIT 1", (value,)
        ).fetchone()
        return row[0] if row else None

    def count(self) -> int:
        return self._query(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0]

    def iter_records(self) -> Iterator[PasswordRecord]:
        cur = self._query(f"SELECT id, password, lmHash, ntHash FROM {TABLE} ORDER BY id")
        for row in cur:
            yield PasswordRecord(*row)

    def iter_missing_hashes(self, only_empty: bool = True, batch_size: int = 1000) -> Iterator[PasswordRecord]:
        # keyset pagination so callers may update rows between batches
        where = "lmHash IS NULL AND ntHash IS NULL" if only_empty else "(lmHash IS NULL OR ntHash IS NULL)"
        last_id = 0
        while True:
            rows = self._query(
                f"SELECT id, password, lmHash, ntHash FROM {TABLE} WHERE {where} AND id > ? ORDER BY id LIMIT ?",
                (last_id, batch_size),
            ).fetchall()
            if not rows:
                return
            for row in rows:
                yield PasswordRecord(*row)
            last_id = rows[-1][0]

    def update_hashes(self, updates: Iterable[HashUpdate]) -> int:
        params = [(normalize_hash(lm), normalize_hash(nt), rid) for rid, lm, nt in updates]
        try:
            self._conn().executemany(
                f"UPDATE {TABLE} SET lmHash = COALESCE(?, lmHash), ntHash = COALESCE(?, ntHash) WHERE id = ?",
                params,
            )
        except sqlite3.Error as e:
            raise StoreWriteError(f"update failed on {self.path}: {e}") from e
        return len(params)


# ---------- delimited flat file ----------

class CsvStore(RecordStore):
    """
    Flat-file backend: header Password,LMHash,NTHash, every field quoted.
    Record ids are 1-based data row numbers. Every exists()/lookup is a full
    scan of the file.
    """

    backend = BACKEND_CSV
    supports_indexed_lookup = False

    def __init__(self, path, encoding: str = "utf-8"):
        super().__init__(path)
        self.encoding = encoding
        self._fh = None
        self._writer = None
        self._rows = 0

    def initialize(self, overwrite: bool = False) -> "CsvStore":
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True)
            fresh = overwrite or not self.path.exists() or self.path.stat().st_size == 0
            if fresh:
                with self.path.open("w", encoding=self.encoding, newline="") as f:
                    csv.writer(f, quoting=csv.QUOTE_ALL).writerow(CSV_HEADER)
                self._rows = 0
            else:
                self._check_header()
                self._rows = sum(1 for _ in self._scan())
            self._fh = self.path.open("a", encoding=self.encoding, newline="")
            self._writer = csv.writer(self._fh, quoting=csv.QUOTE_ALL)
        except OSError as e:
            raise StoreCreateError(f"cannot create store {self.path}: {e}") from e
        log.debug("csv store ready at %s (%d rows)", self.path, self._rows)
        return self

    def _check_header(self):
        with self.path.open("r", encoding=self.encoding, newline="") as f:
            header = next(csv.reader(f), None)
        if header != CSV_HEADER:
            raise StoreCreateError(f"{self.path} is not a password store (header {header!r})")

    def _scan(self) -> Iterator[PasswordRecord]:
        if self._fh is not None:
            self._fh.flush()
        with self.path.open("r", encoding=self.encoding, newline="") as f:
            reader = csv.reader(f)
            next(reader, None)
            for rid, row in enumerate(reader, start=1):
                password, lm, nt = (row + ["", "", ""])[:3]
                yield PasswordRecord(rid, password, lm or None, nt or None)

    def commit(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
        except OSError as e:
            raise StoreWriteError(f"flush failed on {self.path}: {e}") from e

    def rollback(self) -> None:
        # rows already appended stay; the file has no transactions
        pass

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._writer = None

    def exists(self, password: str) -> bool:
        return any(r.password == password for r in self._scan())

    def insert(self, password: str, lm_hash: Optional[str] = None, nt_hash: Optional[str] = None,
               checked: bool = False) -> int:
        if self._writer is None:
            raise StoreWriteError(f"{self.path} is not open for writing; call initialize() first")
        # no index: without checked=True this is a second full scan
        if not checked and self.exists(password):
            raise DuplicateRecordError(password)
        try:
            self._writer.writerow([password, normalize_hash(lm_hash) or "", normalize_hash(nt_hash) or ""])
        except OSError as e:
            raise StoreWriteError(f"append failed on {self.path}: {e}") from e
        self._rows += 1
        return self._rows

    def lookup_by_hash(self, kind, value: Optional[str]) -> Optional[str]:
        value = normalize_hash(value)
        if value is None:
            return None
        kind = HashKind.parse(kind)
        for r in self._scan():
            if (r.lm_hash if kind is HashKind.LM else r.nt_hash) == value:
                return r.password
        return None

    def count(self) -> int:
        return self._rows

    def iter_records(self) -> Iterator[PasswordRecord]:
        return self._scan()

    def iter_missing_hashes(self, only_empty: bool = True) -> Iterator[PasswordRecord]:
        # materialized: update_hashes rewrites the file underneath the reader
        if only_empty:
            missing = [r for r in self._scan() if r.lm_hash is None and r.nt_hash is None]
        else:
            missing = [r for r in self._scan() if r.lm_hash is None or r.nt_hash is None]
        return iter(missing)

    def update_hashes(self, updates: Iterable[HashUpdate]) -> int:
        pending = {rid: (lm, nt) for rid, lm, nt in updates}
        if not pending:
            return 0
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with tmp.open("w", encoding=self.encoding, newline="") as out:
                writer = csv.writer(out, quoting=csv.QUOTE_ALL)
                writer.writerow(CSV_HEADER)
                for r in self._scan():
                    lm, nt = r.lm_hash, r.nt_hash
                    if r.id in pending:
                        new_lm, new_nt = pending[r.id]
                        lm = normalize_hash(new_lm) or lm
                        nt = normalize_hash(new_nt) or nt
                    writer.writerow([r.password, lm or "", nt or ""])
            self.close()
            os.replace(tmp, self.path)
            self._fh = self.path.open("a", encoding=self.encoding, newline="")
            self._writer = csv.writer(self._fh, quoting=csv.QUOTE_ALL)
        except OSError as e:
            raise StoreWriteError(f"rewrite failed on {self.path}: {e}") from e
        return len(pending)


# ---------- factory ----------

def detect_backend(path) -> str:
    return BACKEND_CSV if Path(path).suffix.lower() == ".csv" else BACKEND_SQLITE


def open_store(path, backend: Optional[str] = None, overwrite: bool = False, create: bool = True) -> RecordStore:
    """
    Open (and if needed create) a store. Backend comes from `backend` or the
    file suffix (.csv -> flat file, anything else -> SQLite). With
    create=False a missing store is an error rather than a fresh file.
    """
    path = Path(path).expanduser()
    backend = backend or detect_backend(path)
    if backend not in BACKENDS:
        raise StoreCreateError(f"unknown backend {backend!r}; choose one of {', '.join(BACKENDS)}")
    if not create and not path.is_file():
        raise StoreNotFoundError(path)
    store = SqliteStore(path) if backend == BACKEND_SQLITE else CsvStore(path)
    if not store.supports_indexed_lookup:
        log.warning("%s backend has no index: every lookup scans the whole file", backend)
    return store.initialize(overwrite=overwrite)
