import sqlite3

import pytest

from pwhashdb.errors import DuplicateRecordError, StoreCreateError, StoreNotFoundError, StoreReadError
from pwhashdb.hashes import HashKind, lm_hash, nt_hash
from pwhashdb.store import CSV_HEADER, CsvStore, SqliteStore, open_store


def test_insert_exists_lookup(store):
    rid = store.insert("password", lm_hash("password"), nt_hash("password"))
    assert rid == 1
    assert store.exists("password")
    assert not store.exists("Password")
    assert store.lookup_by_hash(HashKind.NT, nt_hash("password")) == "password"
    assert store.lookup_by_hash("lm", lm_hash("password").lower()) == "password"
    assert store.lookup_by_hash(HashKind.NT, "0" * 32) is None
    assert store.lookup_by_hash(HashKind.LM, "") is None


def test_duplicate_insert_raises(store):
    store.insert("secret", None, nt_hash("secret"))
    with pytest.raises(DuplicateRecordError):
        store.insert("secret", None, nt_hash("secret"))
    assert store.count() == 1


def test_lm_collision_returns_lowest_id(store):
    # LM is case-insensitive, so these share an LM hash
    store.insert("Summer1", lm_hash("Summer1"), nt_hash("Summer1"))
    store.insert("SUMMER1", lm_hash("SUMMER1"), nt_hash("SUMMER1"))
    store.insert("summer1", lm_hash("summer1"), nt_hash("summer1"))
    assert store.lookup_by_hash(HashKind.LM, lm_hash("summer1")) == "Summer1"
    assert store.lookup_by_hash(HashKind.NT, nt_hash("summer1")) == "summer1"


def test_injection_text_is_stored_verbatim(store):
    evil = "x'); DROP TABLE HashedPasswords; --"
    store.insert(evil, None, nt_hash(evil))
    store.commit()
    assert store.exists(evil)
    assert store.lookup_by_hash(HashKind.NT, nt_hash(evil)) == evil


def test_missing_hashes_and_update(store):
    store.insert("staged", None, None)
    store.insert("half", None, nt_hash("half"))
    store.insert("full", lm_hash("full"), nt_hash("full"))
    store.commit()
    assert [r.password for r in store.iter_missing_hashes()] == ["staged"]
    assert [r.password for r in store.iter_missing_hashes(only_empty=False)] == ["staged", "half"]

    rec = next(store.iter_missing_hashes())
    assert store.update_hashes([(rec.id, lm_hash("staged"), nt_hash("staged"))]) == 1
    store.commit()
    assert store.lookup_by_hash(HashKind.LM, lm_hash("staged")) == "staged"
    assert list(store.iter_missing_hashes()) == []
    by_pw = {r.password: r for r in store.iter_records()}
    assert by_pw["half"].lm_hash is None
    assert by_pw["staged"].nt_hash == nt_hash("staged")


def test_capability_flag(tmp_path):
    assert open_store(tmp_path / "a.db").supports_indexed_lookup
    assert not open_store(tmp_path / "a.csv").supports_indexed_lookup


def test_sqlite_schema(tmp_path):
    path = tmp_path / "schema.db"
    open_store(path).close()
    conn = sqlite3.connect(str(path))
    indexes = {row[1] for row in conn.execute("PRAGMA index_list(HashedPasswords)")}
    columns = [row[1] for row in conn.execute("PRAGMA table_info(HashedPasswords)")]
    conn.close()
    assert columns == ["id", "password", "lmHash", "ntHash"]
    assert {"idx_lmHash", "idx_ntHash"} <= indexes


@pytest.mark.parametrize("name", ["reuse.db", "reuse.csv"])
def test_reopen_keeps_records_and_overwrite_resets(tmp_path, name):
    path = tmp_path / name
    with open_store(path) as s:
        s.insert("one", None, nt_hash("one"))
    with open_store(path) as s:
        assert s.exists("one")
        assert s.insert("two", None, None) == 2
    with open_store(path, overwrite=True) as s:
        assert s.count() == 0
        assert not s.exists("one")


def test_csv_file_format(tmp_path):
    path = tmp_path / "out.csv"
    with open_store(path) as s:
        s.insert("p,w", None, nt_hash("p,w"))
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == ",".join(f'"{h}"' for h in CSV_HEADER)
    assert lines[1] == f'"p,w","","{nt_hash("p,w")}"'


def test_csv_rejects_foreign_file(tmp_path):
    path = tmp_path / "other.csv"
    path.write_text("a,b\n1,2\n", encoding="utf-8")
    with pytest.raises(StoreCreateError):
        CsvStore(path).initialize()


def test_sqlite_rejects_garbage_file(tmp_path):
    path = tmp_path / "garbage.db"
    path.write_bytes(b"this is not a database" * 100)
    with pytest.raises(StoreCreateError):
        SqliteStore(path).initialize()


def test_open_without_create(tmp_path):
    with pytest.raises(StoreNotFoundError):
        open_store(tmp_path / "missing.db", create=False)


def test_unknown_backend(tmp_path):
    with pytest.raises(StoreCreateError):
        open_store(tmp_path / "x.db", backend="redis")


def test_sqlite_query_errors_are_wrapped(tmp_path):
    s = open_store(tmp_path / "q.db")
    s._conn().execute("DROP TABLE HashedPasswords")
    with pytest.raises(StoreReadError):
        s.exists("x")
    with pytest.raises(StoreReadError):
        s.lookup_by_hash(HashKind.NT, nt_hash("x"))
    with pytest.raises(StoreReadError):
        s.count()
    s.close()


def test_csv_insert_unchecked_still_rejects_duplicates(tmp_path):
    s = open_store(tmp_path / "d.csv")
    s.insert("dup")
    with pytest.raises(DuplicateRecordError):
        s.insert("dup")
    s.close()
