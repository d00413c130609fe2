import logging
import sqlite3

import pytest

from pwhashdb import pipeline
from pwhashdb.config import IngestConfig
from pwhashdb.errors import ConfigError, InputNotFoundError, StoreReadError, StoreWriteError
from pwhashdb.hashes import HashKind, compute, lm_hash, nt_hash
from pwhashdb.pipeline import RunContext, backfill, ingest
from pwhashdb.store import SqliteStore, open_store


def _config(src, db, **kw):
    kw.setdefault("emit_progress", False)
    return IngestConfig(src, store_path=db, **kw)


@pytest.fixture(params=["hashes.db", "hashes.csv"])
def db(request, tmp_path):
    return tmp_path / request.param


def test_repeated_lines_stored_once(write_lines, db):
    src = write_lines("words.txt", ["alpha", "beta", "alpha", "gamma", "beta", "alpha"])
    summary = ingest(_config(src, db))
    assert summary.processed == 6
    assert summary.inserted == 3
    assert summary.skipped == 3
    with open_store(db) as s:
        assert sorted(r.password for r in s.iter_records()) == ["alpha", "beta", "gamma"]


def test_rerun_inserts_nothing(write_lines, db):
    src = write_lines("words.txt", ["one", "two", "three"])
    assert ingest(_config(src, db)).inserted == 3
    again = ingest(_config(src, db))
    assert again.inserted == 0
    assert again.skipped == 3


def test_overwrite_starts_fresh(write_lines, db):
    ingest(_config(write_lines("a.txt", ["old"]), db))
    ingest(_config(write_lines("b.txt", ["new"]), db, overwrite=True))
    with open_store(db) as s:
        assert [r.password for r in s.iter_records()] == ["new"]


def test_partial_hash_is_still_stored(write_lines, db):
    pw = "ünïcödépasswörd"
    summary = ingest(_config(write_lines("u.txt", [pw]), db))
    assert summary.inserted == 1
    assert summary.lm_failures == 1
    assert summary.errors == 0
    with open_store(db) as s:
        rec = next(s.iter_records())
        assert rec.password == pw
        assert rec.lm_hash is None
        assert rec.nt_hash == nt_hash(pw)


def test_no_hash_produced_is_skipped_by_default(write_lines, db):
    src = write_lines("long.txt", ["averyverylongpassword", "short"])
    summary = ingest(_config(src, db, compute_nt=False))
    assert summary.inserted == 1
    assert summary.errors == 1
    with open_store(db) as s:
        assert not s.exists("averyverylongpassword")
        assert s.lookup_by_hash(HashKind.LM, lm_hash("short")) == "short"


def test_store_policy_keeps_hashless_record(write_lines, db):
    src = write_lines("long.txt", ["averyverylongpassword"])
    summary = ingest(_config(src, db, compute_nt=False, on_hash_failure="store"))
    assert summary.inserted == 1
    assert summary.errors == 0
    with open_store(db) as s:
        assert s.exists("averyverylongpassword")


def test_import_only_then_backfill(write_lines, db):
    src = write_lines("stage.txt", ["winter", "averyverylongpassword"])
    summary = ingest(_config(src, db, import_only=True))
    assert summary.inserted == 2
    with open_store(db) as s:
        assert all(r.lm_hash is None and r.nt_hash is None for r in s.iter_records())
        bf = backfill(s, context=RunContext(emit_progress=False))
        assert bf.processed == 2
        assert bf.updated == 2
        assert bf.lm_failures == 1
        assert s.lookup_by_hash(HashKind.NT, nt_hash("winter")) == "winter"
        assert s.lookup_by_hash(HashKind.LM, lm_hash("winter")) == "winter"
        assert s.lookup_by_hash(HashKind.NT, nt_hash("averyverylongpassword")) == "averyverylongpassword"
        assert list(s.iter_missing_hashes()) == []


def test_backfill_fills_single_missing_column(write_lines, tmp_path):
    db = tmp_path / "hashes.db"
    ingest(_config(write_lines("w.txt", ["autumn"]), db, compute_lm=False))
    with open_store(db) as s:
        assert backfill(s, context=RunContext(emit_progress=False)).processed == 0
        bf = backfill(s, compute_nt=False, only_empty=False, context=RunContext(emit_progress=False))
        assert bf.updated == 1
        assert s.lookup_by_hash(HashKind.LM, lm_hash("autumn")) == "autumn"


def test_ascii_alnum_filter_dedups_on_sanitized_value(write_lines, db):
    src = write_lines("f.txt", ["pass!word", "password", "$$$"])
    summary = ingest(_config(src, db, filter_policy="ascii_alnum"))
    assert summary.inserted == 1
    assert summary.skipped == 2
    with open_store(db) as s:
        assert [r.password for r in s.iter_records()] == ["password"]


def test_blank_lines_are_ignored(write_lines, db):
    summary = ingest(_config(write_lines("b.txt", ["", "x", "", "y"]), db))
    assert summary.processed == 2
    assert summary.inserted == 2


def test_duplicate_logging(write_lines, db, caplog):
    caplog.set_level(logging.INFO, logger="pwhashdb")
    ingest(_config(write_lines("d.txt", ["dup", "dup"]), db, log_skipped_duplicates=True))
    assert "duplicate skipped" in caplog.text


def test_small_commit_batches(write_lines, tmp_path):
    db = tmp_path / "hashes.db"
    words = [f"pw{i}" for i in range(25)]
    assert ingest(_config(write_lines("w.txt", words), db, commit_every=4)).inserted == 25
    with open_store(db) as s:
        assert s.count() == 25


class CancelAfterFirstLine(RunContext):
    def advance(self, n=1):
        super().advance(n)
        self.cancel()


def test_cancel_stops_after_current_record(write_lines, tmp_path):
    db = tmp_path / "hashes.db"
    src = write_lines("w.txt", ["first", "second", "third"])
    summary = ingest(_config(src, db), context=CancelAfterFirstLine(emit_progress=False))
    assert summary.cancelled
    assert summary.inserted == 1
    with open_store(db) as s:
        assert [r.password for r in s.iter_records()] == ["first"]


class BrokenStore:
    path = "broken"

    def __init__(self):
        self.rolled_back = False

    def exists(self, password):
        return False

    def insert(self, password, lm_hash=None, nt_hash=None, checked=False):
        raise StoreWriteError("disk full")

    def commit(self):
        pass

    def rollback(self):
        self.rolled_back = True


def test_store_write_failure_aborts(write_lines, tmp_path):
    store = BrokenStore()
    with pytest.raises(StoreWriteError):
        ingest(_config(write_lines("w.txt", ["a", "b"]), tmp_path / "x.db"), store=store)
    assert store.rolled_back


def test_missing_input(tmp_path):
    with pytest.raises(InputNotFoundError):
        ingest(_config(tmp_path / "nope.txt", tmp_path / "x.db"))


@pytest.mark.parametrize("kw", [
    {"compute_lm": False, "compute_nt": False},
    {"filter_policy": "latin1"},
    {"on_hash_failure": "retry"},
    {"commit_every": 0},
    {"backend": "redis"},
])
def test_invalid_config(tmp_path, kw):
    with pytest.raises(ConfigError):
        _config(tmp_path / "in.txt", tmp_path / "x.db", **kw).validate()


def test_summary_report(write_lines, tmp_path):
    summary = ingest(_config(write_lines("w.txt", ["a"]), tmp_path / "x.db"))
    d = summary.as_dict()
    assert d["inserted"] == 1
    assert d["started"] and d["finished"]
    assert summary.duration >= 0
    assert any(line.startswith("Inserted:") for line in summary.report_lines())


def test_undecodable_lines_are_errors_not_duplicates(tmp_path, db):
    src = tmp_path / "bytes.txt"
    src.write_bytes(b"pass\xff\npass\xfe\nok\n")
    summary = ingest(_config(src, db))
    assert summary.processed == 3
    assert summary.inserted == 1
    assert summary.errors == 2
    assert summary.skipped == 0
    with open_store(db) as s:
        assert [r.password for r in s.iter_records()] == ["ok"]


def test_latin1_encoding_keeps_bytes_verbatim(tmp_path):
    src = tmp_path / "latin.txt"
    src.write_bytes(b"pass\xff\npass\xfe\n")
    summary = ingest(_config(src, tmp_path / "x.db", encoding="latin-1"))
    assert summary.inserted == 2
    assert summary.errors == 0


def test_both_hashes_failing_is_not_stored(write_lines, db, monkeypatch):
    def fake_compute(password, lm=True, nt=True):
        # a lone surrogate cannot come out of a decoded file; stand it in for one line
        return compute("\ud800" if password == "unhashable" else password, lm=lm, nt=nt)

    monkeypatch.setattr(pipeline, "compute", fake_compute)
    summary = ingest(_config(write_lines("w.txt", ["unhashable", "fine"]), db))
    assert summary.inserted == 1
    assert summary.errors == 1
    assert summary.lm_failures == 1
    assert summary.nt_failures == 1
    with open_store(db) as s:
        assert not s.exists("unhashable")
        assert s.exists("fine")


class LockedConnection:
    def execute(self, *args):
        raise sqlite3.OperationalError("database is locked")

    def rollback(self):
        pass


def test_store_read_failure_aborts(write_lines, tmp_path, monkeypatch):
    store = open_store(tmp_path / "locked.db")
    monkeypatch.setattr(SqliteStore, "_conn", lambda self: LockedConnection())
    with pytest.raises(StoreReadError):
        ingest(_config(write_lines("w.txt", ["a"]), tmp_path / "locked.db"), store=store)


def test_csv_ingest_scans_once_per_new_line(write_lines, tmp_path, monkeypatch):
    store = open_store(tmp_path / "scan.csv")
    scans = []
    real_scan = store._scan

    def counting_scan():
        scans.append(1)
        return real_scan()

    monkeypatch.setattr(store, "_scan", counting_scan)
    summary = ingest(_config(write_lines("w.txt", ["a", "b", "c"]), tmp_path / "scan.csv"), store=store)
    store.close()
    assert summary.inserted == 3
    assert len(scans) == 3
