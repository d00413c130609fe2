"""
matcher.py — resolve credential dump lines against a password store.

Input lines look like secretsdump / pwdump output:
    username:uid:lmhash:nthash:::
Each line yields one ResolvedRow, in input order, with the plaintext found for
the LM and NT columns ('' where the store has nothing). Lines with fewer than
four fields are reported and dropped; the run carries on.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from pathlib import Path
from typing import Callable, Iterator, NamedTuple, Optional, Tuple

from .errors import InputNotFoundError, MalformedRecordError
from .hashes import HashKind
from .store import RecordStore

log = logging.getLogger(__name__)

FIELD_SEP = ":"
MIN_FIELDS = 4


class DumpRecord(NamedTuple):
    line_no: int
    username: str
    uid: str
    lm_hash: str
    nt_hash: str
    extra: Tuple[str, ...] = ()


class ResolvedRow(NamedTuple):
    record: DumpRecord
    lm_password: str
    nt_password: str

    @property
    def resolved(self) -> bool:
        return bool(self.lm_password or self.nt_password)

    def format(self, sep: str = FIELD_SEP) -> str:
        r = self.record
        return sep.join([r.username, r.uid, self.lm_password, self.nt_password, *r.extra])


class MatchStats:
    def __init__(self):
        self.rows = 0
        self.lm_resolved = 0
        self.nt_resolved = 0
        self.malformed = 0

    def __repr__(self):
        return (f"MatchStats(rows={self.rows}, lm_resolved={self.lm_resolved}, "
                f"nt_resolved={self.nt_resolved}, malformed={self.malformed})")


def parse_dump_line(line: str, line_no: int = 0) -> DumpRecord:
    fields = line.rstrip("\r\n").split(FIELD_SEP)
    if len(fields) < MIN_FIELDS:
        raise MalformedRecordError(line_no, line, f"expected at least {MIN_FIELDS} ':'-separated fields, got {len(fields)}")
    username, uid, lm, nt = fields[:MIN_FIELDS]
    return DumpRecord(line_no, username, uid, lm, nt, tuple(fields[MIN_FIELDS:]))


def iter_dump(dump_path, encoding: str = "utf-8",
              on_error: Optional[Callable[[MalformedRecordError], None]] = None,
              stats: Optional[MatchStats] = None) -> Iterator[DumpRecord]:
    path = Path(dump_path)
    if not path.is_file():
        raise InputNotFoundError(path)
    with path.open("r", encoding=encoding, errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield parse_dump_line(line, line_no)
            except MalformedRecordError as e:
                if stats is not None:
                    stats.malformed += 1
                if on_error is not None:
                    on_error(e)
                else:
                    log.warning("skipping %s", e)


def resolve(store: RecordStore, record: DumpRecord) -> ResolvedRow:
    return ResolvedRow(
        record,
        store.lookup_by_hash(HashKind.LM, record.lm_hash) or "",
        store.lookup_by_hash(HashKind.NT, record.nt_hash) or "",
    )


def _chunks(it, size):
    it = iter(it)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def match_dump(dump_path, store: RecordStore, workers: int = 1,
               on_error: Optional[Callable[[MalformedRecordError], None]] = None,
               encoding: str = "utf-8", chunk: int = 256,
               stats: Optional[MatchStats] = None) -> Iterator[ResolvedRow]:
    """
    Lazily resolve every dump line. With workers > 1 lookups for a window of
    `chunk` lines run on a thread pool; executor.map hands results back in
    submission order, so output still lines up with the dump.
    """
    if not store.supports_indexed_lookup and workers > 1:
        log.info("%s has no index; parallel lookups will each scan the file", store)
    records = iter_dump(dump_path, encoding=encoding, on_error=on_error, stats=stats)

    def _count(row):
        if stats is not None:
            stats.rows += 1
            stats.lm_resolved += bool(row.lm_password)
            stats.nt_resolved += bool(row.nt_password)
        return row

    if workers <= 1:
        for rec in records:
            yield _count(resolve(store, rec))
        return

    try:
        with ThreadPoolExecutor(max_workers=workers) as exe:
            for batch in _chunks(records, chunk):
                for row in exe.map(lambda rec: resolve(store, rec), batch):
                    yield _count(row)
    finally:
        # pool threads are joined by now; drop the connections they opened
        store.release_idle()
