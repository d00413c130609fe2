"""
pwhashdb — password -> LM/NT hash store with reverse lookup for credential dumps.
"""
__version__ = "0.3.0"

from .errors import (
    PwHashDbError, ConfigError, StoreCreateError, StoreWriteError, StoreReadError,
    DuplicateRecordError, StoreNotFoundError, InputNotFoundError,
    HashComputeError, MalformedRecordError,
)
from .hashes import HashKind, HashOutcome, HashPair, compute, lm_hash, nt_hash
from .sanitize import Sanitizer, escape_sql_literal
from .store import RecordStore, SqliteStore, CsvStore, PasswordRecord, open_store
from .config import IngestConfig, MatchConfig
from .pipeline import RunContext, Summary, ingest, backfill
from .matcher import DumpRecord, ResolvedRow, MatchStats, parse_dump_line, match_dump
