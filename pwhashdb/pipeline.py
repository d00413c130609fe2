"""
pipeline.py — streaming ingest of candidate passwords into a RecordStore,
plus the backfill pass that hashes records imported without hashes.

Per line: sanitize -> exists? -> compute LM/NT -> insert. Lines are read in
binary so progress can be tracked as a byte offset against the file size
without re-reading anything, and the file is never held in memory.
"""
import logging
import signal
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from tqdm import tqdm

from .config import ON_FAILURE_SKIP, IngestConfig
from .errors import DuplicateRecordError, InputNotFoundError, StoreReadError, StoreWriteError
from .hashes import compute
from .sanitize import Sanitizer
from .store import RecordStore, open_store

log = logging.getLogger(__name__)


class Summary:
    """Counts for one run. `skipped` covers duplicates and lines that sanitize to nothing."""

    def __init__(self):
        self.processed = 0
        self.inserted = 0
        self.updated = 0
        self.skipped = 0
        self.errors = 0
        self.lm_failures = 0
        self.nt_failures = 0
        self.cancelled = False
        self.started: Optional[datetime] = None
        self.finished: Optional[datetime] = None
        self._t0 = None
        self._elapsed = 0.0

    def start(self):
        self.started = datetime.now()
        self._t0 = time.monotonic()
        return self

    def finish(self):
        self.finished = datetime.now()
        if self._t0 is not None:
            self._elapsed = time.monotonic() - self._t0
        return self

    @property
    def duration(self) -> float:
        """Wall-clock seconds between start() and finish()."""
        return self._elapsed

    def as_dict(self):
        return {
            "processed": self.processed,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "lm_failures": self.lm_failures,
            "nt_failures": self.nt_failures,
            "cancelled": self.cancelled,
            "started": self.started.isoformat(timespec="seconds") if self.started else None,
            "finished": self.finished.isoformat(timespec="seconds") if self.finished else None,
            "duration": round(self.duration, 3),
        }

    def report_lines(self):
        rate = self.processed / self.duration if self.duration > 0 else 0.0
        lines = [
            f"Started:   {self.started:%Y-%m-%d %H:%M:%S}" if self.started else "Started:   -",
            f"Finished:  {self.finished:%Y-%m-%d %H:%M:%S}" if self.finished else "Finished:  -",
            f"Elapsed:   {self.duration:.2f}s ({rate:.0f} lines/s)",
            f"Processed: {self.processed}",
            f"Inserted:  {self.inserted}",
        ]
        if self.updated:
            lines.append(f"Updated:   {self.updated}")
        lines += [
            f"Skipped:   {self.skipped}",
            f"Errors:    {self.errors} (LM failed {self.lm_failures}, NT failed {self.nt_failures})",
        ]
        if self.cancelled:
            lines.append("Run was cancelled before the end of input.")
        return lines

    def __repr__(self):
        return f"Summary({self.as_dict()!r})"


class RunContext:
    """
    Per-run state threaded through ingest/backfill: progress bar, cancel flag
    and the logger. Nothing here is process-global, so two runs never share
    counters.
    """

    def __init__(self, emit_progress: bool = True, logger: Optional[logging.Logger] = None, stream=None):
        self.emit_progress = emit_progress
        self.log = logger or log
        self.stream = stream
        self._cancel = threading.Event()
        self._bar = None

    # cancellation
    def cancel(self):
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @contextmanager
    def handle_signals(self):
        """SIGINT/SIGTERM request a stop after the current line; a second SIGINT interrupts."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {}

        def _on_signal(signum, frame):
            self.log.warning("received signal %s; finishing current record then stopping", signum)
            self.cancel()
            signal.signal(signum, previous.get(signum, signal.SIG_DFL))

        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.getsignal(sig)
            signal.signal(sig, _on_signal)
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    # progress
    @contextmanager
    def progress(self, total=None, desc=None, unit="B"):
        bar = tqdm(total=total, desc=desc, unit=unit, unit_scale=(unit == "B"), ncols=100,
                   disable=not self.emit_progress, file=self.stream or sys.stderr)
        self._bar = bar
        try:
            yield bar
        finally:
            bar.close()
            self._bar = None

    def advance(self, n: int = 1):
        if self._bar is not None:
            self._bar.update(n)

    def note(self, msg, *args):
        self.log.info(msg, *args)


def ingest(config: IngestConfig, store: Optional[RecordStore] = None,
           context: Optional[RunContext] = None) -> Summary:
    """
    Stream config.input_path into the store. A passed-in store is left open;
    one opened here is closed on return. Store read or write failures (other
    than a duplicate) abort the run after rolling back the uncommitted batch.
    Lines that do not decode under config.encoding count as errors.
    """
    config.validate()
    src = config.input_path
    if not src.is_file():
        raise InputNotFoundError(src)

    owns_store = store is None
    if owns_store:
        store = open_store(config.store_path, backend=config.backend, overwrite=config.overwrite)
    context = context or RunContext(emit_progress=config.emit_progress)
    sanitizer = Sanitizer(config.filter_policy)
    summary = Summary().start()
    pending = 0

    context.note("ingesting %s into %s (lm=%s nt=%s import_only=%s filter=%s)", src, store.path,
                 config.compute_lm, config.compute_nt, config.import_only, config.filter_policy)
    try:
        with context.handle_signals(), context.progress(total=src.stat().st_size, desc=src.name):
            with src.open("rb") as f:
                for line_no, raw in enumerate(f, start=1):
                    if context.cancelled:
                        summary.cancelled = True
                        break
                    context.advance(len(raw))
                    raw = raw.rstrip(b"\r\n")
                    if not raw:
                        continue
                    summary.processed += 1
                    try:
                        line = raw.decode(config.encoding)
                    except UnicodeDecodeError as e:
                        summary.errors += 1
                        log.warning("line %d is not valid %s (%s); not stored", line_no, config.encoding, e.reason)
                        continue

                    password = sanitizer(line)
                    if password != line:
                        log.debug("sanitized %r -> %r", line, password)
                    if not password:
                        summary.skipped += 1
                        continue
                    if store.exists(password):
                        summary.skipped += 1
                        if config.log_skipped_duplicates:
                            context.note("duplicate skipped: %r -> %r", line, password)
                        continue

                    lm = nt = None
                    if not config.import_only:
                        pair = compute(password, lm=config.compute_lm, nt=config.compute_nt)
                        if pair.lm_failed:
                            summary.lm_failures += 1
                            log.debug("%r: %s", password, pair.lm.error)
                        if pair.nt_failed:
                            summary.nt_failures += 1
                            log.debug("%r: %s", password, pair.nt.error)
                        if not pair.any_ok and config.on_hash_failure == ON_FAILURE_SKIP:
                            summary.errors += 1
                            context.note("no hash produced for %r; not stored", password)
                            continue
                        lm, nt = pair.lm.value, pair.nt.value

                    try:
                        store.insert(password, lm, nt, checked=True)
                    except DuplicateRecordError:
                        summary.skipped += 1
                        continue
                    summary.inserted += 1
                    pending += 1
                    if pending >= config.commit_every:
                        store.commit()
                        pending = 0
        store.commit()
    except (StoreReadError, StoreWriteError):
        log.error("store failed after %d inserts; rolling back uncommitted batch", summary.inserted)
        store.rollback()
        raise
    finally:
        summary.finish()
        if owns_store:
            store.close()

    if summary.cancelled:
        log.warning("ingest cancelled after %d lines", summary.processed)
    context.note("ingest done: %s", summary.as_dict())
    return summary


def backfill(store: RecordStore, compute_lm: bool = True, compute_nt: bool = True,
             only_empty: bool = True, context: Optional[RunContext] = None,
             batch_size: int = 1000) -> Summary:
    """
    Hash records that were stored without hashes (import-only runs) and
    update them in place. only_empty=False also fills a single missing
    column on records that already carry the other hash.
    """
    context = context or RunContext()
    summary = Summary().start()
    batch = []

    def flush():
        if batch:
            store.update_hashes(batch)
            store.commit()
            summary.updated += len(batch)
            batch.clear()

    try:
        with context.handle_signals(), context.progress(desc="backfill", unit="rec"):
            for rec in store.iter_missing_hashes(only_empty=only_empty):
                if context.cancelled:
                    summary.cancelled = True
                    break
                context.advance()
                summary.processed += 1
                want_lm = compute_lm and rec.lm_hash is None
                want_nt = compute_nt and rec.nt_hash is None
                if not (want_lm or want_nt):
                    summary.skipped += 1
                    continue
                pair = compute(rec.password, lm=want_lm, nt=want_nt)
                summary.lm_failures += pair.lm_failed
                summary.nt_failures += pair.nt_failed
                if not pair.any_ok:
                    summary.errors += 1
                    continue
                batch.append((rec.id, pair.lm.value, pair.nt.value))
                if len(batch) >= batch_size:
                    flush()
            flush()
    except (StoreReadError, StoreWriteError):
        store.rollback()
        raise
    finally:
        summary.finish()
    context.note("backfill done: %s", summary.as_dict())
    return summary
