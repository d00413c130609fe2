#!/usr/bin/env python3
"""
pwhashdb — build an LM/NT hash store from password lists and resolve dumps against it.

Usage examples:
  # Hash a wordlist into hashes.db (created if missing)
  pwhashdb ingest rockyou.txt -s hashes.db

  # Stage candidates without hashing, hash them later
  pwhashdb ingest new_candidates.txt --import-only
  pwhashdb backfill -s hashes.db

  # Resolve a secretsdump / pwdump file
  pwhashdb match dump.txt -s hashes.db -o resolved.txt -j 4

  # One-off lookup
  pwhashdb lookup 8846F7EAEE8FB117AD06BDD830B7586C --kind nt
"""
import argparse
import logging
import sys

from . import __version__
from .config import (DEFAULT_COMMIT_EVERY, DEFAULT_STORE, ON_FAILURE_POLICIES, ON_FAILURE_SKIP,
                     IngestConfig, MatchConfig)
from .errors import (ConfigError, InputNotFoundError, PwHashDbError, StoreCreateError,
                     StoreNotFoundError, StoreReadError, StoreWriteError)
from .hashes import HashKind
from .log import simple_log
from .matcher import MatchStats, match_dump
from .pipeline import RunContext, backfill, ingest
from .sanitize import POLICIES, POLICY_NONE
from .store import BACKENDS, open_store

EXIT_OK = 0
EXIT_STORE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def info(msg, quiet=False):
    if not quiet:
        print(f"[i] {msg}", file=sys.stderr)

def found(msg):
    print(f"[+] {msg}")

def fail(msg):
    print(f"[!] {msg}", file=sys.stderr)


# ---------- sub-commands ----------

def cmd_init(args):
    with open_store(args.store, backend=args.backend, overwrite=args.overwrite) as store:
        info(f"Store ready: {store.path} ({store.backend}, {store.count()} records)", args.quiet)
    return EXIT_OK


def cmd_ingest(args):
    config = IngestConfig(
        input_path=args.input,
        store_path=args.store,
        backend=args.backend,
        overwrite=args.overwrite,
        compute_lm=not args.no_lm,
        compute_nt=not args.no_nt,
        emit_progress=not (args.no_progress or args.quiet),
        log_skipped_duplicates=args.log_duplicates,
        import_only=args.import_only,
        filter_policy=args.filter,
        on_hash_failure=args.on_hash_failure,
        commit_every=args.commit_every,
        encoding=args.encoding,
    ).validate()
    info(f"Input: {config.input_path}", args.quiet)
    info(f"Store: {config.store_path}", args.quiet)
    info(f"LM: {'on' if config.compute_lm else 'off'}  NT: {'on' if config.compute_nt else 'off'}"
         f"  import-only: {'yes' if config.import_only else 'no'}  filter: {config.filter_policy}", args.quiet)
    summary = ingest(config)
    for line in summary.report_lines():
        info(line, args.quiet)
    if summary.cancelled:
        fail("Interrupted; committed everything processed so far.")
        return EXIT_CANCELLED
    found(f"Inserted {summary.inserted} new record(s).")
    return EXIT_OK


def cmd_backfill(args):
    if args.no_lm and args.no_nt:
        raise ConfigError("nothing to compute: drop --no-lm or --no-nt")
    with open_store(args.store, backend=args.backend, create=False) as store:
        context = RunContext(emit_progress=not (args.no_progress or args.quiet))
        summary = backfill(store, compute_lm=not args.no_lm, compute_nt=not args.no_nt,
                           only_empty=not args.all_missing, context=context)
    for line in summary.report_lines():
        info(line, args.quiet)
    if summary.cancelled:
        fail("Interrupted; committed everything processed so far.")
        return EXIT_CANCELLED
    found(f"Updated {summary.updated} record(s).")
    return EXIT_OK


def cmd_match(args):
    config = MatchConfig(args.dump, store_path=args.store, backend=args.backend,
                         output_path=args.output, workers=args.workers, encoding=args.encoding).validate()
    if not config.dump_path.is_file():
        raise InputNotFoundError(config.dump_path)
    stats = MatchStats()

    def on_error(err):
        fail(f"Skipping malformed line {err.line_no}: {err.reason}")

    with open_store(config.store_path, backend=config.backend, create=False) as store:
        rows = match_dump(config.dump_path, store, workers=config.workers, on_error=on_error,
                          encoding=config.encoding, chunk=config.chunk, stats=stats)
        if config.output_path:
            with config.output_path.open("w", encoding="utf-8") as out:
                for row in rows:
                    out.write(row.format() + "\n")
        else:
            for row in rows:
                print(row.format())
    info(f"Rows: {stats.rows}  LM resolved: {stats.lm_resolved}  NT resolved: {stats.nt_resolved}"
         f"  malformed: {stats.malformed}", args.quiet)
    return EXIT_OK


def cmd_lookup(args):
    kinds = [HashKind.parse(args.kind)] if args.kind else [HashKind.NT, HashKind.LM]
    with open_store(args.store, backend=args.backend, create=False) as store:
        for kind in kinds:
            password = store.lookup_by_hash(kind, args.hash)
            if password is not None:
                found(f"{kind.value.upper()} {args.hash.upper()} -> {password}")
                return EXIT_OK
    print("[-] Not found in the store.")
    return EXIT_STORE


# ---------- argument parsing ----------

def build_parser():
    p = argparse.ArgumentParser(prog="pwhashdb", description="Password -> LM/NT hash store with reverse lookup for credential dumps.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-v info, -vv debug)")
    p.add_argument("-q", "--quiet", action="store_true", help="Only print results and errors")
    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    def store_args(sp):
        sp.add_argument("-s", "--store", default=DEFAULT_STORE, help=f"Store path (default: {DEFAULT_STORE}; *.csv selects the flat-file backend)")
        sp.add_argument("--backend", choices=BACKENDS, help="Force a backend instead of guessing from the suffix")

    sp = sub.add_parser("init", help="Create (or reset) an empty store")
    sp.add_argument("store", help="Store path")
    sp.add_argument("--backend", choices=BACKENDS)
    sp.add_argument("--overwrite", action="store_true", help="Remove an existing store first")
    sp.set_defaults(func=cmd_init)

    sp = sub.add_parser("ingest", help="Hash a password list into the store")
    sp.add_argument("input", help="Password list, one candidate per line")
    store_args(sp)
    sp.add_argument("--overwrite", action="store_true", help="Start from an empty store")
    sp.add_argument("--no-lm", action="store_true", help="Do not compute LM hashes")
    sp.add_argument("--no-nt", action="store_true", help="Do not compute NT hashes")
    sp.add_argument("--import-only", action="store_true", help="Store passwords without hashes (see backfill)")
    sp.add_argument("--filter", choices=POLICIES, default=POLICY_NONE,
                    help="Character filter applied before hashing (ascii_alnum is lossy)")
    sp.add_argument("--on-hash-failure", choices=ON_FAILURE_POLICIES, default=ON_FAILURE_SKIP,
                    help="What to do when no hash could be computed (default: skip)")
    sp.add_argument("--log-duplicates", action="store_true", help="Log every skipped duplicate")
    sp.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    sp.add_argument("--commit-every", type=int, default=DEFAULT_COMMIT_EVERY, help="Inserts per transaction")
    sp.add_argument("--encoding", default="utf-8", help="Input decoding (default: utf-8)")
    sp.set_defaults(func=cmd_ingest)

    sp = sub.add_parser("backfill", help="Compute hashes for records stored without them")
    store_args(sp)
    sp.add_argument("--no-lm", action="store_true")
    sp.add_argument("--no-nt", action="store_true")
    sp.add_argument("--all-missing", action="store_true", help="Also fill one missing column on partially hashed records")
    sp.add_argument("--no-progress", action="store_true")
    sp.set_defaults(func=cmd_backfill)

    sp = sub.add_parser("match", help="Resolve a user:uid:lm:nt dump against the store")
    sp.add_argument("dump", help="Dump file")
    store_args(sp)
    sp.add_argument("-o", "--output", help="Write resolved rows here instead of stdout")
    sp.add_argument("-j", "--workers", type=int, default=1, help="Parallel lookup threads")
    sp.add_argument("--encoding", default="utf-8")
    sp.set_defaults(func=cmd_match)

    sp = sub.add_parser("lookup", help="Look up a single hash")
    sp.add_argument("hash")
    store_args(sp)
    sp.add_argument("--kind", choices=[k.value for k in HashKind], help="Hash column (default: NT then LM)")
    sp.set_defaults(func=cmd_lookup)
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    if args.quiet:
        level = logging.ERROR
    simple_log(level)
    try:
        return args.func(args)
    except (ConfigError, InputNotFoundError, StoreNotFoundError) as e:
        fail(str(e))
        return EXIT_USAGE
    except (StoreCreateError, StoreReadError, StoreWriteError) as e:
        fail(f"Store error: {e}")
        return EXIT_STORE
    except PwHashDbError as e:
        fail(str(e))
        return EXIT_STORE
    except KeyboardInterrupt:
        fail("Interrupted by user. Exiting.")
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
