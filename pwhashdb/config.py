"""Run configuration for ingest and match; argparse flags map 1:1 onto these."""
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .sanitize import POLICIES, POLICY_NONE
from .store import BACKENDS

DEFAULT_STORE = "hashes.db"
DEFAULT_COMMIT_EVERY = 1000

ON_FAILURE_SKIP = "skip"
ON_FAILURE_STORE = "store"
ON_FAILURE_POLICIES = (ON_FAILURE_SKIP, ON_FAILURE_STORE)


class IngestConfig:
    def __init__(self, input_path, store_path=DEFAULT_STORE, backend: Optional[str] = None,
                 overwrite: bool = False, compute_lm: bool = True, compute_nt: bool = True,
                 emit_progress: bool = True, log_skipped_duplicates: bool = False,
                 import_only: bool = False, filter_policy: str = POLICY_NONE,
                 on_hash_failure: str = ON_FAILURE_SKIP, commit_every: int = DEFAULT_COMMIT_EVERY,
                 encoding: str = "utf-8"):
        self.input_path = Path(input_path).expanduser() if input_path else None
        self.store_path = Path(store_path).expanduser()
        self.backend = backend
        self.overwrite = overwrite
        self.compute_lm = compute_lm
        self.compute_nt = compute_nt
        self.emit_progress = emit_progress
        self.log_skipped_duplicates = log_skipped_duplicates
        self.import_only = import_only
        self.filter_policy = filter_policy
        self.on_hash_failure = on_hash_failure
        self.commit_every = commit_every
        self.encoding = encoding

    def validate(self) -> "IngestConfig":
        if self.input_path is None:
            raise ConfigError("input_path is required")
        if self.backend is not None and self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}")
        if self.filter_policy not in POLICIES:
            raise ConfigError(f"filter_policy must be one of {', '.join(POLICIES)}, got {self.filter_policy!r}")
        if self.on_hash_failure not in ON_FAILURE_POLICIES:
            raise ConfigError(f"on_hash_failure must be one of {', '.join(ON_FAILURE_POLICIES)}, got {self.on_hash_failure!r}")
        if not self.import_only and not (self.compute_lm or self.compute_nt):
            raise ConfigError("nothing to compute: enable LM or NT hashing, or use import-only mode")
        if not isinstance(self.commit_every, int) or self.commit_every < 1:
            raise ConfigError(f"commit_every must be a positive integer, got {self.commit_every!r}")
        return self

    def __repr__(self):
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"IngestConfig({fields})"


class MatchConfig:
    def __init__(self, dump_path, store_path=DEFAULT_STORE, backend: Optional[str] = None,
                 output_path=None, workers: int = 1, chunk: int = 256, encoding: str = "utf-8"):
        self.dump_path = Path(dump_path).expanduser() if dump_path else None
        self.store_path = Path(store_path).expanduser()
        self.backend = backend
        self.output_path = Path(output_path).expanduser() if output_path else None
        self.workers = workers
        self.chunk = chunk
        self.encoding = encoding

    def validate(self) -> "MatchConfig":
        if self.dump_path is None:
            raise ConfigError("dump_path is required")
        if self.backend is not None and self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if self.chunk < 1:
            raise ConfigError(f"chunk must be >= 1, got {self.chunk}")
        return self
