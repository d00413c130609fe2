"""Exception hierarchy. Fatal kinds propagate to the CLI; local kinds are counted."""


class PwHashDbError(Exception):
    """Base class for everything this package raises."""


class ConfigError(PwHashDbError):
    pass


class InputNotFoundError(PwHashDbError):
    def __init__(self, path):
        super().__init__(f"input file not found: {path}")
        self.path = path


class StoreNotFoundError(PwHashDbError):
    def __init__(self, path):
        super().__init__(f"store not found: {path}")
        self.path = path


class StoreCreateError(PwHashDbError):
    pass


class StoreWriteError(PwHashDbError):
    pass


class StoreReadError(PwHashDbError):
    """Query against the store failed (locked, corrupt, I/O); fatal for the run."""


class DuplicateRecordError(StoreWriteError):
    """Unique constraint on password hit; callers treat it as a skip."""

    def __init__(self, password):
        super().__init__("password already stored")
        self.password = password


class HashComputeError(PwHashDbError):
    def __init__(self, kind, reason):
        super().__init__(f"{kind} hash failed: {reason}")
        self.kind = kind
        self.reason = reason


class MalformedRecordError(PwHashDbError):
    def __init__(self, line_no, line, reason="expected at least 4 ':'-separated fields"):
        super().__init__(f"line {line_no}: {reason}")
        self.line_no = line_no
        self.line = line
        self.reason = reason
