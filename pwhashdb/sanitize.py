"""
Input normalization for candidate passwords.

Two filter policies exist because stripping characters before hashing changes
which plaintext the stored hash belongs to. "none" is the default; the lossy
"ascii_alnum" policy has to be asked for.
"""
import re

POLICY_NONE = "none"
POLICY_ASCII_ALNUM = "ascii_alnum"
POLICIES = (POLICY_NONE, POLICY_ASCII_ALNUM)

_NOT_ASCII_ALNUM = re.compile(r"[^A-Za-z0-9]")
_NUMERIC_PREFIX = re.compile(r"^(0[xX])")


class Sanitizer:
    def __init__(self, policy: str = POLICY_NONE):
        if policy not in POLICIES:
            raise ValueError(f"unknown filter policy {policy!r}; choose one of {', '.join(POLICIES)}")
        self.policy = policy

    def sanitize(self, raw: str) -> str:
        s = raw.rstrip("\r\n")
        if self.policy == POLICY_ASCII_ALNUM:
            s = _NOT_ASCII_ALNUM.sub("", s)
        return s

    __call__ = sanitize

    def __repr__(self):
        return f"Sanitizer(policy={self.policy!r})"


def escape_sql_literal(s: str) -> str:
    """
    Legacy escaping for backends that only accept query text.

    Doubles backslashes and single quotes, neutralizes ';', '--', '/*', '*/'
    and a leading 0x literal prefix. The bundled stores bind parameters and
    never call this; it is not an injection defense.
    """
    s = s.replace("\\", "\\\\").replace("'", "''")
    s = s.replace(";", "\\;")
    s = s.replace("--", "\\-\\-")
    s = s.replace("/*", "/\\*").replace("*/", "\\*/")
    return _NUMERIC_PREFIX.sub(r"\\\1", s)
