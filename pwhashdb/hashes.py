"""
hashes.py — LM and NT hash transforms over a plaintext password.

NT = MD4(UTF-16LE(password)); MD4 is implemented here in pure Python since
hashlib only exposes it when the linked OpenSSL still ships the legacy provider.
LM = DES(KGS!@#$%) keyed by the two 7-byte halves of the upper-cased,
null-padded password (pycryptodome).

compute() never raises for an expected failure: each transform comes back as a
HashOutcome carrying either a value or the HashComputeError that explains it.
"""
from enum import Enum
from typing import NamedTuple, Optional

from Crypto.Cipher import DES

from .errors import HashComputeError


class HashKind(str, Enum):
    LM = "lm"
    NT = "nt"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"unknown hash kind: {value!r} (expected lm or nt)") from None


LM_MAX_LEN = 14
LM_MAGIC = b"KGS!@#$%"
EMPTY_LM_HASH = "AAD3B435B51404EEAAD3B435B51404EE"
EMPTY_NT_HASH = "31D6CFE0D16AE931B73C59D7E0C089C0"


# ---------- MD4 (RFC 1320) ----------

def _rotl32(x, n):
    return ((x << n) & 0xffffffff) | (x >> (32 - n))

def _md4_F(x, y, z): return (x & y) | (~x & z)
def _md4_G(x, y, z): return (x & y) | (x & z) | (y & z)
def _md4_H(x, y, z): return x ^ y ^ z

_R2_CONST = 0x5a827999
_R3_CONST = 0x6ed9eba1
_R3_ORDER = [0, 8, 4, 12, 2, 10, 6, 14, 1, 9, 5, 13, 3, 11, 7, 15]


def md4(data: bytes) -> bytes:
    A, B, C, D = 0x67452301, 0xefcdab89, 0x98badcfe, 0x10325476

    orig_len_bits = (len(data) * 8) & 0xffffffffffffffff
    data = bytes(data) + b"\x80"
    data += b"\x00" * ((56 - len(data) % 64) % 64)
    data += orig_len_bits.to_bytes(8, "little")

    for i in range(0, len(data), 64):
        X = [int.from_bytes(data[i + 4*j:i + 4*j + 4], "little") for j in range(16)]
        AA, BB, CC, DD = A, B, C, D

        # Round 1: consecutive words
        for j in range(0, 16, 4):
            A = _rotl32((A + _md4_F(B, C, D) + X[j+0]) & 0xffffffff, 3)
            D = _rotl32((D + _md4_F(A, B, C) + X[j+1]) & 0xffffffff, 7)
            C = _rotl32((C + _md4_F(D, A, B) + X[j+2]) & 0xffffffff, 11)
            B = _rotl32((B + _md4_F(C, D, A) + X[j+3]) & 0xffffffff, 19)

        # Round 2: column order 0,4,8,12 / 1,5,9,13 / ...
        for j in range(4):
            A = _rotl32((A + _md4_G(B, C, D) + X[j+0] + _R2_CONST) & 0xffffffff, 3)
            D = _rotl32((D + _md4_G(A, B, C) + X[j+4] + _R2_CONST) & 0xffffffff, 5)
            C = _rotl32((C + _md4_G(D, A, B) + X[j+8] + _R2_CONST) & 0xffffffff, 9)
            B = _rotl32((B + _md4_G(C, D, A) + X[j+12] + _R2_CONST) & 0xffffffff, 13)

        # Round 3
        for j in range(0, 16, 4):
            k0, k1, k2, k3 = _R3_ORDER[j:j+4]
            A = _rotl32((A + _md4_H(B, C, D) + X[k0] + _R3_CONST) & 0xffffffff, 3)
            D = _rotl32((D + _md4_H(A, B, C) + X[k1] + _R3_CONST) & 0xffffffff, 9)
            C = _rotl32((C + _md4_H(D, A, B) + X[k2] + _R3_CONST) & 0xffffffff, 11)
            B = _rotl32((B + _md4_H(C, D, A) + X[k3] + _R3_CONST) & 0xffffffff, 15)

        A = (A + AA) & 0xffffffff
        B = (B + BB) & 0xffffffff
        C = (C + CC) & 0xffffffff
        D = (D + DD) & 0xffffffff

    return A.to_bytes(4, "little") + B.to_bytes(4, "little") + C.to_bytes(4, "little") + D.to_bytes(4, "little")


# ---------- NT ----------

def nt_hash(password: str) -> str:
    try:
        encoded = password.encode("utf-16-le")
    except UnicodeEncodeError as e:
        raise HashComputeError(HashKind.NT.value, f"cannot encode as UTF-16LE ({e.reason})") from e
    return md4(encoded).hex().upper()


# ---------- LM ----------

def _odd_parity(byte):
    b = byte & 0xFE
    ones = bin(b).count("1")
    return b | (0 if ones % 2 else 1)

def _des_key_from_7bytes(b7: bytes) -> bytes:
    key = bytearray(8)
    key[0] = b7[0]
    key[1] = ((b7[0] << 7) | (b7[1] >> 1)) & 0xFF
    key[2] = ((b7[1] << 6) | (b7[2] >> 2)) & 0xFF
    key[3] = ((b7[2] << 5) | (b7[3] >> 3)) & 0xFF
    key[4] = ((b7[3] << 4) | (b7[4] >> 4)) & 0xFF
    key[5] = ((b7[4] << 3) | (b7[5] >> 5)) & 0xFF
    key[6] = ((b7[5] << 2) | (b7[6] >> 6)) & 0xFF
    key[7] = (b7[6] << 1) & 0xFF
    return bytes(_odd_parity(k) for k in key)

def lm_hash(password: str) -> str:
    """
    LM hash of password. Unlike the usual crackers this does not silently
    truncate or drop characters: anything LM cannot represent is an error,
    so a stored LM hash always corresponds to the stored plaintext.
    """
    try:
        pw = password.encode("ascii").upper()
    except UnicodeEncodeError as e:
        raise HashComputeError(HashKind.LM.value, "contains characters outside the LM (ASCII) repertoire") from e
    if len(pw) > LM_MAX_LEN:
        raise HashComputeError(HashKind.LM.value, f"longer than {LM_MAX_LEN} characters")
    pw = pw.ljust(LM_MAX_LEN, b"\x00")
    c1 = DES.new(_des_key_from_7bytes(pw[:7]), DES.MODE_ECB).encrypt(LM_MAGIC)
    c2 = DES.new(_des_key_from_7bytes(pw[7:]), DES.MODE_ECB).encrypt(LM_MAGIC)
    return (c1 + c2).hex().upper()


# ---------- per-transform outcomes ----------

class HashOutcome(NamedTuple):
    value: Optional[str] = None
    error: Optional[HashComputeError] = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    @property
    def failed(self) -> bool:
        return self.error is not None


NOT_REQUESTED = HashOutcome()


class HashPair(NamedTuple):
    lm: HashOutcome
    nt: HashOutcome

    @property
    def any_ok(self) -> bool:
        return self.lm.ok or self.nt.ok

    @property
    def lm_failed(self) -> bool:
        return self.lm.failed

    @property
    def nt_failed(self) -> bool:
        return self.nt.failed


_TRANSFORMS = {HashKind.LM: lm_hash, HashKind.NT: nt_hash}


def compute_one(kind: HashKind, plaintext: str) -> HashOutcome:
    try:
        return HashOutcome(value=_TRANSFORMS[kind](plaintext))
    except HashComputeError as e:
        return HashOutcome(error=e)


def compute(plaintext: str, lm: bool = True, nt: bool = True) -> HashPair:
    """Run each requested transform on its own; one failing never hides the other."""
    return HashPair(
        lm=compute_one(HashKind.LM, plaintext) if lm else NOT_REQUESTED,
        nt=compute_one(HashKind.NT, plaintext) if nt else NOT_REQUESTED,
    )


def normalize_hash(value: Optional[str]) -> Optional[str]:
    """Stored hashes are upper-case hex; dumps are frequently lower-case."""
    if value is None:
        return None
    value = value.strip()
    return value.upper() if value else None
