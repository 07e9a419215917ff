"""
Secret Value Coercion
=====================

Turns a secret's string value into the literal text of a `<kind>.const`
instruction for one of the four WASM numeric kinds.

Integers: a base-10 value in range is used as-is. Anything else (API keys,
passwords) is folded into a deterministic non-negative 32-bit hash, so
the same secret always yields the same constant.

Floats: must parse as a finite decimal number. There is no hash fallback.
"""

import math
import re

from wasm_tee.errors import UnsupportedSecretType, UnsupportedWasmType

NUMERIC_KINDS = ("i32", "i64", "f32", "f64")

INT_RANGES = {
    "i32": (-(2 ** 31), 2 ** 31 - 1),
    "i64": (-(2 ** 63), 2 ** 63 - 1),
}

_DECIMAL_INT = re.compile(r"[+-]?[0-9]+")
_DECIMAL_FLOAT = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")

_INT32_MAX = 2 ** 31 - 1
# FLT_MAX plus half an ulp: the smallest magnitude that rounds to infinity in f32
_F32_OVERFLOW = 3.4028235677973366e38


def _wrap_i32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def string_hash(secret: str) -> int:
    """
    31-polynomial hash over code points with 32-bit wrap-around.

    A negative accumulator is negated. -2**31 has no positive counterpart
    in 32 bits and is clamped to 2**31 - 1.
    """
    h = 0
    for ch in secret:
        h = _wrap_i32(h * 31 + ord(ch))
    if h < 0:
        h = min(-h, _INT32_MAX)
    return h


def coerce(secret: str, kind: str) -> str:
    """
    Convert a secret value to WAT literal text for `kind`.

    Raises:
        UnsupportedSecretType: float kind with a non-numeric value
        UnsupportedWasmType: kind is not one of i32/i64/f32/f64
    """
    if kind in INT_RANGES:
        low, high = INT_RANGES[kind]
        if _DECIMAL_INT.fullmatch(secret):
            value = int(secret)
            if low <= value <= high:
                return str(value)
        return str(string_hash(secret))

    if kind in ("f32", "f64"):
        if not _DECIMAL_FLOAT.fullmatch(secret):
            raise UnsupportedSecretType(f"cannot convert string secret to float type {kind}")
        value = float(secret)
        if not math.isfinite(value) or (kind == "f32" and abs(value) >= _F32_OVERFLOW):
            raise UnsupportedSecretType(f"secret is out of range for float type {kind}")
        return repr(value)

    raise UnsupportedWasmType(f"unsupported WASM type: {kind}")
