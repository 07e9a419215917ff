"""
WAT Secret Templates
====================

A template is an ordinary WAT module whose confidential values are declared
as placeholder imports:

    (import "env" "SECRET_KEY" (global $SECRET_KEY i32))

Inside the enclave each placeholder with a matching secret is rewritten to a
constant-initialized global, so the compiled module has no import left for it:

    (global $SECRET_KEY i32 (i32.const 42))

Placeholders are located by a small scanner that understands WAT strings and
comments and records the exact span of every declaration. Rewriting works on
those spans, never by substring search, so identical declarations and text
inside strings or comments cannot be confused.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from wasm_tee.enclave.coercion import coerce

logger = logging.getLogger(__name__)

_WHITESPACE = " \t\n\r"
_TOKEN_END = _WHITESPACE + '()";'

_SIMPLE_ESCAPES = {
    "t": "\t",
    "n": "\n",
    "r": "\r",
    '"': '"',
    "'": "'",
    "\\": "\\",
}
_HEX = "0123456789abcdefABCDEF"


@dataclass(frozen=True)
class Placeholder:
    """One `(import "<module>" "<name>" (global [$ident] <kind>))` declaration."""

    start: int
    end: int
    module: str
    name: str
    ident: Optional[str]
    kind: str


@dataclass(frozen=True)
class SecretBinding:
    """A placeholder paired with the literal its secret resolved to."""

    placeholder: Placeholder
    literal: str


def mask_secret(secret: str) -> str:
    """Helper to mask secrets in logs."""
    if len(secret) <= 8:
        return "***"
    return secret[:4] + "***" + secret[-4:]


# ============================================================================
# SCANNER
# ============================================================================

def _skip_line_comment(src: str, i: int) -> int:
    newline = src.find("\n", i)
    return len(src) if newline == -1 else newline + 1


def _skip_block_comment(src: str, i: int) -> int:
    # Block comments nest: (; a (; b ;) c ;)
    depth = 0
    n = len(src)
    while i < n:
        if src.startswith("(;", i):
            depth += 1
            i += 2
        elif src.startswith(";)", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return n


def skip_trivia(src: str, i: int) -> int:
    """Skip whitespace and comments starting at i."""
    n = len(src)
    while i < n:
        if src[i] in _WHITESPACE:
            i += 1
        elif src.startswith(";;", i):
            i = _skip_line_comment(src, i)
        elif src.startswith("(;", i):
            i = _skip_block_comment(src, i)
        else:
            break
    return i


def _read_string(src: str, i: int) -> Optional[Tuple[str, int]]:
    """
    Read a string literal whose opening quote is at i.

    Returns the decoded value and the index after the closing quote,
    or None if the literal is unterminated or malformed.
    """
    n = len(src)
    i += 1
    raw = bytearray()
    while i < n:
        c = src[i]
        if c == '"':
            return raw.decode("utf-8", errors="replace"), i + 1
        if c != "\\":
            raw += c.encode("utf-8")
            i += 1
            continue

        if i + 1 >= n:
            return None
        nxt = src[i + 1]
        if nxt in _SIMPLE_ESCAPES:
            raw += _SIMPLE_ESCAPES[nxt].encode("utf-8")
            i += 2
        elif nxt == "u" and src.startswith("{", i + 2):
            close = src.find("}", i + 3)
            if close == -1:
                return None
            try:
                raw += chr(int(src[i + 3:close], 16)).encode("utf-8")
            except ValueError:
                return None
            i = close + 1
        elif nxt in _HEX and i + 2 < n and src[i + 2] in _HEX:
            raw.append(int(src[i + 1:i + 3], 16))
            i += 3
        else:
            return None
    return None


def _skip_string(src: str, i: int) -> int:
    n = len(src)
    i += 1
    while i < n:
        if src[i] == "\\":
            i += 2
        elif src[i] == '"':
            return i + 1
        else:
            i += 1
    return n


def _read_token(src: str, i: int) -> Tuple[str, int]:
    start = i
    n = len(src)
    while i < n and src[i] not in _TOKEN_END:
        i += 1
    return src[start:i], i


def _match_placeholder(src: str, start: int) -> Optional[Placeholder]:
    """Try to read a placeholder import whose opening paren is at start."""
    i = skip_trivia(src, start + 1)
    keyword, i = _read_token(src, i)
    if keyword != "import":
        return None

    names = []
    for _ in range(2):
        i = skip_trivia(src, i)
        if not src.startswith('"', i):
            return None
        parsed = _read_string(src, i)
        if parsed is None:
            return None
        value, i = parsed
        names.append(value)

    i = skip_trivia(src, i)
    if not src.startswith("(", i):
        return None
    i = skip_trivia(src, i + 1)
    keyword, i = _read_token(src, i)
    if keyword != "global":
        return None

    i = skip_trivia(src, i)
    ident = None
    if src.startswith("$", i):
        token, i = _read_token(src, i)
        ident = token[1:]
        if not ident:
            return None
        i = skip_trivia(src, i)

    # (mut <kind>) and other non-keyword types are not placeholders
    kind, i = _read_token(src, i)
    if not kind:
        return None

    for _ in range(2):
        i = skip_trivia(src, i)
        if not src.startswith(")", i):
            return None
        i += 1

    return Placeholder(
        start=start,
        end=i,
        module=names[0],
        name=names[1],
        ident=ident,
        kind=kind,
    )


def find_placeholders(src: str) -> List[Placeholder]:
    """Locate every placeholder import, in source order."""
    found = []
    n = len(src)
    i = 0
    while i < n:
        if src.startswith(";;", i):
            i = _skip_line_comment(src, i)
        elif src.startswith("(;", i):
            i = _skip_block_comment(src, i)
        elif src[i] == '"':
            i = _skip_string(src, i)
        elif src[i] == "(":
            placeholder = _match_placeholder(src, i)
            if placeholder is not None:
                found.append(placeholder)
                i = placeholder.end
            else:
                i += 1
        else:
            i += 1
    return found


def is_text_module(code: str) -> bool:
    """WAT text starts with a list once leading whitespace and comments are skipped."""
    i = skip_trivia(code, 0)
    return i < len(code) and code[i] == "("


# ============================================================================
# INJECTION
# ============================================================================

def bind_secrets(placeholders: List[Placeholder], secrets: Dict[str, str]) -> List[SecretBinding]:
    """
    Resolve the literal for every placeholder that has a secret.

    Placeholders without a secret get no binding.

    Raises:
        UnsupportedSecretType, UnsupportedWasmType: from value coercion
    """
    bindings = []
    for placeholder in placeholders:
        if placeholder.name not in secrets:
            logger.warning(f"Secret {placeholder.name} not provided, keeping import")
            continue

        secret = secrets[placeholder.name]
        logger.info(
            f"Injecting secret for {placeholder.name} "
            f"(type: {placeholder.kind}, value: {mask_secret(secret)})"
        )
        bindings.append(SecretBinding(placeholder, coerce(secret, placeholder.kind)))
    return bindings


def render_global(binding: SecretBinding) -> str:
    placeholder = binding.placeholder
    kind = placeholder.kind
    if placeholder.ident is None:
        return f"(global {kind} ({kind}.const {binding.literal}))"
    return f"(global ${placeholder.ident} {kind} ({kind}.const {binding.literal}))"


def inject(source: str, secrets: Dict[str, str]) -> str:
    """
    Replace placeholder imports that have a secret with constant globals.

    Placeholders without a secret are left untouched and will surface as
    unresolved imports at instantiation. Secrets that no placeholder
    references are ignored.

    Raises:
        UnsupportedSecretType, UnsupportedWasmType: from value coercion
    """
    placeholders = find_placeholders(source)
    logger.info(f"Found {len(placeholders)} import statements to process")
    if not placeholders or not secrets:
        return source

    bindings = bind_secrets(placeholders, secrets)

    parts = []
    cursor = 0
    for binding in bindings:
        parts.append(source[cursor:binding.placeholder.start])
        parts.append(render_global(binding))
        cursor = binding.placeholder.end

    parts.append(source[cursor:])
    logger.info(f"Template processing complete ({len(bindings)} secret(s) injected)")
    return "".join(parts)


def missing_secrets(source: str, secrets: Dict[str, str]) -> List[str]:
    """`module.name` of every placeholder that has no secret."""
    return [f"{p.module}.{p.name}" for p in find_placeholders(source) if p.name not in secrets]
