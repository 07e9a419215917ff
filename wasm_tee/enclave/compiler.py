"""
WAT Compilation
===============

Turns request code into WASM binary bytes.

- WAT text is compiled with WABT's `wat2wasm` (installed in the enclave
  image) or in-process with `wasmtime.wat2wasm`.
- Anything else is treated as an encoded binary module (base64 or hex)
  and decoded without invoking a compiler.

Every wat2wasm invocation gets its own scratch directory, so concurrent
requests never share file paths. The directory is removed on every exit path.
"""

import base64
import binascii
import logging
import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

import wasmtime

from wasm_tee.config import COMPILE_TIMEOUT_SECONDS, WAT2WASM_BIN, WAT_COMPILER
from wasm_tee.enclave.template import is_text_module
from wasm_tee.errors import CompileError, InvalidBinaryEncoding

logger = logging.getLogger(__name__)

WASM_MAGIC = b"\x00asm"
COMPILERS = ("wat2wasm", "wasmtime")


@contextmanager
def scratch_dir() -> Iterator[str]:
    """Unique temporary directory, removed on exit. Removal failures are logged."""
    path = tempfile.mkdtemp(prefix="wasm-tee-")
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to remove scratch directory {path}: {e}")


class WatCompiler:
    """
    Compile Bridge between WAT text and WASM bytes.

    Args:
        backend: "wat2wasm" (subprocess) or "wasmtime" (in-process)
        wat2wasm_bin: Path or name of the wat2wasm executable
        timeout: Seconds before a wat2wasm run is killed
    """

    def __init__(
        self,
        backend: str = WAT_COMPILER,
        wat2wasm_bin: str = WAT2WASM_BIN,
        timeout: Optional[float] = COMPILE_TIMEOUT_SECONDS,
    ):
        if backend not in COMPILERS:
            raise ValueError(f"Unknown WAT compiler backend: {backend}")
        self.backend = backend
        self.wat2wasm_bin = wat2wasm_bin
        self.timeout = timeout

    def compile(self, wat: str) -> bytes:
        """
        Compile WAT text to a binary module.

        Raises:
            CompileError: With the compiler's diagnostics
        """
        if self.backend == "wasmtime":
            try:
                wasm = bytes(wasmtime.wat2wasm(wat))
            except wasmtime.WasmtimeError as e:
                raise CompileError(f"wat2wasm compilation failed: {e}") from e
        else:
            wasm = self._run_wat2wasm(wat)

        logger.info(f"Successfully compiled WAT to {len(wasm)} bytes of WASM binary")
        return wasm

    def _run_wat2wasm(self, wat: str) -> bytes:
        with scratch_dir() as workdir:
            wat_path = os.path.join(workdir, "module.wat")
            wasm_path = os.path.join(workdir, "module.wasm")

            try:
                with open(wat_path, "w", encoding="utf-8") as f:
                    f.write(wat)
            except OSError as e:
                raise CompileError(f"failed to write WAT file: {e}") from e

            try:
                result = subprocess.run(
                    [self.wat2wasm_bin, wat_path, "-o", wasm_path],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError as e:
                raise CompileError(f"wat2wasm not found: {self.wat2wasm_bin}") from e
            except subprocess.TimeoutExpired as e:
                raise CompileError(f"wat2wasm timed out after {self.timeout}s") from e
            except OSError as e:
                raise CompileError(f"failed to run wat2wasm: {e}") from e

            if result.returncode != 0:
                output = (result.stdout or "").replace(wat_path, "module.wat").strip()
                raise CompileError(
                    f"wat2wasm compilation failed (exit {result.returncode}), output: {output}"
                )

            try:
                with open(wasm_path, "rb") as f:
                    return f.read()
            except OSError as e:
                raise CompileError(f"failed to read compiled WASM file: {e}") from e


def _b64(cleaned: str) -> Optional[bytes]:
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError):
        return None


def _hex(cleaned: str) -> Optional[bytes]:
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        return None


def decode_binary(encoded: str) -> bytes:
    """
    Decode a base64 or hex encoded binary module.

    Whitespace is ignored. If both decodings succeed, the one that starts
    with the WASM magic number wins, base64 otherwise.

    Raises:
        InvalidBinaryEncoding: Neither base64 nor hex
    """
    cleaned = "".join(encoded.split())
    if not cleaned:
        raise InvalidBinaryEncoding("empty module")

    from_base64 = _b64(cleaned)
    from_hex = _hex(cleaned)

    if from_hex is not None and from_hex.startswith(WASM_MAGIC):
        if from_base64 is None or not from_base64.startswith(WASM_MAGIC):
            return from_hex
    if from_base64 is not None:
        return from_base64
    if from_hex is not None:
        return from_hex
    raise InvalidBinaryEncoding("failed to decode WASM bytecode: neither base64 nor hex")


def load_module_bytes(code: str, compiler: WatCompiler) -> bytes:
    """WAT text is compiled, anything else is decoded as an encoded binary."""
    if is_text_module(code):
        logger.info("Detected WAT text format")
        return compiler.compile(code)

    logger.info("Attempting to decode as base64/hex WASM binary")
    wasm = decode_binary(code)
    logger.info(f"Decoded {len(wasm)} bytes of WASM binary")
    return wasm
