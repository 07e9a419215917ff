"""
WASM Executor (Runs Inside Nitro Enclave)
=========================================

Template -> compile -> instantiate -> call, for one ExecutionRequest.

SECURITY MODEL:
- Each call gets a fresh wasmtime Store and Instance; nothing survives
  between requests
- Modules are instantiated with NO host imports. Every placeholder must
  have been replaced by a constant global, otherwise instantiation is refused
- Secret values are masked in logs
"""

import logging
from typing import Dict, Optional, Sequence

import wasmtime

from wasm_tee.config import MAX_FUEL
from wasm_tee.enclave.compiler import WatCompiler, load_module_bytes
from wasm_tee.enclave.template import inject, is_text_module, mask_secret, missing_secrets
from wasm_tee.errors import (
    ExecutionTrap,
    FunctionNotFound,
    InvalidModule,
    NotAFunction,
    SignatureMismatch,
    UnexpectedReturnType,
    UnresolvedImports,
    WasmTeeError,
)
from wasm_tee.protocol import INT32_MAX, INT32_MIN, ExecutionRequest, ExecutionResponse

logger = logging.getLogger(__name__)

INTEGER_PARAMS = ("i32", "i64")


class WasmRuntime:
    """
    Execution Engine.

    The Engine only holds compilation settings and is shared; every run()
    builds its own Store, Module and Instance.

    Args:
        max_fuel: Fuel per call (0 = unmetered)
    """

    def __init__(self, max_fuel: int = MAX_FUEL):
        self.max_fuel = max_fuel
        config = wasmtime.Config()
        if max_fuel > 0:
            config.consume_fuel = True
        self.engine = wasmtime.Engine(config)

    def run(self, wasm: bytes, function: str, args: Sequence[int]) -> int:
        """
        Call an exported function and return its single i32 result.

        Raises:
            InvalidModule, UnresolvedImports, FunctionNotFound, NotAFunction,
            SignatureMismatch, ExecutionTrap, UnexpectedReturnType
        """
        try:
            module = wasmtime.Module(self.engine, bytes(wasm))
        except wasmtime.WasmtimeError as e:
            raise InvalidModule(f"failed to create WASM module: {e}") from e

        missing = [f"{imp.module}.{imp.name}" for imp in module.imports]
        if missing:
            raise UnresolvedImports(missing)

        store = wasmtime.Store(self.engine)
        if self.max_fuel > 0:
            store.set_fuel(self.max_fuel)

        try:
            instance = wasmtime.Instance(store, module, [])
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            raise ExecutionTrap(f"failed to create WASM instance: {e}") from e

        exports = instance.exports(store)
        export = exports.get(function)
        if export is None:
            raise FunctionNotFound(f"function '{function}' not found in WASM module")
        if not isinstance(export, wasmtime.Func):
            raise NotAFunction(f"'{function}' is not a function")

        func_type = export.type(store)
        params = [str(p) for p in func_type.params]
        results = [str(r) for r in func_type.results]

        if len(params) != len(args):
            raise SignatureMismatch(
                f"'{function}' takes {len(params)} argument(s), got {len(args)}"
            )
        unsupported = [p for p in params if p not in INTEGER_PARAMS]
        if unsupported:
            raise SignatureMismatch(
                f"'{function}' has non-integer parameter types: {', '.join(unsupported)}"
            )
        if results != ["i32"]:
            raise UnexpectedReturnType(
                f"'{function}' must return exactly one i32, declares ({', '.join(results)})"
            )

        logger.info(f"Found function '{function}', calling with args: {list(args)}")
        try:
            result = export(store, *args)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            raise ExecutionTrap(f"WASM function call failed: {e}") from e

        if isinstance(result, bool) or not isinstance(result, int) or not INT32_MIN <= result <= INT32_MAX:
            raise UnexpectedReturnType(f"unexpected return value from WASM function: {result!r}")
        return result


class WasmExecutor:
    """
    Full request pipeline: secret injection, compilation, execution.

    execute() never raises for request-level failures; they come back as
    an ExecutionResponse with `error` set.
    """

    def __init__(
        self,
        compiler: Optional[WatCompiler] = None,
        runtime: Optional[WasmRuntime] = None,
    ):
        self.compiler = compiler or WatCompiler()
        self.runtime = runtime or WasmRuntime()

    def run(self, code: str, function: str, args: Sequence[int], secrets: Dict[str, str]) -> int:
        logger.info(f"Parsing WASM code (length: {len(code)})")
        logger.info(f"Secrets received: {len(secrets)}")
        for key, value in secrets.items():
            logger.debug(f"  Secret: {key} = {mask_secret(value)}")

        if is_text_module(code):
            # WAT requires imports before definitions, so a partially injected
            # template would fail to compile instead of failing to link
            missing = missing_secrets(code, secrets)
            if missing:
                raise UnresolvedImports(missing)
            if secrets:
                logger.info("Injecting secrets into WAT template...")
                processed = inject(code, secrets)
                logger.info(f"Original WAT length: {len(code)}, processed WAT length: {len(processed)}")
                code = processed

        wasm = load_module_bytes(code, self.compiler)
        return self.runtime.run(wasm, function, args)

    def execute(self, request: ExecutionRequest) -> ExecutionResponse:
        try:
            result = self.run(request.code, request.function, request.args, request.secrets)
        except WasmTeeError as e:
            logger.warning(f"WASM execution error: {e}")
            return ExecutionResponse.failure(f"WASM execution failed: {e}", request.id)

        logger.info(f"WASM execution success: {request.function}({list(request.args)}) = {result}")
        return ExecutionResponse.success(result, request.id)
