"""
Error Taxonomy
==============

Request-level errors are reported back to the client inside an
ExecutionResponse and never abort a connection. Transport errors
(ProtocolError, ConnectionClosed) end the affected connection only.
"""


class WasmTeeError(Exception):
    """Base class for every error raised by this package."""

    kind = "WasmTeeError"

    def __str__(self) -> str:
        detail = super().__str__()
        return f"{self.kind}: {detail}" if detail else self.kind


# ============================================================================
# REQUEST-LEVEL ERRORS (reported in ExecutionResponse.error)
# ============================================================================

class RequestError(WasmTeeError):
    kind = "RequestError"


class UnsupportedSecretType(RequestError):
    """Secret value cannot be represented in the placeholder's numeric kind."""
    kind = "UnsupportedSecretType"


class UnsupportedWasmType(RequestError):
    kind = "UnsupportedWasmType"


class CompileError(RequestError):
    """WAT -> WASM compilation failed. Message carries compiler diagnostics."""
    kind = "CompileError"


class InvalidBinaryEncoding(RequestError):
    kind = "InvalidBinaryEncoding"


class InvalidModule(RequestError):
    kind = "InvalidModule"


class UnresolvedImports(RequestError):
    """Module still declares imports after injection (secret not provided)."""
    kind = "UnresolvedImports"

    def __init__(self, names):
        self.names = list(names)
        super().__init__(f"missing secret(s): {', '.join(self.names)}")


class FunctionNotFound(RequestError):
    kind = "FunctionNotFound"


class NotAFunction(RequestError):
    kind = "NotAFunction"


class SignatureMismatch(RequestError):
    kind = "SignatureMismatch"


class ExecutionTrap(RequestError):
    kind = "ExecutionTrap"


class UnexpectedReturnType(RequestError):
    kind = "UnexpectedReturnType"


# ============================================================================
# TRANSPORT / HOST ERRORS
# ============================================================================

class ProtocolError(WasmTeeError):
    """Malformed frame or message on the wire."""
    kind = "ProtocolError"


class ConnectionClosed(ProtocolError):
    """Peer closed the connection (clean EOF or mid-frame)."""
    kind = "ConnectionClosed"


class EnclaveUnavailable(WasmTeeError):
    kind = "EnclaveUnavailable"
