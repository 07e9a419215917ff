"""
WASM TEE Wire Protocol
======================

Messages exchanged on both hops (client <-> relay, relay <-> enclave).

Framing (Length-Prefixed JSON):
    [4-byte length (big-endian)][UTF-8 JSON body]

Request format:
    {"id": "...", "code": "(module ...)", "function": "square",
     "args": [7], "secrets": {"SECRET_KEY": "42"}}

Response format:
    {"id": "...", "result": 49, "error": ""}

`id` is optional for clients. The relay stamps one on every request it
forwards and the enclave echoes it back, so a response can always be matched
to the request that produced it.
"""

import socket
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from typing_extensions import Annotated

from wasm_tee.config import MAX_FRAME_BYTES
from wasm_tee.errors import ConnectionClosed, ProtocolError

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

Int32 = Annotated[int, Field(ge=INT32_MIN, le=INT32_MAX)]

LENGTH_PREFIX_BYTES = 4


class ExecutionRequest(BaseModel):
    """
    Request to execute one exported function of a WASM module.

    `code` is WAT text (optionally a template with placeholder imports)
    or a base64/hex encoded binary module. The original client field names
    (`wasm_code`, `function_name`) are accepted on input.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Optional[str] = None
    code: str = Field(validation_alias=AliasChoices("code", "wasm_code"))
    function: str = Field(validation_alias=AliasChoices("function", "function_name"))
    args: List[Int32] = Field(default_factory=list)
    secrets: Dict[str, str] = Field(default_factory=dict)

    @field_validator("args", "secrets", mode="before")
    @classmethod
    def _null_as_empty(cls, value, info):
        if value is None:
            return [] if info.field_name == "args" else {}
        return value


class ExecutionResponse(BaseModel):
    """
    Outcome of one request: `result` when `error` is empty, otherwise
    `error` with `result` pinned to 0.
    """

    id: Optional[str] = None
    result: Int32 = 0
    error: str = ""

    @field_validator("error", mode="before")
    @classmethod
    def _null_error(cls, value):
        return "" if value is None else value

    @model_validator(mode="after")
    def _single_outcome(self):
        if self.error and self.result != 0:
            raise ValueError("a failed response cannot carry a result")
        return self

    @property
    def ok(self) -> bool:
        return not self.error

    @classmethod
    def success(cls, result: int, request_id: Optional[str] = None) -> "ExecutionResponse":
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, error: str, request_id: Optional[str] = None) -> "ExecutionResponse":
        return cls(id=request_id, result=0, error=error or "unknown error")


# ============================================================================
# FRAMING
# ============================================================================

def _recv_exact(sock: socket.socket, length: int) -> bytes:
    data = b""
    while len(data) < length:
        chunk = sock.recv(min(65536, length - len(data)))
        if not chunk:
            raise ConnectionClosed(
                f"connection closed mid-frame (expected {length} bytes, got {len(data)})"
            )
        data += chunk
    return data


def read_frame(sock: socket.socket, max_bytes: int = MAX_FRAME_BYTES) -> Optional[bytes]:
    """
    Read one length-prefixed frame.

    Returns:
        Frame body, or None if the peer closed the connection cleanly
        before sending another frame.

    Raises:
        ConnectionClosed: EOF in the middle of a frame
        ProtocolError: Frame larger than max_bytes
    """
    first = sock.recv(LENGTH_PREFIX_BYTES)
    if not first:
        return None
    length_bytes = first
    if len(first) < LENGTH_PREFIX_BYTES:
        length_bytes += _recv_exact(sock, LENGTH_PREFIX_BYTES - len(first))

    frame_length = int.from_bytes(length_bytes, byteorder="big")
    if frame_length > max_bytes:
        raise ProtocolError(f"frame of {frame_length} bytes exceeds limit of {max_bytes}")

    return _recv_exact(sock, frame_length)


def write_frame(sock: socket.socket, body: bytes) -> None:
    length_prefix = len(body).to_bytes(LENGTH_PREFIX_BYTES, byteorder="big")
    sock.sendall(length_prefix + body)


M = TypeVar("M", bound=BaseModel)


def send_message(sock: socket.socket, message: BaseModel) -> None:
    write_frame(sock, message.model_dump_json(exclude_none=True).encode("utf-8"))


def recv_message(
    sock: socket.socket,
    model: Type[M],
    max_bytes: int = MAX_FRAME_BYTES,
) -> Optional[M]:
    """
    Read and validate one message.

    Returns:
        The decoded model, or None on clean EOF

    Raises:
        ProtocolError: Malformed JSON or schema violation
    """
    body = read_frame(sock, max_bytes=max_bytes)
    if body is None:
        return None
    try:
        return model.model_validate_json(body)
    except ValidationError as e:
        raise ProtocolError(f"invalid {model.__name__}: {e.error_count()} error(s): {e}") from e
