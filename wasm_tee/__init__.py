"""
WASM TEE
========

Run WebAssembly with confidential values inside an AWS Nitro Enclave.

Clients send WAT (or encoded binary) modules to the relay on the parent
instance. The relay forwards them over vsock to the enclave, which injects
secrets into placeholder imports, compiles, executes, and returns a single
i32 result.

Module Structure:
    protocol.py    - ExecutionRequest / ExecutionResponse and length-prefixed framing
    errors.py      - Error taxonomy (request-level vs transport)
    config.py      - Environment configuration
    transport.py   - vsock/TCP addressing and the threaded accept loop
    enclave/       - Runs INSIDE the enclave (templating, compile, execute)
    host/          - Runs on the parent EC2 (enclave channel, client relay)
    client.py      - Client library and CLI
"""

__version__ = "0.3.0"

from wasm_tee.protocol import ExecutionRequest, ExecutionResponse
from wasm_tee.errors import WasmTeeError

__all__ = [
    "__version__",
    "ExecutionRequest",
    "ExecutionResponse",
    "WasmTeeError",
]
