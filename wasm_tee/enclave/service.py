"""
WASM Executor Service (Runs Inside Nitro Enclave)
=================================================

Listens on vsock for the parent EC2 relay and executes one
ExecutionRequest per frame.

COMMUNICATION:
- vsock (virtual socket) between parent and enclave, no network access
- Length-prefixed JSON frames (see wasm_tee.protocol)
- A connection carries any number of request/response pairs, strictly
  alternating; one thread per connection
"""

import logging
import socket
from typing import Optional, Tuple

from wasm_tee.config import ENCLAVE_PORT, MAX_FRAME_BYTES
from wasm_tee.enclave.executor import WasmExecutor
from wasm_tee.errors import ProtocolError
from wasm_tee.protocol import ExecutionRequest, ExecutionResponse, recv_message, send_message
from wasm_tee.transport import VMADDR_CID_ANY, ConnectionServer, listen

logger = logging.getLogger(__name__)


class EnclaveService:
    """
    Request loop for connections from the parent instance.

    Args:
        executor: Pipeline used for every request
        max_frame_bytes: Largest accepted request frame
    """

    def __init__(self, executor: Optional[WasmExecutor] = None, max_frame_bytes: int = MAX_FRAME_BYTES):
        self.executor = executor or WasmExecutor()
        self.max_frame_bytes = max_frame_bytes

    def handle_request(self, request: ExecutionRequest) -> ExecutionResponse:
        logger.info(
            f"[TEE] Received WASM execution request: function={request.function}, "
            f"args={list(request.args)}, code_length={len(request.code)}, secrets={len(request.secrets)}"
        )
        try:
            return self.executor.execute(request)
        except Exception as e:
            logger.exception(f"[TEE] ❌ Unexpected error executing {request.function}")
            return ExecutionResponse.failure(f"WASM execution failed: internal error: {e}", request.id)

    def handle_connection(self, conn: socket.socket, peer: Tuple) -> None:
        """Serve request/response pairs until the parent disconnects."""
        while True:
            try:
                request = recv_message(conn, ExecutionRequest, max_bytes=self.max_frame_bytes)
            except (ProtocolError, OSError) as e:
                logger.warning(f"[TEE] Failed to decode request or connection closed: {e}")
                return
            if request is None:
                return

            response = self.handle_request(request)

            try:
                send_message(conn, response)
            except OSError as e:
                logger.warning(f"[TEE] Failed to encode response: {e}")
                return
            logger.info("[TEE] ✅ Response sent")

    def serve(self, transport: str = "vsock", host=VMADDR_CID_ANY, port: int = ENCLAVE_PORT) -> ConnectionServer:
        """Bind the listener and return a server ready for serve_forever()/start()."""
        listener = listen(transport, host, port)
        logger.info(f"[TEE] Enclave listening on {transport} port {port}")
        return ConnectionServer(listener, self.handle_connection, name="enclave")
