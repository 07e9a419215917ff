"""
Client Relay
============

Runs on the HOST (parent EC2). Clients cannot reach the enclave directly,
so they connect here over TCP and every request is forwarded through the
enclave channel pool.

Per client connection (one thread each):
    read request -> forward to enclave -> write response -> repeat

Requests on one connection are answered strictly in order, one response
per request. A malformed request or a write failure ends that connection
only. An unreachable enclave is reported as an error response and the
connection stays open.
"""

import logging
import socket
from typing import Optional, Tuple

from wasm_tee.config import MAX_FRAME_BYTES, RELAY_HOST, RELAY_PORT
from wasm_tee.errors import ProtocolError
from wasm_tee.host.channel import EnclaveChannelPool
from wasm_tee.protocol import ExecutionRequest, recv_message, send_message
from wasm_tee.transport import ConnectionServer, listen

logger = logging.getLogger(__name__)


class RelayService:
    """
    Client-facing half of the relay.

    Args:
        pool: Channels to the enclave
        max_frame_bytes: Largest accepted client frame
    """

    def __init__(self, pool: EnclaveChannelPool, max_frame_bytes: int = MAX_FRAME_BYTES):
        self.pool = pool
        self.max_frame_bytes = max_frame_bytes
        self._server: Optional[ConnectionServer] = None

    def handle_client(self, conn: socket.socket, peer: Tuple) -> None:
        logger.info(f"Client connected ({peer}), handling requests...")
        while True:
            try:
                request = recv_message(conn, ExecutionRequest, max_bytes=self.max_frame_bytes)
            except (ProtocolError, OSError) as e:
                logger.warning(f"Failed to decode request or client disconnected: {e}")
                return
            if request is None:
                logger.info(f"Client disconnected ({peer})")
                return

            logger.info(f"Received WASM request from client: function={request.function}, args={list(request.args)}")
            response = self.pool.forward(request)

            # The client sees its own id (or none), not the relay's correlation id
            response = response.model_copy(update={"id": request.id})

            logger.info(
                f"Sending response to client: {request.function}({list(request.args)}) = "
                f"{response.result}{'' if response.ok else ' [error]'}"
            )
            try:
                send_message(conn, response)
            except OSError as e:
                logger.warning(f"Failed to encode response to client: {e}")
                return

    def serve(self, host: str = RELAY_HOST, port: int = RELAY_PORT) -> ConnectionServer:
        """Bind the client listener and return a server ready for serve_forever()/start()."""
        listener = listen("tcp", host, port)
        logger.info(f"Ready to forward requests to enclave at {self.pool.address}")
        self._server = ConnectionServer(listener, self.handle_client, name="relay")
        return self._server

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()
        self.pool.close()
