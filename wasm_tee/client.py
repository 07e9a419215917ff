"""
WASM TEE Client
===============

Talks to the relay on the parent EC2 over TCP.

Usage:
    from wasm_tee.client import WasmClient

    with WasmClient("localhost", 8081) as client:
        response = client.execute(code, "secure_compute", [100], secrets={"SECRET_KEY": "42"})
"""

import socket
from typing import Dict, Optional, Sequence

from wasm_tee.config import MAX_FRAME_BYTES
from wasm_tee.errors import ConnectionClosed
from wasm_tee.protocol import ExecutionRequest, ExecutionResponse, recv_message, send_message


class WasmClient:
    """
    One TCP connection to the relay. Requests on it are answered in order.

    Args:
        host: Relay host
        port: Relay port
        timeout: Socket timeout in seconds (None = block)
    """

    def __init__(self, host: str = "localhost", port: int = 8081, timeout: Optional[float] = 60.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._socket: Optional[socket.socket] = None

    def connect(self) -> "WasmClient":
        if self._socket is None:
            self._socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
        return self

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def __enter__(self) -> "WasmClient":
        return self.connect()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def send(self, request: ExecutionRequest) -> ExecutionResponse:
        self.connect()
        send_message(self._socket, request)
        response = recv_message(self._socket, ExecutionResponse, max_bytes=MAX_FRAME_BYTES)
        if response is None:
            raise ConnectionClosed("relay closed the connection")
        return response

    def execute(
        self,
        code: str,
        function: str,
        args: Sequence[int] = (),
        secrets: Optional[Dict[str, str]] = None,
    ) -> ExecutionResponse:
        """Run `function(*args)` from `code` with `secrets` injected."""
        request = ExecutionRequest(code=code, function=function, args=list(args), secrets=secrets or {})
        return self.send(request)
