"""
Enclave Channel
===============

This module runs on the HOST (parent EC2) and owns the vsock connection(s)
to the WASM executor enclave.

Lifecycle of one channel:

    DISCONNECTED --connect ok--> CONNECTED --I/O error / timeout--> DISCONNECTED
          \\--(CONNECTING while an attempt is in flight)--/

Rules:
- Only one connect attempt runs at a time (connect lock, held for the
  attempt only)
- A channel carries one request/response round trip at a time (I/O lock);
  bytes of two requests are never interleaved on the wire
- Every forwarded request carries a correlation id and the response must
  echo it, otherwise the channel is dropped
- Concurrency beyond one in-flight request comes from a pool of channels,
  each borrowed exclusively
"""

import enum
import logging
import queue
import socket
import threading
import uuid
from typing import List, Optional

from wasm_tee.config import ENCLAVE_CHANNELS, ENCLAVE_TIMEOUT_SECONDS, MAX_FRAME_BYTES
from wasm_tee.errors import ConnectionClosed, EnclaveUnavailable, ProtocolError
from wasm_tee.protocol import ExecutionRequest, ExecutionResponse, recv_message, send_message
from wasm_tee.transport import EnclaveAddress, connect

logger = logging.getLogger(__name__)


class ChannelState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class EnclaveChannel:
    """
    One physical connection to the enclave.

    Args:
        address: Enclave vsock (or tcp) address
        timeout: Seconds allowed for connect, send and receive
        max_frame_bytes: Largest accepted response frame
    """

    def __init__(
        self,
        address: EnclaveAddress,
        timeout: Optional[float] = ENCLAVE_TIMEOUT_SECONDS,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ):
        self.address = address
        self.timeout = timeout
        self.max_frame_bytes = max_frame_bytes
        self._socket: Optional[socket.socket] = None
        self._state = ChannelState.DISCONNECTED
        self._connect_lock = threading.Lock()
        self._io_lock = threading.Lock()

    @property
    def state(self) -> ChannelState:
        return self._state

    def connect(self) -> socket.socket:
        """
        Return the connected socket, establishing it first if needed.

        Raises:
            EnclaveUnavailable: If the connect attempt fails
        """
        with self._connect_lock:
            if self._state is ChannelState.CONNECTED and self._socket is not None:
                return self._socket

            self._state = ChannelState.CONNECTING
            logger.info(f"Connecting to enclave at {self.address}")
            try:
                sock = connect(self.address, self.timeout)
            except OSError as e:
                self._state = ChannelState.DISCONNECTED
                raise EnclaveUnavailable(f"failed to connect to enclave at {self.address}: {e}") from e

            sock.settimeout(self.timeout)
            self._socket = sock
            self._state = ChannelState.CONNECTED
            logger.info("✅ Successfully connected to enclave")
            return sock

    def close(self) -> None:
        with self._connect_lock:
            if self._socket is not None:
                try:
                    self._socket.close()
                except OSError as e:
                    logger.debug(f"Error closing enclave socket: {e}")
            self._socket = None
            self._state = ChannelState.DISCONNECTED

    def exchange(self, request: ExecutionRequest) -> ExecutionResponse:
        """
        Send one request and wait for its response.

        Never raises for enclave problems: an unreachable enclave or a broken
        channel is reported as an error response and the channel is reset so
        the next call reconnects.
        """
        with self._io_lock:
            try:
                sock = self.connect()
            except EnclaveUnavailable as e:
                logger.warning(f"⚠️ {e}")
                return ExecutionResponse.failure(f"enclave unreachable: {e}", request.id)

            logger.info(
                f"Forwarding to enclave: id={request.id}, function={request.function}, "
                f"args={list(request.args)}, code_length={len(request.code)}"
            )
            try:
                send_message(sock, request)
                response = recv_message(sock, ExecutionResponse, max_bytes=self.max_frame_bytes)
                if response is None:
                    raise ConnectionClosed("enclave closed the channel")
                if response.id != request.id:
                    raise ProtocolError(
                        f"response id {response.id!r} does not match request id {request.id!r}"
                    )
            except (OSError, ProtocolError) as e:
                logger.error(f"❌ Enclave communication error: {e}")
                self.close()
                return ExecutionResponse.failure(f"enclave communication error: {e}", request.id)

            logger.info(f"Received response from enclave: result={response.result}, error={response.error!r}")
            return response


class EnclaveChannelPool:
    """
    Fixed set of channels, each borrowed by exactly one in-flight request.

    With size=1 every request is serialized through a single channel.

    Args:
        address: Enclave address shared by all channels
        size: Number of channels
        timeout: Channel I/O timeout, also the longest wait to borrow a channel
    """

    def __init__(
        self,
        address: EnclaveAddress,
        size: int = ENCLAVE_CHANNELS,
        timeout: Optional[float] = ENCLAVE_TIMEOUT_SECONDS,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ):
        if size < 1:
            raise ValueError(f"Channel pool size must be at least 1, got {size}")
        self.address = address
        self.timeout = timeout
        self.channels: List[EnclaveChannel] = [
            EnclaveChannel(address, timeout=timeout, max_frame_bytes=max_frame_bytes)
            for _ in range(size)
        ]
        self._idle: "queue.Queue[EnclaveChannel]" = queue.Queue()
        for channel in self.channels:
            self._idle.put(channel)

    def connect_all(self) -> int:
        """Try to open every channel. Returns how many are connected."""
        connected = 0
        for channel in self.channels:
            try:
                channel.connect()
                connected += 1
            except EnclaveUnavailable as e:
                logger.warning(f"⚠️ Could not connect to enclave initially: {e}")
        return connected

    def forward(self, request: ExecutionRequest) -> ExecutionResponse:
        """Round-trip a request through an idle channel."""
        if request.id is None:
            request = request.model_copy(update={"id": uuid.uuid4().hex})

        try:
            channel = self._idle.get(timeout=self.timeout)
        except queue.Empty:
            logger.error(f"❌ No enclave channel became available within {self.timeout}s")
            return ExecutionResponse.failure(
                f"enclave busy: no channel available within {self.timeout}s", request.id
            )

        try:
            return channel.exchange(request)
        finally:
            self._idle.put(channel)

    def close(self) -> None:
        for channel in self.channels:
            channel.close()
