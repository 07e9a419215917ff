"""
Socket Transport
================

Addressing for the two hops and the accept loop shared by the enclave
service and the client-facing relay.

vsock (Virtual Socket) is the only channel between the parent EC2 and the
Nitro Enclave. It is addressed by (CID, port) instead of (host, port) and is
not reachable from the network. For local development both sides can be
switched to TCP with ENCLAVE_TRANSPORT=tcp.
"""

import json
import logging
import socket
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Set, Tuple, Union

from wasm_tee.config import (
    DEFAULT_ENCLAVE_CID,
    ENCLAVE_CID,
    ENCLAVE_HOST,
    ENCLAVE_PORT,
    ENCLAVE_TRANSPORT,
)

logger = logging.getLogger(__name__)

# vsock constants
AF_VSOCK = getattr(socket, "AF_VSOCK", 40)
VMADDR_CID_ANY = 0xFFFFFFFF  # Bind to any CID (inside enclave)
PARENT_CID = 3  # Parent EC2's CID

TRANSPORTS = ("vsock", "tcp")


def get_enclave_cid() -> int:
    """
    Get the CID of the running enclave.

    Priority:
    1. ENCLAVE_CID environment variable (for Docker containers)
    2. nitro-cli describe-enclaves (for host)
    3. DEFAULT_ENCLAVE_CID (the CID the enclave is launched with)
    """
    if ENCLAVE_CID:
        try:
            cid = int(ENCLAVE_CID)
            logger.info(f"[vsock] Using ENCLAVE_CID from environment: {cid}")
            return cid
        except ValueError:
            logger.warning(f"[vsock] Invalid ENCLAVE_CID: {ENCLAVE_CID}")

    try:
        result = subprocess.run(
            ["nitro-cli", "describe-enclaves"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode == 0:
            for enclave in json.loads(result.stdout):
                if enclave.get("State") == "RUNNING":
                    cid = int(enclave["EnclaveCID"])
                    logger.info(f"[vsock] Detected running enclave CID: {cid}")
                    return cid
    except (OSError, subprocess.SubprocessError, ValueError, KeyError) as e:
        logger.debug(f"[vsock] nitro-cli unavailable: {e}")

    return DEFAULT_ENCLAVE_CID


@dataclass(frozen=True)
class EnclaveAddress:
    """Where the relay reaches the enclave: (CID, port) on vsock or (host, port) on tcp."""

    transport: str
    host: Union[int, str]
    port: int

    def __post_init__(self):
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {self.transport}")

    @classmethod
    def from_config(cls) -> "EnclaveAddress":
        if ENCLAVE_TRANSPORT == "tcp":
            return cls("tcp", ENCLAVE_HOST, ENCLAVE_PORT)
        return cls("vsock", get_enclave_cid(), ENCLAVE_PORT)

    def __str__(self) -> str:
        if self.transport == "vsock":
            return f"vsock CID {self.host}, port {self.port}"
        return f"tcp {self.host}:{self.port}"


def connect(address: EnclaveAddress, timeout: Optional[float]) -> socket.socket:
    """Open a stream socket to the enclave. Raises OSError on failure."""
    if address.transport == "vsock":
        sock = socket.socket(AF_VSOCK, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect((int(address.host), address.port))
        except OSError:
            sock.close()
            raise
        return sock
    return socket.create_connection((address.host, address.port), timeout=timeout)


def listen(transport: str, host: Union[int, str], port: int, backlog: int = 64) -> socket.socket:
    """Bind a listening socket. For vsock, host is the CID to bind (usually VMADDR_CID_ANY)."""
    if transport == "vsock":
        sock = socket.socket(AF_VSOCK, socket.SOCK_STREAM)
        address: Tuple = (int(host), port)
    elif transport == "tcp":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        address = (host, port)
    else:
        raise ValueError(f"Unknown transport: {transport}")

    try:
        sock.bind(address)
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


# ============================================================================
# THREADED ACCEPT LOOP
# ============================================================================

class ConnectionServer:
    """
    Accept loop with one thread per connection.

    `handler(conn, peer)` owns the connection for its lifetime; the server
    closes the socket when the handler returns or raises. shutdown() also
    shuts down every connection still open, which unblocks their handlers.
    """

    def __init__(
        self,
        listener: socket.socket,
        handler: Callable[[socket.socket, Tuple], None],
        name: str = "server",
    ):
        self.listener = listener
        self.handler = handler
        self.name = name
        self._stopping = threading.Event()
        self._connections: Set[socket.socket] = set()
        self._connections_lock = threading.Lock()

    @property
    def address(self) -> Tuple:
        return self.listener.getsockname()

    @property
    def active_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    def serve_forever(self) -> None:
        logger.info(f"[{self.name}] ✅ Listening on {self.address}")
        while not self._stopping.is_set():
            try:
                conn, peer = self.listener.accept()
            except OSError as e:
                if self._stopping.is_set():
                    break
                logger.error(f"[{self.name}] ❌ Failed to accept connection: {e}")
                continue

            with self._connections_lock:
                if self._stopping.is_set():
                    conn.close()
                    break
                self._connections.add(conn)

            thread = threading.Thread(
                target=self._handle,
                args=(conn, peer),
                name=f"{self.name}-conn",
                daemon=True,
            )
            thread.start()
        logger.info(f"[{self.name}] Stopped")

    def start(self) -> threading.Thread:
        """Run serve_forever in a background thread."""
        thread = threading.Thread(target=self.serve_forever, name=self.name, daemon=True)
        thread.start()
        return thread

    def shutdown(self) -> None:
        self._stopping.set()
        try:
            self.listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.listener.close()

        with self._connections_lock:
            connections = list(self._connections)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"[{self.name}] Connection already closed: {e}")
        if connections:
            logger.info(f"[{self.name}] Shut down {len(connections)} open connection(s)")

    def _handle(self, conn: socket.socket, peer: Tuple) -> None:
        logger.info(f"[{self.name}] Connection from {peer}")
        try:
            self.handler(conn, peer)
        except Exception:
            logger.exception(f"[{self.name}] ❌ Connection handler crashed ({peer})")
        finally:
            with self._connections_lock:
                self._connections.discard(conn)
            conn.close()
            logger.info(f"[{self.name}] Connection closed ({peer})")
