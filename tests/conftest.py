"""
Pytest configuration and fixtures for WASM TEE tests.

Servers run over TCP on 127.0.0.1 with ephemeral ports, and WAT is compiled
in-process with wasmtime, so no enclave, vsock or WABT install is needed.
"""

import os
import socket

import pytest
from hypothesis import Verbosity, settings

from wasm_tee.enclave.compiler import WatCompiler
from wasm_tee.enclave.executor import WasmExecutor, WasmRuntime
from wasm_tee.enclave.service import EnclaveService
from wasm_tee.host.channel import EnclaveChannelPool
from wasm_tee.host.relay import RelayService
from wasm_tee.transport import ConnectionServer, EnclaveAddress, listen

settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal, deadline=None)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose, deadline=None)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


SQUARE_WAT = """(module
  (func (export "square") (param $x i32) (result i32)
    local.get $x
    local.get $x
    i32.mul))
"""

TEMPLATE_WAT = """(module
  ;; Confidential values, injected inside the enclave
  (import "env" "SECRET_KEY" (global $SECRET_KEY i32))
  (import "env" "API_KEY_HASH" (global $API_KEY_HASH i32))

  (func (export "get_secret") (result i32)
    global.get $SECRET_KEY)

  (func (export "get_api_hash") (result i32)
    global.get $API_KEY_HASH)

  (func (export "secure_compute") (param $x i32) (result i32)
    local.get $x
    global.get $SECRET_KEY
    i32.mul))
"""

ADD_SECRET_WAT = """(module
  (import "env" "OFFSET" (global $OFFSET i32))
  (func (export "add_secret") (param $x i32) (result i32)
    local.get $x
    global.get $OFFSET
    i32.add))
"""


@pytest.fixture
def compiler():
    return WatCompiler(backend="wasmtime")


@pytest.fixture
def runtime():
    return WasmRuntime()


@pytest.fixture
def executor(compiler, runtime):
    return WasmExecutor(compiler=compiler, runtime=runtime)


@pytest.fixture
def enclave_server(executor):
    server = EnclaveService(executor).serve("tcp", "127.0.0.1", 0)
    server.start()
    yield server
    server.shutdown()


@pytest.fixture
def enclave_address(enclave_server):
    host, port = enclave_server.address
    return EnclaveAddress("tcp", host, port)


@pytest.fixture
def dead_address():
    """Address of a port nothing listens on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return EnclaveAddress("tcp", "127.0.0.1", port)


def start_relay(address, channels=1, timeout=10.0):
    relay = RelayService(EnclaveChannelPool(address, size=channels, timeout=timeout))
    server = relay.serve("127.0.0.1", 0)
    server.start()
    return relay, server


@pytest.fixture
def relay_server(enclave_address):
    relay, server = start_relay(enclave_address)
    yield server
    relay.shutdown()


@pytest.fixture
def fake_enclave():
    """
    Start a TCP server whose per-connection behaviour is supplied by the test.

    Usage:
        address = fake_enclave(handler)   # handler(conn, peer)
    """
    servers = []

    def _start(handler):
        server = ConnectionServer(listen("tcp", "127.0.0.1", 0), handler, name="fake-enclave")
        server.start()
        servers.append(server)
        host, port = server.address
        return EnclaveAddress("tcp", host, port)

    yield _start
    for server in servers:
        server.shutdown()
