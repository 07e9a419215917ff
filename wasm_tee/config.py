"""
WASM TEE Configuration
======================

Loads all environment variables for the enclave service, the host relay
and the client.

Environment variables can be set in a .env file in the project root.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# ============================================================
# Logging
# ============================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ============================================================
# Enclave Channel (parent EC2 <-> Nitro Enclave)
# ============================================================
# "vsock" in production, "tcp" for local development without an enclave
ENCLAVE_TRANSPORT = os.getenv("ENCLAVE_TRANSPORT", "vsock").lower()

# Enclave CID. If unset the relay asks nitro-cli, then falls back to the
# CID the enclave is launched with (see `nitro-cli run-enclave --enclave-cid`)
ENCLAVE_CID = os.getenv("ENCLAVE_CID")
DEFAULT_ENCLAVE_CID = 16

# Only used with ENCLAVE_TRANSPORT=tcp
ENCLAVE_HOST = os.getenv("ENCLAVE_HOST", "127.0.0.1")

ENCLAVE_PORT = int(os.getenv("ENCLAVE_PORT", "8080"))
ENCLAVE_TIMEOUT_SECONDS = float(os.getenv("ENCLAVE_TIMEOUT_SECONDS", "30"))

# Number of physical channels the relay keeps to the enclave
ENCLAVE_CHANNELS = int(os.getenv("ENCLAVE_CHANNELS", "1"))

# ============================================================
# Client-facing Relay
# ============================================================
RELAY_HOST = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.getenv("RELAY_PORT", "8081"))

# ============================================================
# Wire Protocol
# ============================================================
MAX_FRAME_BYTES = int(os.getenv("MAX_FRAME_BYTES", str(16 * 1024 * 1024)))

# ============================================================
# Compilation & Execution (inside the enclave)
# ============================================================
# "wat2wasm" (WABT binary, as baked into the enclave image) or "wasmtime" (in-process)
WAT_COMPILER = os.getenv("WAT_COMPILER", "wat2wasm").lower()
WAT2WASM_BIN = os.getenv("WAT2WASM_BIN", "wat2wasm")
COMPILE_TIMEOUT_SECONDS = float(os.getenv("COMPILE_TIMEOUT_SECONDS", "10"))

# Fuel (roughly, WASM instructions) per call; 0 disables metering.
# The default exhausts well inside ENCLAVE_TIMEOUT_SECONDS.
MAX_FUEL = int(os.getenv("MAX_FUEL", "500000000"))
