"""
WASM TEE Enclave Module
=======================

Files that run INSIDE the Nitro Enclave.
These are packaged into the enclave EIF image.

DO NOT import these from the host - the relay only needs
wasm_tee.host and wasm_tee.protocol.
"""
