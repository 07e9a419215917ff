"""
WASM TEE Host Module
====================

Files that run on the HOST (parent EC2), NOT inside the enclave.
These accept client connections and forward them to the enclave via vsock.
"""

from wasm_tee.host.channel import ChannelState, EnclaveChannel, EnclaveChannelPool
from wasm_tee.host.relay import RelayService

__all__ = [
    "ChannelState",
    "EnclaveChannel",
    "EnclaveChannelPool",
    "RelayService",
]
