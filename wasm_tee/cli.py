"""
CLI for WASM TEE
================

Entry points:
    wasm-tee-enclave                       Run the executor inside the enclave
    wasm-tee-relay                         Run the client relay on the parent EC2
    wasm-tee-client <code> <fn> [args]...  Send one execution request

Examples:
    wasm-tee-client simple.wat square 7
    wasm-tee-client secret-template.wat secure_compute 100 --secret SECRET_KEY=42
"""

import base64
import json
import logging
import os
import sys
from typing import Dict, Optional, Tuple

import click

from wasm_tee import __version__
from wasm_tee.config import (
    ENCLAVE_CHANNELS,
    ENCLAVE_HOST,
    ENCLAVE_PORT,
    ENCLAVE_TIMEOUT_SECONDS,
    ENCLAVE_TRANSPORT,
    LOG_LEVEL,
    RELAY_HOST,
    RELAY_PORT,
)
from wasm_tee.errors import WasmTeeError
from wasm_tee.protocol import INT32_MAX, INT32_MIN
from wasm_tee.transport import TRANSPORTS, VMADDR_CID_ANY, EnclaveAddress, get_enclave_cid


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@click.command()
@click.version_option(version=__version__)
@click.option("--transport", type=click.Choice(TRANSPORTS), default=ENCLAVE_TRANSPORT, show_default=True)
@click.option("--host", default=None, help="Bind address for tcp (default: 127.0.0.1). Ignored for vsock.")
@click.option("--port", type=int, default=ENCLAVE_PORT, show_default=True)
def enclave(transport: str, host: Optional[str], port: int):
    """
    Run the WASM executor service (inside the Nitro Enclave).
    """
    _configure_logging()
    from wasm_tee.enclave.service import EnclaveService

    logger = logging.getLogger("wasm_tee.enclave")
    logger.info("=" * 60)
    logger.info("🔐 WASM EXECUTOR ENCLAVE STARTING")
    logger.info("=" * 60)

    bind_host = VMADDR_CID_ANY if transport == "vsock" else (host or "127.0.0.1")
    try:
        server = EnclaveService().serve(transport, bind_host, port)
    except OSError as e:
        logger.critical(f"FATAL: Failed to listen on {transport} port {port}: {e}")
        sys.exit(1)

    logger.info("Ready to execute WASM code!")
    server.serve_forever()


@click.command()
@click.version_option(version=__version__)
@click.option("--host", default=RELAY_HOST, show_default=True, help="Client-facing bind address")
@click.option("--port", type=int, default=RELAY_PORT, show_default=True, help="Client-facing port")
@click.option("--enclave-transport", type=click.Choice(TRANSPORTS), default=ENCLAVE_TRANSPORT, show_default=True)
@click.option("--enclave-cid", type=int, default=None, help="Enclave CID (vsock). Auto-detected if omitted.")
@click.option("--enclave-host", default=None, help="Enclave host (tcp development mode)")
@click.option("--enclave-port", type=int, default=ENCLAVE_PORT, show_default=True)
@click.option("--channels", type=click.IntRange(min=1), default=ENCLAVE_CHANNELS, show_default=True)
@click.option("--timeout", type=float, default=ENCLAVE_TIMEOUT_SECONDS, show_default=True, help="Enclave I/O timeout (seconds)")
def relay(
    host: str,
    port: int,
    enclave_transport: str,
    enclave_cid: Optional[int],
    enclave_host: Optional[str],
    enclave_port: int,
    channels: int,
    timeout: float,
):
    """
    Run the client relay (on the parent EC2).
    """
    _configure_logging()
    from wasm_tee.host import EnclaveChannelPool, RelayService

    logger = logging.getLogger("wasm_tee.host")
    logger.info("Starting enclave host relay...")

    if enclave_transport == "vsock":
        target = enclave_cid if enclave_cid is not None else get_enclave_cid()
    else:
        target = enclave_host or ENCLAVE_HOST
    address = EnclaveAddress(enclave_transport, target, enclave_port)

    pool = EnclaveChannelPool(address, size=channels, timeout=timeout)
    logger.info("Attempting to connect to enclave...")
    if pool.connect_all() < channels:
        logger.info("Will retry when handling client requests")

    try:
        server = RelayService(pool).serve(host, port)
    except OSError as e:
        logger.critical(f"Failed to listen on TCP {host}:{port}: {e}")
        sys.exit(1)
    server.serve_forever()


def _parse_secrets(secret: Tuple[str, ...], secrets_file: Optional[str]) -> Dict[str, str]:
    secrets: Dict[str, str] = {}
    if secrets_file:
        with open(secrets_file, "r") as f:
            loaded = json.load(f)
        if not isinstance(loaded, dict):
            raise click.BadParameter("secrets file must contain a JSON object", param_hint="--secrets-file")
        secrets.update({str(k): str(v) for k, v in loaded.items()})
    for item in secret:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--secret")
        secrets[name] = value
    return secrets


@click.command(context_settings={"ignore_unknown_options": True})
@click.version_option(version=__version__)
@click.argument("code")
@click.argument("function")
@click.argument("args", nargs=-1, type=click.IntRange(INT32_MIN, INT32_MAX))
@click.option("--host", default="localhost", show_default=True, help="Relay host")
@click.option("--port", type=int, default=RELAY_PORT, show_default=True, help="Relay port")
@click.option("--secret", "-s", multiple=True, help="Secret as NAME=VALUE (repeatable)")
@click.option("--secrets-file", default=None, type=click.Path(exists=True, dir_okay=False), help="JSON object of secrets")
def client(
    code: str,
    function: str,
    args: Tuple[int, ...],
    host: str,
    port: int,
    secret: Tuple[str, ...],
    secrets_file: Optional[str],
):
    """
    Execute FUNCTION from CODE (a .wat/.wasm file or inline WAT) with ARGS.
    """
    _configure_logging()
    from wasm_tee.client import WasmClient

    logger = logging.getLogger("wasm_tee.client")

    if code.strip().startswith("(module"):
        wasm_code = code
        logger.info("Using inline WAT content")
    elif os.path.isfile(code):
        with open(code, "rb") as f:
            content = f.read()
        # Raw binary modules travel base64 encoded
        if content.startswith(b"\x00asm"):
            wasm_code = base64.b64encode(content).decode()
        else:
            wasm_code = content.decode("utf-8")
        logger.info(f"Loaded WASM from file: {code} ({len(content)} bytes)")
    else:
        raise click.BadParameter(f"not a file or inline WAT: {code}", param_hint="CODE")

    secrets = _parse_secrets(secret, secrets_file)
    if secrets:
        logger.info(f"Attaching {len(secrets)} secret(s): {', '.join(sorted(secrets))}")

    try:
        with WasmClient(host, port) as wasm_client:
            logger.info(f"Requesting execution: {function}({list(args)})")
            response = wasm_client.execute(wasm_code, function, args, secrets)
    except (OSError, WasmTeeError) as e:
        click.echo(f"❌ Request failed: {e}", err=True)
        sys.exit(1)

    if not response.ok:
        click.echo(f"❌ Error from enclave: {response.error}", err=True)
        sys.exit(1)

    click.echo(f"{function}({list(args)}) = {response.result}")
