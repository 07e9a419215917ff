"""
Tests for the enclave channel state machine and channel pool.
"""

import threading
import time

import pytest

from wasm_tee.errors import EnclaveUnavailable
from wasm_tee.host.channel import ChannelState, EnclaveChannel, EnclaveChannelPool
from wasm_tee.protocol import ExecutionRequest, ExecutionResponse, recv_message, send_message

from conftest import SQUARE_WAT


def square_request(x, request_id=None):
    return ExecutionRequest(id=request_id, code=SQUARE_WAT, function="square", args=[x])


class TestEnclaveChannel:

    def test_starts_disconnected(self, enclave_address):
        assert EnclaveChannel(enclave_address).state is ChannelState.DISCONNECTED

    def test_connects_on_first_exchange(self, enclave_address):
        channel = EnclaveChannel(enclave_address, timeout=10)
        response = channel.exchange(square_request(7, "r1"))
        assert (response.result, response.error, response.id) == (49, "", "r1")
        assert channel.state is ChannelState.CONNECTED
        channel.close()

    def test_reuses_connection(self, enclave_address):
        channel = EnclaveChannel(enclave_address, timeout=10)
        first = channel.connect()
        channel.exchange(square_request(2, "a"))
        assert channel.connect() is first
        channel.close()

    def test_unreachable(self, dead_address):
        channel = EnclaveChannel(dead_address, timeout=2)
        with pytest.raises(EnclaveUnavailable):
            channel.connect()
        response = channel.exchange(square_request(7, "r1"))
        assert response.error.startswith("enclave unreachable")
        assert response.result == 0
        assert channel.state is ChannelState.DISCONNECTED

    def test_broken_channel_resets_then_reconnects(self, enclave_address):
        channel = EnclaveChannel(enclave_address, timeout=10)
        channel.connect().close()  # break the socket underneath the channel

        broken = channel.exchange(square_request(3, "a"))
        assert broken.error.startswith("enclave communication error")
        assert channel.state is ChannelState.DISCONNECTED

        recovered = channel.exchange(square_request(3, "b"))
        assert (recovered.result, recovered.error) == (9, "")
        assert channel.state is ChannelState.CONNECTED
        channel.close()

    def test_stalled_enclave_times_out(self, fake_enclave):
        release = threading.Event()

        def never_answer(conn, peer):
            recv_message(conn, ExecutionRequest)
            release.wait(5)

        channel = EnclaveChannel(fake_enclave(never_answer), timeout=0.3)
        started = time.monotonic()
        response = channel.exchange(square_request(1, "slow"))
        release.set()

        assert time.monotonic() - started < 3
        assert response.error.startswith("enclave communication error")
        assert channel.state is ChannelState.DISCONNECTED

    def test_mismatched_response_id_drops_channel(self, fake_enclave):
        def wrong_id(conn, peer):
            while recv_message(conn, ExecutionRequest) is not None:
                send_message(conn, ExecutionResponse.success(1, "someone-else"))

        channel = EnclaveChannel(fake_enclave(wrong_id), timeout=5)
        response = channel.exchange(square_request(1, "mine"))
        assert "does not match" in response.error
        assert response.result == 0
        assert channel.state is ChannelState.DISCONNECTED

    def test_enclave_closing_channel(self, fake_enclave):
        def hang_up(conn, peer):
            recv_message(conn, ExecutionRequest)

        channel = EnclaveChannel(fake_enclave(hang_up), timeout=5)
        response = channel.exchange(square_request(1, "x"))
        assert response.error.startswith("enclave communication error")
        assert channel.state is ChannelState.DISCONNECTED

    def test_concurrent_connects_open_one_socket(self, fake_enclave):
        connections = []

        def count(conn, peer):
            connections.append(peer)
            recv_message(conn, ExecutionRequest)

        channel = EnclaveChannel(fake_enclave(count), timeout=5)
        sockets = []
        threads = [threading.Thread(target=lambda: sockets.append(channel.connect())) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(s) for s in sockets}) == 1
        time.sleep(0.1)
        assert len(connections) == 1
        channel.close()


class TestEnclaveChannelPool:

    def test_stamps_correlation_id(self, fake_enclave):
        seen = []

        def echo(conn, peer):
            while True:
                request = recv_message(conn, ExecutionRequest)
                if request is None:
                    return
                seen.append(request.id)
                send_message(conn, ExecutionResponse.success(0, request.id))

        pool = EnclaveChannelPool(fake_enclave(echo), size=1, timeout=5)
        pool.forward(square_request(1))
        pool.forward(square_request(2))
        assert len(seen) == 2
        assert all(seen) and seen[0] != seen[1]
        pool.close()

    def test_keeps_client_id(self, enclave_address):
        pool = EnclaveChannelPool(enclave_address, size=1, timeout=10)
        assert pool.forward(square_request(4, "client-id")).id == "client-id"
        pool.close()

    def test_busy_pool_times_out(self, fake_enclave):
        release = threading.Event()

        def slow(conn, peer):
            request = recv_message(conn, ExecutionRequest)
            release.wait(5)
            send_message(conn, ExecutionResponse.success(1, request.id))

        pool = EnclaveChannelPool(fake_enclave(slow), size=1, timeout=1.0)
        # The held channel must outlive the borrow wait of the second request
        pool.channels[0].timeout = 10
        results = {}
        holder = threading.Thread(target=lambda: results.setdefault("first", pool.forward(square_request(1))))
        holder.start()
        time.sleep(0.2)

        second = pool.forward(square_request(2))
        release.set()
        holder.join()

        assert second.error.startswith("enclave busy")
        pool.close()

    def test_connect_all_counts_successes(self, enclave_address, dead_address):
        live = EnclaveChannelPool(enclave_address, size=2, timeout=5)
        assert live.connect_all() == 2
        live.close()

        dead = EnclaveChannelPool(dead_address, size=2, timeout=1)
        assert dead.connect_all() == 0

    def test_size_must_be_positive(self, enclave_address):
        with pytest.raises(ValueError):
            EnclaveChannelPool(enclave_address, size=0)

    def test_parallel_requests_across_channels(self, enclave_address):
        pool = EnclaveChannelPool(enclave_address, size=4, timeout=10)
        results = {}

        def worker(x):
            results[x] = pool.forward(square_request(x))

        threads = [threading.Thread(target=worker, args=(x,)) for x in range(1, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert {x: r.result for x, r in results.items()} == {x: x * x for x in range(1, 21)}
        assert all(r.ok for r in results.values())
        pool.close()
