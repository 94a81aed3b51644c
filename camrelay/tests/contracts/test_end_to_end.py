"""
End-to-end test of the relay: WebSocket subscriber -> RelayService ->
TranscodeSession over a fake ffmpeg process fed through a real pipe.
"""

import threading
import time

import httpx
import pytest

from camrelay.config import RelayConfig
from camrelay.http.websocket import OPCODE_BINARY
from camrelay.service import RelayService
from camrelay.stream.supervisor import SupervisorState
from camrelay.tests.contracts.conftest import make_jpeg
from camrelay.tests.websocket_client import connect_subscriber, read_websocket_frames


def wait_for(condition, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def service(fake_popen):
    config = RelayConfig(host="127.0.0.1", port=0, restart_delay_sec=0.1, control_restart_delay_sec=0.05)
    relay = RelayService(config)
    relay.start()
    yield relay
    relay.stop()


class TestRelayEndToEnd:
    @pytest.mark.timeout(15)
    def test_subscriber_gets_every_frame_then_stream_stops(self, service, fake_popen):
        supervisor = service.supervisor
        assert supervisor.get_state() == SupervisorState.IDLE
        assert fake_popen.processes == []

        sock, status, leftover = connect_subscriber(service.http_server.port, path="/")
        try:
            assert status == 101
            assert fake_popen.spawned.wait(3.0)
            assert supervisor.get_state() == SupervisorState.STARTING
            process = fake_popen.last
            assert process.args == service.ffmpeg_cmd

            frames = [make_jpeg(b"A", 500), make_jpeg(b"B", 800), make_jpeg(b"C", 300)]
            stream = b"".join(frames)
            cuts = [0, 250, 700, 1300, len(stream)]
            for start, stop in zip(cuts, cuts[1:]):
                process.write_stdout(stream[start:stop])
                time.sleep(0.02)

            received = read_websocket_frames(sock, 3, timeout=3.0, buffer=leftover)

            assert received == [(OPCODE_BINARY, f) for f in frames]
            assert supervisor.get_state() == SupervisorState.STREAMING
        finally:
            sock.close()

        assert wait_for(lambda: supervisor.get_state() == SupervisorState.IDLE)
        assert wait_for(lambda: process.killed)
        assert not supervisor.is_active()

    @pytest.mark.timeout(15)
    def test_crashed_transcoder_is_restarted(self, service, fake_popen):
        sock, _, _ = connect_subscriber(service.http_server.port)
        try:
            assert fake_popen.spawned.wait(3.0)
            first = fake_popen.last

            first.crash(returncode=1)

            assert wait_for(lambda: len(fake_popen.processes) == 2)
            assert service.supervisor.restart_count == 1
            assert not fake_popen.processes[1].killed
        finally:
            sock.close()

    @pytest.mark.timeout(15)
    def test_status_and_restart_endpoints(self, service, fake_popen):
        port = service.http_server.port
        sock, _, _ = connect_subscriber(port)
        try:
            assert fake_popen.spawned.wait(3.0)

            with httpx.Client(timeout=5.0) as client:
                status = client.get(f"http://127.0.0.1:{port}/stream-status").json()
                restart = client.post(f"http://127.0.0.1:{port}/restart-stream").json()

            assert status["status"] == "active"
            assert status["clients"] == 1
            assert restart["success"] is True
            assert fake_popen.processes[0].killed
            assert wait_for(lambda: len(fake_popen.processes) == 2)
        finally:
            sock.close()

    @pytest.mark.timeout(15)
    def test_stop_kills_transcoder_and_closes_subscribers(self, fake_popen):
        config = RelayConfig(host="127.0.0.1", port=0)
        relay = RelayService(config)
        relay.start()
        sock, _, _ = connect_subscriber(relay.http_server.port)
        try:
            assert fake_popen.spawned.wait(3.0)

            relay.stop()

            assert fake_popen.last.killed
            assert relay.broadcaster.count == 0
            assert relay.supervisor.get_state() == SupervisorState.STOPPED
            sock.settimeout(2.0)
            assert sock.recv(1024) == b""
        finally:
            sock.close()

    @pytest.mark.timeout(15)
    def test_request_shutdown_ends_run_forever(self, fake_popen):
        config = RelayConfig(host="127.0.0.1", port=0)
        relay = RelayService(config)
        relay.start()
        sock, _, _ = connect_subscriber(relay.http_server.port)
        try:
            assert fake_popen.spawned.wait(3.0)
            runner = threading.Thread(target=relay.run_forever, name="RelayRunForever")
            runner.start()

            relay.request_shutdown()
            runner.join(timeout=5.0)

            assert not runner.is_alive()
            assert not relay.running
            assert fake_popen.last.killed
            assert relay.supervisor.get_state() == SupervisorState.STOPPED
        finally:
            sock.close()
