import json
import queue
import socket
import threading
import time

import pytest
import requests

from conftest import FakeResponse

from upload_gateway import gateway, tunnel
from upload_gateway.config import GatewayConfig
from upload_gateway.errors import TunnelError
from upload_gateway.tunnel import TunnelClient, start_tunnel


def _listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    return sock


def _read_line(sock):
    data = bytearray()
    while not data.endswith(b"\n"):
        chunk = sock.recv(1)
        if not chunk:
            break
        data.extend(chunk)
    return json.loads(data.decode("utf-8")) if data else None


def _bridge(left, right):
    def pump(source, destination):
        try:
            while True:
                chunk = source.recv(4096)
                if not chunk:
                    break
                destination.sendall(chunk)
        except OSError:
            pass
        finally:
            try:
                destination.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    threads = [
        threading.Thread(target=pump, args=(left, right), daemon=True),
        threading.Thread(target=pump, args=(right, left), daemon=True),
    ]
    for thread in threads:
        thread.start()
    return threads


class FakeRelay:
    """Relay that grants one lease and bridges public connections over it."""

    def __init__(self, assigned_port=None, refuse=False):
        self.control = _listener()
        self.control_port = self.control.getsockname()[1]
        self.public = _listener()
        self.public_port = self.public.getsockname()[1]
        self.assigned_port = assigned_port
        self.refuse = refuse
        self.lease_requests = []
        self.pongs = queue.Queue()
        self.data_connections = queue.Queue()
        self.lease_granted = threading.Event()
        self.control_conn = None
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        conn, _ = self.control.accept()
        request = _read_line(conn)
        self.lease_requests.append(request)
        if self.refuse:
            conn.sendall(b'{"status": "error", "message": "port taken"}\n')
            conn.close()
            return
        port = self.assigned_port or self.public_port
        self.control_conn = conn
        threading.Thread(target=self._read_control, daemon=True).start()
        conn.sendall(json.dumps({"status": "ok", "remote_port": port}).encode() + b"\n")
        self.lease_granted.set()
        while True:
            try:
                data_conn, _ = self.control.accept()
            except OSError:
                return
            self.data_connections.put((_read_line(data_conn), data_conn))

    def _read_control(self):
        try:
            while True:
                message = _read_line(self.control_conn)
                if message is None:
                    return
                self.pongs.put(message)
        except (OSError, ValueError):
            return

    def send(self, message):
        self.control_conn.sendall(json.dumps(message).encode() + b"\n")

    def forward_one(self, token="t-1"):
        public_conn, _ = self.public.accept()
        self.send({"type": "connect", "id": token})
        announcement, data_conn = self.data_connections.get(timeout=5)
        assert announcement == {"type": "data", "id": token}
        return _bridge(public_conn, data_conn)

    def close(self):
        for sock in (self.control, self.public, self.control_conn):
            if sock is not None:
                sock.close()


class EchoServer:
    def __init__(self):
        self.sock = _listener()
        self.port = self.sock.getsockname()[1]
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self):
        while True:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            with conn:
                while True:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    conn.sendall(chunk)

    def close(self):
        self.sock.close()


@pytest.fixture
def relay(monkeypatch):
    fake = FakeRelay()
    discovered = []

    def fake_get(url, timeout=None):
        discovered.append(url)
        return FakeResponse(text=f"{fake.control_port}\n")

    monkeypatch.setattr(tunnel.requests, "get", fake_get)
    fake.discovered = discovered
    yield fake
    fake.close()


def test_establish_negotiates_lease_and_forwards_traffic(relay):
    echo = EchoServer()
    client = TunnelClient(timeout=5, settle_delay=0)
    try:
        external_port = client.establish("127.0.0.1:8088", echo.port, str(relay.public_port))

        assert external_port == relay.public_port
        assert relay.discovered == ["http://127.0.0.1:8088/FRPport"]
        assert relay.lease_requests == [
            {"type": "lease", "local_port": echo.port, "remote_port": relay.public_port}
        ]
        assert client.lease.local_port == echo.port

        threading.Thread(target=relay.forward_one, daemon=True).start()
        with socket.create_connection(("127.0.0.1", relay.public_port), timeout=5) as conn:
            conn.sendall(b"hello through the relay")
            conn.shutdown(socket.SHUT_WR)
            received = bytearray()
            while True:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                received.extend(chunk)

        assert bytes(received) == b"hello through the relay"
    finally:
        client.close()
        echo.close()


def test_relay_may_assign_a_different_port(monkeypatch):
    fake = FakeRelay(assigned_port=41234)
    monkeypatch.setattr(tunnel.requests, "get", lambda url, timeout=None: FakeResponse(text=str(fake.control_port)))
    client = TunnelClient(timeout=5, settle_delay=0)
    try:
        assert client.establish("127.0.0.1", 9000, "40000") == 41234
        assert client.lease.external_address == "127.0.0.1:41234"
    finally:
        client.close()
        fake.close()


def test_unpinned_port_is_sent_as_null(relay):
    client = TunnelClient(timeout=5, settle_delay=0)
    try:
        client.establish("127.0.0.1:8088", 9000, "")
        assert relay.lease_requests[0]["remote_port"] is None
    finally:
        client.close()


def test_ping_is_answered(relay):
    client = TunnelClient(timeout=5, settle_delay=0)
    try:
        client.establish("127.0.0.1:8088", 9000, None)
        relay.send({"type": "ping"})
        assert relay.pongs.get(timeout=5) == {"type": "pong"}
    finally:
        client.close()


def test_settle_delay_happens_between_discovery_and_lease(relay, monkeypatch):
    events = []
    discover = tunnel.requests.get

    def recording_get(url, timeout=None):
        events.append("discover")
        return discover(url, timeout=timeout)

    monkeypatch.setattr(tunnel.requests, "get", recording_get)
    client = TunnelClient(timeout=5, settle_delay=1.0, sleep=lambda seconds: events.append(("sleep", seconds)))
    try:
        client.establish("127.0.0.1:8088", 9000, None)
        events.append("leased")
    finally:
        client.close()

    assert events == ["discover", ("sleep", 1.0), "leased"]


def test_refused_lease_raises(monkeypatch):
    fake = FakeRelay(refuse=True)
    monkeypatch.setattr(tunnel.requests, "get", lambda url, timeout=None: FakeResponse(text=str(fake.control_port)))
    try:
        with pytest.raises(TunnelError, match="port taken"):
            TunnelClient(timeout=5, settle_delay=0).establish("127.0.0.1", 9000, "40000")
    finally:
        fake.close()


@pytest.mark.parametrize(
    "response",
    [FakeResponse(status_code=500, text="boom"), FakeResponse(text="not-a-port"), FakeResponse(text="70000")],
)
def test_bad_discovery_answer_raises(monkeypatch, response):
    monkeypatch.setattr(tunnel.requests, "get", lambda url, timeout=None: response)

    with pytest.raises(TunnelError):
        TunnelClient(timeout=1, settle_delay=0).establish("relay.example:8088", 9000, "40000")


def test_discovery_timeout_raises_tunnel_error(monkeypatch):
    def fake_get(url, timeout=None):
        raise requests.exceptions.ConnectTimeout("relay did not answer")

    monkeypatch.setattr(tunnel.requests, "get", fake_get)

    with pytest.raises(TunnelError):
        TunnelClient(timeout=1, settle_delay=0).establish("relay.example:8088", 9000, "40000")


@pytest.mark.parametrize("port", ["abc", "0", "65536"])
def test_invalid_requested_port_raises(port):
    with pytest.raises(TunnelError):
        TunnelClient(timeout=1, settle_delay=0).establish("relay.example:8088", 9000, port)


@pytest.mark.parametrize(
    "settings",
    [
        {"tunnel_mode": True, "tunnel_relay": "relay.example:8088"},
        {"tunnel_mode": True, "tunnel_exposed_port": "40000"},
        {"tunnel_relay": "relay.example:8088", "tunnel_exposed_port": "40000"},
        {},
    ],
)
def test_partial_configuration_disables_tunnel(monkeypatch, settings):
    def fail_get(*args, **kwargs):
        raise AssertionError("relay must not be contacted")

    monkeypatch.setattr(tunnel.requests, "get", fail_get)

    assert start_tunnel(GatewayConfig(**settings), 8098) is None


def test_discovery_timeout_does_not_block_gateway(monkeypatch, fake_backend):
    finished = threading.Event()

    def relay_times_out(url, timeout=None):
        if url.endswith("/FRPport"):
            try:
                raise requests.exceptions.ConnectTimeout("relay did not answer")
            finally:
                finished.set()
        return fake_backend.get(url, timeout=timeout)

    monkeypatch.setattr(requests, "get", relay_times_out)
    config = GatewayConfig(
        tunnel_mode=True,
        tunnel_relay="relay.example:8088",
        tunnel_exposed_port="40000",
        rate_limit="100 per minute",
    )

    started = time.monotonic()
    client = start_tunnel(config, 8098)
    app = gateway.create_app(config, tunnel=client)
    response = app.test_client().get("/")

    assert response.status_code == 200
    assert time.monotonic() - started < 5
    assert finished.wait(5)
    assert client.lease is None
