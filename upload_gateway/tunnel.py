# ------------------------------------------------------------------------
# tunnel.py
#
# Reverse tunnel that makes the gateway reachable from outside a firewalled
# network through a relay.
#
# Key notes:
#  - Discovery: GET http://<relay>/FRPport returns the relay's control port.
#  - After a fixed settle delay the client opens a control connection and
#    asks for a lease: {"type": "lease", "local_port": .., "remote_port": ..}.
#    The relay answers {"status": "ok", "remote_port": N}; N may differ from
#    the port that was asked for.
#  - For every external connection the relay sends {"type": "connect", "id": T}
#    on the control connection. The client dials the control port again,
#    announces {"type": "data", "id": T} and splices that socket with a fresh
#    connection to the local gateway port.
#  - There is no release message: the lease ends when the control connection
#    closes, at the latest on process exit.
#  - Messages are single JSON documents terminated by a newline.
# ------------------------------------------------------------------------

import json
import logging
import socket
import threading
import time
from dataclasses import dataclass

import requests

from upload_gateway.config import split_host_port
from upload_gateway.errors import TunnelError

logger = logging.getLogger(__name__)

DEFAULT_RELAY_PORT = 8088
DISCOVERY_PATH = "/FRPport"
LOCAL_HOST = "127.0.0.1"
PIPE_CHUNK = 64 * 1024
MAX_MESSAGE_BYTES = 64 * 1024


@dataclass(frozen=True)
class TunnelLease:
    relay_host: str
    relay_port: int
    local_port: int
    external_port: int

    @property
    def external_address(self):
        return f"{self.relay_host}:{self.external_port}"


def _send_message(sock, message):
    sock.sendall(json.dumps(message).encode("utf-8") + b"\n")


def _read_message(reader):
    line = reader.readline(MAX_MESSAGE_BYTES)
    if not line:
        return None
    if not line.endswith(b"\n"):
        raise TunnelError("Relay message too long or truncated", stage="tunnel")
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TunnelError(f"Relay sent an unreadable message: {exc}", stage="tunnel") from exc
    if not isinstance(message, dict):
        raise TunnelError("Relay sent a message that is not an object", stage="tunnel")
    return message


def _pipe(source, destination):
    """Copy bytes until ``source`` reaches EOF, then half-close ``destination``."""
    try:
        while True:
            chunk = source.recv(PIPE_CHUNK)
            if not chunk:
                break
            destination.sendall(chunk)
    except OSError as exc:
        logger.debug("Tunnel stream closed: %s", exc)
    finally:
        try:
            destination.shutdown(socket.SHUT_WR)
        except OSError:
            pass


def _splice(left, right):
    """Pipe two sockets into each other and close both when done."""
    forward = threading.Thread(target=_pipe, args=(left, right), daemon=True)
    forward.start()
    _pipe(right, left)
    forward.join()
    for sock in (left, right):
        try:
            sock.close()
        except OSError:
            pass


def parse_requested_port(value):
    """Turn the configured external port into an int, or None when not pinned."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        port = int(text)
    except ValueError as exc:
        raise TunnelError(f"Invalid external port {value!r}", stage="tunnel") from exc
    if not 0 < port <= 65535:
        raise TunnelError(f"External port out of range: {port}", stage="tunnel")
    return port


def discover_control_port(relay_host, relay_port, timeout):
    url = f"http://{relay_host}:{relay_port}{DISCOVERY_PATH}"
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise TunnelError(f"Relay discovery failed: {exc}", stage="tunnel") from exc
    if response.status_code != 200:
        raise TunnelError(f"Relay discovery failed: HTTP {response.status_code}", stage="tunnel")
    try:
        port = int(response.text.strip().strip('"'))
    except ValueError as exc:
        raise TunnelError(f"Relay discovery returned {response.text!r}, not a port", stage="tunnel") from exc
    if not 0 < port <= 65535:
        raise TunnelError(f"Relay discovery returned port {port} out of range", stage="tunnel")
    return port


class TunnelClient:
    def __init__(self, timeout=10.0, settle_delay=1.0, sleep=time.sleep):
        self.timeout = timeout
        self.settle_delay = settle_delay
        self._sleep = sleep
        self.lease = None
        self._control = None
        self._thread = None
        self._closed = threading.Event()

    @classmethod
    def from_config(cls, config):
        return cls(timeout=config.tunnel_timeout, settle_delay=config.tunnel_settle_delay)

    def establish(self, relay_address, local_port, requested_external_port=None):
        """Negotiate a lease and start forwarding. Returns the external port."""
        try:
            relay_host, relay_port = split_host_port(relay_address, default_port=DEFAULT_RELAY_PORT)
        except ValueError as exc:
            raise TunnelError(f"Invalid relay address: {exc}", stage="tunnel") from exc
        requested = parse_requested_port(requested_external_port)

        control_port = discover_control_port(relay_host, relay_port, self.timeout)
        logger.info("Relay %s uses control port %d", relay_host, control_port)

        if self.settle_delay > 0:
            self._sleep(self.settle_delay)

        sock, reader, external_port = self._request_lease(relay_host, control_port, local_port, requested)
        if requested is not None and external_port != requested:
            logger.warning("Relay assigned port %d instead of requested port %d", external_port, requested)

        self.lease = TunnelLease(
            relay_host=relay_host,
            relay_port=control_port,
            local_port=local_port,
            external_port=external_port,
        )
        self._control = sock
        self._thread = threading.Thread(
            target=self._serve_control, args=(sock, reader), name="tunnel-control", daemon=True
        )
        self._thread.start()
        logger.info("Gateway exposed at %s -> local port %d", self.lease.external_address, local_port)
        return external_port

    def _request_lease(self, relay_host, control_port, local_port, requested):
        try:
            sock = socket.create_connection((relay_host, control_port), timeout=self.timeout)
        except OSError as exc:
            raise TunnelError(f"Cannot reach relay control port: {exc}", stage="tunnel") from exc

        try:
            reader = sock.makefile("rb")
            _send_message(sock, {"type": "lease", "local_port": local_port, "remote_port": requested})
            reply = _read_message(reader)
            if reply is None:
                raise TunnelError("Relay closed the control connection during lease", stage="tunnel")
            if reply.get("status") != "ok":
                raise TunnelError(f"Relay refused lease: {reply.get('message') or reply}", stage="tunnel")
            external_port = parse_requested_port(reply.get("remote_port"))
            if external_port is None:
                raise TunnelError("Relay granted a lease without a port", stage="tunnel")
        except OSError as exc:
            sock.close()
            raise TunnelError(f"Lease negotiation failed: {exc}", stage="tunnel") from exc
        except TunnelError:
            sock.close()
            raise

        sock.settimeout(None)
        return sock, reader, external_port

    def _serve_control(self, sock, reader):
        try:
            while not self._closed.is_set():
                message = _read_message(reader)
                if message is None:
                    break
                kind = message.get("type")
                if kind == "connect":
                    threading.Thread(
                        target=self._open_data_channel,
                        args=(message.get("id"),),
                        daemon=True,
                    ).start()
                elif kind == "ping":
                    _send_message(sock, {"type": "pong"})
                else:
                    logger.debug("Ignoring relay message %r", kind)
        except (OSError, TunnelError) as exc:
            if not self._closed.is_set():
                logger.warning("Tunnel control connection failed: %s", exc)
        finally:
            if not self._closed.is_set():
                logger.warning("Tunnel lease on %s ended", self.lease.external_address if self.lease else "relay")
            try:
                sock.close()
            except OSError:
                pass

    def _open_data_channel(self, token):
        lease = self.lease
        if lease is None or not token:
            return
        try:
            remote = socket.create_connection((lease.relay_host, lease.relay_port), timeout=self.timeout)
        except OSError as exc:
            logger.warning("Cannot open tunnel data channel: %s", exc)
            return
        try:
            _send_message(remote, {"type": "data", "id": token})
            local = socket.create_connection((LOCAL_HOST, lease.local_port), timeout=self.timeout)
        except OSError as exc:
            logger.warning("Cannot connect tunnel stream %s to local port %d: %s", token, lease.local_port, exc)
            remote.close()
            return
        remote.settimeout(None)
        local.settimeout(None)
        _splice(remote, local)

    def close(self):
        self._closed.set()
        if self._control is not None:
            try:
                self._control.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._control.close()
            self._control = None
        if self._thread is not None:
            self._thread.join(self.timeout)
            self._thread = None


def start_tunnel(config, local_port, client=None):
    """
    Expose the gateway through the configured relay in a background thread.

    Returns the TunnelClient, or None when tunnel mode is not fully
    configured. Failures are logged; they never stop the gateway.
    """
    missing = config.missing_tunnel_settings()
    if missing:
        if config.tunnel_mode or config.tunnel_relay or config.tunnel_exposed_port:
            logger.warning("Tunnel disabled, missing: %s", ", ".join(missing))
        return None

    client = client or TunnelClient.from_config(config)

    def run():
        try:
            client.establish(config.tunnel_relay, local_port, config.tunnel_exposed_port)
        except TunnelError as exc:
            logger.error("Could not expose gateway through %s: %s", config.tunnel_relay, exc)
        except OSError as exc:
            logger.error("Tunnel setup through %s failed: %s", config.tunnel_relay, exc)

    threading.Thread(target=run, name="tunnel-setup", daemon=True).start()
    return client
