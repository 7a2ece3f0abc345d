# config.py
#
# Gateway configuration. Command line flags take their defaults from the
# environment; the parsed result is a frozen GatewayConfig that is handed to
# every component instead of living in module globals.

import argparse
import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_API_ADDRESS = "localhost:8081"
DEFAULT_WEBPAGE_ADDRESS = "localhost:8098"
DEFAULT_LINK_BASE_URL = "http://peer.ae"
DEFAULT_RATE_LIMIT = "10 per minute"
DEFAULT_MAX_UPLOAD_BYTES = 1024 * 1024 * 1024

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_number(name, default, cast=float, minimum=0):
    """Read a numeric environment variable, falling back on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r; using %r instead.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%r is below the minimum %r; using %r instead.", name, raw, minimum, default)
        return default
    return value


def split_host_port(address, default_port=None):
    """Split ``host:port`` (IPv6 hosts in brackets) into a (host, int port) pair."""
    text = (address or "").strip()
    if not text:
        raise ValueError("Empty address")
    if "://" in text:
        text = text.split("://", 1)[1]
    text = text.rstrip("/")
    if text.startswith("["):
        host, _, rest = text[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif text.count(":") == 1:
        host, port_text = text.split(":", 1)
    else:
        host, port_text = text, ""
    if not host:
        raise ValueError(f"Invalid address: {address!r}")
    if not port_text:
        if default_port is None:
            raise ValueError(f"Missing port in address: {address!r}")
        return host, default_port
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"Invalid port in address: {address!r}") from exc
    if not 0 <= port <= 65535:
        raise ValueError(f"Port out of range in address: {address!r}")
    return host, port


@dataclass(frozen=True)
class GatewayConfig:
    backend_api_address: str = DEFAULT_BACKEND_API_ADDRESS
    webpage_address: str = DEFAULT_WEBPAGE_ADDRESS
    ssl: bool = False
    certificate: str = "server.crt"
    key: str = "server.key"
    production: bool = False

    tunnel_mode: bool = False
    tunnel_relay: str = ""
    tunnel_exposed_port: str = ""

    link_base_url: str = DEFAULT_LINK_BASE_URL
    identity_key_file: str = ""

    backend_timeout: float = 30.0
    upload_timeout: float = 300.0
    backend_ready_timeout: float = 30.0
    monitor_interval: float = 30.0
    tunnel_timeout: float = 10.0
    tunnel_settle_delay: float = 1.0

    rate_limit: str = DEFAULT_RATE_LIMIT
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    @property
    def scheme(self):
        return "https" if self.ssl else "http"

    @property
    def backend_url(self):
        return f"{self.scheme}://{self.backend_api_address}"

    @property
    def webpage_url(self):
        return f"{self.scheme}://{self.webpage_address}"

    @property
    def listen_host_port(self):
        return split_host_port(self.webpage_address)

    def missing_tunnel_settings(self):
        """Names of the tunnel settings that are not set."""
        missing = []
        if not self.tunnel_mode:
            missing.append("tunnel mode")
        if not self.tunnel_relay.strip():
            missing.append("relay address")
        if not self.tunnel_exposed_port.strip():
            missing.append("exposed port")
        return missing

    @property
    def tunnel_enabled(self):
        return not self.missing_tunnel_settings()

    @classmethod
    def from_env(cls):
        return cls(
            backend_api_address=os.getenv("BACKEND_API_ADDRESS", DEFAULT_BACKEND_API_ADDRESS),
            webpage_address=os.getenv("WEBPAGE_ADDRESS", DEFAULT_WEBPAGE_ADDRESS),
            ssl=_env_flag("GATEWAY_SSL"),
            certificate=os.getenv("GATEWAY_CERTIFICATE", "server.crt"),
            key=os.getenv("GATEWAY_KEY", "server.key"),
            production=_env_flag("GATEWAY_PRODUCTION"),
            tunnel_mode=_env_flag("TUNNEL_MODE"),
            tunnel_relay=os.getenv("TUNNEL_RELAY", ""),
            tunnel_exposed_port=os.getenv("TUNNEL_EXPOSED_PORT", ""),
            link_base_url=os.getenv("LINK_BASE_URL", DEFAULT_LINK_BASE_URL),
            identity_key_file=os.getenv("IDENTITY_KEY_FILE", ""),
            backend_timeout=_env_number("BACKEND_TIMEOUT", 30.0, minimum=0.1),
            upload_timeout=_env_number("UPLOAD_TIMEOUT", 300.0, minimum=0.1),
            backend_ready_timeout=_env_number("BACKEND_READY_TIMEOUT", 30.0),
            monitor_interval=_env_number("BACKEND_MONITOR_INTERVAL", 30.0, minimum=0.1),
            tunnel_timeout=_env_number("TUNNEL_TIMEOUT", 10.0, minimum=0.1),
            tunnel_settle_delay=_env_number("TUNNEL_SETTLE_DELAY", 1.0),
            rate_limit=os.getenv("GATEWAY_RATE_LIMIT", DEFAULT_RATE_LIMIT),
            max_upload_bytes=_env_number("GATEWAY_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES, cast=int, minimum=1),
        )

    @classmethod
    def from_args(cls, argv=None):
        """Parse command line flags on top of the environment defaults."""
        base = cls.from_env()
        parser = build_arg_parser(base)
        args = parser.parse_args(argv)
        values = {field: getattr(base, field) for field in base.__dataclass_fields__}
        values.update(vars(args))
        return cls(**values)


def build_arg_parser(defaults):
    parser = argparse.ArgumentParser(
        prog="upload-gateway",
        description="Web gateway that uploads files to a peer-to-peer backend node.",
    )
    parser.add_argument("--backend-api-address", dest="backend_api_address",
                        default=defaults.backend_api_address,
                        help="backend node web API address (host:port)")
    parser.add_argument("--webpage-address", dest="webpage_address",
                        default=defaults.webpage_address,
                        help="address the gateway listens on (host:port)")
    parser.add_argument("--ssl", dest="ssl", action="store_true", default=defaults.ssl,
                        help="serve over TLS and talk to the backend over https")
    parser.add_argument("--certificate", default=defaults.certificate, help="TLS certificate file")
    parser.add_argument("--key", default=defaults.key, help="TLS key file")
    parser.add_argument("--production", action="store_true", default=defaults.production,
                        help="run in production mode (quieter logging, no debugger)")
    parser.add_argument("--tunnel", dest="tunnel_mode", action="store_true",
                        default=defaults.tunnel_mode,
                        help="expose the gateway through a relay tunnel")
    parser.add_argument("--tunnel-relay", dest="tunnel_relay", default=defaults.tunnel_relay,
                        help="relay address (host:port) used in tunnel mode")
    parser.add_argument("--tunnel-exposed-port", dest="tunnel_exposed_port",
                        default=defaults.tunnel_exposed_port,
                        help="external port to request from the relay")
    parser.add_argument("--link-base-url", dest="link_base_url", default=defaults.link_base_url,
                        help="base URL of shareable links")
    parser.add_argument("--identity-key-file", dest="identity_key_file",
                        default=defaults.identity_key_file,
                        help="PEM key used instead of the backend's exported public key")
    return parser
