import base64
import hashlib
import sys
from pathlib import Path

import pytest
import requests

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from upload_gateway.config import GatewayConfig  # noqa: E402

_NO_JSON = object()

PUBLIC_KEY_HEX = "02" + "ab" * 32


class FakeResponse:
    def __init__(self, status_code=200, payload=_NO_JSON, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is _NO_JSON:
            raise ValueError("response body is not JSON")
        return self._payload


class FakeBackend:
    """In-memory stand-in for the backend node's web API."""

    def __init__(self):
        self.blobs = {}
        self.records = []
        self.uploads = {}
        self.calls = {"warehouse": 0, "blockchain": 0, "track": 0, "account": 0, "status": 0}
        self.warehouse_status = 0
        self.blockchain_status = 0
        self.warehouse_error = None
        self.blockchain_error = None
        self.backend_status = 0
        self.peer_id = PUBLIC_KEY_HEX
        self.height = 0
        self.ack_payload = None

    @staticmethod
    def content_hash(content):
        return hashlib.sha256(content).digest()

    def post(self, url, data=None, files=None, json=None, timeout=None):
        if url.endswith("/warehouse/create"):
            self.calls["warehouse"] += 1
            if self.warehouse_error is not None:
                raise self.warehouse_error
            _name, fh, _content_type = files["File"]
            content = fh.read()
            if self.warehouse_status != 0:
                return FakeResponse(payload={"status": self.warehouse_status})
            digest = self.content_hash(content)
            self.blobs[digest] = content
            upload_id = (data or {}).get("id")
            if upload_id:
                self.uploads[upload_id] = {
                    "id": upload_id,
                    "status": 0,
                    "progress": {"totalsize": len(content), "totalread": len(content), "percentage": 100},
                }
            return FakeResponse(payload={"status": 0, "hash": base64.b64encode(digest).decode("ascii")})

        if url.endswith("/blockchain/file/add"):
            self.calls["blockchain"] += 1
            if self.blockchain_error is not None:
                raise self.blockchain_error
            if self.blockchain_status != 0:
                return FakeResponse(payload={"status": self.blockchain_status, "height": 0, "version": 0})
            self.records.extend(json["files"])
            if self.ack_payload is not None:
                return FakeResponse(payload=self.ack_payload)
            self.height += 1
            return FakeResponse(payload={"status": 0, "height": self.height, "version": 1})

        raise AssertionError(f"Unexpected POST {url}")

    def get(self, url, params=None, timeout=None):
        if url.endswith("/create/track/uploadID"):
            self.calls["track"] += 1
            upload = self.uploads.get((params or {}).get("id"))
            return FakeResponse(payload=upload)
        if url.endswith("/account/info"):
            self.calls["account"] += 1
            return FakeResponse(payload={"peerid": self.peer_id, "nodeid": "cd" * 32})
        if url.endswith("/status"):
            self.calls["status"] += 1
            return FakeResponse(payload={"status": self.backend_status, "isconnected": True, "countpeerlist": 3})
        raise AssertionError(f"Unexpected GET {url}")


@pytest.fixture
def fake_backend(monkeypatch):
    backend = FakeBackend()
    monkeypatch.setattr(requests, "post", backend.post)
    monkeypatch.setattr(requests, "get", backend.get)
    return backend


@pytest.fixture
def gateway_config():
    return GatewayConfig(rate_limit="1000 per minute", link_base_url="http://peer.ae")
