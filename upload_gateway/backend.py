# ------------------------------------------------------------------------
# backend.py
#
# Clients for the backend node's web API.
#
# Key notes:
#  - ContentSubmitter  -> POST /warehouse/create      (multipart, returns hash)
#  - MetadataRecorder  -> POST /blockchain/file/add   (JSON file records)
#  - UploadStatusTracker -> GET /create/track/uploadID (read-through progress)
#  - BackendSupervisor -> GET /status                 (readiness + monitor)
#  - Byte strings travel as base64 in JSON; status 0 means success.
#  - Nothing here retries; the caller decides.
# ------------------------------------------------------------------------

import base64
import binascii
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests

from upload_gateway import filetypes
from upload_gateway.errors import (
    BackendUnavailable,
    RemoteStatusError,
    TransportError,
    UploadNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_OK = 0

WAREHOUSE_CREATE_PATH = "/warehouse/create"
BLOCKCHAIN_FILE_ADD_PATH = "/blockchain/file/add"
UPLOAD_TRACK_PATH = "/create/track/uploadID"
STATUS_PATH = "/status"


@dataclass(frozen=True)
class ContentRecord:
    hash: bytes
    size: int

    @property
    def hash_hex(self):
        return binascii.hexlify(self.hash).decode("ascii")


@dataclass(frozen=True)
class LedgerAck:
    status: int
    height: int
    version: int


@dataclass(frozen=True)
class UploadStatus:
    id: str
    status: int
    percentage: float
    total_size: int = 0
    total_read: int = 0

    def to_dict(self):
        return {
            "id": self.id,
            "status": self.status,
            "percentage": self.percentage,
            "totalSize": self.total_size,
            "totalRead": self.total_read,
        }


class CountingReader:
    """File-like wrapper that counts the bytes read through it."""

    def __init__(self, stream):
        self._stream = stream
        self.bytes_read = 0

    def read(self, size=-1):
        chunk = self._stream.read(size)
        if chunk:
            self.bytes_read += len(chunk)
        return chunk


def decode_hash(value):
    """Decode a base64 hash from a backend JSON document."""
    if not isinstance(value, str) or not value:
        raise ValueError("hash is missing")
    decoded = base64.b64decode(value, validate=True)
    if not decoded:
        raise ValueError("hash is empty")
    return decoded


def encode_hash(content_hash):
    return base64.b64encode(bytes(content_hash)).decode("ascii")


def _read_json(response, stage, what):
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteStatusError(f"{what}: malformed response from backend ({exc})", stage=stage) from exc


def _status_of(payload):
    if not isinstance(payload, dict):
        return None
    status = payload.get("status")
    if isinstance(status, bool) or not isinstance(status, int):
        return None
    return status


class ContentSubmitter:
    """Streams one file into the backend's warehouse."""

    def __init__(self, config):
        self.url = config.backend_url + WAREHOUSE_CREATE_PATH
        self.timeout = config.upload_timeout

    def submit(self, stream, correlation_id="", filename=None):
        reader = CountingReader(stream)
        data = {"id": correlation_id or ""}
        files = {"File": (filename or "upload", reader, "application/octet-stream")}

        try:
            response = requests.post(self.url, data=data, files=files, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning("Warehouse submission failed: %s", exc)
            raise TransportError(f"submission failed: {exc}", stage="submit") from exc

        if not response.ok:
            raise RemoteStatusError(
                f"submission failed: warehouse returned HTTP {response.status_code}",
                stage="submit",
            )

        payload = _read_json(response, "submit", "submission failed")
        status = _status_of(payload)
        if status is None:
            raise RemoteStatusError("submission failed: acknowledgement has no status", stage="submit")
        if status != STATUS_OK:
            raise RemoteStatusError(
                f"submission failed: warehouse status {status}", stage="submit", status=status
            )
        try:
            content_hash = decode_hash(payload.get("hash"))
        except (binascii.Error, ValueError) as exc:
            raise RemoteStatusError(f"submission failed: invalid hash in acknowledgement ({exc})",
                                    stage="submit") from exc

        record = ContentRecord(hash=content_hash, size=reader.bytes_read)
        logger.debug("Warehouse stored %s (%d bytes)", record.hash_hex, record.size)
        return record


class MetadataRecorder:
    """Appends a single file record to the backend's blockchain."""

    def __init__(self, config):
        self.url = config.backend_url + BLOCKCHAIN_FILE_ADD_PATH
        self.timeout = config.backend_timeout

    @staticmethod
    def build_request(content_hash, filename):
        file_type = filetypes.classify(filename)
        return {
            "files": [
                {
                    "hash": encode_hash(content_hash),
                    "type": file_type,
                    "name": filename or "",
                }
            ]
        }

    def record(self, content_hash, filename):
        if not content_hash:
            raise ValidationError("Cannot record metadata without a content hash", stage="record")

        body = self.build_request(content_hash, filename)

        try:
            response = requests.post(self.url, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning("Blockchain append failed: %s", exc)
            raise TransportError(f"metadata append failed: {exc}", stage="record") from exc

        if not response.ok:
            raise RemoteStatusError(
                f"metadata append failed: blockchain returned HTTP {response.status_code}",
                stage="record",
            )

        payload = _read_json(response, "record", "metadata append failed")
        status = _status_of(payload)
        if status is None:
            raise RemoteStatusError("metadata append failed: response has no status", stage="record")
        if status != STATUS_OK:
            raise RemoteStatusError(
                f"metadata append failed: blockchain status {status}", stage="record", status=status
            )

        try:
            ack = LedgerAck(
                status=status,
                height=int(payload.get("height") or 0),
                version=int(payload.get("version") or 0),
            )
        except (TypeError, ValueError) as exc:
            raise RemoteStatusError(f"metadata append failed: malformed response ({exc})",
                                    stage="record") from exc
        logger.info(
            "Recorded %r as %s in blockchain (height=%d, version=%d)",
            filename, filetypes.type_name(body["files"][0]["type"]), ack.height, ack.version,
        )
        return ack


class UploadStatusTracker:
    """Read-through access to the backend's upload progress tracking."""

    def __init__(self, config):
        self.url = config.backend_url + UPLOAD_TRACK_PATH
        self.timeout = config.backend_timeout

    def status(self, correlation_id):
        if not correlation_id or not correlation_id.strip():
            raise ValidationError("Missing upload id", stage="status")

        try:
            response = requests.get(self.url, params={"id": correlation_id}, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"status lookup failed: {exc}", stage="status") from exc

        if response.status_code == 404:
            raise UploadNotFound(f"No upload with id {correlation_id}", stage="status")
        if not response.ok:
            raise RemoteStatusError(
                f"status lookup failed: backend returned HTTP {response.status_code}", stage="status"
            )

        payload = _read_json(response, "status", "status lookup failed")
        progress = payload.get("progress") if isinstance(payload, dict) else None
        if not isinstance(progress, dict):
            raise UploadNotFound(f"No upload with id {correlation_id}", stage="status")

        try:
            return UploadStatus(
                id=str(payload.get("id") or correlation_id),
                status=int(payload.get("status") or 0),
                percentage=float(progress.get("percentage") or 0),
                total_size=int(progress.get("totalsize") or 0),
                total_read=int(progress.get("totalread") or 0),
            )
        except (TypeError, ValueError) as exc:
            raise RemoteStatusError(f"status lookup failed: malformed progress ({exc})",
                                    stage="status") from exc


class BackendSupervisor:
    """
    Waits for the backend node to come up and then keeps an eye on it.

    The monitor thread blocks on a shutdown event between probes, so stop()
    returns as soon as the current probe finishes.
    """

    def __init__(self, config, poll_interval=0.5):
        self.url = config.backend_url + STATUS_PATH
        self.timeout = config.backend_timeout
        self.ready_timeout = config.backend_ready_timeout
        self.monitor_interval = config.monitor_interval
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.connected = None

    def probe(self):
        """Return the backend's status document, or None if it is not ready."""
        try:
            response = requests.get(self.url, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.debug("Backend status probe failed: %s", exc)
            return None
        if not response.ok:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if _status_of(payload) != STATUS_OK:
            return None
        return payload

    def wait_until_ready(self, timeout=None):
        deadline = time.monotonic() + (self.ready_timeout if timeout is None else timeout)
        while True:
            payload = self.probe()
            if payload is not None:
                logger.info("Backend at %s is ready", self.url)
                return payload
            if time.monotonic() >= deadline or self._stop.is_set():
                raise BackendUnavailable(f"Backend at {self.url} did not become ready", stage="startup")
            self._stop.wait(self.poll_interval)

    def _monitor(self):
        while not self._stop.is_set():
            payload = self.probe()
            connected = bool(payload and payload.get("isconnected"))
            if payload is None:
                logger.warning("Backend at %s is not responding", self.url)
            elif connected != self.connected:
                logger.info(
                    "Backend network %s (peers=%s)",
                    "connected" if connected else "disconnected",
                    payload.get("countpeerlist"),
                )
            self.connected = connected if payload is not None else None
            self._stop.wait(self.monitor_interval)

    def start(self):
        if self._thread is not None:
            return self._thread
        self._thread = threading.Thread(target=self._monitor, name="backend-monitor", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
