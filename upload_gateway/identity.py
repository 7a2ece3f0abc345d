# identity.py
#
# The node's public key, used as the first half of every shareable link.
# By default it is read from the backend (GET /account/info, "peerid" is the
# hex encoded compressed public key). A PEM key file can be configured
# instead, for gateways that publish under their own identity.

import binascii
import logging
import threading

import requests
from Crypto.PublicKey import ECC

from upload_gateway.errors import RemoteStatusError, TransportError, ValidationError

logger = logging.getLogger(__name__)

ACCOUNT_INFO_PATH = "/account/info"


def load_public_key_file(path):
    """Return the compressed SEC1 public key of the ECC key stored at ``path``."""
    with open(path, "rt", encoding="utf-8") as fh:
        key = ECC.import_key(fh.read())
    return key.public_key().export_key(format="SEC1", compress=True)


class NodeIdentity:
    def __init__(self, config):
        self.url = config.backend_url + ACCOUNT_INFO_PATH
        self.timeout = config.backend_timeout
        self.key_file = config.identity_key_file
        self._lock = threading.Lock()
        self._public_key = None

    def _fetch_from_backend(self):
        try:
            response = requests.get(self.url, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"public key export failed: {exc}", stage="identity") from exc
        if not response.ok:
            raise RemoteStatusError(
                f"public key export failed: backend returned HTTP {response.status_code}",
                stage="identity",
            )
        try:
            payload = response.json()
            peer_id = payload["peerid"]
            public_key = binascii.unhexlify(peer_id)
        except (ValueError, KeyError, TypeError, binascii.Error) as exc:
            raise RemoteStatusError(f"public key export failed: malformed account info ({exc})",
                                    stage="identity") from exc
        if not public_key:
            raise RemoteStatusError("public key export failed: empty peer id", stage="identity")
        return public_key

    def _load(self):
        if self.key_file:
            try:
                return load_public_key_file(self.key_file)
            except (OSError, ValueError) as exc:
                raise ValidationError(f"Cannot load identity key {self.key_file}: {exc}",
                                      stage="identity") from exc
        return self._fetch_from_backend()

    def public_key(self):
        with self._lock:
            if self._public_key is None:
                self._public_key = self._load()
                logger.info("Node public key: %s", binascii.hexlify(self._public_key).decode("ascii"))
            return self._public_key
