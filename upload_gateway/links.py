# links.py
#
# Shareable links: <base url>/<hex public key>/<hex content hash>

import binascii
from urllib.parse import quote

from upload_gateway.errors import ValidationError


def _to_hex(value, label):
    if isinstance(value, str):
        text = value.strip().lower()
        try:
            binascii.unhexlify(text)
        except (binascii.Error, ValueError):
            raise ValidationError(f"{label} is not valid hex", stage="link")
        return text
    if isinstance(value, (bytes, bytearray, memoryview)):
        return binascii.hexlify(bytes(value)).decode("ascii")
    raise ValidationError(f"{label} must be bytes or hex text", stage="link")


def derive(public_key, content_hash, base_url):
    """Build the retrieval URL for ``content_hash`` published by ``public_key``."""
    if not public_key:
        raise ValidationError("Public key is required to derive a link", stage="link")
    if not content_hash:
        raise ValidationError("Content hash is required to derive a link", stage="link")
    base = (base_url or "").strip().rstrip("/")
    if not base:
        raise ValidationError("Link base URL is not configured", stage="link")

    key_hex = _to_hex(public_key, "Public key")
    hash_hex = _to_hex(content_hash, "Content hash")
    if not key_hex or not hash_hex:
        raise ValidationError("Empty public key or content hash", stage="link")
    return f"{base}/{key_hex}/{hash_hex}"


def with_filename(link, filename):
    """Append the original file name so the download keeps it."""
    if not filename:
        return link
    return f"{link}/?filename={quote(filename, safe='')}"
