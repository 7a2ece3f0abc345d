# errors.py
#
# Exception hierarchy shared by the upload pipeline, the status tracker,
# the backend supervisor and the tunnel client.


class GatewayError(Exception):
    """Base class for every failure the gateway reports to a caller."""

    http_status = 500

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self):
        return self.message


class TransportError(GatewayError):
    """The collaborator could not be reached (connection, DNS, timeout)."""

    http_status = 502


class RemoteStatusError(GatewayError):
    """The collaborator answered, but with a failure or an unreadable body."""

    http_status = 502

    def __init__(self, message, stage=None, status=None):
        super().__init__(message, stage=stage)
        self.status = status


class ValidationError(GatewayError):
    """The caller sent something the gateway refuses to pass on."""

    http_status = 400


class ConsistencyError(GatewayError):
    """
    The blob was stored but its metadata was not appended to the ledger.
    The backend now holds an orphaned blob; nothing tries to delete it.
    """

    http_status = 500

    def __init__(self, message, content_hash=None, stage="record"):
        super().__init__(message, stage=stage)
        self.content_hash = content_hash


class UploadNotFound(GatewayError):
    """The backend does not know the requested upload id."""

    http_status = 404


class TunnelError(GatewayError):
    """Relay discovery or lease negotiation failed."""

    http_status = 502


class BackendUnavailable(GatewayError):
    """The backend node did not become ready during startup."""

    http_status = 503
