# pipeline.py
#
# Upload orchestration: warehouse -> blockchain -> link.
#
#   RECEIVED -> SUBMITTED -> RECORDED -> LINKED -> DONE
#        \__________\___________\_________\______-> FAILED
#
# A link is only handed out once the blob is stored *and* its metadata is in
# the blockchain. A failed metadata append after a successful store surfaces
# as ConsistencyError; the orphaned blob is left to the backend.

import enum
import logging
from dataclasses import dataclass

from upload_gateway import filetypes, links
from upload_gateway.backend import (
    ContentRecord,
    ContentSubmitter,
    MetadataRecorder,
)
from upload_gateway.errors import ConsistencyError, GatewayError
from upload_gateway.identity import NodeIdentity

logger = logging.getLogger(__name__)


class UploadState(enum.Enum):
    RECEIVED = "received"
    SUBMITTED = "submitted"
    RECORDED = "recorded"
    LINKED = "linked"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadResult:
    public_key: bytes
    record: ContentRecord
    filename: str
    link: str


class UploadOrchestrator:
    """
    Runs one upload at a time per call. The orchestrator keeps no state
    between calls, so a single instance serves concurrent requests.
    """

    def __init__(self, submitter, recorder, identity, link_base_url):
        self.submitter = submitter
        self.recorder = recorder
        self.identity = identity
        self.link_base_url = link_base_url

    @classmethod
    def from_config(cls, config):
        return cls(
            submitter=ContentSubmitter(config),
            recorder=MetadataRecorder(config),
            identity=NodeIdentity(config),
            link_base_url=config.link_base_url,
        )

    def upload(self, stream, filename, correlation_id=""):
        label = correlation_id or filename or "anonymous"
        state = UploadState.RECEIVED

        def advance(new_state):
            logger.debug("Upload %s: %s -> %s", label, state.value, new_state.value)
            return new_state

        try:
            # Names the blockchain cannot classify are rejected before anything is stored.
            filetypes.classify(filename)
            record = self.submitter.submit(stream, correlation_id, filename=filename)
            state = advance(UploadState.SUBMITTED)

            try:
                self.recorder.record(record.hash, filename)
            except GatewayError as exc:
                raise ConsistencyError(
                    f"File {record.hash_hex} was stored but its metadata was not recorded: {exc}",
                    content_hash=record.hash,
                ) from exc
            state = advance(UploadState.RECORDED)

            public_key = self.identity.public_key()
            link = links.derive(public_key, record.hash, self.link_base_url)
            state = advance(UploadState.LINKED)
        except GatewayError as exc:
            advance(UploadState.FAILED)
            if isinstance(exc, ConsistencyError):
                logger.error("Upload %s left an orphaned blob: %s", label, exc)
            else:
                logger.warning("Upload %s failed after %s: %s", label, state.value, exc)
            raise

        advance(UploadState.DONE)
        return UploadResult(public_key=public_key, record=record, filename=filename or "", link=link)
