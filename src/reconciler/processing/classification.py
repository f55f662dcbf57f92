"""classify-document: best-effort tags and summary for an inbox document."""

import logging

from ..errors import NotFoundError
from ..jobs.base import JobContext, Processor
from ..schemas import ClassifyDocumentPayload
from ..semantic.inference import DocumentExtractionClient
from ..storage.attachments import S3Client
from ..storage.database import DatabaseClient
from ..timeouts import TIMEOUTS, with_timeout

logger = logging.getLogger(__name__)


class DocumentClassificationProcessor(Processor):
    name = "classify-document"
    payload_schema = ClassifyDocumentPayload

    def __init__(self, db: DatabaseClient, s3: S3Client, extractor: DocumentExtractionClient,
                 signed_url_expiry: int = 3600):
        self.db = db
        self.s3 = s3
        self.extractor = extractor
        self.signed_url_expiry = signed_url_expiry

    def process(self, payload: ClassifyDocumentPayload, ctx: JobContext) -> dict:
        inbox = self.db.get_inbox_by_id(payload.inbox_id, payload.team_id)
        if inbox is None:
            raise NotFoundError(f"Inbox item {payload.inbox_id} not found")

        url = self.s3.generate_presigned_url(inbox.file_key, self.signed_url_expiry)
        classification = with_timeout(
            self.extractor.classify,
            TIMEOUTS.external_api,
            f"Classifying inbox {inbox.id}",
            url,
            inbox.content_type or "application/pdf",
        )

        # Extraction tags come first, classification only adds to them
        tags = list(dict.fromkeys([*inbox.tags, *(t.lower() for t in classification.tags)]))
        self.db.update_inbox(inbox.id, tags=tags, summary=inbox.summary or classification.summary)
        logger.info(f"Classified inbox {inbox.id}: {tags}")
        return {"inbox_id": inbox.id, "tags": tags}
