"""Patent upload worker: OCR a patent PDF, structure its claims and store it."""

import asyncio
import logging
import re
import time
from typing import Optional

import structlog
from pydantic import BaseModel

from ..base import BaseWorker
from ...utils.config import Settings
from ...utils.database import DatabaseClient
from ...utils.error_tracking import setup_sentry
from ...utils.errors import ExtractionError
from ...utils.llm_client import LLMClient
from ...utils.observability import setup_tracing, trace_operation
from ...utils.ocr import TextExtractor
from ...utils.storage import StorageClient

logger = structlog.get_logger(__name__)

PDF_MAGIC = b"%PDF"


class UploadRequest(BaseModel):
    """Request model for a patent PDF already staged in object storage."""
    token: str
    s3_key: str
    file_name: str


class UploadResult(BaseModel):
    id: str
    patent_number: str
    title: str
    total_pages: int
    claims_count: int
    file_url: str


def storage_key(patent_number: str, now: Optional[float] = None) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]", "", patent_number or "") or "unknown"
    return f"patents/{safe}-{int((now or time.time()) * 1000)}.pdf"


class PatentUploader:
    """Extracts, analyzes and persists an uploaded patent."""

    def __init__(self, db: DatabaseClient, llm: LLMClient, extractor: TextExtractor, storage: StorageClient):
        self.db = db
        self.llm = llm
        self.extractor = extractor
        self.storage = storage

    async def process_patent_upload(self, document: bytes, file_name: str, *, user_id: str) -> UploadResult:
        if not document.startswith(PDF_MAGIC):
            raise ExtractionError("File must be a PDF", status=400)

        async with trace_operation("patent_upload.extract", {"file_name": file_name}):
            extraction = await self.extractor.extract(document)
        logger.info("Extracted patent pages", file_name=file_name, total_pages=extraction.total_pages)

        async with trace_operation("patent_upload.analyze"):
            analysis = await self.llm.analyze_patent_pages(extraction.pages)
        logger.info("Analyzed patent", patent_number=analysis.patent_number, claims=len(analysis.claims))

        key = await self.storage.put_bytes(document, key=storage_key(analysis.patent_number))
        file_url = self.storage.object_url(key)

        patent_id = await self.db.create_uploaded_patent(
            user_id,
            patent_number=analysis.patent_number,
            title=analysis.title,
            abstract=analysis.abstract,
            file_url=file_url,
            file_name=file_name,
            total_pages=extraction.total_pages,
        )
        if analysis.claims:
            await self.db.insert_claims(patent_id, analysis.claims)

        return UploadResult(
            id=patent_id,
            patent_number=analysis.patent_number,
            title=analysis.title,
            total_pages=extraction.total_pages,
            claims_count=len(analysis.claims),
            file_url=file_url,
        )


class PatentUploadWorker(BaseWorker):
    """Worker for patent PDFs uploaded by users."""

    subject = "patent.upload"
    request_model = UploadRequest

    def __init__(self, settings: Settings, uploader: PatentUploader = None):
        super().__init__(settings)
        if uploader is None:
            storage = StorageClient(settings)
            uploader = PatentUploader(
                DatabaseClient(settings),
                LLMClient(settings),
                TextExtractor(settings, storage=storage),
                storage,
            )
        self.uploader = uploader

    async def connect(self):
        await super().connect()
        await self.uploader.db.connect()

    async def disconnect(self):
        await self.uploader.db.disconnect()
        await self.uploader.llm.close()
        await super().disconnect()

    async def process_message(self, message: UploadRequest) -> UploadResult:
        user_id = self.authenticate(message.token)
        try:
            document = await self.uploader.storage.get_bytes(message.s3_key)
            return await self.uploader.process_patent_upload(document, message.file_name, user_id=user_id)
        finally:
            await self.uploader.storage.delete_object(message.s3_key)


async def main():
    """Main entry point for the patent upload worker."""
    settings = Settings.from_env()
    setup_sentry(settings.sentry_dsn, settings.environment)
    setup_tracing("patent-upload-worker")

    worker = PatentUploadWorker(settings)
    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Shutting down patent upload worker...")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
