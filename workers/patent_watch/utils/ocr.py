"""Page-indexed text extraction backed by AWS Textract."""

import asyncio
import re
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

import boto3
import structlog

from ..models.patent import ExtractionResult, PageContent
from .config import BackoffPolicy, Settings
from .errors import ExtractionError, ExtractionTimeoutError
from .observability import track_metrics
from .storage import StorageClient

logger = structlog.get_logger(__name__)


class TextExtractor:
    """Stages a document in S3, runs async text detection and pages the result."""

    def __init__(self, settings: Settings, storage: Optional[StorageClient] = None,
                 textract_client=None, polling: Optional[BackoffPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.storage = storage or StorageClient(settings)
        self.textract_client = textract_client or boto3.client(
            "textract",
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        self.polling = polling or settings.ocr_polling
        self._sleep = sleep

    @track_metrics("ocr_jobs")
    async def extract(self, document: bytes) -> ExtractionResult:
        """Extract text from a PDF, one entry per page."""
        key = await self.storage.put_bytes(document)
        try:
            job_id = await self._start_job(key)
            blocks = await self._wait_for_blocks(job_id)
            result = build_extraction_result(blocks)
            logger.info("Text extraction complete", job_id=job_id, total_pages=result.total_pages)
            return result
        finally:
            await self.storage.delete_object(key)

    async def _start_job(self, key: str) -> str:
        response = await asyncio.to_thread(
            self.textract_client.start_document_text_detection,
            DocumentLocation={"S3Object": {"Bucket": self.storage.bucket_name, "Name": key}},
        )
        job_id = response.get("JobId")
        if not job_id:
            raise ExtractionError("Failed to start Textract job")
        logger.info("Textract job started", job_id=job_id, key=key)
        return job_id

    async def _wait_for_blocks(self, job_id: str) -> List[Dict]:
        for attempt in range(self.polling.max_attempts):
            await self._sleep(self.polling.delay())
            response = await asyncio.to_thread(
                self.textract_client.get_document_text_detection, JobId=job_id
            )
            status = response.get("JobStatus")

            if status == "SUCCEEDED":
                blocks = list(response.get("Blocks") or [])
                next_token = response.get("NextToken")
                while next_token:
                    page = await asyncio.to_thread(
                        self.textract_client.get_document_text_detection,
                        JobId=job_id,
                        NextToken=next_token,
                    )
                    blocks.extend(page.get("Blocks") or [])
                    next_token = page.get("NextToken")
                return blocks

            if status == "FAILED":
                raise ExtractionError(response.get("StatusMessage") or "Textract job failed")

            logger.debug("Textract job pending", job_id=job_id, attempt=attempt + 1, status=status)

        raise ExtractionTimeoutError(
            f"Textract job {job_id} did not finish within {self.polling.deadline_seconds:.0f}s"
        )


def build_extractor(settings: Settings) -> Optional[TextExtractor]:
    """A ``TextExtractor`` when a staging bucket is configured, else None."""
    if not settings.s3_bucket:
        logger.info("No S3 bucket configured, document OCR disabled")
        return None
    return TextExtractor(settings)


def build_extraction_result(blocks: List[Dict]) -> ExtractionResult:
    """Group LINE blocks by page. Missing page numbers become empty pages."""
    lines_by_page: Dict[int, List[str]] = defaultdict(list)
    for block in blocks:
        if block.get("BlockType") == "LINE" and block.get("Text"):
            lines_by_page[int(block.get("Page") or 1)].append(block["Text"])

    total_pages = max(lines_by_page) if lines_by_page else 0
    pages = []
    for number in range(1, total_pages + 1):
        raw_text = "\n".join(lines_by_page.get(number, []))
        pages.append(PageContent(page_number=number, text=_collapse(raw_text), raw_text=raw_text))

    return ExtractionResult(
        pages=pages,
        total_pages=total_pages,
        full_text="\n\n".join(page.text for page in pages),
    )


def find_text_in_pages(pages: List[PageContent], needle: str) -> List[int]:
    """Page numbers whose text contains ``needle`` (case-insensitive)."""
    needle = needle.lower()
    return [page.page_number for page in pages if needle in page.text.lower()]


def extract_snippet(page_text: str, needle: str, context_chars: int = 100) -> str:
    index = page_text.lower().find(needle.lower())
    if index == -1:
        return ""
    start = max(0, index - context_chars)
    end = min(len(page_text), index + len(needle) + context_chars)
    snippet = page_text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(page_text):
        snippet = snippet + "..."
    return snippet


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
