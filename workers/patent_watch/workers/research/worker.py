"""Competitor research worker for batch research requests."""

import asyncio
import logging
from typing import List

import structlog
from pydantic import BaseModel, Field

from ..base import BaseWorker
from ...models.competitor import BatchResult, CompetitorRequest
from ...utils.config import Settings
from ...utils.database import DatabaseClient
from ...utils.document_fetcher import DocumentFetcher
from ...utils.error_tracking import setup_sentry
from ...utils.llm_client import LLMClient
from ...utils.observability import setup_tracing
from ...utils.ocr import build_extractor
from ...utils.uspto_client import USPTOClient
from .pipeline import CompetitorResearchPipeline

logger = structlog.get_logger(__name__)


class ResearchRequest(BaseModel):
    """Request model for batch competitor research."""
    token: str
    competitors: List[CompetitorRequest] = Field(min_length=1)


class ResearchWorker(BaseWorker):
    """Worker that researches and scores submitted competitors."""

    subject = "competitor.research"
    request_model = ResearchRequest

    def __init__(self, settings: Settings, pipeline: CompetitorResearchPipeline = None):
        super().__init__(settings)
        if pipeline is None:
            db = DatabaseClient(settings)
            pipeline = CompetitorResearchPipeline(
                settings,
                db,
                LLMClient(settings),
                USPTOClient(settings),
                DocumentFetcher(reader_base_url=settings.reader_base_url),
                build_extractor(settings),
            )
        self.pipeline = pipeline

    async def connect(self):
        await super().connect()
        await self.pipeline.db.connect()

    async def disconnect(self):
        await self.pipeline.db.disconnect()
        await self.pipeline.registry.close()
        await self.pipeline.fetcher.close()
        await self.pipeline.llm.close()
        await super().disconnect()

    async def process_message(self, message: ResearchRequest) -> BatchResult:
        user_id = self.authenticate(message.token)
        logger.info("Starting batch research", user_id=user_id, competitors=len(message.competitors))
        return await self.pipeline.research_batch(message.competitors, user_id=user_id)


async def main():
    """Main entry point for the research worker."""
    settings = Settings.from_env()
    setup_sentry(settings.sentry_dsn, settings.environment)
    setup_tracing("research-worker")

    worker = ResearchWorker(settings)
    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Shutting down research worker...")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
