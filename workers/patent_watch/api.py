"""Plain async entry points for callers that do not go through NATS.

Each call builds its clients from the environment and closes them when done.
"""

from contextlib import asynccontextmanager
from typing import List, Optional, Sequence

from .models.competitor import BatchResult, CompetitorRequest, CompetitorState, DiscoveredUrl, ResearchResult
from .models.patent import ExtractionResult, ParsedPatentXml, PatentRecord, PatentXmlResult
from .utils import xml_parser
from .utils.config import Settings
from .utils.database import DatabaseClient
from .utils.document_fetcher import DocumentFetcher
from .utils.llm_client import LLMClient
from .utils.ocr import TextExtractor, build_extractor
from .utils.uspto_client import USPTOClient
from .workers.patent_discovery.worker import DiscoveryResult, PatentDiscovery
from .workers.patent_upload.worker import PatentUploader, UploadResult
from .workers.research.pipeline import CompetitorResearchPipeline


@asynccontextmanager
async def _registry(settings: Settings):
    client = USPTOClient(settings)
    try:
        yield client
    finally:
        await client.close()


@asynccontextmanager
async def _database(settings: Settings):
    db = DatabaseClient(settings)
    await db.connect()
    try:
        yield db
    finally:
        await db.disconnect()


@asynccontextmanager
async def _llm(settings: Settings):
    client = LLMClient(settings)
    try:
        yield client
    finally:
        await client.close()


@asynccontextmanager
async def _pipeline(settings: Settings):
    fetcher = DocumentFetcher(reader_base_url=settings.reader_base_url)
    try:
        async with _database(settings) as db, _registry(settings) as registry, _llm(settings) as llm:
            yield CompetitorResearchPipeline(settings, db, llm, registry, fetcher, build_extractor(settings))
    finally:
        await fetcher.close()


async def extract(document: bytes, settings: Optional[Settings] = None) -> ExtractionResult:
    """OCR a PDF into page-indexed text."""
    return await TextExtractor(settings or Settings.from_env()).extract(document)


async def search_uspto_patents(names: Sequence[str], settings: Optional[Settings] = None) -> List[PatentRecord]:
    async with _registry(settings or Settings.from_env()) as registry:
        return await registry.search(names)


async def fetch_patent_xml(application_number: str, patent_number: Optional[str] = None,
                           publication_number: Optional[str] = None,
                           settings: Optional[Settings] = None) -> Optional[PatentXmlResult]:
    async with _registry(settings or Settings.from_env()) as registry:
        return await registry.fetch_xml(application_number, patent_number, publication_number)


def parse_patent_xml(xml: str) -> ParsedPatentXml:
    return xml_parser.parse_patent_xml(xml)


async def discover_product_urls(site_url: str, settings: Optional[Settings] = None) -> List[DiscoveredUrl]:
    settings = settings or Settings.from_env()
    fetcher = DocumentFetcher(reader_base_url=settings.reader_base_url)
    try:
        return await fetcher.discover_product_urls(site_url)
    finally:
        await fetcher.close()


async def research_and_analyze_competitor(company_name: str, *, user_id: str,
                                          patent_category: Optional[str] = None,
                                          source_patent_id: Optional[str] = None,
                                          existing_competitor_id: Optional[str] = None,
                                          settings: Optional[Settings] = None) -> ResearchResult:
    async with _pipeline(settings or Settings.from_env()) as pipeline:
        return await pipeline.research_and_analyze_competitor(
            company_name,
            user_id=user_id,
            patent_category=patent_category,
            source_patent_id=source_patent_id,
            existing_competitor_id=existing_competitor_id,
        )


async def research_batch(requests: Sequence[CompetitorRequest], *, user_id: str,
                         settings: Optional[Settings] = None) -> BatchResult:
    async with _pipeline(settings or Settings.from_env()) as pipeline:
        return await pipeline.research_batch(requests, user_id=user_id)


async def process_patent_upload(document: bytes, file_name: str, *, user_id: str,
                                settings: Optional[Settings] = None) -> UploadResult:
    settings = settings or Settings.from_env()
    extractor = TextExtractor(settings)
    async with _database(settings) as db, _llm(settings) as llm:
        uploader = PatentUploader(db, llm, extractor, extractor.storage)
        return await uploader.process_patent_upload(document, file_name, user_id=user_id)


async def discover_company_patents(company_name: str, aliases: Sequence[str] = (), *, user_id: str,
                                   company_id: Optional[str] = None,
                                   settings: Optional[Settings] = None) -> DiscoveryResult:
    settings = settings or Settings.from_env()
    async with _database(settings) as db, _registry(settings) as registry:
        return await PatentDiscovery(db, registry).discover_company_patents(
            company_name, aliases, user_id=user_id, company_id=company_id
        )


async def competitor_state(competitor_id: str, settings: Optional[Settings] = None) -> CompetitorState:
    async with _database(settings or Settings.from_env()) as db:
        return await db.competitor_state(competitor_id)
