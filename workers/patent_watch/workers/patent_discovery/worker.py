"""Company patent discovery worker.

Finds a company's filings in the registry by name and aliases and stores
each one with whatever XML could be retrieved.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..base import BaseWorker
from ...models.patent import PatentRecord
from ...utils.config import Settings
from ...utils.database import DatabaseClient
from ...utils.error_tracking import setup_sentry
from ...utils.errors import AuthenticationError
from ...utils.observability import metrics, setup_tracing
from ...utils.uspto_client import USPTOClient
from ...utils.xml_parser import extract_grant_number

logger = structlog.get_logger(__name__)


class DiscoveryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    company_name: str = Field(alias="companyName", min_length=1)
    aliases: List[str] = Field(default_factory=list, alias="companyAliases")


class DiscoveryResult(BaseModel):
    company_id: str
    total: int = 0
    processed: int = 0
    failed: int = 0


class PatentDiscovery:
    """Registry discovery for the portfolio owner's own patents."""

    def __init__(self, db: DatabaseClient, registry: USPTOClient):
        self.db = db
        self.registry = registry

    async def discover_company_patents(self, company_name: str, aliases: Sequence[str] = (), *,
                                       user_id: str, company_id: Optional[str] = None) -> DiscoveryResult:
        if not user_id:
            raise AuthenticationError("A verified user id is required")
        if company_id is None:
            company_id = await self.db.get_or_create_company(user_id, company_name, aliases)

        records = await self.registry.search([company_name, *aliases])
        logger.info("Registry search complete", company=company_name, patents=len(records))

        result = DiscoveryResult(company_id=company_id, total=len(records))
        for record in records:
            if await self._store(record, user_id, company_id):
                result.processed += 1
            else:
                result.failed += 1

        logger.info("Patent discovery complete", company=company_name, total=result.total,
                    processed=result.processed, failed=result.failed)
        return result

    async def _store(self, record: PatentRecord, user_id: str, company_id: str) -> bool:
        try:
            xml = await self.registry.fetch_associated_xml(record.application_number)
            if xml is None:
                record = await self.registry.resolve_identifiers(record)
                xml = await self.registry.fetch_xml(record.application_number, record.patent_number,
                                                    record.publication_number)
            if xml:
                record = record.model_copy(update={
                    "abstract": xml.abstract or record.abstract,
                    "patent_number": record.patent_number or extract_grant_number(xml.xml_content) or None,
                })
            await self.db.upsert_patent(
                user_id,
                record,
                company_id=company_id,
                xml_url=xml.xml_url if xml else None,
                xml_content=xml.xml_content if xml else None,
            )
        except Exception as e:
            logger.error("Failed to store patent", application_number=record.application_number, error=str(e))
            metrics.documents_stored.labels(document_type="portfolio_patent", status="error").inc()
            return False

        status = "xml_available" if xml else "metadata_only"
        metrics.documents_stored.labels(document_type="portfolio_patent", status=status).inc()
        return True


class PatentDiscoveryWorker(BaseWorker):
    """Worker that runs company patent discovery in the background."""

    subject = "company.patents.discover"
    request_model = DiscoveryRequest

    def __init__(self, settings: Settings, discovery: PatentDiscovery = None):
        super().__init__(settings)
        self.discovery = discovery or PatentDiscovery(DatabaseClient(settings), USPTOClient(settings))

    async def connect(self):
        await super().connect()
        await self.discovery.db.connect()

    async def disconnect(self):
        await self.discovery.db.disconnect()
        await self.discovery.registry.close()
        await super().disconnect()

    async def process_message(self, message: DiscoveryRequest) -> DiscoveryResult:
        user_id = self.authenticate(message.token)
        return await self.discovery.discover_company_patents(
            message.company_name, message.aliases, user_id=user_id
        )


async def main():
    """Main entry point for the patent discovery worker."""
    settings = Settings.from_env()
    setup_sentry(settings.sentry_dsn, settings.environment)
    setup_tracing("patent-discovery-worker")

    worker = PatentDiscoveryWorker(settings)
    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Shutting down patent discovery worker...")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
